"""
Who is driving an update.

The request layer authenticates the operator and builds a CallerInfo; the
permission checker and the structured logs read it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CallerInfo:
    """
    Identity and role of the operator running update steps.

    Attributes:
        user_id: Authenticated identity (login name, email). None when the
            request carried no credentials.
        role: Role used for capability checks (viewer, operator, admin).
        ip_address: Client address, recorded in logs only.
    """

    user_id: str | None = None
    role: str = "anonymous"
    ip_address: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def log_fields(self) -> dict[str, Any]:
        """Fields merged into log records about this caller."""
        fields: dict[str, Any] = {"user_id": self.user_id, "role": self.role}
        if self.ip_address:
            fields["ip_address"] = self.ip_address
        return fields
