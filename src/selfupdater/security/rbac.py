"""
Role-based capability checks for the self-updater.

The step orchestrator only knows the PermissionChecker protocol; the request
layer builds a RolePermissionChecker for the authenticated caller and hands
it over with every step.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from selfupdater.errors import PermissionDeniedError

if TYPE_CHECKING:
    from selfupdater.config import SecurityConfig
    from selfupdater.context import CallerInfo

logger = logging.getLogger("selfupdater.security.rbac")

PERFORM_UPDATES = "performUpdates"

# Role hierarchy: higher index = higher privilege
ROLE_HIERARCHY = ["viewer", "operator", "admin"]

DEFAULT_CAPABILITIES: dict[str, str] = {
    PERFORM_UPDATES: "admin",
}


class PermissionChecker(Protocol):
    """Raises PermissionDeniedError when the caller lacks a capability."""

    def require(self, capability: str) -> None:
        ...


def role_level(role: str, hierarchy: list[str] | None = None) -> int:
    """
    Get the privilege level for a role.

    Args:
        role: Role name.
        hierarchy: Roles from least to most privileged.

    Returns:
        Privilege level (higher = more privilege), -1 for unknown roles.
    """
    try:
        return (hierarchy or ROLE_HIERARCHY).index(role)
    except ValueError:
        return -1


def has_role(
    user_role: str,
    required_role: str,
    hierarchy: list[str] | None = None,
) -> bool:
    """
    Check if user role meets the required role level.

    Returns:
        True if user has sufficient privileges.
    """
    return role_level(user_role, hierarchy) >= role_level(required_role, hierarchy)


class RolePermissionChecker:
    """
    PermissionChecker that compares the caller's role against the minimum
    role configured for a capability.

    Unknown capabilities require the most privileged role. Unauthenticated
    callers are always denied.

    Example:
        >>> checker = RolePermissionChecker(CallerInfo(user_id="ops", role="admin"))
        >>> checker.require("performUpdates")  # OK
    """

    def __init__(
        self,
        caller: CallerInfo,
        capabilities: dict[str, str] | None = None,
        hierarchy: list[str] | None = None,
    ) -> None:
        self._caller = caller
        self._capabilities = capabilities or DEFAULT_CAPABILITIES.copy()
        self._hierarchy = hierarchy or ROLE_HIERARCHY

    @classmethod
    def from_config(
        cls, caller: CallerInfo, config: SecurityConfig
    ) -> RolePermissionChecker:
        """Create a checker for caller using configured capabilities."""
        return cls(
            caller,
            capabilities=dict(config.capabilities),
            hierarchy=list(config.role_hierarchy),
        )

    @property
    def caller(self) -> CallerInfo:
        """Get the caller being checked."""
        return self._caller

    def required_role(self, capability: str) -> str:
        """Get the minimum role for a capability."""
        return self._capabilities.get(capability, self._hierarchy[-1])

    def require(self, capability: str) -> None:
        """
        Require the caller to hold a capability.

        Raises:
            PermissionDeniedError: If the caller is anonymous or under-privileged.
        """
        required = self.required_role(capability)

        extra = {
            **self._caller.log_fields(),
            "capability": capability,
            "required_role": required,
        }

        if not self._caller.is_authenticated:
            logger.warning(
                "Permission denied: anonymous caller, capability=%s",
                capability,
                extra=extra,
            )
            raise PermissionDeniedError(
                f"Authentication required for '{capability}'",
                details={"capability": capability, "required_role": required},
            )

        if not has_role(self._caller.role, required, self._hierarchy):
            logger.warning(
                "Permission denied: user=%s, role=%s, capability=%s, required=%s",
                self._caller.user_id,
                self._caller.role,
                capability,
                required,
                extra=extra,
            )
            raise PermissionDeniedError(
                f"Insufficient permissions for '{capability}'",
                details={
                    "capability": capability,
                    "required_role": required,
                    "user_role": self._caller.role,
                },
            )
