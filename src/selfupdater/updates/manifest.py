"""
Manifest reader/writer for update sessions.

The manifest records what a rollback needs to know about the state before
an update: the unit's prior version and the relative paths captured in the
file snapshot. It is written once, during BackupFiles and before any file is
overwritten, and is read-only afterwards.

The file carries a SHA256 checksum of its own content so a truncated or
hand-edited manifest is reported as corrupt rather than silently trusted.
"""

from __future__ import annotations

import copy
import hashlib
import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from selfupdater.errors import FailedPreconditionError
from selfupdater.logging import get_logger
from selfupdater.updates.staging import StagingArea, atomic_write_text, ensure_directory

logger = get_logger(__name__)


class Manifest(BaseModel):
    """
    Prior-state record for one update session.

    Attributes:
        session_id: Session that owns the manifest.
        handle: Unit that was snapshotted.
        prior_version: Version installed before the update, if known.
        file_list: Relative POSIX paths captured in the snapshot, sorted.
        created_at: ISO 8601 timestamp when the manifest was written.
    """

    session_id: str = Field(..., description="Owning session id")
    handle: str = Field(default="app", description="Unit handle")
    prior_version: str | None = Field(
        default=None,
        description="Version of the unit before the update",
    )
    file_list: list[str] = Field(
        default_factory=list,
        description="Relative paths captured in the snapshot",
    )
    created_at: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="ISO 8601 creation timestamp",
    )


def _calculate_checksum(data: dict[str, Any]) -> str:
    # Computed over everything except the checksum field itself
    data_copy = copy.deepcopy(data)
    data_copy.pop("checksum", None)
    data_json = json.dumps(data_copy, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(data_json.encode()).hexdigest()


class ManifestStore:
    """
    Reads and writes manifests inside session staging areas.

    Attributes:
        staging: The StagingArea resolving per-session paths.
    """

    def __init__(self, staging: StagingArea) -> None:
        self._staging = staging

    @property
    def staging(self) -> StagingArea:
        return self._staging

    def write(
        self,
        session_id: str,
        prior_version: str | None,
        file_list: list[str],
        *,
        handle: str = "app",
    ) -> Manifest:
        """
        Write the manifest for a session.

        Raises:
            FailedPreconditionError: If a manifest already exists for the
                session (manifests are written once).
        """
        path = self._staging.manifest_path(session_id)
        if path.exists():
            raise FailedPreconditionError(
                "Manifest already written for this session",
                details={"session_id": session_id, "path": str(path)},
            )

        manifest = Manifest(
            session_id=session_id,
            handle=handle,
            prior_version=prior_version,
            file_list=sorted(file_list),
        )

        data = manifest.model_dump()
        data["checksum"] = _calculate_checksum(data)

        ensure_directory(path.parent, mode=0o700)
        atomic_write_text(path, json.dumps(data, indent=2))

        logger.info(
            "Wrote manifest",
            extra={
                "session_id": session_id,
                "handle": handle,
                "prior_version": prior_version,
                "file_count": len(manifest.file_list),
            },
        )
        return manifest

    def read(self, session_id: str | None) -> Manifest | None:
        """
        Read the manifest for a session.

        Returns:
            The Manifest, or None when there is no session id or no manifest
            was written. Absence is a legitimate outcome.

        Raises:
            FailedPreconditionError: If the manifest exists but is corrupt.
        """
        if not session_id:
            return None

        path = self._staging.manifest_path(session_id)
        if not path.is_file():
            return None

        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise FailedPreconditionError(
                "Manifest is unreadable",
                details={"session_id": session_id, "error": str(e)},
            ) from e

        stored = data.pop("checksum", None) if isinstance(data, dict) else None
        if not isinstance(data, dict) or stored != _calculate_checksum(data):
            raise FailedPreconditionError(
                "Manifest checksum verification failed",
                details={"session_id": session_id, "path": str(path)},
            )

        try:
            return Manifest(**data)
        except ValidationError as e:
            raise FailedPreconditionError(
                "Manifest content is invalid",
                details={"session_id": session_id, "error": str(e)},
            ) from e

    def exists(self, session_id: str) -> bool:
        return self._staging.manifest_path(session_id).is_file()
