"""
Update session model.

An UpdateSession is the only state carried between steps. The caller
receives it with every step response and must send it back unchanged with
the next request; the session, not the orchestrator, records which step
runs next.

Wire form uses camelCase keys (sessionId, packageChecksum, ...).
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from selfupdater.errors import InvalidArgumentError
from selfupdater.updates.staging import SESSION_ID_PATTERN


class UpdateMode(str, Enum):
    """How the new package reaches the system."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


class UpdateStep(str, Enum):
    """
    Steps of the update pipeline.

    Forward path:
    - Prepare → DownloadPackage (automatic) | BackupFiles (manual)
    - DownloadPackage → BackupFiles
    - BackupFiles → UpdateFiles
    - UpdateFiles → BackupDatabase
    - BackupDatabase → UpdateDatabase
    - UpdateDatabase → CleanUp (terminal, success)

    Rollback (terminal) is reachable from every non-terminal step.
    """

    PREPARE = "Prepare"
    DOWNLOAD_PACKAGE = "DownloadPackage"
    BACKUP_FILES = "BackupFiles"
    UPDATE_FILES = "UpdateFiles"
    BACKUP_DATABASE = "BackupDatabase"
    UPDATE_DATABASE = "UpdateDatabase"
    CLEAN_UP = "CleanUp"
    ROLLBACK = "Rollback"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateStep.CLEAN_UP, UpdateStep.ROLLBACK)


# Steps at or after which the package must have been downloaded and verified
_REQUIRES_CHECKSUM = {
    UpdateStep.UPDATE_FILES,
    UpdateStep.BACKUP_DATABASE,
    UpdateStep.UPDATE_DATABASE,
    UpdateStep.CLEAN_UP,
}


class UpdateSession(BaseModel):
    """
    State threaded through every step of one update attempt.

    Attributes:
        handle: Unit being updated; "app" for the core application.
        mode: manual or automatic; fixed when the session is created.
        session_id: Names the staging area; set by Prepare, never changed.
        package_checksum: SHA256 of the downloaded package (automatic only).
        database_backup_path: Set once a pre-migration dump succeeded.
        target_version: Version declared by the staged package.
        next_step: The step this session may run next.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    handle: str = Field(
        default="app",
        description="Unit handle",
    )
    mode: UpdateMode = Field(
        ...,
        frozen=True,
        description="manual or automatic",
    )
    session_id: str | None = Field(
        default=None,
        alias="sessionId",
        description="Staging area identifier",
    )
    package_checksum: str | None = Field(
        default=None,
        alias="packageChecksum",
        description="SHA256 of the downloaded package",
    )
    database_backup_path: str | None = Field(
        default=None,
        alias="databaseBackupPath",
        description="Database dump taken before migrations",
    )
    target_version: str | None = Field(
        default=None,
        alias="targetVersion",
        description="Version declared by the staged package",
    )
    next_step: UpdateStep = Field(
        default=UpdateStep.PREPARE,
        alias="nextStep",
        description="Step this session may run next",
    )

    @field_validator("handle", mode="before")
    @classmethod
    def default_handle(cls, v: Any) -> Any:
        """An absent or empty handle means the core application."""
        return v or "app"

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, v: str | None) -> str | None:
        """Session ids name directories; only 32 lowercase hex chars are accepted."""
        if v is not None and not SESSION_ID_PATTERN.match(v):
            raise ValueError("sessionId must be 32 lowercase hex characters")
        return v

    @model_validator(mode="after")
    def check_invariants(self) -> UpdateSession:
        """Every step past Prepare needs a session id; verified packages need a checksum."""
        past_prepare = self.next_step != UpdateStep.PREPARE
        if past_prepare and self.next_step != UpdateStep.ROLLBACK and not self.session_id:
            raise ValueError(f"sessionId is required before {self.next_step.value}")
        if (
            self.mode == UpdateMode.AUTOMATIC
            and self.next_step in _REQUIRES_CHECKSUM
            and not self.package_checksum
        ):
            raise ValueError(
                f"packageChecksum is required before {self.next_step.value} "
                "in automatic mode"
            )
        return self

    @property
    def is_manual(self) -> bool:
        return self.mode == UpdateMode.MANUAL

    def advance(self, next_step: UpdateStep, **changes: Any) -> UpdateSession:
        """
        Return a copy moved on to next_step with changes applied.

        The copy is re-validated; mode cannot be changed.
        """
        if "mode" in changes:
            raise InvalidArgumentError("Update mode cannot change during a session")
        data = self.model_dump()
        data.update(changes)
        data["next_step"] = next_step
        return UpdateSession.model_validate(data)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the camelCase wire form."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    @classmethod
    def from_payload(cls, payload: Any) -> UpdateSession:
        """
        Parse a session sent back by the caller.

        Raises:
            InvalidArgumentError: If the payload is not a valid session.
        """
        if not isinstance(payload, dict):
            raise InvalidArgumentError(
                "Session payload must be an object",
                details={"type": type(payload).__name__},
            )
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidArgumentError(
                "Invalid session payload",
                details={
                    "errors": e.errors(
                        include_url=False, include_context=False, include_input=False
                    )
                },
            ) from e
