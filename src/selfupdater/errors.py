"""
Error types for the self-updater.

This module defines the UpdateError base class and the subclasses used across
the update pipeline. Step functions convert these (and raw OSError) into a
structured "go to Rollback" outcome; only caller-contract errors and
RollbackFailedError escape to the caller.
"""

from __future__ import annotations

import errno
from enum import Enum
from typing import Any


class UpdateError(Exception):
    """
    Base exception class for update pipeline errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "permission_denied", "unavailable", "failed_precondition", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, session id).

    Example:
        >>> raise UpdateError(
        ...     error_code="failed_precondition",
        ...     message="No manifest recorded for session",
        ...     details={"session_id": "0f3c..."},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdateError):
    """
    Error raised when a request or session payload is malformed.

    These are caller-contract violations and are never folded into the
    update state machine.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class PermissionDeniedError(UpdateError):
    """Error raised when a caller lacks the capability for a step."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PermissionDeniedError."""
        super().__init__(
            error_code="permission_denied", message=message, details=details
        )


class UnavailableError(UpdateError):
    """
    Error raised when a remote feed or the database cannot be reached.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(UpdateError):
    """
    Error raised when a precondition for a step is not met.

    Examples: automatic updates disabled, snapshot area already populated,
    package checksum mismatch.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class ResourceExhaustedError(UpdateError):
    """Error raised when the disk fills up during a step."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ResourceExhaustedError."""
        super().__init__(
            error_code="resource_exhausted", message=message, details=details
        )


class InternalError(UpdateError):
    """
    Error raised for unexpected internal errors.

    These should be logged with full stack traces.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        error_code: str = "internal",
    ) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code=error_code, message=message, details=details)


class RollbackFailedError(InternalError):
    """
    Error raised when restoration itself cannot complete.

    Automated recovery is exhausted at this point; the staging area is left
    in place so an operator can recover by hand.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RollbackFailedError."""
        super().__init__(message, details, error_code="rollback_failed")


class ApplyFailureReason(str, Enum):
    """Enumerated reasons an overlay of new files can fail."""

    PERMISSION_DENIED = "permission_denied"
    DISK_FULL = "disk_full"
    PARTIAL_WRITE = "partial_write"

    @property
    def description(self) -> str:
        """Human-readable form used as the step diagnostic."""
        return self.value.replace("_", " ")


class FileApplyError(FailedPreconditionError):
    """
    Error raised when new files cannot be written over the current tree.

    Attributes:
        reason: The ApplyFailureReason classifying the failure.
    """

    def __init__(
        self,
        reason: ApplyFailureReason,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a FileApplyError."""
        super().__init__(reason.description, details=details)
        self.reason = reason
        self.details.setdefault("reason", reason.value)


def classify_os_error(exc: OSError) -> ApplyFailureReason:
    """
    Map an OSError raised while writing files to an ApplyFailureReason.

    Args:
        exc: The OSError raised by the filesystem call.

    Returns:
        PERMISSION_DENIED for EACCES/EPERM, DISK_FULL for ENOSPC/EDQUOT,
        PARTIAL_WRITE for anything else.
    """
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return ApplyFailureReason.PERMISSION_DENIED
    if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        return ApplyFailureReason.DISK_FULL
    return ApplyFailureReason.PARTIAL_WRITE
