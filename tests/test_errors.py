"""
Tests for the errors module.

This test module validates:
- UpdateError base class functionality
- Error subclasses and their codes
- File-apply failure classification
"""

from __future__ import annotations

import errno

import pytest

from selfupdater.errors import (
    ApplyFailureReason,
    FailedPreconditionError,
    FileApplyError,
    InternalError,
    InvalidArgumentError,
    PermissionDeniedError,
    ResourceExhaustedError,
    RollbackFailedError,
    UnavailableError,
    UpdateError,
    classify_os_error,
)

# =============================================================================
# Tests for UpdateError Base Class
# =============================================================================


class TestUpdateError:
    """Tests for UpdateError base class."""

    def test_init_with_all_args(self) -> None:
        """Test UpdateError initialization with all arguments."""
        error = UpdateError(
            error_code="test_error",
            message="Test error message",
            details={"session_id": "abc"},
        )

        assert error.error_code == "test_error"
        assert error.message == "Test error message"
        assert error.details == {"session_id": "abc"}
        assert str(error) == "Test error message"

    def test_init_with_minimal_args(self) -> None:
        """Test details default to an empty dict."""
        error = UpdateError(error_code="test_error", message="Test message")
        assert error.details == {}

    def test_repr_representation(self) -> None:
        """Test UpdateError repr includes code, message and details."""
        error = UpdateError(
            error_code="test_error",
            message="Test message",
            details={"handle": "app"},
        )
        repr_str = repr(error)

        assert "UpdateError" in repr_str
        assert "test_error" in repr_str
        assert "handle" in repr_str

    def test_to_dict(self) -> None:
        """Test UpdateError to_dict serialization."""
        error = UpdateError(
            error_code="test_error",
            message="Test message",
            details={"key": "value"},
        )

        assert error.to_dict() == {
            "error_code": "test_error",
            "message": "Test message",
            "details": {"key": "value"},
        }


# =============================================================================
# Tests for Error Subclasses
# =============================================================================


class TestErrorSubclasses:
    """Tests for the error_code of each subclass."""

    @pytest.mark.parametrize(
        ("error_class", "code"),
        [
            (InvalidArgumentError, "invalid_argument"),
            (PermissionDeniedError, "permission_denied"),
            (UnavailableError, "unavailable"),
            (FailedPreconditionError, "failed_precondition"),
            (ResourceExhaustedError, "resource_exhausted"),
            (InternalError, "internal"),
            (RollbackFailedError, "rollback_failed"),
        ],
    )
    def test_error_code(self, error_class: type[UpdateError], code: str) -> None:
        """Test each subclass carries its error code."""
        error = error_class("message", details={"a": 1})

        assert error.error_code == code
        assert error.details == {"a": 1}
        assert isinstance(error, UpdateError)

    def test_rollback_failed_is_internal(self) -> None:
        """Test RollbackFailedError can be handled as InternalError."""
        with pytest.raises(InternalError):
            raise RollbackFailedError("Rollback failed: snapshot missing")


# =============================================================================
# Tests for File Apply Failures
# =============================================================================


class TestFileApplyError:
    """Tests for FileApplyError and classify_os_error."""

    def test_reason_description(self) -> None:
        """Test reasons render as short diagnostics."""
        assert ApplyFailureReason.DISK_FULL.description == "disk full"
        assert ApplyFailureReason.PERMISSION_DENIED.description == "permission denied"
        assert ApplyFailureReason.PARTIAL_WRITE.description == "partial write"

    def test_message_and_details(self) -> None:
        """Test the message is the reason description."""
        error = FileApplyError(ApplyFailureReason.DISK_FULL, details={"written": 2})

        assert error.message == "disk full"
        assert error.error_code == "failed_precondition"
        assert error.reason is ApplyFailureReason.DISK_FULL
        assert error.details == {"written": 2, "reason": "disk_full"}

    @pytest.mark.parametrize(
        ("exc", "reason"),
        [
            (OSError(errno.ENOSPC, "No space left on device"), ApplyFailureReason.DISK_FULL),
            (OSError(errno.EACCES, "Permission denied"), ApplyFailureReason.PERMISSION_DENIED),
            (OSError(errno.EPERM, "Operation not permitted"), ApplyFailureReason.PERMISSION_DENIED),
            (PermissionError("read-only"), ApplyFailureReason.PERMISSION_DENIED),
            (OSError(errno.EIO, "I/O error"), ApplyFailureReason.PARTIAL_WRITE),
            (OSError("no errno"), ApplyFailureReason.PARTIAL_WRITE),
        ],
    )
    def test_classify_os_error(self, exc: OSError, reason: ApplyFailureReason) -> None:
        """Test OS errors map to apply failure reasons."""
        assert classify_os_error(exc) is reason
