"""
Staging area management for update sessions.

Every update attempt owns exactly one directory under the staging root,
named by its session id:

    <staging_root>/<session_id>/
        package.zip      downloaded archive (automatic mode)
        package/         unpacked new files
        snapshot/        copy of the unit's file tree taken before UpdateFiles
        manifest.json    prior version and file list
        database/        database dump (when taken)

Nothing under a session directory is shared with another session. A staging
directory is only removed by CleanUp, Rollback, or the maintenance sweep.
"""

from __future__ import annotations

import os
import re
import shutil
import time
import uuid
from pathlib import Path

from selfupdater.errors import FailedPreconditionError, InvalidArgumentError
from selfupdater.logging import get_logger

logger = get_logger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

PACKAGE_ARCHIVE_NAME = "package.zip"
PACKAGE_DIR_NAME = "package"
SNAPSHOT_DIR_NAME = "snapshot"
MANIFEST_FILE_NAME = "manifest.json"
DATABASE_DIR_NAME = "database"


def new_session_id() -> str:
    """Generate a fresh session id."""
    return uuid.uuid4().hex


def validate_session_id(session_id: str) -> str:
    """
    Validate a session id before using it as a directory name.

    Raises:
        InvalidArgumentError: If the id is not 32 lowercase hex characters.
    """
    if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
        raise InvalidArgumentError(
            "Invalid session id",
            details={"session_id": session_id},
        )
    return session_id


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove_directory(path: Path, *, ignore_errors: bool = True) -> bool:
    """
    Safely remove a directory and its contents.

    Returns:
        True if directory was removed, False if it didn't exist.

    Raises:
        FailedPreconditionError: If removal fails and ignore_errors is False.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path, ignore_errors=ignore_errors)
        logger.debug("Removed directory", extra={"path": str(path)})
        return not path.exists()
    except OSError as e:
        if not ignore_errors:
            raise FailedPreconditionError(
                f"Failed to remove directory: {path}",
                details={"path": str(path), "error": str(e)},
            ) from e
        return False


def atomic_write_text(path: Path, text: str) -> None:
    """
    Write text to path via a temp file and rename.

    The file is fsynced before the rename so a crash leaves either the old
    content or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")

    with open(temp_path, "w") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())

    os.replace(temp_path, path)


def directory_is_empty(path: Path) -> bool:
    """Check whether path is missing or has no entries."""
    if not path.exists():
        return True
    return not any(path.iterdir())


class StagingArea:
    """
    Resolves and manages the per-session staging directories.

    Attributes:
        root: Directory containing one sub-directory per session.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        """Get the staging root."""
        return self._root

    def path(self, session_id: str) -> Path:
        """Get the staging directory for a session."""
        return self._root / validate_session_id(session_id)

    def package_archive(self, session_id: str) -> Path:
        return self.path(session_id) / PACKAGE_ARCHIVE_NAME

    def package_dir(self, session_id: str) -> Path:
        return self.path(session_id) / PACKAGE_DIR_NAME

    def snapshot_dir(self, session_id: str) -> Path:
        return self.path(session_id) / SNAPSHOT_DIR_NAME

    def manifest_path(self, session_id: str) -> Path:
        return self.path(session_id) / MANIFEST_FILE_NAME

    def database_dir(self, session_id: str) -> Path:
        return self.path(session_id) / DATABASE_DIR_NAME

    def exists(self, session_id: str) -> bool:
        """Check whether the session's staging directory exists."""
        return self.path(session_id).is_dir()

    def ensure(self, session_id: str) -> Path:
        """Create the session's staging directory if needed."""
        return ensure_directory(self.path(session_id), mode=0o700)

    def purge(self, session_id: str) -> bool:
        """
        Remove the session's staging directory.

        Idempotent: a missing directory is not an error.

        Returns:
            True if a directory was removed.
        """
        removed = safe_remove_directory(self.path(session_id))
        if removed:
            logger.info("Purged staging area", extra={"session_id": session_id})
        return removed

    def list_sessions(self) -> list[str]:
        """List the session ids that currently have a staging directory."""
        if not self._root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self._root.iterdir()
            if entry.is_dir() and SESSION_ID_PATTERN.match(entry.name)
        )

    def sweep(self, max_age_seconds: float, *, now: float | None = None) -> list[str]:
        """
        Purge staging areas abandoned for longer than max_age_seconds.

        Age is measured from the newest modification inside the directory,
        so a session still being driven is never swept.

        Returns:
            The purged session ids.
        """
        now = time.time() if now is None else now
        purged: list[str] = []

        for session_id in self.list_sessions():
            last_activity = self._last_activity(self.path(session_id))
            if now - last_activity < max_age_seconds:
                continue
            if self.purge(session_id):
                purged.append(session_id)

        if purged:
            logger.info(
                "Swept stale staging areas",
                extra={"count": len(purged), "session_ids": purged},
            )
        return purged

    @staticmethod
    def _last_activity(path: Path) -> float:
        latest = path.stat().st_mtime
        for dirpath, _dirnames, filenames in os.walk(path):
            for name in filenames:
                try:
                    latest = max(latest, (Path(dirpath) / name).stat().st_mtime)
                except OSError:
                    continue
            latest = max(latest, Path(dirpath).stat().st_mtime)
        return latest
