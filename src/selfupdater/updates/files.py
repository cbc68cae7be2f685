"""
File backup and restore for updatable units.

FileBackupManager owns the four file-tree operations of an update session:

- snapshot: copy the unit's current files into the session's staging area
  and write the manifest. Nothing is overwritten before this completes.
- apply: overlay the unpacked package onto the unit's tree.
- restore: put the snapshot back and remove files the package added.
- purge: drop the session's staging area.
"""

from __future__ import annotations

import errno
import os
import re
import shutil
from collections.abc import Iterator
from pathlib import Path

from selfupdater.errors import (
    FailedPreconditionError,
    FileApplyError,
    InvalidArgumentError,
    ResourceExhaustedError,
    classify_os_error,
)
from selfupdater.logging import get_logger
from selfupdater.updates.manifest import Manifest, ManifestStore
from selfupdater.updates.staging import StagingArea, directory_is_empty
from selfupdater.updates.version import read_installed_version

logger = get_logger(__name__)

CORE_HANDLE = "app"

HANDLE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class UnitLocator:
    """
    Maps a unit handle to the root of its file tree.

    "app" is the core application; any other handle names a directory under
    the plugins directory.
    """

    def __init__(self, app_root: Path | str, plugins_dir: Path | str) -> None:
        self._app_root = Path(app_root)
        self._plugins_dir = Path(plugins_dir)

    def resolve(self, handle: str) -> Path:
        """
        Get the root directory for a handle.

        Raises:
            InvalidArgumentError: If the handle is not a plain name.
        """
        if not isinstance(handle, str):
            raise InvalidArgumentError(
                "Unit handle must be a string",
                details={"type": type(handle).__name__},
            )
        if handle == CORE_HANDLE:
            return self._app_root
        if not HANDLE_PATTERN.match(handle) or handle in (".", ".."):
            raise InvalidArgumentError(
                f"Invalid unit handle: {handle}",
                details={"handle": handle},
            )
        return self._plugins_dir / handle


def iter_relative_files(root: Path, exclude: tuple[Path, ...] = ()) -> Iterator[str]:
    """
    Yield POSIX relative paths of all files (and symlinks) under root.

    Directories listed in exclude are not descended into.
    """
    if not root.is_dir():
        return

    excluded = {os.path.realpath(p) for p in exclude}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d
            for d in dirnames
            if os.path.realpath(os.path.join(dirpath, d)) not in excluded
            and not os.path.islink(os.path.join(dirpath, d))
        )
        for name in sorted(filenames):
            full = Path(dirpath) / name
            yield full.relative_to(root).as_posix()
        # Symlinked directories are captured as links, not followed
        for name in sorted(os.listdir(dirpath)):
            full = Path(dirpath) / name
            if full.is_symlink() and full.is_dir():
                yield full.relative_to(root).as_posix()


def _copy_entry(source: Path, destination: Path) -> None:
    # Write next to the destination and rename so a reader never sees a
    # half-written file.
    destination.parent.mkdir(parents=True, exist_ok=True)
    temp = destination.with_name(f".{destination.name}.updating")
    if os.path.lexists(temp):
        os.unlink(temp)

    if source.is_symlink():
        os.symlink(os.readlink(source), temp)
    else:
        shutil.copy2(source, temp)

    if destination.is_dir() and not destination.is_symlink():
        shutil.rmtree(destination)
    os.replace(temp, destination)


def symlinked_parent(root: Path, rel: str) -> Path | None:
    """
    Get the first directory between root and root/rel that is a symlink.

    Writes below such a directory land outside the unit's tree, where the
    snapshot cannot see them.
    """
    current = root
    for part in Path(rel).parts[:-1]:
        current = current / part
        if current.is_symlink():
            return current
    return None


def _prune_empty_dirs(root: Path, start: Path) -> None:
    current = start
    while current != root and root in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


class FileBackupManager:
    """
    Snapshot, apply, restore and purge for a unit's file tree.

    Attributes:
        staging: StagingArea holding session directories.
        manifests: ManifestStore used to record the prior state.
        locator: UnitLocator resolving handles to roots.
    """

    def __init__(
        self,
        staging: StagingArea,
        locator: UnitLocator,
        manifests: ManifestStore | None = None,
    ) -> None:
        self._staging = staging
        self._locator = locator
        self._manifests = manifests or ManifestStore(staging)

    @property
    def staging(self) -> StagingArea:
        return self._staging

    @property
    def manifests(self) -> ManifestStore:
        return self._manifests

    @property
    def locator(self) -> UnitLocator:
        return self._locator

    def _excluded(self) -> tuple[Path, ...]:
        # The staging root may live inside the app tree
        return (self._staging.root,)

    def snapshot(self, handle: str, session_id: str) -> Manifest:
        """
        Copy the unit's file tree into staging and write the manifest.

        The manifest is written last, so its presence means the snapshot is
        complete.

        Raises:
            FailedPreconditionError: If a snapshot or manifest already exists
                for the session, or copying fails.
            ResourceExhaustedError: If the disk fills up while copying.
        """
        root = self._locator.resolve(handle)
        snapshot_dir = self._staging.snapshot_dir(session_id)

        if not directory_is_empty(snapshot_dir) or self._manifests.exists(session_id):
            raise FailedPreconditionError(
                "A snapshot already exists for this session",
                details={"session_id": session_id, "path": str(snapshot_dir)},
            )

        self._staging.ensure(session_id)
        snapshot_dir.mkdir(parents=True, exist_ok=True)

        file_list: list[str] = []
        try:
            for rel in iter_relative_files(root, self._excluded()):
                _copy_entry(root / rel, snapshot_dir / rel)
                file_list.append(rel)
        except OSError as e:
            details = {"session_id": session_id, "handle": handle, "error": str(e)}
            if e.errno == errno.ENOSPC:
                raise ResourceExhaustedError("disk full", details=details) from e
            raise FailedPreconditionError(
                f"Failed to back up files: {e}", details=details
            ) from e

        prior_version = read_installed_version(root)
        manifest = self._manifests.write(
            session_id, prior_version, file_list, handle=handle
        )

        logger.info(
            "Snapshot complete",
            extra={
                "session_id": session_id,
                "handle": handle,
                "file_count": len(file_list),
                "prior_version": prior_version,
            },
        )
        return manifest

    def apply(self, handle: str, session_id: str) -> list[str]:
        """
        Overlay the session's unpacked package onto the unit's tree.

        Returns:
            Relative paths written.

        Raises:
            FailedPreconditionError: If no snapshot was taken, no package
                is staged, or a package file would be written below a
                symlinked directory of the unit's tree.
            FileApplyError: If writing fails (permission denied, disk full,
                partial write).
        """
        if not self._manifests.exists(session_id):
            raise FailedPreconditionError(
                "Refusing to overwrite files before a snapshot is recorded",
                details={"session_id": session_id, "handle": handle},
            )

        package_dir = self._staging.package_dir(session_id)
        if directory_is_empty(package_dir):
            raise FailedPreconditionError(
                "No package staged for this session",
                details={"session_id": session_id, "path": str(package_dir)},
            )

        root = self._locator.resolve(handle)
        entries = list(iter_relative_files(package_dir))

        # Checked up front so a refused package writes nothing
        for rel in entries:
            link = symlinked_parent(root, rel)
            if link is not None:
                raise FailedPreconditionError(
                    "Package writes through a symlinked directory",
                    details={
                        "session_id": session_id,
                        "handle": handle,
                        "path": rel,
                        "symlink": link.relative_to(root).as_posix(),
                    },
                )

        written: list[str] = []
        try:
            root.mkdir(parents=True, exist_ok=True)
            for rel in entries:
                _copy_entry(package_dir / rel, root / rel)
                written.append(rel)
        except OSError as e:
            reason = classify_os_error(e)
            logger.error(
                "Failed to apply files",
                extra={
                    "session_id": session_id,
                    "handle": handle,
                    "reason": reason.value,
                    "written": len(written),
                    "error": str(e),
                },
            )
            raise FileApplyError(
                reason,
                details={
                    "session_id": session_id,
                    "handle": handle,
                    "written": len(written),
                    "error": str(e),
                },
            ) from e

        logger.info(
            "Applied files",
            extra={"session_id": session_id, "handle": handle, "file_count": len(written)},
        )
        return written

    def restore(self, handle: str, session_id: str) -> bool:
        """
        Reverse apply using the session's snapshot.

        Files the package added are removed; every file in the manifest is
        copied back from the snapshot.

        Returns:
            True if files were restored, False if no snapshot exists.

        Raises:
            FailedPreconditionError: If the snapshot is incomplete.
            OSError: If the filesystem refuses a restore write.
        """
        manifest = self._manifests.read(session_id)
        if manifest is None:
            logger.info(
                "No snapshot to restore",
                extra={"session_id": session_id, "handle": handle},
            )
            return False

        root = self._locator.resolve(manifest.handle or handle)
        snapshot_dir = self._staging.snapshot_dir(session_id)
        captured = set(manifest.file_list)

        missing = [
            rel for rel in manifest.file_list
            if not os.path.lexists(snapshot_dir / rel)
        ]
        if missing:
            raise FailedPreconditionError(
                "Snapshot is incomplete",
                details={"session_id": session_id, "missing": missing[:20]},
            )

        package_dir = self._staging.package_dir(session_id)
        removed = 0
        for rel in iter_relative_files(package_dir):
            if rel in captured:
                continue
            if symlinked_parent(root, rel) is not None:
                # The path resolves outside the tree; apply never wrote there
                logger.warning(
                    "Not removing file below a symlinked directory",
                    extra={"session_id": session_id, "path": rel},
                )
                continue
            target = root / rel
            if os.path.lexists(target):
                os.unlink(target)
                removed += 1
                _prune_empty_dirs(root, target.parent)

        for rel in manifest.file_list:
            _copy_entry(snapshot_dir / rel, root / rel)

        logger.info(
            "Restored files from snapshot",
            extra={
                "session_id": session_id,
                "handle": manifest.handle,
                "restored": len(manifest.file_list),
                "removed": removed,
            },
        )
        return True

    def purge(self, session_id: str) -> bool:
        """Remove the session's staging area; never errors when it is missing."""
        return self._staging.purge(session_id)
