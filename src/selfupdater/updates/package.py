"""
Update packages: download, checksum, unpack and validate.

A package is a zip archive (or, for manual updates, optionally an already
unpacked directory) whose top level mirrors the unit's file tree and holds a
version.json naming the unit handle and the new version.
"""

from __future__ import annotations

import errno
import hashlib
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

import httpx

from selfupdater.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    ResourceExhaustedError,
    UnavailableError,
)
from selfupdater.logging import get_logger
from selfupdater.updates.version import UnitVersion, load_unit_version

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass
class DownloadResult:
    """
    Outcome of a package download.

    Attributes:
        path: Where the archive was written.
        checksum: SHA256 hex digest of the archive.
        size: Number of bytes written.
    """

    path: Path
    checksum: str
    size: int


class PackageDownloader(Protocol):
    """Fetches the package for a unit into a local file."""

    async def fetch(self, handle: str, destination: Path) -> DownloadResult:
        ...


def file_checksum(path: Path) -> str:
    """Compute the SHA256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class HttpPackageDownloader:
    """
    PackageDownloader fetching packages over HTTP(S) with httpx.

    The body is streamed to disk while hashed. A body shorter than the
    announced Content-Length, or a checksum different from the one the
    server announces in X-Checksum-Sha256, counts as a corrupt download.

    Example:
        >>> downloader = HttpPackageDownloader(
        ...     "https://updates.example.com/{handle}/latest.zip"
        ... )
        >>> result = await downloader.fetch("app", Path("/tmp/package.zip"))
    """

    CHECKSUM_HEADER = "X-Checksum-Sha256"

    def __init__(
        self,
        url_template: str,
        *,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url_template = url_template
        self._timeout = timeout_seconds
        self._transport = transport

    def url_for(self, handle: str) -> str:
        return self._url_template.format(handle=handle)

    async def fetch(self, handle: str, destination: Path) -> DownloadResult:
        """
        Download the package for handle to destination.

        Raises:
            UnavailableError: If the server cannot be reached or answers
                with an error status.
            FailedPreconditionError: If the download is truncated or its
                checksum does not match.
            ResourceExhaustedError: If the disk fills up.
        """
        url = self.url_for(handle)
        destination.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256()
        size = 0

        logger.info("Downloading package", extra={"handle": handle, "url": url})

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    expected_size = None
                    if "Content-Encoding" not in response.headers:
                        expected_size = response.headers.get("Content-Length")
                    announced = response.headers.get(self.CHECKSUM_HEADER)

                    with open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            f.write(chunk)
                            digest.update(chunk)
                            size += len(chunk)
        except httpx.HTTPError as e:
            destination.unlink(missing_ok=True)
            logger.error(
                "Package download failed",
                extra={"handle": handle, "url": url, "error": str(e)},
            )
            raise UnavailableError(
                f"Failed to download package: {e}",
                details={"handle": handle, "url": url},
            ) from e
        except OSError as e:
            destination.unlink(missing_ok=True)
            if e.errno == errno.ENOSPC:
                raise ResourceExhaustedError(
                    "disk full", details={"handle": handle, "path": str(destination)}
                ) from e
            raise

        checksum = digest.hexdigest()

        if expected_size is not None and int(expected_size) != size:
            destination.unlink(missing_ok=True)
            raise FailedPreconditionError(
                "Package download was incomplete",
                details={"handle": handle, "expected": int(expected_size), "received": size},
            )

        if announced and announced.lower() != checksum:
            destination.unlink(missing_ok=True)
            raise FailedPreconditionError(
                "Package checksum mismatch",
                details={"handle": handle, "expected": announced, "actual": checksum},
            )

        logger.info(
            "Package downloaded",
            extra={"handle": handle, "size": size, "checksum": checksum},
        )
        return DownloadResult(path=destination, checksum=checksum, size=size)


def _safe_member_path(name: str) -> PurePosixPath:
    member = PurePosixPath(name)
    if member.is_absolute() or ".." in member.parts:
        raise FailedPreconditionError(
            f"Unsafe path in package: {name}",
            details={"member": name},
        )
    return member


def extract_package(archive: Path, destination: Path) -> list[str]:
    """
    Unpack a zip package into destination.

    Returns:
        Relative paths of the extracted files.

    Raises:
        FailedPreconditionError: If the archive is corrupt or contains
            absolute or parent-relative paths.
    """
    extracted: list[str] = []
    try:
        with zipfile.ZipFile(archive) as zf:
            bad = zf.testzip()
            if bad is not None:
                raise FailedPreconditionError(
                    f"Corrupt entry in package: {bad}",
                    details={"archive": str(archive), "member": bad},
                )
            members = [
                (info, _safe_member_path(info.filename))
                for info in zf.infolist()
                if not info.is_dir()
            ]
            destination.mkdir(parents=True, exist_ok=True)
            for info, member in members:
                target = destination.joinpath(*member.parts)
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                extracted.append(member.as_posix())
    except zipfile.BadZipFile as e:
        raise FailedPreconditionError(
            f"Package is not a valid zip archive: {e}",
            details={"archive": str(archive)},
        ) from e

    return extracted


def validate_package(package_dir: Path, handle: str) -> UnitVersion:
    """
    Check an unpacked package is usable for handle.

    Returns:
        The package's UnitVersion.

    Raises:
        FailedPreconditionError: If version.json is missing or names a
            different unit.
    """
    try:
        unit_version = load_unit_version(package_dir)
    except InvalidArgumentError as e:
        raise FailedPreconditionError(e.message, details=e.details) from e

    if unit_version is None:
        raise FailedPreconditionError(
            "Package has no version.json",
            details={"path": str(package_dir)},
        )

    if unit_version.handle != handle:
        raise FailedPreconditionError(
            f"Package is for '{unit_version.handle}', not '{handle}'",
            details={"package_handle": unit_version.handle, "handle": handle},
        )

    return unit_version


def stage_manual_package(source: Path, destination: Path, handle: str) -> UnitVersion:
    """
    Copy an administrator-supplied package into staging and validate it.

    Args:
        source: A zip archive or an unpacked package directory.
        destination: The session's package directory.
        handle: Unit the package must be for.

    Raises:
        FailedPreconditionError: If the package is missing or unusable.
    """
    if source.is_dir():
        shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    elif source.is_file():
        extract_package(source, destination)
    else:
        raise FailedPreconditionError(
            f"Package not found: {source}",
            details={"path": str(source)},
        )

    return validate_package(destination, handle)
