"""
Tests for package download, unpacking and validation.

Tests cover:
- HttpPackageDownloader streaming, checksums and error mapping
- Zip extraction safety
- version.json validation
- Manual package staging
"""

from __future__ import annotations

import hashlib
import io
import json
import zipfile
from pathlib import Path

import httpx
import pytest

from conftest import make_package_zip, version_json
from selfupdater.errors import (
    FailedPreconditionError,
    UnavailableError,
)
from selfupdater.updates.package import (
    HttpPackageDownloader,
    extract_package,
    file_checksum,
    stage_manual_package,
    validate_package,
)

URL_TEMPLATE = "https://updates.test/{handle}/latest.zip"


def zip_bytes(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for rel, content in files.items():
            zf.writestr(rel, content)
    return buffer.getvalue()


# =============================================================================
# HttpPackageDownloader Tests
# =============================================================================


class TestHttpPackageDownloader:
    """Tests for HttpPackageDownloader."""

    def test_url_for(self) -> None:
        """Test the handle is substituted into the template."""
        downloader = HttpPackageDownloader(URL_TEMPLATE)
        assert downloader.url_for("gallery") == "https://updates.test/gallery/latest.zip"

    @pytest.mark.asyncio
    async def test_fetch_writes_file_and_checksum(self, tmp_path: Path) -> None:
        """Test the body is saved and its SHA256 returned."""
        body = zip_bytes({"version.json": version_json("1.1.0")})
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(
                200,
                content=body,
                headers={"X-Checksum-Sha256": hashlib.sha256(body).hexdigest()},
            )

        downloader = HttpPackageDownloader(
            URL_TEMPLATE, transport=httpx.MockTransport(handler)
        )
        destination = tmp_path / "session" / "package.zip"

        result = await downloader.fetch("app", destination)

        assert requested == ["https://updates.test/app/latest.zip"]
        assert destination.read_bytes() == body
        assert result.checksum == hashlib.sha256(body).hexdigest()
        assert result.size == len(body)
        assert file_checksum(destination) == result.checksum

    @pytest.mark.asyncio
    async def test_fetch_checksum_mismatch(self, tmp_path: Path) -> None:
        """Test a body that does not match the announced checksum is rejected."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, content=b"tampered", headers={"X-Checksum-Sha256": "0" * 64}
            )

        downloader = HttpPackageDownloader(
            URL_TEMPLATE, transport=httpx.MockTransport(handler)
        )
        destination = tmp_path / "package.zip"

        with pytest.raises(FailedPreconditionError, match="checksum"):
            await downloader.fetch("app", destination)

        assert not destination.exists()

    @pytest.mark.asyncio
    async def test_fetch_http_error(self, tmp_path: Path) -> None:
        """Test error statuses are reported as unavailable."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        downloader = HttpPackageDownloader(
            URL_TEMPLATE, transport=httpx.MockTransport(handler)
        )

        with pytest.raises(UnavailableError) as exc_info:
            await downloader.fetch("app", tmp_path / "package.zip")

        assert exc_info.value.details["url"] == "https://updates.test/app/latest.zip"

    @pytest.mark.asyncio
    async def test_fetch_connection_error(self, tmp_path: Path) -> None:
        """Test transport failures are reported as unavailable."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        downloader = HttpPackageDownloader(
            URL_TEMPLATE, transport=httpx.MockTransport(handler)
        )
        destination = tmp_path / "package.zip"

        with pytest.raises(UnavailableError):
            await downloader.fetch("app", destination)

        assert not destination.exists()


# =============================================================================
# Extraction Tests
# =============================================================================


class TestExtractPackage:
    """Tests for extract_package."""

    def test_extract(self, tmp_path: Path) -> None:
        """Test every member is written below the destination."""
        archive = make_package_zip(
            tmp_path / "package.zip",
            {"version.json": version_json("1.1.0"), "lib/a.php": "a"},
        )

        extracted = extract_package(archive, tmp_path / "out")

        assert sorted(extracted) == ["lib/a.php", "version.json"]
        assert (tmp_path / "out" / "lib" / "a.php").read_text() == "a"

    @pytest.mark.parametrize("member", ["../escape.php", "/etc/passwd"])
    def test_unsafe_member_rejected(self, tmp_path: Path, member: str) -> None:
        """Test members escaping the destination are refused."""
        archive = make_package_zip(tmp_path / "package.zip", {member: "x"})

        with pytest.raises(FailedPreconditionError, match="Unsafe"):
            extract_package(archive, tmp_path / "out")

        assert not (tmp_path / "escape.php").exists()

    def test_not_a_zip(self, tmp_path: Path) -> None:
        """Test a non-zip file is reported as an invalid package."""
        archive = tmp_path / "package.zip"
        archive.write_bytes(b"not a zip")

        with pytest.raises(FailedPreconditionError, match="not a valid zip"):
            extract_package(archive, tmp_path / "out")


# =============================================================================
# Validation Tests
# =============================================================================


class TestValidatePackage:
    """Tests for validate_package and stage_manual_package."""

    def test_valid_package(self, tmp_path: Path) -> None:
        """Test the declared version is returned."""
        (tmp_path / "version.json").write_text(version_json("1.1.0"))

        assert validate_package(tmp_path, "app").version == "1.1.0"

    def test_missing_version_file(self, tmp_path: Path) -> None:
        """Test a package without version.json is refused."""
        with pytest.raises(FailedPreconditionError, match="version.json"):
            validate_package(tmp_path, "app")

    def test_invalid_version_file(self, tmp_path: Path) -> None:
        """Test an invalid version.json is a failed precondition."""
        (tmp_path / "version.json").write_text(json.dumps({"version": "latest"}))

        with pytest.raises(FailedPreconditionError):
            validate_package(tmp_path, "app")

    def test_wrong_handle(self, tmp_path: Path) -> None:
        """Test a package built for another unit is refused."""
        (tmp_path / "version.json").write_text(version_json("1.0.0", handle="gallery"))

        with pytest.raises(FailedPreconditionError, match="gallery"):
            validate_package(tmp_path, "app")

    def test_stage_manual_zip(self, tmp_path: Path) -> None:
        """Test a zip package is unpacked into staging."""
        archive = make_package_zip(
            tmp_path / "upload.zip", {"version.json": version_json("2.0.0")}
        )

        unit_version = stage_manual_package(archive, tmp_path / "staged", "app")

        assert unit_version.version == "2.0.0"
        assert (tmp_path / "staged" / "version.json").is_file()

    def test_stage_manual_directory(self, tmp_path: Path) -> None:
        """Test an unpacked directory is copied into staging."""
        source = tmp_path / "upload"
        source.mkdir()
        (source / "version.json").write_text(version_json("2.0.0", handle="gallery"))
        (source / "main.php").write_text("x")

        stage_manual_package(source, tmp_path / "staged", "gallery")

        assert (tmp_path / "staged" / "main.php").read_text() == "x"

    def test_stage_manual_missing(self, tmp_path: Path) -> None:
        """Test a missing package path is refused."""
        with pytest.raises(FailedPreconditionError, match="not found"):
            stage_manual_package(tmp_path / "nope.zip", tmp_path / "staged", "app")
