"""
Pytest configuration and shared fixtures for the self-updater tests.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import zipfile
from pathlib import Path
from typing import Any

import pytest

from selfupdater.config import AppConfig
from selfupdater.updates.package import DownloadResult

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Helpers
# =============================================================================


def write_tree(root: Path, files: dict[str, str]) -> None:
    """Create files under root from a {relative path: content} mapping."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def read_tree(root: Path) -> dict[str, str]:
    """Read every regular file under root into a {relative path: content} mapping."""
    return {
        path.relative_to(root).as_posix(): path.read_text()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def version_json(version: str, handle: str = "app") -> str:
    return json.dumps({"handle": handle, "version": version})


def make_package_zip(path: Path, files: dict[str, str]) -> Path:
    """Write a zip package containing files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for rel, content in files.items():
            zf.writestr(rel, content)
    return path


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def installed_files() -> dict[str, str]:
    """Files of the installed core application (version 1.0.0)."""
    return {
        "version.json": version_json("1.0.0"),
        "index.php": "<?php echo 'v1';",
        "lib/util.php": "<?php // util v1",
        "assets/site.css": "body { color: black; }",
    }


@pytest.fixture
def package_files() -> dict[str, str]:
    """Files of a 1.1.0 package: one changed, one added."""
    return {
        "version.json": version_json("1.1.0"),
        "index.php": "<?php echo 'v2';",
        "lib/new_feature.php": "<?php // added in v2",
    }


@pytest.fixture
def update_env(tmp_path: Path, installed_files: dict[str, str]) -> dict[str, Any]:
    """
    A complete on-disk environment: app tree, plugins dir, staging dir,
    SQLite database with one table and an empty migrations directory.
    """
    app_root = tmp_path / "app"
    plugins_dir = tmp_path / "plugins"
    staging_dir = tmp_path / "staging"
    migrations_dir = tmp_path / "migrations"
    db_path = tmp_path / "data" / "app.db"

    write_tree(app_root, installed_files)
    plugins_dir.mkdir()
    migrations_dir.mkdir()
    db_path.parent.mkdir()

    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE settings (name TEXT PRIMARY KEY, value TEXT)")
    conn.execute("INSERT INTO settings VALUES ('site_name', 'Demo')")
    conn.commit()
    conn.close()

    return {
        "app_root": app_root,
        "plugins_dir": plugins_dir,
        "staging_dir": staging_dir,
        "migrations_dir": migrations_dir,
        "db_path": db_path,
    }


@pytest.fixture
def app_config(update_env: dict[str, Any]) -> AppConfig:
    """AppConfig pointing at update_env."""
    return AppConfig(
        updates={
            "app_root": str(update_env["app_root"]),
            "plugins_dir": str(update_env["plugins_dir"]),
            "staging_dir": str(update_env["staging_dir"]),
            "package_url_template": "https://updates.test/{handle}/latest.zip",
        },
        database={
            "path": str(update_env["db_path"]),
            "migrations_dir": str(update_env["migrations_dir"]),
        },
    )


class StaticPackageDownloader:
    """PackageDownloader that serves a fixed set of files as a zip."""

    def __init__(self, files: dict[str, str]) -> None:
        self.files = files
        self.fetched: list[str] = []

    async def fetch(self, handle: str, destination: Path) -> DownloadResult:
        self.fetched.append(handle)
        make_package_zip(destination, self.files)
        data = destination.read_bytes()
        return DownloadResult(
            path=destination,
            checksum=hashlib.sha256(data).hexdigest(),
            size=len(data),
        )


@pytest.fixture
def downloader(package_files: dict[str, str]) -> StaticPackageDownloader:
    """Downloader serving package_files."""
    return StaticPackageDownloader(package_files)
