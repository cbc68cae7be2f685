"""
Version handling for updatable units.

This module implements:
- Semantic versioning validation and precedence comparison
- The version.json record kept at the root of every unit's file tree
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from selfupdater.errors import InvalidArgumentError
from selfupdater.logging import get_logger

logger = get_logger(__name__)

VERSION_FILE_NAME = "version.json"

# Semantic versioning regex pattern
# Accepts: 1.0.0, 1.2.3, 2.0.0-beta.1, 1.0.0-alpha+build.123
SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<buildmetadata>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def parse_semantic_version(version: str) -> dict[str, Any]:
    """
    Parse and validate a semantic version string.

    Args:
        version: Version string (e.g., "1.0.0", "1.2.3-beta.1").

    Returns:
        Dictionary with major, minor, patch, prerelease and buildmetadata.

    Raises:
        InvalidArgumentError: If version string is invalid.
    """
    if not version:
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    if version.startswith("v"):
        raise InvalidArgumentError(
            "Version string must not start with 'v' prefix",
            details={"version": version, "hint": "Use '1.0.0' instead of 'v1.0.0'"},
        )

    match = SEMVER_PATTERN.match(version)
    if not match:
        raise InvalidArgumentError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "MAJOR.MINOR.PATCH[-PRERELEASE][+BUILDMETADATA]",
            },
        )

    return {
        "major": int(match.group("major")),
        "minor": int(match.group("minor")),
        "patch": int(match.group("patch")),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


def _compare_prerelease(pre1: str, pre2: str) -> int:
    # Dot-separated identifiers; numeric ones compare numerically and sort
    # before alphanumeric ones; a shorter list of equal prefix sorts first.
    ids1 = pre1.split(".")
    ids2 = pre2.split(".")
    for a, b in zip(ids1, ids2):
        if a == b:
            continue
        a_num, b_num = a.isdigit(), b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num != b_num:
            return -1 if a_num else 1
        return -1 if a < b else 1
    if len(ids1) == len(ids2):
        return 0
    return -1 if len(ids1) < len(ids2) else 1


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions by precedence.

    Build metadata is ignored.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    p1 = parse_semantic_version(v1)
    p2 = parse_semantic_version(v2)

    for key in ("major", "minor", "patch"):
        if p1[key] < p2[key]:
            return -1
        if p1[key] > p2[key]:
            return 1

    # A release sorts after any of its pre-releases
    pre1 = p1["prerelease"]
    pre2 = p2["prerelease"]
    if pre1 is None and pre2 is not None:
        return 1
    if pre1 is not None and pre2 is None:
        return -1
    if pre1 is not None and pre2 is not None:
        return _compare_prerelease(pre1, pre2)

    return 0


def is_newer(prior_version: str | None, installed_version: str | None) -> bool:
    """
    Check whether installed_version is strictly newer than prior_version.

    Missing or unparseable versions never count as newer.
    """
    if not prior_version or not installed_version:
        return False
    try:
        return compare_versions(prior_version, installed_version) < 0
    except InvalidArgumentError as e:
        logger.warning(
            "Cannot compare versions",
            extra={
                "prior_version": prior_version,
                "installed_version": installed_version,
                "error": e.message,
            },
        )
        return False


class UnitVersion(BaseModel):
    """
    Contents of version.json at the root of a unit's file tree.

    Attributes:
        handle: Unit handle ("app" or a plugin identifier).
        version: Semantic version of the installed files.
    """

    handle: str = Field(
        default="app",
        description="Unit handle",
    )
    version: str = Field(
        ...,
        description="Semantic version string",
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate the version is a valid semantic version."""
        try:
            parse_semantic_version(v)
        except InvalidArgumentError as e:
            raise ValueError(e.message) from e
        return v


def load_unit_version(root: Path) -> UnitVersion | None:
    """
    Load version.json from a unit root or an unpacked package.

    Returns:
        UnitVersion, or None if the file does not exist.

    Raises:
        InvalidArgumentError: If the file exists but is not a valid record.
    """
    path = root / VERSION_FILE_NAME
    if not path.is_file():
        return None

    try:
        with open(path) as f:
            data = json.load(f)
        return UnitVersion(**data)
    except (json.JSONDecodeError, TypeError, ValidationError) as e:
        raise InvalidArgumentError(
            f"Invalid {VERSION_FILE_NAME}: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def read_installed_version(unit_root: Path) -> str | None:
    """
    Get the version currently installed at unit_root.

    Returns:
        Version string, or None if no valid version.json is present.
    """
    try:
        unit_version = load_unit_version(unit_root)
    except InvalidArgumentError as e:
        logger.warning(
            "Unreadable installed version",
            extra={"path": str(unit_root), "error": e.message},
        )
        return None
    return unit_version.version if unit_version else None
