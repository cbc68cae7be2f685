"""
In-place update pipeline.

This package implements the update steps and their collaborators:
- Session model and step enumeration
- Step orchestrator returning advance/failure/finished outcomes
- Staging areas, manifests and file snapshots
- Database dumps, restores and migrations
- Package download, unpacking and validation
- In-process driver and service wiring
"""

from selfupdater.updates.database import (
    DatabaseBackupManager,
    DatabaseEngine,
    DirectoryMigrationRegistry,
    MigrationRegistry,
    SQLiteEngine,
)
from selfupdater.updates.files import CORE_HANDLE, FileBackupManager, UnitLocator
from selfupdater.updates.manifest import Manifest, ManifestStore
from selfupdater.updates.orchestrator import (
    StepAdvance,
    StepFailure,
    StepFinished,
    StepOutcome,
    UpdateOrchestrator,
)
from selfupdater.updates.package import (
    DownloadResult,
    HttpPackageDownloader,
    PackageDownloader,
)
from selfupdater.updates.runner import run_update
from selfupdater.updates.service import UpdateService
from selfupdater.updates.session import UpdateMode, UpdateSession, UpdateStep
from selfupdater.updates.staging import StagingArea
from selfupdater.updates.version import (
    UnitVersion,
    compare_versions,
    is_newer,
    parse_semantic_version,
)

__all__ = [
    # Session
    "UpdateSession",
    "UpdateStep",
    "UpdateMode",
    # Orchestrator
    "UpdateOrchestrator",
    "StepAdvance",
    "StepFailure",
    "StepFinished",
    "StepOutcome",
    "run_update",
    "UpdateService",
    # Files
    "CORE_HANDLE",
    "FileBackupManager",
    "UnitLocator",
    "StagingArea",
    "Manifest",
    "ManifestStore",
    # Database
    "DatabaseBackupManager",
    "DatabaseEngine",
    "MigrationRegistry",
    "SQLiteEngine",
    "DirectoryMigrationRegistry",
    # Packages
    "DownloadResult",
    "PackageDownloader",
    "HttpPackageDownloader",
    # Versions
    "UnitVersion",
    "compare_versions",
    "is_newer",
    "parse_semantic_version",
]
