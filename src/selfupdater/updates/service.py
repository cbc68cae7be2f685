"""
Wiring of update collaborators from configuration.

UpdateService builds the long-lived pieces (staging area, file and database
backup managers, package downloader) once from an AppConfig and hands out a
per-caller UpdateOrchestrator.
"""

from __future__ import annotations

from selfupdater.config import AppConfig, AppConfigProvider
from selfupdater.context import CallerInfo
from selfupdater.logging import get_logger
from selfupdater.security.rbac import RolePermissionChecker
from selfupdater.updates.database import (
    DatabaseBackupManager,
    DatabaseEngine,
    DirectoryMigrationRegistry,
    MigrationRegistry,
    SQLiteEngine,
)
from selfupdater.updates.files import FileBackupManager, UnitLocator
from selfupdater.updates.orchestrator import UpdateOrchestrator
from selfupdater.updates.package import HttpPackageDownloader, PackageDownloader
from selfupdater.updates.staging import StagingArea

logger = get_logger(__name__)


class UpdateService:
    """
    Owns the update collaborators for one configuration.

    Example:
        >>> service = UpdateService(load_config())
        >>> orchestrator = service.orchestrator_for(CallerInfo(user_id="ops", role="admin"))
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        downloader: PackageDownloader | None = None,
        engine: DatabaseEngine | None = None,
        registry: MigrationRegistry | None = None,
    ) -> None:
        self._config = config
        self._provider = AppConfigProvider(config)

        updates = config.updates
        self._staging = StagingArea(updates.staging_dir)
        self._locator = UnitLocator(updates.app_root, updates.plugins_dir)
        self._files = FileBackupManager(self._staging, self._locator)

        if engine is None:
            sqlite_engine = SQLiteEngine(config.database.path)
            engine = sqlite_engine
            if registry is None:
                registry = DirectoryMigrationRegistry(
                    config.database.migrations_dir, sqlite_engine
                )
        if registry is None:
            raise ValueError("A migration registry is required with a custom engine")
        self._database = DatabaseBackupManager(engine, registry, self._staging)

        self._downloader = downloader or HttpPackageDownloader(
            updates.package_url_template,
            timeout_seconds=updates.download_timeout_seconds,
        )

        logger.debug(
            "Update service configured",
            extra={
                "app_root": updates.app_root,
                "plugins_dir": updates.plugins_dir,
                "staging_dir": updates.staging_dir,
            },
        )

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def staging(self) -> StagingArea:
        return self._staging

    @property
    def files(self) -> FileBackupManager:
        return self._files

    @property
    def database(self) -> DatabaseBackupManager:
        return self._database

    def orchestrator_for(self, caller: CallerInfo) -> UpdateOrchestrator:
        """Build an orchestrator whose permission checks apply to caller."""
        return UpdateOrchestrator(
            config=self._provider,
            permissions=RolePermissionChecker.from_config(caller, self._config.security),
            files=self._files,
            database=self._database,
            downloader=self._downloader,
        )

    def sweep_stale_sessions(self) -> list[str]:
        """Purge staging areas idle longer than the configured maximum age."""
        max_age = self._config.updates.stale_session_max_age_hours * 3600
        return self._staging.sweep(max_age)
