"""
Database backup, restore and migration collaborators.

The database engine and migration registry are narrow protocols so the
orchestrator never talks to a driver directly. SQLite implementations are
provided:

- SQLiteEngine: full logical copy through the sqlite3 online backup API
- DirectoryMigrationRegistry: <migrations_dir>/<handle>/*.sql applied in
  name order, recorded in a `migrations` table

DatabaseBackupManager runs the blocking calls in the default executor.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from selfupdater.errors import (
    FailedPreconditionError,
    InternalError,
    UnavailableError,
)
from selfupdater.logging import get_logger
from selfupdater.updates.staging import StagingArea, ensure_directory

logger = get_logger(__name__)

DUMP_FILE_NAME = "backup.db"

MIGRATIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS migrations (
    handle TEXT NOT NULL,
    name TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    PRIMARY KEY (handle, name)
);
"""


def _sql_literal(value: str) -> str:
    # executescript takes no parameters
    return "'" + value.replace("'", "''") + "'"


class DatabaseEngine(Protocol):
    """Full backup and restore of the application database."""

    def dump_to(self, path: Path) -> None:
        ...

    def restore_from(self, path: Path) -> None:
        ...


class MigrationRegistry(Protocol):
    """Enumerates and applies schema migrations per unit."""

    def new_migrations(self, handle: str) -> list[str]:
        ...

    def apply(self, handle: str, name: str) -> None:
        ...


class SQLiteEngine:
    """
    DatabaseEngine for a SQLite database file.

    Attributes:
        db_path: Path to the live database.
    """

    def __init__(self, db_path: Path | str, *, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self._timeout = timeout

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Open a connection to the live database."""
        conn = sqlite3.connect(str(self.db_path), timeout=self._timeout)
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
        finally:
            conn.close()

    def dump_to(self, path: Path) -> None:
        if not self.db_path.exists():
            raise UnavailableError(
                f"Database not found: {self.db_path}",
                details={"db_path": str(self.db_path)},
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as source:
            target = sqlite3.connect(str(path))
            try:
                source.backup(target)
            finally:
                target.close()

    def restore_from(self, path: Path) -> None:
        if not path.is_file():
            raise FailedPreconditionError(
                f"Database dump not found: {path}",
                details={"path": str(path)},
            )
        source = sqlite3.connect(str(path))
        try:
            with self.connect() as target:
                source.backup(target)
        finally:
            source.close()


class DirectoryMigrationRegistry:
    """
    MigrationRegistry reading plain SQL files from disk.

    Migrations for a handle live in <migrations_dir>/<handle>/ and run in
    file-name order. Applied migrations are tracked per handle in the
    `migrations` table of the target database.
    """

    def __init__(self, migrations_dir: Path | str, engine: SQLiteEngine) -> None:
        self._migrations_dir = Path(migrations_dir)
        self._engine = engine

    def _available(self, handle: str) -> list[Path]:
        handle_dir = self._migrations_dir / handle
        if not handle_dir.is_dir():
            return []
        return sorted(handle_dir.glob("*.sql"))

    def _applied(self, handle: str) -> set[str]:
        with self._engine.connect() as conn:
            conn.executescript(MIGRATIONS_TABLE_SQL)
            rows = conn.execute(
                "SELECT name FROM migrations WHERE handle = ?", (handle,)
            ).fetchall()
        return {row[0] for row in rows}

    def new_migrations(self, handle: str) -> list[str]:
        available = self._available(handle)
        if not available:
            return []
        applied = self._applied(handle)
        return [path.stem for path in available if path.stem not in applied]

    def apply(self, handle: str, name: str) -> None:
        """
        Run one migration and record it in the same transaction.

        Either the schema change and its migrations row both commit, or
        neither does.
        """
        script_path = self._migrations_dir / handle / f"{name}.sql"
        script = script_path.read_text()
        record = (
            "INSERT INTO migrations (handle, name, applied_at) VALUES ("
            f"{_sql_literal(handle)}, {_sql_literal(name)}, "
            f"{_sql_literal(datetime.now(UTC).isoformat())});"
        )
        with self._engine.connect() as conn:
            conn.executescript(MIGRATIONS_TABLE_SQL)
            try:
                conn.executescript(f"BEGIN;\n{script}\n;\n{record}\nCOMMIT;")
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.rollback()
                raise


class DatabaseBackupManager:
    """
    Database side of an update session.

    Attributes:
        engine: DatabaseEngine performing dumps and restores.
        registry: MigrationRegistry answering "what is pending".
        staging: StagingArea owning the dump files.
    """

    def __init__(
        self,
        engine: DatabaseEngine,
        registry: MigrationRegistry,
        staging: StagingArea,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._staging = staging

    @property
    def engine(self) -> DatabaseEngine:
        return self._engine

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    async def dump(self, session_id: str) -> Path:
        """
        Take a full backup of the database into the session's staging area.

        Returns:
            Path to the dump file.

        Raises:
            UnavailableError: On connectivity or permission errors.
        """
        dump_dir = ensure_directory(self._staging.database_dir(session_id), mode=0o700)
        path = dump_dir / DUMP_FILE_NAME

        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self._engine.dump_to, path
            )
        except UnavailableError:
            raise
        except (sqlite3.Error, OSError) as e:
            logger.error(
                "Database backup failed",
                extra={"session_id": session_id, "error": str(e)},
            )
            raise UnavailableError(
                f"Database backup failed: {e}",
                details={"session_id": session_id, "path": str(path)},
            ) from e

        logger.info(
            "Database backed up",
            extra={"session_id": session_id, "path": str(path)},
        )
        return path

    async def restore(self, path: Path | str) -> None:
        """
        Restore the database from a dump.

        Raises:
            InternalError: If the restore cannot complete. There is no
                further fallback at this point.
        """
        path = Path(path)
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self._engine.restore_from, path
            )
        except Exception as e:
            logger.error(
                "Database restore failed",
                extra={"path": str(path), "error": str(e)},
            )
            raise InternalError(
                f"Database restore failed: {e}",
                details={"path": str(path)},
            ) from e

        logger.info("Database restored", extra={"path": str(path)})

    async def pending_migrations(self, handle: str) -> list[str]:
        """List migrations not yet applied for handle."""
        try:
            return await asyncio.get_running_loop().run_in_executor(
                None, self._registry.new_migrations, handle
            )
        except (sqlite3.Error, OSError) as e:
            raise UnavailableError(
                f"Cannot query migrations: {e}",
                details={"handle": handle},
            ) from e

    async def has_new_migrations(self, handle: str) -> bool:
        """Check whether handle has schema migrations pending."""
        return bool(await self.pending_migrations(handle))

    async def run_migrations(self, handle: str) -> list[str]:
        """
        Apply every pending migration for handle in order.

        Returns:
            Names of the migrations applied.

        Raises:
            FailedPreconditionError: If a migration fails; earlier ones in
                the same call stay applied and are undone by a database
                restore during rollback.
        """
        pending = await self.pending_migrations(handle)
        applied: list[str] = []
        loop = asyncio.get_running_loop()

        for name in pending:
            try:
                await loop.run_in_executor(None, self._registry.apply, handle, name)
            except (sqlite3.Error, OSError) as e:
                logger.error(
                    "Migration failed",
                    extra={"handle": handle, "migration": name, "error": str(e)},
                )
                raise FailedPreconditionError(
                    f"Migration {name} failed: {e}",
                    details={"handle": handle, "migration": name, "applied": applied},
                ) from e
            applied.append(name)
            logger.info("Applied migration", extra={"handle": handle, "migration": name})

        return applied
