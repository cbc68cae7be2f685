"""
Step orchestrator for in-place updates.

Each public step method performs one unit of work for one request and
returns a StepOutcome:

- StepAdvance: the work succeeded; run `next_step` with the returned session
- StepFailure: the work failed; `next_step` is always Rollback
- StepFinished: a terminal step (CleanUp or Rollback) completed

Only two kinds of exception leave this module: caller-contract errors
(InvalidArgumentError, PermissionDeniedError), raised before any work is
done, and RollbackFailedError, raised when restoration itself fails.

State transitions:
- Prepare → DownloadPackage (automatic) | BackupFiles (manual)
- DownloadPackage → BackupFiles
- BackupFiles → UpdateFiles
- UpdateFiles → BackupDatabase
- BackupDatabase → UpdateDatabase
- UpdateDatabase → CleanUp
- any non-terminal step → Rollback
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from selfupdater.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    PermissionDeniedError,
    RollbackFailedError,
    UpdateError,
)
from selfupdater.logging import get_logger
from selfupdater.security.rbac import PERFORM_UPDATES
from selfupdater.updates.files import CORE_HANDLE
from selfupdater.updates.package import (
    extract_package,
    file_checksum,
    stage_manual_package,
    validate_package,
)
from selfupdater.updates.session import UpdateMode, UpdateSession, UpdateStep
from selfupdater.updates.staging import new_session_id
from selfupdater.updates.version import is_newer, read_installed_version

if TYPE_CHECKING:
    from selfupdater.config import ConfigProvider
    from selfupdater.security.rbac import PermissionChecker
    from selfupdater.updates.database import DatabaseBackupManager
    from selfupdater.updates.files import FileBackupManager
    from selfupdater.updates.package import PackageDownloader

logger = get_logger(__name__)

AUTO_UPDATES_DISABLED = "Auto-updating is disabled on this system."

# Forward transitions; Rollback is reachable from every non-terminal step
_NEXT_STEP: dict[UpdateStep, UpdateStep] = {
    UpdateStep.DOWNLOAD_PACKAGE: UpdateStep.BACKUP_FILES,
    UpdateStep.BACKUP_FILES: UpdateStep.UPDATE_FILES,
    UpdateStep.UPDATE_FILES: UpdateStep.BACKUP_DATABASE,
    UpdateStep.BACKUP_DATABASE: UpdateStep.UPDATE_DATABASE,
    UpdateStep.UPDATE_DATABASE: UpdateStep.CLEAN_UP,
}

# Progress text shown while the caller runs the named step
STEP_MESSAGES: dict[UpdateStep, str] = {
    UpdateStep.DOWNLOAD_PACKAGE: "Downloading update…",
    UpdateStep.BACKUP_FILES: "Backing-up files…",
    UpdateStep.UPDATE_FILES: "Updating files…",
    UpdateStep.BACKUP_DATABASE: "Backing-up database…",
    UpdateStep.UPDATE_DATABASE: "Updating database…",
    UpdateStep.CLEAN_UP: "Cleaning up…",
    UpdateStep.ROLLBACK: "An error was encountered. Rolling back…",
}


# =============================================================================
# Step outcomes
# =============================================================================


class StepAdvance(BaseModel):
    """The step succeeded; the caller should run next_step with session."""

    outcome: Literal["advance"] = "advance"
    next_step: UpdateStep
    session: UpdateSession
    message: str

    @property
    def advance(self) -> bool:
        return True

    @property
    def finished(self) -> bool:
        return False

    def to_response(self) -> dict[str, Any]:
        return {
            "advance": True,
            "finished": False,
            "nextStep": self.next_step.value,
            "session": self.session.to_payload(),
            "message": self.message,
        }


class StepFailure(BaseModel):
    """
    The step failed; the caller should run Rollback with session.

    finished is True only when the failure happened before anything was
    touched (Prepare), in which case Rollback is a no-op.
    """

    outcome: Literal["failure"] = "failure"
    next_step: Literal[UpdateStep.ROLLBACK] = UpdateStep.ROLLBACK
    session: UpdateSession | None = None
    diagnostic: str
    error_code: str = "internal"
    failed_step: UpdateStep
    finished: bool = False

    @property
    def advance(self) -> bool:
        return False

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "advance": False,
            "finished": self.finished,
            "nextStep": self.next_step.value,
            "message": STEP_MESSAGES[UpdateStep.ROLLBACK],
            "diagnostic": self.diagnostic,
            "errorCode": self.error_code,
        }
        if self.session is not None:
            response["session"] = self.session.to_payload()
        return response


class StepFinished(BaseModel):
    """A terminal step completed."""

    outcome: Literal["finished"] = "finished"
    step: UpdateStep
    session: UpdateSession | None = None
    message: str
    rolled_back: bool = False
    whats_new: bool = False
    return_url: str | None = None
    prior_version: str | None = None
    installed_version: str | None = None

    @property
    def advance(self) -> bool:
        return False

    @property
    def finished(self) -> bool:
        return True

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "advance": False,
            "finished": True,
            "message": self.message,
            "rolledBack": self.rolled_back,
        }
        if self.step == UpdateStep.CLEAN_UP:
            response["whatsNew"] = self.whats_new
            response["returnUrl"] = self.return_url
            response["priorVersion"] = self.prior_version
            response["installedVersion"] = self.installed_version
        return response


StepOutcome = Annotated[
    Union[StepAdvance, StepFailure, StepFinished],
    Field(discriminator="outcome"),
]


# =============================================================================
# Orchestrator
# =============================================================================


class UpdateOrchestrator:
    """
    Drives an update forward one step per call.

    Collaborators are injected: configuration switches come from a
    ConfigProvider, authorization from a PermissionChecker, file and
    database work from the backup managers, and remote packages from a
    PackageDownloader.

    Example:
        >>> outcome = await orchestrator.prepare("app", manual_package="/tmp/app.zip")
        >>> while isinstance(outcome, StepAdvance):
        ...     outcome = await orchestrator.run_step(outcome.next_step, outcome.session)
    """

    def __init__(
        self,
        config: ConfigProvider,
        permissions: PermissionChecker,
        files: FileBackupManager,
        database: DatabaseBackupManager,
        downloader: PackageDownloader | None = None,
    ) -> None:
        self._config = config
        self._permissions = permissions
        self._files = files
        self._database = database
        self._downloader = downloader
        self._handlers: dict[
            UpdateStep, Callable[[UpdateSession], Awaitable[StepOutcome]]
        ] = {
            UpdateStep.DOWNLOAD_PACKAGE: self.download_package,
            UpdateStep.BACKUP_FILES: self.backup_files,
            UpdateStep.UPDATE_FILES: self.update_files,
            UpdateStep.BACKUP_DATABASE: self.backup_database,
            UpdateStep.UPDATE_DATABASE: self.update_database,
            UpdateStep.CLEAN_UP: self.clean_up,
            UpdateStep.ROLLBACK: self.rollback,
        }

    @property
    def files(self) -> FileBackupManager:
        return self._files

    @property
    def database(self) -> DatabaseBackupManager:
        return self._database

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def run_step(
        self,
        step: UpdateStep | str,
        session: UpdateSession | None = None,
        **params: Any,
    ) -> StepOutcome:
        """
        Run one step.

        Args:
            step: Step to run.
            session: Session returned by the previous step (not used by Prepare).
            **params: Prepare parameters (handle, manual_package).

        Raises:
            InvalidArgumentError: If the step is unknown, the session is
                missing, or the session is not waiting on this step.
            PermissionDeniedError: If the caller may not run the step.
            RollbackFailedError: If Rollback cannot restore the prior state.
        """
        try:
            step = UpdateStep(step)
        except ValueError as e:
            raise InvalidArgumentError(
                f"Unknown update step: {step}",
                details={"valid_steps": [s.value for s in UpdateStep]},
            ) from e

        if step == UpdateStep.PREPARE:
            return await self.prepare(**params)

        if session is None:
            raise InvalidArgumentError(
                f"A session is required for {step.value}",
                details={"step": step.value},
            )

        if step != UpdateStep.ROLLBACK and session.next_step != step:
            raise InvalidArgumentError(
                f"Session is waiting for {session.next_step.value}, not {step.value}",
                details={
                    "step": step.value,
                    "expected_step": session.next_step.value,
                    "session_id": session.session_id,
                },
            )

        return await self._handlers[step](session)

    async def _guarded(
        self,
        step: UpdateStep,
        session: UpdateSession | None,
        work: Callable[[], Awaitable[StepOutcome]],
    ) -> StepOutcome:
        # Converts every fault inside a step into a StepFailure naming Rollback
        extra = {
            "step": step.value,
            "session_id": session.session_id if session else None,
            "handle": session.handle if session else None,
        }
        logger.info(f"Running step {step.value}", extra=extra)

        try:
            outcome = await work()
        except PermissionDeniedError:
            raise
        except UpdateError as e:
            logger.error(
                f"Step {step.value} failed: {e.message}",
                extra={**extra, "error_code": e.error_code, "details": e.details},
            )
            return self._failure(step, session, e.message, e.error_code)
        except OSError as e:
            logger.error(f"Step {step.value} failed: {e}", extra=extra)
            return self._failure(step, session, str(e), "internal")
        except Exception as e:
            logger.exception(f"Unexpected error in step {step.value}", extra=extra)
            return self._failure(step, session, f"Unexpected error: {e}", "internal")

        logger.info(
            f"Step {step.value} complete",
            extra={**extra, "outcome": outcome.outcome},
        )
        return outcome

    @staticmethod
    def _failure(
        step: UpdateStep,
        session: UpdateSession | None,
        diagnostic: str,
        error_code: str,
        *,
        finished: bool = False,
    ) -> StepFailure:
        return StepFailure(
            session=session.advance(UpdateStep.ROLLBACK) if session else None,
            diagnostic=diagnostic,
            error_code=error_code,
            failed_step=step,
            finished=finished,
        )

    def _advance(self, session: UpdateSession, step: UpdateStep, **changes: Any) -> StepAdvance:
        next_step = _NEXT_STEP[step]
        return StepAdvance(
            next_step=next_step,
            session=session.advance(next_step, **changes),
            message=STEP_MESSAGES[next_step],
        )

    def _require_automatic_allowed(self, session: UpdateSession) -> None:
        # Steps that only exist for automatic updates re-check the caller
        # and the global switch on every request.
        if session.is_manual:
            return
        self._permissions.require(PERFORM_UPDATES)
        if not self._config.get("allowAutomaticUpdates"):
            raise FailedPreconditionError(AUTO_UPDATES_DISABLED)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def prepare(
        self,
        handle: str | None = None,
        manual_package: Path | str | None = None,
    ) -> StepOutcome:
        """
        Validate permissions and configuration and open a session.

        Manual updates stage and validate the supplied package here and
        continue with BackupFiles; automatic updates continue with
        DownloadPackage. Failures are terminal: nothing has been touched.

        Raises:
            PermissionDeniedError: If the caller may not perform updates.
            InvalidArgumentError: If the handle is not a valid unit name.
        """
        self._permissions.require(PERFORM_UPDATES)
        handle = handle or CORE_HANDLE
        self._files.locator.resolve(handle)

        mode = UpdateMode.MANUAL if manual_package else UpdateMode.AUTOMATIC

        if mode == UpdateMode.AUTOMATIC and not self._config.get("allowAutomaticUpdates"):
            logger.warning(
                "Automatic update refused: disabled by configuration",
                extra={"handle": handle},
            )
            return self._failure(
                UpdateStep.PREPARE,
                None,
                AUTO_UPDATES_DISABLED,
                "failed_precondition",
                finished=True,
            )

        session = UpdateSession(
            handle=handle,
            mode=mode,
            session_id=new_session_id(),
        )

        async def work() -> StepOutcome:
            staging = self._files.staging
            staging.ensure(session.session_id)

            if mode == UpdateMode.AUTOMATIC:
                next_step = UpdateStep.DOWNLOAD_PACKAGE
                changes: dict[str, Any] = {}
            else:
                unit_version = stage_manual_package(
                    Path(manual_package),
                    staging.package_dir(session.session_id),
                    handle,
                )
                next_step = UpdateStep.BACKUP_FILES
                changes = {"target_version": unit_version.version}

            return StepAdvance(
                next_step=next_step,
                session=session.advance(next_step, **changes),
                message=STEP_MESSAGES[next_step],
            )

        outcome = await self._guarded(UpdateStep.PREPARE, session, work)
        if isinstance(outcome, StepFailure):
            # Only the copied package lives in staging at this point
            self._files.purge(session.session_id)
            outcome = outcome.model_copy(update={"finished": True})
        return outcome

    async def download_package(self, session: UpdateSession) -> StepOutcome:
        """
        Fetch the remote package into staging and record its checksum.

        Automatic mode only.
        """
        if session.is_manual:
            raise InvalidArgumentError(
                "DownloadPackage is not part of a manual update",
                details={"session_id": session.session_id},
            )

        async def work() -> StepOutcome:
            self._require_automatic_allowed(session)
            if self._downloader is None:
                raise FailedPreconditionError("No package downloader is configured")

            staging = self._files.staging
            result = await self._downloader.fetch(
                session.handle, staging.package_archive(session.session_id)
            )
            package_dir = staging.package_dir(session.session_id)
            extract_package(result.path, package_dir)
            unit_version = validate_package(package_dir, session.handle)

            return self._advance(
                session,
                UpdateStep.DOWNLOAD_PACKAGE,
                package_checksum=result.checksum,
                target_version=unit_version.version,
            )

        return await self._guarded(UpdateStep.DOWNLOAD_PACKAGE, session, work)

    async def backup_files(self, session: UpdateSession) -> StepOutcome:
        """Snapshot the unit's files and write the manifest."""

        async def work() -> StepOutcome:
            self._require_automatic_allowed(session)
            self._files.snapshot(session.handle, session.session_id)
            return self._advance(session, UpdateStep.BACKUP_FILES)

        return await self._guarded(UpdateStep.BACKUP_FILES, session, work)

    async def update_files(self, session: UpdateSession) -> StepOutcome:
        """
        Overlay the staged package onto the unit's files.

        In automatic mode the downloaded archive must still match the
        checksum recorded by DownloadPackage.
        """

        async def work() -> StepOutcome:
            self._require_automatic_allowed(session)

            if session.mode == UpdateMode.AUTOMATIC:
                archive = self._files.staging.package_archive(session.session_id)
                if not archive.is_file() or file_checksum(archive) != session.package_checksum:
                    raise FailedPreconditionError(
                        "Package checksum mismatch",
                        details={"session_id": session.session_id},
                    )

            self._files.apply(session.handle, session.session_id)
            return self._advance(session, UpdateStep.UPDATE_FILES)

        return await self._guarded(UpdateStep.UPDATE_FILES, session, work)

    async def _should_backup_database(self, handle: str) -> bool:
        if not self._config.get("backupDatabaseOnUpdate"):
            return False
        if handle == CORE_HANDLE and self._config.get("alwaysBackupCoreDatabase"):
            return True
        return await self._database.has_new_migrations(handle)

    async def backup_database(self, session: UpdateSession) -> StepOutcome:
        """
        Dump the database when backups are enabled and migrations are pending.
        """

        async def work() -> StepOutcome:
            if not await self._should_backup_database(session.handle):
                logger.info(
                    "Skipping database backup",
                    extra={"session_id": session.session_id, "handle": session.handle},
                )
                return self._advance(session, UpdateStep.BACKUP_DATABASE)

            path = await self._database.dump(session.session_id)
            return self._advance(
                session,
                UpdateStep.BACKUP_DATABASE,
                database_backup_path=str(path),
            )

        return await self._guarded(UpdateStep.BACKUP_DATABASE, session, work)

    async def update_database(self, session: UpdateSession) -> StepOutcome:
        """Apply the unit's pending schema migrations, if any."""

        async def work() -> StepOutcome:
            applied = await self._database.run_migrations(session.handle)
            logger.info(
                "Database up to date",
                extra={
                    "session_id": session.session_id,
                    "handle": session.handle,
                    "applied": applied,
                },
            )
            return self._advance(session, UpdateStep.UPDATE_DATABASE)

        return await self._guarded(UpdateStep.UPDATE_DATABASE, session, work)

    async def clean_up(self, session: UpdateSession) -> StepOutcome:
        """
        Finish a successful update.

        Reads the prior version from the manifest, purges the staging area
        and reports whether the installed version is newer.
        """

        async def work() -> StepOutcome:
            manifest = self._files.manifests.read(session.session_id)
            prior_version = manifest.prior_version if manifest else None
            installed_version = read_installed_version(
                self._files.locator.resolve(session.handle)
            )

            if session.session_id:
                self._files.purge(session.session_id)

            whats_new = is_newer(prior_version, installed_version)
            return_url = self._config.get(
                "whatsNewUrl" if whats_new else "postUpdateUrl"
            )

            logger.info(
                "Update finished",
                extra={
                    "session_id": session.session_id,
                    "handle": session.handle,
                    "prior_version": prior_version,
                    "installed_version": installed_version,
                },
            )
            return StepFinished(
                step=UpdateStep.CLEAN_UP,
                session=session,
                message="Update complete.",
                whats_new=whats_new,
                return_url=return_url,
                prior_version=prior_version,
                installed_version=installed_version,
            )

        return await self._guarded(UpdateStep.CLEAN_UP, session, work)

    async def rollback(self, session: UpdateSession) -> StepFinished:
        """
        Restore the pre-update files and database, then purge staging.

        Idempotent: once the staging area is gone there is nothing left to
        restore and the call is a no-op.

        Raises:
            InvalidArgumentError: If the session references a database dump
                outside its own staging area.
            RollbackFailedError: If restoration cannot complete; the staging
                area is kept for manual recovery.
        """
        extra = {"session_id": session.session_id, "handle": session.handle}
        finished = StepFinished(
            step=UpdateStep.ROLLBACK,
            session=session.advance(UpdateStep.ROLLBACK),
            message="Update rolled back.",
            rolled_back=True,
        )

        staging = self._files.staging
        if not session.session_id or not staging.exists(session.session_id):
            logger.info("Nothing to roll back", extra=extra)
            return finished

        dump_path: Path | None = None
        if session.database_backup_path:
            dump_path = Path(session.database_backup_path)
            staging_dir = staging.path(session.session_id).resolve()
            if staging_dir not in dump_path.resolve().parents:
                raise InvalidArgumentError(
                    "Database backup path is outside the session staging area",
                    details=extra,
                )

        logger.info("Rolling back update", extra=extra)
        try:
            self._files.restore(session.handle, session.session_id)
            if dump_path is not None:
                await self._database.restore(dump_path)
        except Exception as e:
            logger.critical(
                f"Rollback failed: {e}",
                extra={**extra, "staging": str(staging.path(session.session_id))},
            )
            raise RollbackFailedError(
                f"Rollback failed: {e}",
                details={**extra, "staging": str(staging.path(session.session_id))},
            ) from e

        self._files.purge(session.session_id)
        logger.info("Rollback complete", extra=extra)
        return finished

