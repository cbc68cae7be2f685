"""
Command-line entry point for the self-updater.

Commands:
    selfupdater run [--handle NAME] [--package PATH]
    selfupdater rollback --session-id ID
    selfupdater sweep

Every command accepts --config, --log-level and --debug. Step responses are
printed to stdout as JSON lines.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from typing import Any

from selfupdater.config import AppConfig, build_arg_parser, cli_overrides, load_config
from selfupdater.context import CallerInfo
from selfupdater.errors import InvalidArgumentError, UpdateError
from selfupdater.logging import get_logger, setup_logging
from selfupdater.updates.database import DUMP_FILE_NAME
from selfupdater.updates.orchestrator import StepFinished
from selfupdater.updates.runner import run_update
from selfupdater.updates.service import UpdateService
from selfupdater.updates.session import UpdateMode, UpdateSession, UpdateStep
from selfupdater.updates.staging import validate_session_id

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = build_arg_parser("Apply and roll back in-place updates")
    parser.add_argument(
        "--user",
        default=None,
        help="Identity recorded for the update (defaults to the login name)",
    )
    parser.add_argument(
        "--role",
        default="admin",
        help="Role used for permission checks",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run an update to completion")
    run_parser.add_argument(
        "--handle",
        default="app",
        help="Unit to update ('app' for the core application)",
    )
    run_parser.add_argument(
        "--package",
        default=None,
        help="Manual package (zip or directory); omit to download the update",
    )

    rollback_parser = subparsers.add_parser(
        "rollback", help="Roll back an interrupted update from its staging area"
    )
    rollback_parser.add_argument("--session-id", required=True)

    subparsers.add_parser("sweep", help="Purge abandoned staging areas")

    return parser


def _emit(data: dict[str, Any]) -> None:
    print(json.dumps(data), flush=True)


def _caller(args: argparse.Namespace) -> CallerInfo:
    return CallerInfo(user_id=args.user or getpass.getuser(), role=args.role)


async def _run(service: UpdateService, args: argparse.Namespace) -> int:
    caller = _caller(args)
    logger.info(
        "Starting update",
        extra={**caller.log_fields(), "handle": args.handle, "manual": bool(args.package)},
    )
    orchestrator = service.orchestrator_for(caller)
    outcome = await run_update(
        orchestrator,
        args.handle,
        args.package,
        on_outcome=lambda o: _emit(o.to_response()),
    )
    return EXIT_OK if isinstance(outcome, StepFinished) else EXIT_FAILED


def _recovery_session(service: UpdateService, session_id: str) -> UpdateSession:
    # Rebuild what Rollback needs from the staging area alone
    manifest = service.files.manifests.read(session_id)
    dump = service.staging.database_dir(session_id) / DUMP_FILE_NAME
    return UpdateSession(
        handle=manifest.handle if manifest else "app",
        mode=UpdateMode.MANUAL,
        session_id=session_id,
        database_backup_path=str(dump) if dump.is_file() else None,
        next_step=UpdateStep.ROLLBACK,
    )


async def _rollback(service: UpdateService, args: argparse.Namespace) -> int:
    session_id = validate_session_id(args.session_id)
    orchestrator = service.orchestrator_for(_caller(args))
    session = _recovery_session(service, session_id)
    outcome = await orchestrator.run_step(UpdateStep.ROLLBACK, session)
    _emit(outcome.to_response())
    return EXIT_OK


def _sweep(service: UpdateService) -> int:
    purged = service.sweep_stale_sessions()
    _emit({"purged": purged})
    return EXIT_OK


def run_command(config: AppConfig, args: argparse.Namespace) -> int:
    """Execute a parsed command against config; return the exit status."""
    service = UpdateService(config)

    try:
        if args.command == "run":
            return asyncio.run(_run(service, args))
        if args.command == "rollback":
            return asyncio.run(_rollback(service, args))
        if args.command == "sweep":
            return _sweep(service)
        raise InvalidArgumentError(f"Unknown command: {args.command}")
    except UpdateError as e:
        logger.error(
            f"{args.command} failed: {e.message}",
            extra={"error_code": e.error_code, "details": e.details},
        )
        _emit({"error": e.to_dict()})
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, load configuration and run the command."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(overrides=cli_overrides(args))
    except FileNotFoundError as e:
        print(f"selfupdater: {e}", file=sys.stderr)
        return EXIT_ERROR

    setup_logging(config.logging, stream=sys.stderr)
    logger.debug("Configuration loaded", extra={"command": args.command})

    return run_command(config, args)


if __name__ == "__main__":
    sys.exit(main())
