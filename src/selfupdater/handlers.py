"""
Request surface for the update pipeline.

A caller (a browser page, an admin CLI) posts one step at a time:

    {"action": "Prepare", "handle": "app", "packagePath": "/tmp/app.zip"}
    {"action": "BackupFiles", "session": {...session from previous response...}}

and receives a camelCase response:

    {"advance": true, "finished": false, "nextStep": "UpdateFiles",
     "session": {...}, "message": "Updating files…"}

handle_step_request raises UpdateError for contract violations;
process_step_request turns every error into an {"error": {...}} response.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from selfupdater.errors import InternalError, InvalidArgumentError, UpdateError
from selfupdater.logging import get_logger
from selfupdater.updates.session import UpdateSession, UpdateStep

if TYPE_CHECKING:
    from selfupdater.updates.orchestrator import UpdateOrchestrator

logger = get_logger(__name__)


def _parse_action(payload: dict[str, Any]) -> UpdateStep:
    action = payload.get("action")
    if not isinstance(action, str):
        raise InvalidArgumentError(
            "Request must name an action",
            details={"valid_actions": [s.value for s in UpdateStep]},
        )
    try:
        return UpdateStep(action)
    except ValueError as e:
        raise InvalidArgumentError(
            f"Unknown action: {action}",
            details={"action": action, "valid_actions": [s.value for s in UpdateStep]},
        ) from e


async def handle_step_request(
    orchestrator: UpdateOrchestrator,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """
    Run the step named by payload["action"].

    Args:
        orchestrator: Orchestrator bound to the requesting caller.
        payload: Request body with camelCase keys.

    Returns:
        The camelCase step response.

    Raises:
        InvalidArgumentError: If the action is unknown, or the session is
            missing or malformed for a step past Prepare.
        PermissionDeniedError: If the caller may not perform updates.
        RollbackFailedError: If a rollback cannot restore the prior state.
    """
    if not isinstance(payload, dict):
        raise InvalidArgumentError(
            "Request body must be an object",
            details={"type": type(payload).__name__},
        )

    step = _parse_action(payload)

    if step == UpdateStep.PREPARE:
        outcome = await orchestrator.run_step(
            step,
            handle=payload.get("handle"),
            manual_package=payload.get("packagePath"),
        )
        return outcome.to_response()

    if payload.get("session") is None:
        raise InvalidArgumentError(
            f"A session is required for {step.value}",
            details={"action": step.value},
        )

    session = UpdateSession.from_payload(payload["session"])
    outcome = await orchestrator.run_step(step, session)
    return outcome.to_response()


async def process_step_request(
    orchestrator: UpdateOrchestrator,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """
    Run a step and always return a response body.

    Errors are reported as {"error": {"error_code", "message", "details"}}.
    """
    try:
        return await handle_step_request(orchestrator, payload)

    except UpdateError as e:
        logger.warning(
            f"Step request rejected: {e.message}",
            extra={
                "action": payload.get("action") if isinstance(payload, dict) else None,
                "error_code": e.error_code,
            },
        )
        return {"error": e.to_dict()}

    except Exception as e:
        logger.exception(
            "Unexpected error processing step request",
            extra={"error": str(e)},
        )
        error = InternalError(
            f"Internal error: {type(e).__name__}",
            details={"exception": str(e)},
        )
        return {"error": error.to_dict()}
