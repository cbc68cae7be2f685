"""
Drive an update to completion in-process.

run_update plays the part of the browser client: it posts each step the
previous one names, and on failure posts Rollback with the returned session.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from selfupdater.logging import get_logger
from selfupdater.updates.orchestrator import StepAdvance, StepFailure, StepFinished
from selfupdater.updates.session import UpdateStep

if TYPE_CHECKING:
    from selfupdater.updates.orchestrator import StepOutcome, UpdateOrchestrator

logger = get_logger(__name__)


async def run_update(
    orchestrator: UpdateOrchestrator,
    handle: str = "app",
    package_path: Path | str | None = None,
    *,
    on_outcome: Callable[[StepOutcome], None] | None = None,
) -> StepFinished | StepFailure:
    """
    Run every step of an update for handle.

    Args:
        orchestrator: Orchestrator bound to the caller.
        handle: Unit to update.
        package_path: Manual package; None for an automatic update.
        on_outcome: Called with every step outcome, including the rollback.

    Returns:
        The CleanUp StepFinished on success, or the StepFailure that caused
        the rollback.

    Raises:
        PermissionDeniedError: If the caller may not perform updates.
        RollbackFailedError: If the rollback could not restore the prior state.
    """
    outcome = await orchestrator.run_step(
        UpdateStep.PREPARE, handle=handle, manual_package=package_path
    )
    if on_outcome:
        on_outcome(outcome)

    while isinstance(outcome, StepAdvance):
        outcome = await orchestrator.run_step(outcome.next_step, outcome.session)
        if on_outcome:
            on_outcome(outcome)

    if isinstance(outcome, StepFailure):
        logger.warning(
            f"Update failed at {outcome.failed_step.value}: {outcome.diagnostic}",
            extra={"handle": handle, "error_code": outcome.error_code},
        )
        if not outcome.finished and outcome.session is not None:
            rolled_back = await orchestrator.run_step(UpdateStep.ROLLBACK, outcome.session)
            if on_outcome:
                on_outcome(rolled_back)

    return outcome
