"""Rollback command."""

from __future__ import annotations

import structlog

from stagecraft.cli.context import ContextFactory
from stagecraft.cli.ux import header, info, print_key_value, success, warning
from stagecraft.core.errors import ExitCode, main_with_error_handling
from stagecraft.logging import bind_context
from stagecraft.orchestration.rollback import RollbackCoordinator, RollbackMode, RollbackResult

logger = structlog.get_logger()


def render_rollback(result: RollbackResult) -> None:
    header(f"Stage {result.stage.upper()} rollback ({result.mode})")
    if result.fallback_stage:
        warning(f"Fell back to a full rollback of stage {result.fallback_stage.upper()}")
    for action in result.completed:
        success(action)
    for action in result.skipped:
        info(f"{action}: nothing to do")
    for action in result.unsettled:
        warning(f"{action}: change was still propagating when the wait ended")
    if result.retained:
        print_key_value(
            {str(i + 1): item for i, item in enumerate(result.retained)},
            title="Retained validation records",
        )
    if result.removed_artifacts:
        info(f"Removed local artifacts: {', '.join(result.removed_artifacts)}")


@main_with_error_handling()
def rollback_command(
    stage: str,
    *,
    factory: ContextFactory,
    mode: str = RollbackMode.FULL,
    fallback: bool = False,
) -> int:
    bind_context(command="rollback", stage=stage)
    rollback_mode = RollbackMode(mode)
    question = f"Roll back stage {stage.upper()} ({rollback_mode})?"
    if not factory.confirm(question):
        warning("Rollback cancelled")
        return int(ExitCode.SUCCESS)

    coordinator = RollbackCoordinator(factory)
    result = coordinator.rollback(stage, rollback_mode, fallback=fallback)
    render_rollback(result)
    logger.info("rollback_finished", stage=stage, mode=str(rollback_mode))
    return int(ExitCode.SUCCESS)
