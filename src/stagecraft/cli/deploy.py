"""
Deploy command.

Runs one stage through the Stage Runner and renders the per-step report.
Exit code 0 on success (including "already complete"), otherwise the exit
code of the classified failure.
"""

from __future__ import annotations

from typing import Any

import structlog

from stagecraft.cli.context import ContextFactory
from stagecraft.cli.ux import console, error, header, info, print_table, success, warning
from stagecraft.config.loader import CommandDefaults
from stagecraft.core.errors import ExitCode, main_with_error_handling
from stagecraft.logging import bind_context
from stagecraft.orchestration.conflicts import ConflictDetector
from stagecraft.orchestration.runner import RunResult, StageRunner, StepState

logger = structlog.get_logger()

# CLI flag -> artifact field
PARAMETER_FIELDS = {
    "infraprofile": "infrastructureProfile",
    "targetprofile": "targetProfile",
    "prefix": "distributionPrefix",
    "region": "targetRegion",
    "vpc": "targetVpcId",
    "domains": "domains",
}

STAGE_PARAMETERS = {
    "a": ("infraprofile", "targetprofile", "prefix", "region", "vpc"),
    "b": ("domains",),
    "c": (),
    "d": (),
    "e": (),
}

STATE_STYLES = {
    StepState.ALREADY_COMPLETE: "[muted]already complete[/muted]",
    StepState.COMPLETED: "[success]completed[/success]",
    StepState.FAILED: "[error]failed[/error]",
    StepState.PENDING: "[warning]pending[/warning]",
    StepState.NOT_RUN: "[muted]not run[/muted]",
}


def stage_params(
    stage: str, cli_values: dict[str, Any], defaults: CommandDefaults | None = None
) -> dict[str, Any]:
    """Merge CLI flags over config defaults and rename them to artifact fields."""
    wanted = {name: cli_values.get(name) for name in STAGE_PARAMETERS[stage]}
    if defaults is not None:
        wanted = defaults.apply(wanted)
        wanted = {name: wanted.get(name) for name in STAGE_PARAMETERS[stage]}
    return {PARAMETER_FIELDS[name]: value for name, value in wanted.items() if value}


def render_run(result: RunResult, title: str) -> None:
    header(f"Stage {result.stage.upper()}: {title}")
    rows = [[step.name, STATE_STYLES[step.state], step.detail] for step in result.steps]
    print_table("Steps", ["Step", "State", "Detail"], rows)

    if result.already_complete:
        success(f"Stage {result.stage.upper()} is already complete; nothing to do")
        return
    if result.failure is None:
        success(f"Stage {result.stage.upper()} deployed")
        if result.outputs_path is not None:
            info(f"Outputs written to {result.outputs_path}")
        return

    failure = result.failure
    if failure.exit_code is ExitCode.CONVERGENCE_PENDING:
        warning(f"Step '{failure.step}' is waiting on convergence: {failure.message}")
    else:
        error(f"Step '{failure.step}' failed ({failure.error_class}): {failure.message}")
    console.print(f"[muted]{failure.remediation}[/muted]")


@main_with_error_handling()
def deploy_command(
    stage: str,
    cli_values: dict[str, Any],
    *,
    factory: ContextFactory,
    defaults: CommandDefaults | None = None,
) -> int:
    bind_context(command="deploy", stage=stage)
    params = stage_params(stage, cli_values, defaults)
    ctx = factory(stage, params)
    runner = StageRunner(ConflictDetector(factory.api))

    logger.info("deploy_started", stage=stage, params=sorted(params))
    result = runner.run(ctx)
    render_run(result, ctx.stage.title)
    return int(result.exit_code)
