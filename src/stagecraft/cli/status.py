"""Status command: read-only view of a stage's progress and live resources."""

from __future__ import annotations

from stagecraft.cli.context import ContextFactory
from stagecraft.cli.ux import header, print_key_value, print_table, spinner
from stagecraft.core.errors import ExitCode, main_with_error_handling
from stagecraft.orchestration.runner import StageRunner, StepState


@main_with_error_handling()
def status_command(stage: str, *, factory: ContextFactory) -> int:
    with spinner(f"Checking stage {stage.upper()}"):
        report = StageRunner().status(factory(stage))

    header(f"Stage {report.stage.upper()}: {report.title}")
    rows = [
        [step.name, "done" if step.state is StepState.ALREADY_COMPLETE else "-"]
        for step in report.steps
    ]
    print_table("Steps", ["Step", "Done"], rows)
    print_key_value({report.readiness_flag: str(report.ready).lower()}, title="Readiness")
    if report.live:
        print_key_value(report.live, title="Live resources")
    return int(ExitCode.SUCCESS)
