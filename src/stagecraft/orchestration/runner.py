"""
Stage Runner.

Runs one stage's steps in order. A step whose completion predicate holds is
skipped; the first step that fails halts the stage and is reported with its
classification. The outputs document, and with it the readiness flag for the
next stage, is written only after every step has succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path

import structlog

from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import (
    ConflictDetected,
    ErrorClass,
    ExitCode,
    FatalStepError,
    StagecraftError,
)
from stagecraft.orchestration.conflicts import ConflictDetector
from stagecraft.orchestration.resolver import DependencyResolver
from stagecraft.provisioning.base import ExistingResource
from stagecraft.stages.base import Stage, StageContext

logger = structlog.get_logger()

PREREQUISITES_STEP = "prerequisites"


class StepState(StrEnum):
    ALREADY_COMPLETE = "already complete"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    NOT_RUN = "not run"


@dataclass(frozen=True)
class StepReport:
    name: str
    state: StepState
    detail: str = ""


@dataclass(frozen=True)
class StepFailure:
    """What the operator sees when a stage halts."""

    stage: str
    step: str
    error_class: ErrorClass
    message: str
    remediation: str
    exit_code: ExitCode

    @classmethod
    def from_error(cls, stage: str, step: str, error: StagecraftError) -> StepFailure:
        return cls(
            stage=stage,
            step=step,
            error_class=error.error_class,
            message=error.message,
            remediation=error.remediation,
            exit_code=error.exit_code,
        )


@dataclass
class RunResult:
    stage: str
    steps: list[StepReport] = field(default_factory=list)
    failure: StepFailure | None = None
    already_complete: bool = False
    outputs_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.SUCCESS if self.failure is None else self.failure.exit_code


@dataclass
class StatusReport:
    stage: str
    title: str
    steps: list[StepReport] = field(default_factory=list)
    ready: bool = False
    readiness_flag: str = ""
    live: dict[str, str] = field(default_factory=dict)


class StageRunner:
    """Executes a stage's fixed step list against a :class:`StageContext`."""

    def __init__(self, detector: ConflictDetector | None = None) -> None:
        self._detector = detector

    def run(self, ctx: StageContext) -> RunResult:
        stage = ctx.stage
        log = logger.bind(stage=stage.letter)
        result = RunResult(stage=stage.letter)

        outputs = ctx.get(ArtifactKind.OUTPUTS) or {}
        if outputs.get(stage.readiness_flag) is True:
            log.info("stage_already_complete")
            result.already_complete = True
            result.steps = [StepReport(s.name, StepState.ALREADY_COMPLETE) for s in stage.steps]
            return result

        try:
            ctx.prerequisites = DependencyResolver(ctx.store).require_all(stage.prerequisites)
        except StagecraftError as exc:
            log.warning("prerequisites_not_met", error=exc.message)
            result.failure = StepFailure.from_error(stage.letter, PREREQUISITES_STEP, exc)
            result.steps = [StepReport(s.name, StepState.NOT_RUN) for s in stage.steps]
            return result

        gate_passed = False
        for index, step in enumerate(stage.steps):
            try:
                if step.is_complete(ctx):
                    log.info("step_skipped", step=step.name)
                    result.steps.append(StepReport(step.name, StepState.ALREADY_COMPLETE))
                    continue

                ctx.verify_credentials()
                if step.creates_resources and not gate_passed:
                    self._conflict_gate(ctx)
                    gate_passed = True

                log.info("step_started", step=step.name, position=f"{index + 1}/{len(stage.steps)}")
                step.action(ctx)
                log.info("step_completed", step=step.name)
                result.steps.append(StepReport(step.name, StepState.COMPLETED))
            except StagecraftError as exc:
                self._halt(result, stage, index, step.name, exc)
                return result
            except Exception as exc:
                log.error("step_crashed", step=step.name, error=str(exc), exc_info=True)
                wrapped = FatalStepError(f"{type(exc).__name__}: {exc}")
                self._halt(result, stage, index, step.name, wrapped)
                return result

        try:
            result.outputs_path = self._write_outputs(ctx)
        except StagecraftError as exc:
            result.failure = StepFailure.from_error(stage.letter, "outputs", exc)
            return result
        log.info("stage_completed", flag=stage.readiness_flag)
        return result

    def _halt(
        self,
        result: RunResult,
        stage: Stage,
        index: int,
        step_name: str,
        error: StagecraftError,
    ) -> None:
        state = (
            StepState.PENDING
            if error.error_class is ErrorClass.CONVERGENCE_PENDING
            else StepState.FAILED
        )
        logger.warning(
            "step_failed",
            stage=stage.letter,
            step=step_name,
            error_class=str(error.error_class),
            error=error.message,
        )
        result.steps.append(StepReport(step_name, state, error.message))
        result.steps.extend(StepReport(s.name, StepState.NOT_RUN) for s in stage.steps[index + 1 :])
        result.failure = StepFailure.from_error(stage.letter, step_name, error)

    def _conflict_gate(self, ctx: StageContext) -> None:
        """Require confirmation before the first creating step if names collide."""
        stage = ctx.stage
        if stage.preflight is not None:
            stage.preflight(ctx)
        if stage.conflict_scope is None or self._detector is None:
            return

        discovery = ctx.get(ArtifactKind.DISCOVERY) or {}
        if discovery.get("conflictsReviewed") is True:
            logger.debug("conflict_scan_skipped", stage=stage.letter, reason="already reviewed")
            return

        scope = stage.conflict_scope(ctx)
        matches = self._detector.scan_many(ctx.credentials.target, scope.names, scope.kinds)
        labels = [describe_resource(m) for m in matches]
        if matches:
            question = (
                f"Found {len(matches)} existing resource(s) matching "
                f"{', '.join(scope.names)}: {'; '.join(labels)}. Proceed anyway?"
            )
            if not ctx.confirm(question):
                raise ConflictDetected(
                    f"{len(matches)} existing resource(s) collide with stage "
                    f"{stage.letter.upper()} names",
                    {"resources": labels},
                )
            logger.warning("conflicts_acknowledged", stage=stage.letter, resources=labels)

        discovery.update(conflictsReviewed=True, acknowledgedConflicts=labels)
        ctx.save(ArtifactKind.DISCOVERY, discovery)

    def _write_outputs(self, ctx: StageContext) -> Path:
        stage = ctx.stage
        document = stage.build_outputs(ctx).to_document()
        document.update(
            {
                stage.readiness_flag: True,
                "deploymentTimestamp": utc_timestamp(),
                "validationStatus": "passed",
            }
        )
        ctx.save(ArtifactKind.OUTPUTS, document)
        return ctx.store.path(stage.letter, ArtifactKind.OUTPUTS)

    def status(self, ctx: StageContext) -> StatusReport:
        """Read-only report: step predicates, readiness flag and live handle status."""
        stage = ctx.stage
        outputs = ctx.get(ArtifactKind.OUTPUTS) or {}
        report = StatusReport(
            stage=stage.letter,
            title=stage.title,
            ready=outputs.get(stage.readiness_flag) is True,
            readiness_flag=stage.readiness_flag,
        )
        for step in stage.steps:
            done = step.is_complete(ctx)
            report.steps.append(
                StepReport(step.name, StepState.ALREADY_COMPLETE if done else StepState.NOT_RUN)
            )
        if stage.live_status is not None:
            try:
                report.live = stage.live_status(ctx)
            except StagecraftError as exc:
                report.live = {"error": exc.message}
        return report


def describe_resource(resource: ExistingResource) -> str:
    return f"{resource.kind} {resource.name or resource.identifier}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
