"""
Rollback Coordinator.

Reverses a stage in dependency-safe order:

1. detach/revert dependent wiring, then wait for it to propagate
2. delete the now-unreferenced primary resource ("still in use" is retried)
3. tear down the stage's template stack
4. remove the stage's local artifacts; resources-only keeps its inputs and
   discovery but marks the stage not ready and forgets its step progress

Cross-account validation records are never deleted. When a stage's own
rollback cannot finish, the operator may fall back to a full rollback of
an earlier stage.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable, Sequence

import structlog

from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import (
    ResourceNotFound,
    ResourceStillInUse,
    RollbackError,
    StagecraftError,
)
from stagecraft.stages.base import RollbackAction, RollbackActionKind, StageContext

logger = structlog.get_logger()


class RollbackMode(StrEnum):
    FULL = "full"
    RESOURCES_ONLY = "resources-only"
    DATA_ONLY = "data-only"


@dataclass
class RollbackResult:
    stage: str
    mode: RollbackMode
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unsettled: list[str] = field(default_factory=list)
    removed_artifacts: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    fallback_stage: str | None = None


def validate_plan(plan: Sequence[RollbackAction]) -> None:
    """Reject plans that delete a resource kind before detaching its wiring."""
    for index, action in enumerate(plan):
        if action.kind is not RollbackActionKind.DELETE or action.resource_kind is None:
            continue
        for later in plan[index + 1 :]:
            same_kind = later.resource_kind == action.resource_kind
            if later.kind is RollbackActionKind.DETACH and same_kind:
                raise RollbackError(
                    f"Rollback plan deletes {action.resource_kind} before detaching it",
                    {"delete": action.description, "detach": later.description},
                )


class RollbackCoordinator:
    def __init__(
        self,
        contexts: Callable[[str], StageContext],
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._contexts = contexts
        self._sleep = sleep

    def rollback(
        self,
        stage: str,
        mode: RollbackMode = RollbackMode.FULL,
        *,
        fallback: bool = False,
    ) -> RollbackResult:
        ctx = self._contexts(stage)
        try:
            return self._rollback(ctx, mode)
        except StagecraftError as exc:
            target = ctx.stage.fallback
            if not fallback or target is None or mode is RollbackMode.DATA_ONLY:
                raise
            question = (
                f"Stage {stage.upper()} rollback failed: {exc.message}. "
                f"Fall back to a full rollback of stage {target.upper()}? "
                f"This also removes everything stage {target.upper()} deployed."
            )
            if not ctx.confirm(question):
                raise
            logger.warning("rollback_fallback", stage=stage, fallback=target, error=exc.message)
            delegated = self.rollback(target, RollbackMode.FULL)
            result = RollbackResult(stage=stage, mode=mode, fallback_stage=target)
            result.completed = [f"stage {target.upper()}: {item}" for item in delegated.completed]
            result.removed_artifacts = ctx.store.clear(stage) + delegated.removed_artifacts
            result.retained = delegated.retained
            return result

    def _rollback(self, ctx: StageContext, mode: RollbackMode) -> RollbackResult:
        stage = ctx.stage
        log = logger.bind(stage=stage.letter, mode=str(mode))
        result = RollbackResult(stage=stage.letter, mode=mode)

        plan = [] if mode is RollbackMode.DATA_ONLY else stage.rollback_plan(ctx)
        validate_plan(plan)
        if plan:
            ctx.verify_credentials()
            if stage.preflight is not None:
                stage.preflight(ctx)

        for action in plan:
            if not action.needed(ctx):
                log.info("rollback_action_skipped", action=action.description)
                result.skipped.append(action.description)
                continue

            log.info("rollback_action_started", action=action.description, kind=str(action.kind))
            if action.kind is RollbackActionKind.DELETE:
                self._delete(ctx, action)
            else:
                action.run(ctx)
            if action.kind is RollbackActionKind.DETACH and action.settled is not None:
                if not self._wait_settled(ctx, action):
                    result.unsettled.append(action.description)
            result.completed.append(action.description)

        if stage.retained_on_rollback is not None:
            result.retained = stage.retained_on_rollback(ctx)
            for item in result.retained:
                log.info("rollback_retained", resource=item)

        if mode is RollbackMode.RESOURCES_ONLY:
            result.removed_artifacts = self._mark_not_ready(ctx)
        else:
            result.removed_artifacts = ctx.store.clear(stage.letter)
        log.info("rollback_data_removed", artifacts=result.removed_artifacts)

        log.info("rollback_completed", completed=len(result.completed), skipped=len(result.skipped))
        return result

    def _mark_not_ready(self, ctx: StageContext) -> list[str]:
        """Keep inputs and discovery; drop the readiness flag and step progress."""
        stage = ctx.stage
        outputs = ctx.get(ArtifactKind.OUTPUTS)
        if outputs is not None:
            outputs.update({stage.readiness_flag: False, "validationStatus": "rolled-back"})
            ctx.save(ArtifactKind.OUTPUTS, outputs)
        removed = []
        if ctx.store.delete(stage.letter, ArtifactKind.PROGRESS):
            removed.append(str(ArtifactKind.PROGRESS))
        logger.info("rollback_readiness_cleared", stage=stage.letter, flag=stage.readiness_flag)
        return removed

    def _wait_settled(self, ctx: StageContext, action: RollbackAction) -> bool:
        settled = action.settled
        assert settled is not None
        probe = ctx.prober.wait_for(
            lambda: settled(ctx),
            action.settled_states,
            interval=ctx.settings.distribution_poll_interval,
            max_attempts=ctx.settings.distribution_max_attempts,
            label=action.description,
        )
        if probe.timed_out:
            logger.warning(
                "rollback_detach_unsettled",
                action=action.description,
                status=str(probe.status),
            )
        return probe.succeeded

    def _delete(self, ctx: StageContext, action: RollbackAction) -> None:
        attempts = max(1, ctx.settings.rollback_delete_attempts)
        for attempt in range(1, attempts + 1):
            try:
                action.run(ctx)
                return
            except ResourceNotFound:
                logger.info("rollback_already_deleted", action=action.description)
                return
            except ResourceStillInUse as exc:
                if attempt == attempts:
                    raise ResourceStillInUse(
                        f"{action.description}: still in use after {attempts} attempts",
                        {**exc.details, "attempts": attempts},
                    ) from exc
                logger.warning(
                    "rollback_resource_in_use",
                    action=action.description,
                    attempt=attempt,
                    max_attempts=attempts,
                )
                self._sleep(ctx.settings.rollback_delete_interval)
