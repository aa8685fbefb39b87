"""Dependency Resolver: gates a stage on its prerequisites' outputs."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

import structlog

from stagecraft.artifacts.store import ArtifactKind, ArtifactStore, field_or_default
from stagecraft.core.errors import ArtifactNotFound, PrerequisiteNotMet

logger = structlog.get_logger()

_MISSING = object()


def readiness_flag(next_stage: str) -> str:
    """Name of the flag a stage's outputs set for the stage after it."""
    return f"readyForStage{next_stage.upper()}"


def next_stage_letter(stage: str) -> str:
    return chr(ord(stage.lower()) + 1)


class DependencyResolver:
    """Loads prerequisite outputs and extracts the fields a stage declared."""

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    def require(self, stage: str, fields: Iterable[str]) -> dict[str, Any]:
        """
        Return the named fields from ``stage``'s outputs.

        Raises:
            PrerequisiteNotMet: the outputs document is absent, its readiness
                flag is not ``true``, or any requested field is missing.
        """
        try:
            outputs = self._store.load(stage, ArtifactKind.OUTPUTS)
        except ArtifactNotFound as exc:
            raise PrerequisiteNotMet(
                f"Stage {stage.upper()} has not been deployed (no outputs found)",
                {"stage": stage},
            ) from exc

        flag = readiness_flag(next_stage_letter(stage))
        if outputs.get(flag) is not True:
            raise PrerequisiteNotMet(
                f"Stage {stage.upper()} is not complete ({flag} is not true)",
                {"stage": stage, "flag": flag},
            )

        resolved: dict[str, Any] = {}
        missing: list[str] = []
        for name in fields:
            value = field_or_default(outputs, name, _MISSING)
            if value is _MISSING or value == "":
                missing.append(name)
            else:
                resolved[name] = value
        if missing:
            raise PrerequisiteNotMet(
                f"Stage {stage.upper()} outputs are missing required field(s): "
                f"{', '.join(missing)}",
                {"stage": stage, "missing": missing},
            )

        logger.debug("prerequisite_resolved", stage=stage, fields=sorted(resolved))
        return resolved

    def require_all(self, requirements: Mapping[str, Iterable[str]]) -> dict[str, dict[str, Any]]:
        """Resolve several prerequisite stages, in order; fail on the first unmet one."""
        return {stage: self.require(stage, fields) for stage, fields in requirements.items()}

    def is_ready(self, stage: str) -> bool:
        outputs = self._store.get(stage, ArtifactKind.OUTPUTS) or {}
        return outputs.get(readiness_flag(next_stage_letter(stage))) is True
