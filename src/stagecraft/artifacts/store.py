"""
Artifact Store.

Each stage owns a directory under the data root holding one JSON document
per artifact kind::

    data/
      stage-a/
        inputs.json
        discovery.json
        progress.json
        outputs.json

Saves are atomic: the document is written to a temporary file in the same
directory, flushed to disk and renamed over the target, so an interrupted
save leaves the previous document readable.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from enum import StrEnum
from pathlib import Path
from typing import Any, Mapping, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from stagecraft.core.errors import ArtifactNotFound, ArtifactValidationError

logger = structlog.get_logger()

Document = dict[str, Any]
M = TypeVar("M", bound=BaseModel)


class ArtifactKind(StrEnum):
    INPUTS = "inputs"
    DISCOVERY = "discovery"
    PROGRESS = "progress"
    OUTPUTS = "outputs"


def field_or_default(doc: Mapping[str, Any] | None, path: str, default: Any = None) -> Any:
    """Look up a dotted path (``"stageA.distributionId"``) in a document."""
    node: Any = doc
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return default if node is None else node


class ArtifactStore:
    """Reads and writes per-stage JSON documents."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def stage_dir(self, stage: str) -> Path:
        return self.root / f"stage-{stage}"

    def path(self, stage: str, kind: ArtifactKind | str) -> Path:
        return self.stage_dir(stage) / f"{ArtifactKind(kind)}.json"

    def exists(self, stage: str, kind: ArtifactKind | str) -> bool:
        return self.path(stage, kind).is_file()

    def load(self, stage: str, kind: ArtifactKind | str) -> Document:
        """Load a document; raise ``ArtifactNotFound`` if it does not exist."""
        path = self.path(stage, kind)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ArtifactNotFound(
                f"Stage {stage.upper()} has no {ArtifactKind(kind)} artifact",
                {"path": str(path)},
            ) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ArtifactValidationError(
                f"Artifact {path} is not valid JSON: {exc.msg}",
                {"path": str(path), "line": exc.lineno},
            ) from exc
        if not isinstance(data, dict):
            raise ArtifactValidationError(
                f"Artifact {path} must contain a JSON object", {"path": str(path)}
            )
        return data

    def get(self, stage: str, kind: ArtifactKind | str) -> Document | None:
        """Like :meth:`load` but returns ``None`` for a missing document."""
        try:
            return self.load(stage, kind)
        except ArtifactNotFound:
            return None

    def load_model(self, stage: str, kind: ArtifactKind | str, model: type[M]) -> M:
        """Load a document and validate it against a pydantic model."""
        data = self.load(stage, kind)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(loc) for loc in first["loc"]) or "<root>"
            raise ArtifactValidationError(
                f"Stage {stage.upper()} {ArtifactKind(kind)} artifact is invalid: "
                f"field '{field}' {first['msg'].lower()}",
                {"path": str(self.path(stage, kind)), "field": field},
            ) from exc

    def save(
        self, stage: str, kind: ArtifactKind | str, document: Mapping[str, Any] | BaseModel
    ) -> Path:
        """Atomically replace a document."""
        if isinstance(document, BaseModel):
            payload = document.model_dump(by_alias=True, mode="json", exclude_none=True)
        else:
            payload = dict(document)

        path = self.path(stage, kind)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("artifact_saved", stage=stage, kind=str(ArtifactKind(kind)), path=str(path))
        return path

    def update(self, stage: str, kind: ArtifactKind | str, **fields: Any) -> Document:
        """Merge top-level fields into a document (creating it if needed)."""
        document = self.get(stage, kind) or {}
        document.update(fields)
        self.save(stage, kind, document)
        return document

    def record_step(self, stage: str, step: str, facts: Mapping[str, Any]) -> Document:
        """Merge facts produced by ``step`` into the stage's progress document."""
        progress = self.get(stage, ArtifactKind.PROGRESS) or {}
        entry = dict(progress.get(step) or {})
        entry.update(facts)
        progress[step] = entry
        self.save(stage, ArtifactKind.PROGRESS, progress)
        return entry

    def step_facts(self, stage: str, step: str) -> Document:
        progress = self.get(stage, ArtifactKind.PROGRESS) or {}
        return dict(progress.get(step) or {})

    def delete(self, stage: str, kind: ArtifactKind | str) -> bool:
        path = self.path(stage, kind)
        if not path.exists():
            return False
        path.unlink()
        logger.info("artifact_deleted", stage=stage, kind=str(ArtifactKind(kind)))
        return True

    def clear(self, stage: str) -> list[str]:
        """Remove every artifact of a stage; return the kinds that were removed."""
        removed = [str(kind) for kind in ArtifactKind if self.delete(stage, kind)]
        stage_dir = self.stage_dir(stage)
        if stage_dir.exists():
            shutil.rmtree(stage_dir)
        return removed

    def field(self, stage: str, kind: ArtifactKind | str, path: str, default: Any = None) -> Any:
        """Read one field; a missing document or field yields ``default``."""
        return field_or_default(self.get(stage, kind), path, default)
