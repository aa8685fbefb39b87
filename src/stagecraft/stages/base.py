"""
Stage and step definitions.

A stage is an immutable, ordered list of steps plus the hooks the runner
and the rollback coordinator need (credentials, conflict scope, outputs,
rollback plan). Only artifacts change between runs; definitions never do.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Mapping

import structlog
from pydantic import BaseModel, ValidationError

from stagecraft.artifacts.models import ArtifactModel
from stagecraft.artifacts.store import ArtifactKind, ArtifactStore, Document
from stagecraft.config.settings import Settings
from stagecraft.core.errors import ConfigurationError, CredentialError, FatalStepError
from stagecraft.provisioning.base import (
    CredentialContext,
    CredentialRole,
    CredentialSet,
    ProvisioningAPI,
    ResourceKind,
)
from stagecraft.provisioning.http import EndpointChecker
from stagecraft.templates.engine import TemplateEngine

if TYPE_CHECKING:
    from stagecraft.orchestration.prober import ResourceProber

logger = structlog.get_logger()

Predicate = Callable[["StageContext"], bool]
Action = Callable[["StageContext"], None]


def decline(message: str) -> bool:
    return False


@dataclass(frozen=True)
class Step:
    """One idempotent unit of work.

    ``is_complete`` must only look at artifacts (and invocation parameters),
    never at the provider, so resume decisions cost no API calls.
    """

    name: str
    description: str
    is_complete: Predicate
    action: Action
    creates_resources: bool = False


@dataclass(frozen=True)
class ConflictScope:
    """Names to check and the resource kinds to check them against."""

    names: tuple[str, ...]
    kinds: tuple[ResourceKind, ...]


class RollbackActionKind(StrEnum):
    DETACH = "detach"
    DELETE = "delete"
    TEARDOWN = "teardown"
    RESTORE = "restore"


@dataclass(frozen=True)
class RollbackAction:
    """One ordered unit of a rollback plan.

    A DETACH action with ``settled`` is waited on until ``settled`` returns
    one of ``settled_states`` so the dependent wiring has propagated before
    anything is deleted. RESTORE actions put back what an earlier stage had
    in place before this one replaced it.
    """

    kind: RollbackActionKind
    description: str
    run: Action
    resource_kind: ResourceKind | None = None
    needed: Predicate = lambda ctx: True
    settled: Callable[["StageContext"], Any] | None = None
    settled_states: frozenset[Any] = frozenset()


@dataclass
class StageContext:
    """Everything a step needs, passed explicitly."""

    stage: Stage
    store: ArtifactStore
    api: ProvisioningAPI
    templates: TemplateEngine
    prober: ResourceProber
    checker: EndpointChecker
    settings: Settings
    params: dict[str, Any] = field(default_factory=dict)
    prerequisites: dict[str, dict[str, Any]] = field(default_factory=dict)
    confirm: Callable[[str], bool] = decline
    _credentials: CredentialSet | None = field(default=None, repr=False)

    @property
    def letter(self) -> str:
        return self.stage.letter

    @property
    def credentials(self) -> CredentialSet:
        if self._credentials is None:
            raise CredentialError(
                f"Credentials for stage {self.letter.upper()} have not been verified"
            )
        return self._credentials

    def verify_credentials(self) -> CredentialSet:
        """Authenticate both declared contexts once; refuse to continue otherwise."""
        if self._credentials is not None:
            return self._credentials
        declared = self.stage.resolve_credentials(self)
        infra_account = self.api.authenticate(declared.infra)
        target_account = self.api.authenticate(declared.target)
        self._credentials = CredentialSet(
            infra=declared.infra.with_account(infra_account),
            target=declared.target.with_account(target_account),
        )
        logger.info(
            "credentials_verified",
            stage=self.letter,
            infra_account=infra_account,
            target_account=target_account,
        )
        return self._credentials

    # Artifact helpers scoped to this stage

    def get(self, kind: ArtifactKind) -> Document | None:
        return self.store.get(self.letter, kind)

    def load(self, kind: ArtifactKind) -> Document:
        return self.store.load(self.letter, kind)

    def load_model(self, kind: ArtifactKind, model: type[BaseModel]) -> Any:
        return self.store.load_model(self.letter, kind, model)

    def save(self, kind: ArtifactKind, document: Mapping[str, Any] | BaseModel) -> None:
        self.store.save(self.letter, kind, document)

    def facts(self, step: str) -> Document:
        return self.store.step_facts(self.letter, step)

    def record(self, step: str, **facts: Any) -> None:
        self.store.record_step(self.letter, step, facts)


@dataclass(frozen=True)
class Stage:
    letter: str
    name: str
    title: str
    steps: tuple[Step, ...]
    resolve_credentials: Callable[[StageContext], CredentialSet]
    build_outputs: Callable[[StageContext], ArtifactModel]
    rollback_plan: Callable[[StageContext], list[RollbackAction]]
    prerequisites: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    conflict_scope: Callable[[StageContext], ConflictScope] | None = None
    preflight: Action | None = None
    live_status: Callable[[StageContext], dict[str, str]] | None = None
    retained_on_rollback: Callable[[StageContext], list[str]] | None = None
    fallback: str | None = None

    @property
    def next_letter(self) -> str:
        return chr(ord(self.letter) + 1)

    @property
    def readiness_flag(self) -> str:
        return f"readyForStage{self.next_letter.upper()}"


# --- helpers shared by the concrete stages ---------------------------------


def credentials_from(
    document: Mapping[str, Any] | None, region: str | None = None
) -> CredentialSet | None:
    """Build the declared credential set from a document carrying both profiles."""
    if not document:
        return None
    infra = document.get("infrastructureProfile")
    target = document.get("targetProfile")
    if not infra or not target:
        return None
    target_region = region or document.get("targetRegion")
    return CredentialSet(
        infra=CredentialContext(profile=infra, role=CredentialRole.INFRA, region=target_region),
        target=CredentialContext(profile=target, role=CredentialRole.TARGET, region=target_region),
    )


def parse_model(model: type[ArtifactModel], data: Mapping[str, Any], what: str) -> Any:
    """Validate operator-supplied data, reporting the first bad field."""
    try:
        return model.model_validate(dict(data))
    except ValidationError as exc:
        first = exc.errors()[0]
        name = ".".join(str(loc) for loc in first["loc"]) or what
        raise ConfigurationError(
            f"Invalid {what}: {name} {first['msg'].lower()}", {"field": name}
        ) from exc


def is_valid(ctx: StageContext, kind: ArtifactKind, model: type[BaseModel]) -> bool:
    """True when the artifact exists and validates against ``model``."""
    document = ctx.get(kind)
    if document is None:
        return False
    try:
        model.model_validate(document)
    except ValidationError:
        return False
    return True


def has_facts(step: str, *names: str) -> Predicate:
    def predicate(ctx: StageContext) -> bool:
        facts = ctx.facts(step)
        return all(facts.get(name) not in (None, "", []) for name in names)

    return predicate


def require_outputs(
    outputs: Mapping[str, str], mapping: Mapping[str, str], stack: str
) -> dict[str, str]:
    """Translate template output keys to artifact field names; all must be present."""
    missing = [key for key in mapping if not outputs.get(key)]
    if missing:
        raise FatalStepError(
            f"Stack {stack} did not report output(s): {', '.join(missing)}",
            {"stack": stack, "missing": missing},
        )
    return {field_name: outputs[key] for key, field_name in mapping.items()}


def forwarded_credentials(ctx: StageContext, *earlier: str) -> CredentialSet:
    """Credentials for a stage whose profiles were recorded by an earlier stage.

    Looks at this stage's inputs first, then the resolved prerequisites, then
    the earlier stages' outputs (rollback runs without resolving prerequisites).
    """
    candidates: list[Mapping[str, Any] | None] = [ctx.get(ArtifactKind.INPUTS)]
    candidates.extend(ctx.prerequisites.get(stage) for stage in earlier)
    candidates.extend(ctx.store.get(stage, ArtifactKind.OUTPUTS) for stage in earlier)
    for document in candidates:
        declared = credentials_from(document)
        if declared is not None:
            return declared
    raise ConfigurationError(
        f"Stage {ctx.letter.upper()} cannot determine its credential profiles; "
        f"deploy stage {earlier[0].upper()} first",
        {"stage": ctx.letter},
    )
