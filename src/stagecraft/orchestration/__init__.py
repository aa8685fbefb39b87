"""Orchestration package: run, gate, wait on and roll back deployment stages."""

from stagecraft.orchestration.conflicts import ConflictDetector
from stagecraft.orchestration.prober import ProbeOutcome, ProbeResult, ResourceProber
from stagecraft.orchestration.resolver import DependencyResolver, readiness_flag
from stagecraft.orchestration.rollback import (
    RollbackCoordinator,
    RollbackMode,
    RollbackResult,
    validate_plan,
)
from stagecraft.orchestration.runner import (
    RunResult,
    StageRunner,
    StatusReport,
    StepFailure,
    StepReport,
    StepState,
)

__all__ = [
    "ConflictDetector",
    "DependencyResolver",
    "ProbeOutcome",
    "ProbeResult",
    "ResourceProber",
    "RollbackCoordinator",
    "RollbackMode",
    "RollbackResult",
    "RunResult",
    "StageRunner",
    "StatusReport",
    "StepFailure",
    "StepReport",
    "StepState",
    "readiness_flag",
    "validate_plan",
]
