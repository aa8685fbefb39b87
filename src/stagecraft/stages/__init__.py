"""Stage definitions. Concrete stages are looked up through ``stages.registry``."""

from stagecraft.stages.base import (
    ConflictScope,
    RollbackAction,
    RollbackActionKind,
    Stage,
    StageContext,
    Step,
)

__all__ = [
    "ConflictScope",
    "RollbackAction",
    "RollbackActionKind",
    "Stage",
    "StageContext",
    "Step",
]
