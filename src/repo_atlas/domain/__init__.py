"""
Domain types shared across planes: Budget, Scope, Task, Finding, Entity, Conflict.

The domain layer is free of IO side effects; every model validates on
construction and serializes canonically through ``to_dict``/``from_dict``.
"""

from repo_atlas.domain.ids import (
    TaskIdAllocator,
    format_task_id,
    generate_run_id,
    validate_run_id,
    validate_task_id,
)
from repo_atlas.domain.models import (
    DEFAULT_PHASE_ORDER,
    SPLIT_STATUSES,
    TERMINAL_STATUSES,
    Budget,
    Confidence,
    Conflict,
    ConflictEntry,
    ConflictKind,
    Entity,
    EntityKind,
    EntityRef,
    FailureReason,
    Finding,
    FindingValue,
    Phase,
    Provenance,
    RecordedFinding,
    Resolution,
    Scope,
    Task,
    TaskFailure,
    TaskStatus,
    component_ref,
    edge_endpoints,
    edge_ref,
    pattern_ref,
)

__all__ = [
    "Budget",
    "Confidence",
    "Conflict",
    "ConflictEntry",
    "ConflictKind",
    "DEFAULT_PHASE_ORDER",
    "Entity",
    "EntityKind",
    "EntityRef",
    "FailureReason",
    "Finding",
    "FindingValue",
    "Phase",
    "Provenance",
    "RecordedFinding",
    "Resolution",
    "SPLIT_STATUSES",
    "Scope",
    "TERMINAL_STATUSES",
    "Task",
    "TaskFailure",
    "TaskIdAllocator",
    "TaskStatus",
    "component_ref",
    "edge_endpoints",
    "edge_ref",
    "format_task_id",
    "generate_run_id",
    "pattern_ref",
    "validate_run_id",
    "validate_task_id",
]
