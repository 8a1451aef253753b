"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields, is_dataclass, replace
from enum import Enum, StrEnum
from pathlib import PurePosixPath
from typing import NoReturn, TypeVar, cast

from repo_atlas.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
FindingValue = JSONScalar | tuple["FindingValue", ...]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_VALUE_DEPTH = 8


class Phase(StrEnum):
    RECON = "recon"
    ENTRYPOINTS = "entrypoints"
    INVENTORY = "inventory"
    COUPLING = "coupling"
    PATTERNS = "patterns"
    BEHAVIOR = "behavior"
    CRITIQUE = "critique"


class TaskStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    OVERFLOWED = "overflowed"
    FAILED = "failed"
    SPLIT = "split"
    CANCELED = "canceled"


class FailureReason(StrEnum):
    OVERFLOW = "overflow"
    TRANSIENT_FAILURE = "transient_failure"
    UNSPLITTABLE_OVERFLOW = "unsplittable_overflow"
    WORKER_ERROR = "worker_error"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELED = "canceled"


class Confidence(StrEnum):
    OBSERVED = "observed"
    INFERRED = "inferred"


class EntityKind(StrEnum):
    COMPONENT = "component"
    COUPLING_EDGE = "coupling_edge"
    PATTERN_INSTANCE = "pattern_instance"


class ConflictKind(StrEnum):
    CONFLICT = "conflict"
    MISSING_REFERENT = "missing_referent"


DEFAULT_PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)

# Statuses a task can never leave.
TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.CANCELED})
# Statuses of tasks that delegated their scope to children instead of executing.
SPLIT_STATUSES = frozenset({TaskStatus.SPLIT, TaskStatus.OVERFLOWED})
RETRYABLE_REASONS = frozenset({FailureReason.TRANSIENT_FAILURE})


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


# ---------------------------------------------------------------------------
# Budget and scope
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Budget(CanonicalModel):
    """Immutable resource cap; ``limit`` and ``consumed`` are bytes of material read."""

    limit: int
    consumed: int = 0

    def __post_init__(self) -> None:
        _as_int(self.limit, "Budget.limit", minimum=1)
        _as_int(self.consumed, "Budget.consumed", minimum=0)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.consumed)

    @property
    def overflowed(self) -> bool:
        return self.consumed > self.limit

    def charge(self, amount: int) -> Budget:
        _as_int(amount, "Budget.charge.amount", minimum=0)
        return replace(self, consumed=self.consumed + amount)

    def fresh(self) -> Budget:
        return Budget(limit=self.limit)

    def tightened(self, factor: float) -> Budget:
        """Return an unconsumed budget whose limit is scaled down by ``factor``."""
        parsed = _as_float(factor, "Budget.tightened.factor")
        if not 0.0 < parsed <= 1.0:
            _fail("Budget.tightened.factor", "must be in (0, 1]")
        return Budget(limit=max(1, int(self.limit * parsed)))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Budget:
        parsed = _expect_object(data, "Budget", required={"limit"}, optional={"consumed"})
        return cls(
            limit=_as_int(parsed["limit"], "Budget.limit", minimum=1),
            consumed=_as_int(parsed.get("consumed", 0), "Budget.consumed", minimum=0),
        )


@dataclass(frozen=True, slots=True)
class Scope(CanonicalModel):
    """
    Opaque analysis locator: a set of files rooted at ``base``.

    ``base`` is a directory prefix for directory scopes and the file path itself
    for single-file scopes. ``paths`` is stored sorted and de-duplicated.
    """

    paths: tuple[str, ...]
    base: str = ""

    def __post_init__(self) -> None:
        base = _normalize_base(self.base, "Scope.base")
        raw_paths = _as_sequence(self.paths, "Scope.paths")
        normalized: set[str] = set()
        for index, item in enumerate(raw_paths):
            path = _as_relative_path(item, f"Scope.paths[{index}]")
            if base and path != base and not path.startswith(f"{base}/"):
                _fail(f"Scope.paths[{index}]", f"{path!r} is outside scope base {base!r}")
            normalized.add(path)
        object.__setattr__(self, "base", base)
        object.__setattr__(self, "paths", tuple(sorted(normalized)))

    @classmethod
    def of_file(cls, path: str) -> Scope:
        return cls(paths=(path,), base=path)

    @property
    def key(self) -> str:
        return self.base or "."

    @property
    def file_count(self) -> int:
        return len(self.paths)

    @property
    def is_single_file(self) -> bool:
        return len(self.paths) == 1 and self.paths[0] == self.base

    def contains(self, path: str) -> bool:
        return path in self.paths

    def is_disjoint(self, other: Scope) -> bool:
        return set(self.paths).isdisjoint(other.paths)

    def union(self, *others: Scope) -> Scope:
        merged = set(self.paths)
        for other in others:
            merged.update(other.paths)
        return Scope(paths=tuple(merged), base=_common_base((self, *others)))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Scope:
        parsed = _expect_object(data, "Scope", required={"paths"}, optional={"base"})
        return cls(
            paths=_as_str_tuple(parsed["paths"], "Scope.paths"),
            base=_as_str(parsed.get("base", ""), "Scope.base", min_len=0),
        )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TaskFailure(CanonicalModel):
    reason: FailureReason
    detail: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "reason", _as_enum(FailureReason, self.reason, "TaskFailure"))
        object.__setattr__(
            self, "detail", _as_str(self.detail, "TaskFailure.detail", min_len=0)
        )

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE_REASONS

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskFailure:
        parsed = _expect_object(data, "TaskFailure", required={"reason"}, optional={"detail"})
        return cls(
            reason=_as_enum(FailureReason, parsed["reason"], "TaskFailure.reason"),
            detail=_as_str(parsed.get("detail", ""), "TaskFailure.detail", min_len=0),
        )


@dataclass(frozen=True, slots=True)
class Task(CanonicalModel):
    """Unit of analysis scope. Instances are immutable; owners swap them via ``replace``."""

    id: str
    scope: Scope
    phase: Phase
    budget: Budget
    depends_on: frozenset[str] = frozenset()
    status: TaskStatus = TaskStatus.PENDING
    parent: str | None = None
    children: tuple[str, ...] = ()
    attempt: int = 1
    deadline_seconds: float | None = None
    rescan_of: str | None = None
    failure: TaskFailure | None = None

    def __post_init__(self) -> None:
        domain_ids.validate_task_id(self.id)
        if not isinstance(self.scope, Scope):
            _fail("Task.scope", "must be Scope")
        if not isinstance(self.budget, Budget):
            _fail("Task.budget", "must be Budget")
        object.__setattr__(self, "phase", _as_enum(Phase, self.phase, "Task.phase"))
        object.__setattr__(self, "status", _as_enum(TaskStatus, self.status, "Task.status"))

        depends_on = frozenset(_as_str_tuple(self.depends_on, "Task.depends_on"))
        for dependency in depends_on:
            domain_ids.validate_task_id(dependency)
        if self.id in depends_on:
            _fail("Task.depends_on", "task cannot depend on itself")
        object.__setattr__(self, "depends_on", depends_on)

        children = _as_str_tuple(self.children, "Task.children")
        if len(set(children)) != len(children):
            _fail("Task.children", "contains duplicate values")
        if children and self.status not in SPLIT_STATUSES | {TaskStatus.CANCELED}:
            _fail("Task.children", f"a {self.status.value} task cannot have children")
        object.__setattr__(self, "children", children)

        for name in ("parent", "rescan_of"):
            value = getattr(self, name)
            if value is not None:
                domain_ids.validate_task_id(value)
        _as_int(self.attempt, "Task.attempt", minimum=1)
        if self.deadline_seconds is not None:
            deadline = _as_float(self.deadline_seconds, "Task.deadline_seconds")
            if deadline <= 0:
                _fail("Task.deadline_seconds", "must be > 0")
        if self.failure is not None and not isinstance(self.failure, TaskFailure):
            _fail("Task.failure", "must be TaskFailure")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_split(self) -> bool:
        return bool(self.children)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        parsed = _expect_object(
            data,
            "Task",
            required={"id", "scope", "phase", "budget"},
            optional={
                "depends_on",
                "status",
                "parent",
                "children",
                "attempt",
                "deadline_seconds",
                "rescan_of",
                "failure",
            },
        )
        failure_raw = parsed.get("failure")
        deadline_raw = parsed.get("deadline_seconds")
        return cls(
            id=_as_str(parsed["id"], "Task.id"),
            scope=Scope.from_dict(_expect_mapping(parsed["scope"], "Task.scope")),
            phase=_as_enum(Phase, parsed["phase"], "Task.phase"),
            budget=Budget.from_dict(_expect_mapping(parsed["budget"], "Task.budget")),
            depends_on=frozenset(_as_str_tuple(parsed.get("depends_on", ()), "Task.depends_on")),
            status=_as_enum(TaskStatus, parsed.get("status", "pending"), "Task.status"),
            parent=_as_optional_str(parsed.get("parent"), "Task.parent"),
            children=_as_str_tuple(parsed.get("children", ()), "Task.children"),
            attempt=_as_int(parsed.get("attempt", 1), "Task.attempt", minimum=1),
            deadline_seconds=(
                None
                if deadline_raw is None
                else _as_float(deadline_raw, "Task.deadline_seconds")
            ),
            rescan_of=_as_optional_str(parsed.get("rescan_of"), "Task.rescan_of"),
            failure=(
                None
                if failure_raw is None
                else TaskFailure.from_dict(_expect_mapping(failure_raw, "Task.failure"))
            ),
        )


# ---------------------------------------------------------------------------
# Findings, entities and conflicts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, order=True)
class EntityRef(CanonicalModel):
    kind: EntityKind
    key: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(EntityKind, self.kind, "EntityRef.kind"))
        object.__setattr__(self, "key", _as_str(self.key, "EntityRef.key", max_len=1024))

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.key}"

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> EntityRef:
        parsed = _expect_object(data, "EntityRef", required={"kind", "key"})
        return cls(
            kind=_as_enum(EntityKind, parsed["kind"], "EntityRef.kind"),
            key=_as_str(parsed["key"], "EntityRef.key", max_len=1024),
        )


_EDGE_SEPARATOR = "->"
_PATTERN_SEPARATOR = "@"


def component_ref(path: str) -> EntityRef:
    """Reference to the component rooted at ``path`` (``"."`` for the repository root)."""
    return EntityRef(EntityKind.COMPONENT, path or ".")


def edge_ref(source: str, target: str) -> EntityRef:
    return EntityRef(
        EntityKind.COUPLING_EDGE, f"{source or '.'}{_EDGE_SEPARATOR}{target or '.'}"
    )


def pattern_ref(name: str, path: str) -> EntityRef:
    return EntityRef(EntityKind.PATTERN_INSTANCE, f"{name}{_PATTERN_SEPARATOR}{path or '.'}")


def edge_endpoints(ref: EntityRef) -> tuple[str, str]:
    """Return ``(source, target)`` component keys of a coupling edge reference."""
    if ref.kind is not EntityKind.COUPLING_EDGE:
        raise ValueError(f"not a coupling edge: {ref}")
    source, separator, target = ref.key.partition(_EDGE_SEPARATOR)
    if not separator or not source or not target:
        raise ValueError(f"malformed coupling edge key: {ref.key!r}")
    return source, target


@dataclass(frozen=True, slots=True)
class Provenance(CanonicalModel):
    task_id: str
    confidence: Confidence = Confidence.OBSERVED

    def __post_init__(self) -> None:
        domain_ids.validate_task_id(self.task_id)
        object.__setattr__(
            self, "confidence", _as_enum(Confidence, self.confidence, "Provenance.confidence")
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Provenance:
        parsed = _expect_object(data, "Provenance", required={"task_id"}, optional={"confidence"})
        return cls(
            task_id=_as_str(parsed["task_id"], "Provenance.task_id"),
            confidence=_as_enum(
                Confidence, parsed.get("confidence", "observed"), "Provenance.confidence"
            ),
        )


@dataclass(frozen=True, slots=True)
class Finding(CanonicalModel):
    """Immutable, provenance-tagged fact about one entity attribute."""

    subject: EntityRef
    attribute: str
    value: FindingValue
    provenance: Provenance

    def __post_init__(self) -> None:
        if not isinstance(self.subject, EntityRef):
            _fail("Finding.subject", "must be EntityRef")
        if not isinstance(self.provenance, Provenance):
            _fail("Finding.provenance", "must be Provenance")
        object.__setattr__(
            self, "attribute", _as_str(self.attribute, "Finding.attribute", max_len=256)
        )
        object.__setattr__(self, "value", freeze_value(self.value, "Finding.value"))

    @property
    def task_id(self) -> str:
        return self.provenance.task_id

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Finding:
        parsed = _expect_object(
            data, "Finding", required={"subject", "attribute", "value", "provenance"}
        )
        return cls(
            subject=EntityRef.from_dict(_expect_mapping(parsed["subject"], "Finding.subject")),
            attribute=_as_str(parsed["attribute"], "Finding.attribute"),
            value=freeze_value(parsed["value"], "Finding.value"),
            provenance=Provenance.from_dict(
                _expect_mapping(parsed["provenance"], "Finding.provenance")
            ),
        )


@dataclass(frozen=True, slots=True)
class RecordedFinding(CanonicalModel):
    """A finding as held by the knowledge store, with store-side annotations."""

    finding: Finding
    sequence: int
    superseded_by: str | None = None
    from_canceled_task: bool = False

    @property
    def is_current(self) -> bool:
        return self.superseded_by is None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RecordedFinding:
        parsed = _expect_object(
            data,
            "RecordedFinding",
            required={"finding", "sequence"},
            optional={"superseded_by", "from_canceled_task"},
        )
        canceled = parsed.get("from_canceled_task", False)
        if not isinstance(canceled, bool):
            _fail("RecordedFinding.from_canceled_task", "expected boolean")
        return cls(
            finding=Finding.from_dict(_expect_mapping(parsed["finding"], "RecordedFinding")),
            sequence=_as_int(parsed["sequence"], "RecordedFinding.sequence", minimum=0),
            superseded_by=_as_optional_str(
                parsed.get("superseded_by"), "RecordedFinding.superseded_by"
            ),
            from_canceled_task=canceled,
        )


@dataclass(frozen=True, slots=True)
class Entity(CanonicalModel):
    """A component, coupling edge or pattern instance with its accumulated findings."""

    ref: EntityRef
    findings: tuple[RecordedFinding, ...] = ()
    stale: bool = False

    def values(self, attribute: str) -> tuple[FindingValue, ...]:
        """Distinct current (non-superseded) values recorded for ``attribute``."""
        seen: dict[str, FindingValue] = {}
        for record in self.findings:
            if record.is_current and record.finding.attribute == attribute:
                seen.setdefault(canonical_value_key(record.finding.value), record.finding.value)
        return tuple(seen[key] for key in sorted(seen))

    def value(self, attribute: str, default: FindingValue = None) -> FindingValue:
        """The single current value of ``attribute``; ``default`` when absent or disputed."""
        values = self.values(attribute)
        if len(values) != 1:
            return default
        return values[0]

    @property
    def attributes(self) -> tuple[str, ...]:
        return tuple(sorted({record.finding.attribute for record in self.findings}))


@dataclass(frozen=True, slots=True)
class ConflictEntry(CanonicalModel):
    value: FindingValue
    provenance: Provenance

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ConflictEntry:
        parsed = _expect_object(data, "ConflictEntry", required={"value", "provenance"})
        return cls(
            value=freeze_value(parsed["value"], "ConflictEntry.value"),
            provenance=Provenance.from_dict(
                _expect_mapping(parsed["provenance"], "ConflictEntry.provenance")
            ),
        )


@dataclass(frozen=True, slots=True)
class Resolution(CanonicalModel):
    value: FindingValue
    note: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Resolution:
        parsed = _expect_object(data, "Resolution", required={"value"}, optional={"note"})
        return cls(
            value=freeze_value(parsed["value"], "Resolution.value"),
            note=_as_str(parsed.get("note", ""), "Resolution.note", min_len=0),
        )


@dataclass(frozen=True, slots=True)
class Conflict(CanonicalModel):
    """Disagreeing evidence about one ``(subject, attribute)``, retained side by side."""

    kind: ConflictKind
    subject: EntityRef
    attribute: str
    values: frozenset[ConflictEntry]
    resolution: Resolution | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(ConflictKind, self.kind, "Conflict.kind"))
        object.__setattr__(self, "values", frozenset(self.values))

    @property
    def key(self) -> tuple[ConflictKind, EntityRef, str]:
        return (self.kind, self.subject, self.attribute)

    @property
    def resolved(self) -> bool:
        return self.resolution is not None

    @property
    def distinct_values(self) -> tuple[FindingValue, ...]:
        by_json = {canonical_value_key(entry.value): entry.value for entry in self.values}
        return tuple(by_json[key] for key in sorted(by_json))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Conflict:
        parsed = _expect_object(
            data,
            "Conflict",
            required={"kind", "subject", "attribute", "values"},
            optional={"resolution"},
        )
        resolution_raw = parsed.get("resolution")
        return cls(
            kind=_as_enum(ConflictKind, parsed["kind"], "Conflict.kind"),
            subject=EntityRef.from_dict(_expect_mapping(parsed["subject"], "Conflict.subject")),
            attribute=_as_str(parsed["attribute"], "Conflict.attribute"),
            values=frozenset(
                ConflictEntry.from_dict(_expect_mapping(item, f"Conflict.values[{index}]"))
                for index, item in enumerate(_as_sequence(parsed["values"], "Conflict.values"))
            ),
            resolution=(
                None
                if resolution_raw is None
                else Resolution.from_dict(_expect_mapping(resolution_raw, "Conflict.resolution"))
            ),
        )


def freeze_value(value: object, path: str, *, depth: int = 0) -> FindingValue:
    """Normalize a finding value into a hashable JSON-compatible form."""
    if depth > _MAX_VALUE_DEPTH:
        _fail(path, f"value nesting exceeds max depth {_MAX_VALUE_DEPTH}")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return tuple(
            freeze_value(item, f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        )
    _fail(path, f"unsupported finding value type {type(value).__name__}")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return cast("Mapping[str, object]", value)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    mapping = _expect_mapping(value, path)
    parsed: dict[str, object] = {}
    for key, item in mapping.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    items = _as_sequence(value, path)
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(items))


def _as_relative_path(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=1024)
    if "\x00" in parsed or "\\" in parsed:
        _fail(path, "must be a POSIX path without NUL bytes")
    pure = PurePosixPath(parsed)
    if pure.is_absolute():
        _fail(path, "must be a relative POSIX path")
    if any(part in {"..", "."} for part in pure.parts) or pure.as_posix() != parsed:
        _fail(path, "must be a normalized path without '.' or '..' segments")
    return parsed


def _normalize_base(value: object, path: str) -> str:
    text = _as_str(value, path, min_len=0, max_len=1024).strip("/")
    if not text or text == ".":
        return ""
    return _as_relative_path(text, path)


def _common_base(scopes: Sequence[Scope]) -> str:
    bases = [scope.base for scope in scopes]
    if not bases or any(not base for base in bases):
        return ""
    common = PurePosixPath(bases[0]).parts
    for base in bases[1:]:
        parts = PurePosixPath(base).parts
        length = 0
        while length < min(len(common), len(parts)) and common[length] == parts[length]:
            length += 1
        common = common[:length]
    return "/".join(common)


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, (set, frozenset)):
        items = [_serialize_value(item, f"{path}[]") for item in value]
        return sorted(items, key=_canonical_json)
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value) and not isinstance(value, type):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def canonical_value_key(value: FindingValue) -> str:
    """Stable text key for a finding value, used for deterministic ordering."""
    return _canonical_json(_serialize_value(value, "value"))


__all__ = [
    "Budget",
    "CanonicalModel",
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
    "JSONValue",
    "Phase",
    "Provenance",
    "RETRYABLE_REASONS",
    "RecordedFinding",
    "Resolution",
    "SPLIT_STATUSES",
    "Scope",
    "TERMINAL_STATUSES",
    "Task",
    "TaskFailure",
    "TaskStatus",
    "canonical_value_key",
    "component_ref",
    "edge_endpoints",
    "edge_ref",
    "freeze_value",
    "pattern_ref",
]
