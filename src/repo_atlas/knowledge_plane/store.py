"""
repo-atlas — conflict-aware knowledge store

Purpose
- Own the knowledge graph: every Entity, every recorded Finding, every Conflict.
- Merge worker findings in all-or-nothing batches and keep disagreements side by
  side instead of letting the last write win.
- Seal immutable per-phase snapshots that later phases read.

Functional requirements
- Idempotent merge: re-merging an identical Finding changes nothing.
- A full rescan supersedes the Findings of the Task it re-scans; entities the
  rescan no longer observes become stale. Entities are never deleted.
- Disk-backed JSON persistence with schema version checks and atomic writes.

Non-functional requirements
- The store lock is the only lock boundary and is held for in-memory work only.
- Deterministic ordering of entities, findings and conflicts in every view.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Final

import structlog

from repo_atlas.constants import KNOWLEDGE_STORE_SCHEMA_VERSION
from repo_atlas.domain.models import (
    Conflict,
    ConflictEntry,
    ConflictKind,
    Entity,
    EntityKind,
    EntityRef,
    Finding,
    FindingValue,
    Phase,
    RecordedFinding,
    Resolution,
    Task,
    canonical_value_key,
    freeze_value,
)
from repo_atlas.observability.metrics import (
    CONFLICTS_RECORDED,
    FINDINGS_MERGED,
    MERGE_BATCH_SIZE,
    MetricsRegistry,
)
from repo_atlas.utils.fs import atomic_write

PathLike = str | os.PathLike[str]

_ConflictKey = tuple[ConflictKind, EntityRef, str]

_LOADABLE_FIELDS: Final[frozenset[str]] = frozenset(
    {"schema_version", "sequence", "tasks", "entities", "conflicts", "sealed_phases", "canceled"}
)


class MergeError(ValueError):
    """Raised when a findings batch is invalid. Nothing from the batch is applied."""


class StoreLoadError(ValueError):
    """Raised when a persisted knowledge store payload is invalid or incompatible."""


@dataclass(frozen=True, slots=True)
class _TaskLineage:
    task_id: str
    parent: str | None
    rescan_of: str | None


class KnowledgeGraphView:
    """
    Immutable snapshot of the knowledge graph.

    Views are what workers, the synthesizer and renderers read; they never see
    the store's mutable state.
    """

    __slots__ = ("_phase", "_sealed_phases", "_entities", "_conflicts")

    def __init__(
        self,
        *,
        entities: Iterable[Entity] = (),
        conflicts: Iterable[Conflict] = (),
        phase: Phase | None = None,
        sealed_phases: Iterable[Phase] = (),
    ) -> None:
        self._phase = phase
        self._sealed_phases = tuple(sealed_phases)
        self._entities: dict[EntityRef, Entity] = {
            entity.ref: entity for entity in sorted(entities, key=lambda item: item.ref)
        }
        self._conflicts = tuple(sorted(conflicts, key=_conflict_sort_key))

    @property
    def phase(self) -> Phase | None:
        """Phase this view was sealed at, ``None`` for a live snapshot."""
        return self._phase

    @property
    def sealed_phases(self) -> tuple[Phase, ...]:
        return self._sealed_phases

    @property
    def entities(self) -> tuple[Entity, ...]:
        return tuple(self._entities.values())

    @property
    def conflicts(self) -> tuple[Conflict, ...]:
        return self._conflicts

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, ref: object) -> bool:
        return ref in self._entities

    def entity(self, ref: EntityRef) -> Entity | None:
        return self._entities.get(ref)

    def entities_of_kind(
        self, kind: EntityKind, *, include_stale: bool = False
    ) -> tuple[Entity, ...]:
        return tuple(
            entity
            for entity in self._entities.values()
            if entity.ref.kind is kind and (include_stale or not entity.stale)
        )

    def findings(self, *, current_only: bool = True) -> Iterator[RecordedFinding]:
        for entity in self._entities.values():
            for record in entity.findings:
                if record.is_current or not current_only:
                    yield record

    def open_conflicts(self) -> tuple[Conflict, ...]:
        return tuple(conflict for conflict in self._conflicts if not conflict.resolved)

    def to_dict(self) -> dict[str, object]:
        return {
            "phase": None if self._phase is None else self._phase.value,
            "sealed_phases": [phase.value for phase in self._sealed_phases],
            "entities": [entity.to_dict() for entity in self._entities.values()],
            "conflicts": [conflict.to_dict() for conflict in self._conflicts],
        }


class KnowledgeStore:
    """
    Single owner of the knowledge graph.

    Conflict rule: two current Findings on the same ``(subject, attribute)``
    with different values conflict unless one of their Tasks re-scans the
    other, in which case the older Finding is superseded instead.
    """

    def __init__(
        self,
        *,
        logger: Any | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._metrics = metrics
        self._sequence = 0
        self._records: dict[EntityRef, list[RecordedFinding]] = {}
        self._seen: set[Finding] = set()
        self._stale: set[EntityRef] = set()
        self._lineage: dict[str, _TaskLineage] = {}
        self._canceled: set[str] = set()
        self._conflicts: dict[_ConflictKey, Conflict] = {}
        self._sealed: dict[Phase, KnowledgeGraphView] = {}
        self._watermarks: dict[Phase, int] = {}

    # ------------------------------------------------------------------
    # Lineage
    # ------------------------------------------------------------------

    def register_task(self, task: Task) -> None:
        """Record the lineage of ``task`` so merges can tell rescans from disagreements."""
        with self._lock:
            self._lineage[task.id] = _TaskLineage(
                task_id=task.id, parent=task.parent, rescan_of=task.rescan_of
            )

    def task_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._lineage))

    def root_task_ids(self) -> tuple[str, ...]:
        """Registered Tasks without a parent, oldest first."""
        with self._lock:
            roots = [
                task_id for task_id, lineage in self._lineage.items() if lineage.parent is None
            ]
            return tuple(sorted(roots))

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(self, findings: Iterable[Finding]) -> frozenset[Conflict]:
        """
        Apply one batch of findings atomically.

        Returns the conflicts created or extended by this batch. Raises
        :class:`MergeError` without applying anything when the batch is invalid.
        """
        batch = tuple(findings)
        with self._lock:
            self._validate_batch(batch)

            fresh = sorted(
                {finding for finding in batch if finding not in self._seen},
                key=_finding_sort_key,
            )
            touched: set[tuple[EntityRef, str]] = set()
            rescanners = {
                task_id
                for task_id in {finding.task_id for finding in fresh}
                if self._superseded_tasks(task_id)
            }
            for finding in fresh:
                self._sequence += 1
                record = RecordedFinding(
                    finding=finding,
                    sequence=self._sequence,
                    from_canceled_task=finding.task_id in self._canceled,
                )
                self._records.setdefault(finding.subject, []).append(record)
                self._seen.add(finding)
                self._stale.discard(finding.subject)
                touched.add((finding.subject, finding.attribute))

            for task_id in sorted(rescanners):
                self._apply_supersession(task_id)

            changed = self._refresh_conflicts(touched)

        if self._metrics is not None:
            self._metrics.inc(FINDINGS_MERGED, len(fresh))
            self._metrics.observe(MERGE_BATCH_SIZE, len(batch))
            if changed:
                self._metrics.inc(CONFLICTS_RECORDED, len(changed))
        self._logger.info(
            "knowledge_store_merge",
            batch_size=len(batch),
            applied_count=len(fresh),
            duplicate_count=len(batch) - len(fresh),
            conflict_count=len(changed),
        )
        return frozenset(changed)

    def mark_canceled(self, task_id: str) -> int:
        """Flag every Finding of ``task_id`` as coming from a canceled Task."""
        flagged = 0
        with self._lock:
            self._canceled.add(task_id)
            for records in self._records.values():
                for index, record in enumerate(records):
                    if record.finding.task_id == task_id and not record.from_canceled_task:
                        records[index] = replace(record, from_canceled_task=True)
                        flagged += 1
        self._logger.info("knowledge_store_task_canceled", task_id=task_id, flagged_count=flagged)
        return flagged

    def record_conflicts(self, conflicts: Iterable[Conflict]) -> frozenset[Conflict]:
        """Record externally derived conflicts (e.g. missing referents), deduplicated by key."""
        added: list[Conflict] = []
        with self._lock:
            for conflict in conflicts:
                if not isinstance(conflict, Conflict):
                    raise MergeError(f"expected Conflict, got {type(conflict).__name__}")
                existing = self._conflicts.get(conflict.key)
                if existing is None:
                    self._conflicts[conflict.key] = conflict
                    added.append(conflict)
                    continue
                merged_values = existing.values | conflict.values
                if merged_values != existing.values:
                    updated = replace(existing, values=merged_values)
                    self._conflicts[conflict.key] = updated
                    added.append(updated)
        if added and self._metrics is not None:
            self._metrics.inc(CONFLICTS_RECORDED, len(added))
        return frozenset(added)

    def reconcile(
        self,
        subject: EntityRef,
        attribute: str,
        value: FindingValue,
        note: str = "",
        *,
        kind: ConflictKind = ConflictKind.CONFLICT,
    ) -> Conflict:
        """Attach a resolution to a recorded conflict. The conflict itself is kept."""
        key: _ConflictKey = (kind, subject, attribute)
        with self._lock:
            existing = self._conflicts.get(key)
            if existing is None:
                raise KeyError(f"no {kind.value} recorded for {subject}.{attribute}")
            resolved = replace(
                existing,
                resolution=Resolution(value=freeze_value(value, "Resolution.value"), note=note),
            )
            self._conflicts[key] = resolved
        self._logger.info(
            "knowledge_store_conflict_reconciled",
            subject=str(subject),
            attribute=attribute,
            note=note,
        )
        return resolved

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def seal_phase(self, phase: Phase) -> KnowledgeGraphView:
        """Freeze the graph as of the completion of ``phase``; re-sealing refreshes it."""
        with self._lock:
            self._watermarks[phase] = self._sequence
            sealed_phases = tuple(sorted(self._watermarks, key=self._watermark_order))
            view = self._build_view(phase=phase, sealed_phases=sealed_phases)
            self._sealed[phase] = view
        self._logger.info(
            "knowledge_store_phase_sealed",
            phase=phase.value,
            entity_count=len(view),
            conflict_count=len(view.conflicts),
        )
        return view

    def snapshot(self, phase: Phase | None = None) -> KnowledgeGraphView:
        """Sealed view of ``phase``, or a live snapshot of everything when ``phase`` is None."""
        with self._lock:
            if phase is None:
                sealed_phases = tuple(sorted(self._watermarks, key=self._watermark_order))
                return self._build_view(phase=None, sealed_phases=sealed_phases)
            view = self._sealed.get(phase)
            if view is None:
                raise KeyError(f"phase {phase.value!r} has not been sealed")
            return view

    def is_sealed(self, phase: Phase) -> bool:
        with self._lock:
            return phase in self._sealed

    def conflicts(self) -> tuple[Conflict, ...]:
        with self._lock:
            return tuple(sorted(self._conflicts.values(), key=_conflict_sort_key))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, destination: PathLike) -> Path:
        """Atomically persist the store under ``destination``."""
        target = Path(destination)
        with self._lock:
            payload = {
                "schema_version": KNOWLEDGE_STORE_SCHEMA_VERSION,
                "sequence": self._sequence,
                "tasks": [
                    {"id": item.task_id, "parent": item.parent, "rescan_of": item.rescan_of}
                    for _, item in sorted(self._lineage.items())
                ],
                "entities": [entity.to_dict() for entity in self._entities()],
                "conflicts": [
                    conflict.to_dict()
                    for conflict in sorted(self._conflicts.values(), key=_conflict_sort_key)
                ],
                "sealed_phases": [
                    {"phase": phase.value, "watermark": watermark}
                    for phase, watermark in sorted(
                        self._watermarks.items(), key=lambda item: (item[1], item[0].value)
                    )
                ],
                "canceled": sorted(self._canceled),
            }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        atomic_write(target, encoded, encoding="utf-8")
        self._logger.info("knowledge_store_saved", path=target.as_posix())
        return target

    @classmethod
    def load(
        cls,
        source: PathLike,
        *,
        logger: Any | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> KnowledgeStore:
        """
        Load a persisted store with schema version validation.

        Sealed phase views are rebuilt from the findings recorded up to each
        phase's watermark.
        """
        source_path = Path(source)
        try:
            payload = json.loads(source_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StoreLoadError(f"unable to read knowledge store {source_path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise StoreLoadError(f"invalid JSON in {source_path}: {exc}") from exc

        if not isinstance(payload, dict):
            raise StoreLoadError("knowledge store payload must be a JSON object")
        schema_version = payload.get("schema_version")
        if schema_version != KNOWLEDGE_STORE_SCHEMA_VERSION:
            raise StoreLoadError(
                f"unsupported schema_version: {schema_version!r}; "
                f"expected {KNOWLEDGE_STORE_SCHEMA_VERSION}"
            )
        unknown = sorted(set(payload) - _LOADABLE_FIELDS)
        if unknown:
            raise StoreLoadError(f"unexpected fields: {unknown}")

        store = cls(logger=logger, metrics=metrics)
        try:
            store._restore(payload)
        except (ValueError, TypeError, KeyError) as exc:
            raise StoreLoadError(f"invalid knowledge store payload: {exc}") from exc
        store._logger.info(
            "knowledge_store_loaded",
            path=source_path.as_posix(),
            entity_count=len(store._records),
        )
        return store

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_batch(self, batch: tuple[object, ...]) -> None:
        for index, item in enumerate(batch):
            if not isinstance(item, Finding):
                raise MergeError(f"batch[{index}]: expected Finding, got {type(item).__name__}")
            if item.task_id not in self._lineage:
                raise MergeError(
                    f"batch[{index}]: provenance names unregistered task {item.task_id!r}"
                )

    def _superseded_tasks(self, task_id: str) -> frozenset[str]:
        """Tasks whose findings are replaced by the rescan that ``task_id`` belongs to."""
        targets: set[str] = set()
        cursor: str | None = task_id
        visited: set[str] = set()
        while cursor is not None and cursor not in visited:
            visited.add(cursor)
            lineage = self._lineage.get(cursor)
            if lineage is None:
                break
            if lineage.rescan_of is not None:
                targets.update(self._rescan_chain(lineage.rescan_of))
            cursor = lineage.parent
        targets.discard(task_id)
        return frozenset(targets)

    def _rescan_chain(self, task_id: str) -> set[str]:
        chain: set[str] = set()
        cursor: str | None = task_id
        while cursor is not None and cursor not in chain:
            chain.add(cursor)
            chain.update(self._descendants(cursor))
            lineage = self._lineage.get(cursor)
            cursor = None if lineage is None else lineage.rescan_of
        return chain

    def _descendants(self, task_id: str) -> set[str]:
        children: dict[str, list[str]] = {}
        for lineage in self._lineage.values():
            if lineage.parent is not None:
                children.setdefault(lineage.parent, []).append(lineage.task_id)
        found: set[str] = set()
        pending = list(children.get(task_id, ()))
        while pending:
            current = pending.pop()
            if current in found:
                continue
            found.add(current)
            pending.extend(children.get(current, ()))
        return found

    def _apply_supersession(self, task_id: str) -> None:
        superseded = self._superseded_tasks(task_id)
        affected: set[EntityRef] = set()
        for ref, records in self._records.items():
            for index, record in enumerate(records):
                if record.is_current and record.finding.task_id in superseded:
                    records[index] = replace(record, superseded_by=task_id)
                    affected.add(ref)

        newly_stale = 0
        for ref in affected:
            if not any(record.is_current for record in self._records[ref]):
                if ref not in self._stale:
                    newly_stale += 1
                self._stale.add(ref)
        self._logger.info(
            "knowledge_store_rescan_applied",
            task_id=task_id,
            superseded_tasks=sorted(superseded),
            stale_count=newly_stale,
        )

    def _refresh_conflicts(self, touched: Iterable[tuple[EntityRef, str]]) -> list[Conflict]:
        changed: list[Conflict] = []
        for subject, attribute in sorted(touched):
            current = [
                record.finding
                for record in self._records.get(subject, ())
                if record.is_current and record.finding.attribute == attribute
            ]
            distinct = {canonical_value_key(finding.value) for finding in current}
            if len(distinct) < 2:
                continue
            entries = frozenset(
                ConflictEntry(value=finding.value, provenance=finding.provenance)
                for finding in current
            )
            key: _ConflictKey = (ConflictKind.CONFLICT, subject, attribute)
            existing = self._conflicts.get(key)
            if existing is None:
                conflict = Conflict(
                    kind=ConflictKind.CONFLICT,
                    subject=subject,
                    attribute=attribute,
                    values=entries,
                )
            elif entries <= existing.values:
                continue
            else:
                conflict = replace(existing, values=existing.values | entries)
            self._conflicts[key] = conflict
            changed.append(conflict)
            self._logger.warning(
                "knowledge_store_conflict",
                subject=str(subject),
                attribute=attribute,
                value_count=len(conflict.distinct_values),
            )
        return changed

    def _entities(self, *, watermark: int | None = None) -> list[Entity]:
        entities: list[Entity] = []
        for ref in sorted(self._records):
            records = tuple(
                record
                for record in self._records[ref]
                if watermark is None or record.sequence <= watermark
            )
            if not records:
                continue
            stale = ref in self._stale if watermark is None else not any(
                record.is_current for record in records
            )
            entities.append(Entity(ref=ref, findings=records, stale=stale))
        return entities

    def _build_view(
        self,
        *,
        phase: Phase | None,
        sealed_phases: tuple[Phase, ...],
        watermark: int | None = None,
    ) -> KnowledgeGraphView:
        entities = self._entities(watermark=watermark)
        present = {entity.ref for entity in entities}
        conflicts = [
            conflict
            for conflict in self._conflicts.values()
            if watermark is None or conflict.subject in present
        ]
        return KnowledgeGraphView(
            entities=entities,
            conflicts=conflicts,
            phase=phase,
            sealed_phases=sealed_phases,
        )

    def _watermark_order(self, phase: Phase) -> tuple[int, str]:
        return (self._watermarks[phase], phase.value)

    def _restore(self, payload: Mapping[str, object]) -> None:
        sequence = payload.get("sequence", 0)
        if isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 0:
            raise ValueError("sequence must be a non-negative integer")

        for raw_task in _as_list(payload.get("tasks", []), "tasks"):
            task = _as_mapping(raw_task, "tasks[]")
            task_id = task["id"]
            if not isinstance(task_id, str):
                raise ValueError("tasks[].id must be a string")
            self._lineage[task_id] = _TaskLineage(
                task_id=task_id,
                parent=_optional_str(task.get("parent"), "tasks[].parent"),
                rescan_of=_optional_str(task.get("rescan_of"), "tasks[].rescan_of"),
            )

        for raw_entity in _as_list(payload.get("entities", []), "entities"):
            entity = _as_mapping(raw_entity, "entities[]")
            ref = EntityRef.from_dict(_as_mapping(entity["ref"], "entities[].ref"))
            records = [
                RecordedFinding.from_dict(_as_mapping(item, "entities[].findings[]"))
                for item in _as_list(entity.get("findings", []), "entities[].findings")
            ]
            for record in records:
                if record.finding.subject != ref:
                    raise ValueError(f"finding subject does not match entity {ref}")
                if record.sequence > sequence:
                    raise ValueError("finding sequence exceeds store sequence")
                self._seen.add(record.finding)
            self._records[ref] = sorted(records, key=lambda item: item.sequence)
            if entity.get("stale", False) is True:
                self._stale.add(ref)

        for raw_conflict in _as_list(payload.get("conflicts", []), "conflicts"):
            conflict = Conflict.from_dict(_as_mapping(raw_conflict, "conflicts[]"))
            self._conflicts[conflict.key] = conflict

        for raw_canceled in _as_list(payload.get("canceled", []), "canceled"):
            if not isinstance(raw_canceled, str):
                raise ValueError("canceled[] must be strings")
            self._canceled.add(raw_canceled)

        self._sequence = sequence
        for raw_sealed in _as_list(payload.get("sealed_phases", []), "sealed_phases"):
            sealed = _as_mapping(raw_sealed, "sealed_phases[]")
            phase = Phase(sealed["phase"])
            watermark = sealed["watermark"]
            if isinstance(watermark, bool) or not isinstance(watermark, int):
                raise ValueError("sealed_phases[].watermark must be an integer")
            self._watermarks[phase] = watermark

        for phase in self._watermarks:
            earlier = tuple(
                item
                for item in sorted(self._watermarks, key=self._watermark_order)
                if self._watermark_order(item) <= self._watermark_order(phase)
            )
            self._sealed[phase] = self._build_view(
                phase=phase, sealed_phases=earlier, watermark=self._watermarks[phase]
            )


def _finding_sort_key(finding: Finding) -> tuple[EntityRef, str, str, str]:
    return (
        finding.subject,
        finding.attribute,
        canonical_value_key(finding.value),
        finding.task_id,
    )


def _conflict_sort_key(conflict: Conflict) -> tuple[str, EntityRef, str]:
    return (conflict.kind.value, conflict.subject, conflict.attribute)


def _as_list(value: object, path: str) -> list[object]:
    if not isinstance(value, list):
        raise ValueError(f"{path} must be a JSON array")
    return value


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path} must be a JSON object")
    return value


def _optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{path} must be a string or null")
    return value


__all__ = [
    "KnowledgeGraphView",
    "KnowledgeStore",
    "MergeError",
    "StoreLoadError",
]
