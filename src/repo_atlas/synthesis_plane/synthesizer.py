"""
repo-atlas — phase-level synthesis

Purpose
- Derive cross-cutting views from a sealed knowledge graph snapshot once a
  phase settles: language histogram, entrypoints, component inventory, the
  directed coupling graph with its matrix and cycles, and pattern inventory.
- Validate references between entities and report dangling ones as
  ``MISSING_REFERENT`` conflicts.

Non-functional requirements
- Pure function of the view: the same snapshot always yields the same output.
- Never blocks phase progression; problems are reported, not raised.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from repo_atlas.constants import DEFAULT_MAX_CYCLE_LENGTH
from repo_atlas.domain import vocabulary as vocab
from repo_atlas.domain.models import (
    Conflict,
    ConflictEntry,
    ConflictKind,
    Entity,
    EntityKind,
    Phase,
    component_ref,
    edge_endpoints,
)
from repo_atlas.knowledge_plane.store import KnowledgeGraphView
from repo_atlas.planning.task_graph import TaskGraph

DISPUTED: str = "<disputed>"


@dataclass(frozen=True, slots=True)
class CouplingGraph:
    """Directory-level coupling derived from file-level import edges."""

    graph: TaskGraph
    weights: Mapping[tuple[str, str], int] = field(default_factory=dict)

    def matrix(self) -> dict[str, dict[str, int]]:
        rows: dict[str, dict[str, int]] = {}
        for (source, target), weight in sorted(self.weights.items()):
            rows.setdefault(source, {})[target] = weight
        return rows


@dataclass(frozen=True, slots=True)
class PhaseAggregate:
    """Output of aggregating one phase: derived views plus conflicts found while deriving."""

    phase: Phase
    views: Mapping[str, Any]
    conflicts: tuple[Conflict, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "phase": self.phase.value,
            "views": dict(self.views),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
        }


def build_coupling_graph(view: KnowledgeGraphView) -> CouplingGraph:
    """Aggregate current coupling edges into a weighted directory graph."""
    graph = TaskGraph()
    weights: Counter[tuple[str, str]] = Counter()
    for entity in view.entities_of_kind(EntityKind.COUPLING_EDGE):
        source_file, target = edge_endpoints(entity.ref)
        source = entity.value(vocab.SOURCE_COMPONENT)
        if not isinstance(source, str):
            source = vocab.directory_of(source_file)
        if source == target:
            continue
        graph.add_edge(source, target)
        weights[(source, target)] += 1
    return CouplingGraph(graph=graph, weights=dict(weights))


def find_cycles(
    edges: list[tuple[str, str]] | tuple[tuple[str, str], ...],
    *,
    max_length: int | None = None,
) -> tuple[tuple[str, ...], ...]:
    """Every simple cycle of a directed edge list, each starting at its smallest node."""
    return TaskGraph(edges=edges).simple_cycles(max_length)


class Synthesizer:
    """Stateless phase aggregator over knowledge graph views."""

    def __init__(
        self,
        *,
        max_cycle_length: int = DEFAULT_MAX_CYCLE_LENGTH,
        logger: Any | None = None,
    ) -> None:
        if max_cycle_length < 1:
            raise ValueError("max_cycle_length must be >= 1")
        self._max_cycle_length = max_cycle_length
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def aggregate(self, phase: Phase, view: KnowledgeGraphView) -> PhaseAggregate:
        builders = {
            Phase.RECON: self._recon,
            Phase.ENTRYPOINTS: self._entrypoints,
            Phase.INVENTORY: self._inventory,
            Phase.COUPLING: self._coupling,
            Phase.PATTERNS: self._patterns,
            Phase.BEHAVIOR: self._summary,
            Phase.CRITIQUE: self._critique,
        }
        views = builders[phase](view)
        conflicts: tuple[Conflict, ...] = ()
        if phase in {Phase.INVENTORY, Phase.COUPLING}:
            conflicts = self.validate_references(view)

        self._logger.info(
            "synthesizer_phase_aggregated",
            phase=phase.value,
            entity_count=len(view),
            missing_referent_count=len(conflicts),
        )
        return PhaseAggregate(phase=phase, views=views, conflicts=conflicts)

    def validate_references(self, view: KnowledgeGraphView) -> tuple[Conflict, ...]:
        """``MISSING_REFERENT`` conflicts for coupling edges whose components do not exist."""
        conflicts: list[Conflict] = []
        for entity in view.entities_of_kind(EntityKind.COUPLING_EDGE):
            if not entity.findings:
                continue
            source_file, target = edge_endpoints(entity.ref)
            provenance = entity.findings[0].finding.provenance
            for attribute, referent in (("source", source_file), ("target", target)):
                if _component_exists(view, referent):
                    continue
                conflicts.append(
                    Conflict(
                        kind=ConflictKind.MISSING_REFERENT,
                        subject=entity.ref,
                        attribute=attribute,
                        values=frozenset(
                            {ConflictEntry(value=referent, provenance=provenance)}
                        ),
                    )
                )
        return tuple(conflicts)

    # ------------------------------------------------------------------
    # Per-phase views
    # ------------------------------------------------------------------

    def _recon(self, view: KnowledgeGraphView) -> dict[str, Any]:
        files = _files(view)
        languages: Counter[str] = Counter()
        bytes_by_language: Counter[str] = Counter()
        parse_errors: list[str] = []
        for entity in files:
            language = _single_str(entity, vocab.LANGUAGE)
            size = entity.value(vocab.SIZE_BYTES)
            languages[language] += 1
            bytes_by_language[language] += size if isinstance(size, int) else 0
            if entity.values(vocab.PARSE_ERROR):
                parse_errors.append(entity.ref.key)
        return {
            "file_count": len(files),
            "total_bytes": sum(bytes_by_language.values()),
            "languages": dict(sorted(languages.items())),
            "bytes_by_language": dict(sorted(bytes_by_language.items())),
            "parse_errors": parse_errors,
        }

    def _entrypoints(self, view: KnowledgeGraphView) -> dict[str, Any]:
        entrypoints = [
            {"path": entity.ref.key, "kind": _single_str(entity, vocab.ENTRYPOINT)}
            for entity in _files(view)
            if entity.values(vocab.ENTRYPOINT)
        ]
        return {"entrypoints": entrypoints, "count": len(entrypoints)}

    def _inventory(self, view: KnowledgeGraphView) -> dict[str, Any]:
        members: dict[str, list[Entity]] = {}
        for entity in _files(view):
            component = entity.value(vocab.COMPONENT)
            if isinstance(component, str):
                members.setdefault(component, []).append(entity)

        components: list[dict[str, Any]] = []
        for entity in view.entities_of_kind(EntityKind.COMPONENT):
            if entity.value(vocab.KIND) != vocab.KIND_DIRECTORY:
                continue
            files = members.get(entity.ref.key, [])
            by_language: Counter[str] = Counter()
            total = 0
            for member in files:
                size = member.value(vocab.SIZE_BYTES)
                size = size if isinstance(size, int) else 0
                total += size
                by_language[_single_str(member, vocab.LANGUAGE)] += size
            dominant = (
                sorted(by_language.items(), key=lambda item: (-item[1], item[0]))[0][0]
                if by_language
                else "unknown"
            )
            components.append(
                {
                    "component": entity.ref.key,
                    "file_count": len(files),
                    "bytes": total,
                    "language": dominant,
                }
            )
        return {"components": components, "count": len(components)}

    def _coupling(self, view: KnowledgeGraphView) -> dict[str, Any]:
        coupling = build_coupling_graph(view)
        cycles = coupling.graph.simple_cycles(self._max_cycle_length)
        return {
            "graph": coupling.graph.serialize(),
            "matrix": coupling.matrix(),
            "cycles": [list(cycle) for cycle in cycles],
            "max_cycle_length": self._max_cycle_length,
        }

    def _patterns(self, view: KnowledgeGraphView) -> dict[str, Any]:
        grouped: dict[str, list[str]] = {}
        for entity in view.entities_of_kind(EntityKind.PATTERN_INSTANCE):
            name = _single_str(entity, vocab.PATTERN)
            component = entity.value(vocab.COMPONENT)
            location = component if isinstance(component, str) else entity.ref.key
            grouped.setdefault(name, []).append(location)
        return {
            "patterns": {name: sorted(set(paths)) for name, paths in sorted(grouped.items())}
        }

    def _summary(self, view: KnowledgeGraphView) -> dict[str, Any]:
        counts = {
            kind.value: len(view.entities_of_kind(kind))
            for kind in EntityKind
        }
        open_conflicts: Counter[str] = Counter()
        for conflict in view.open_conflicts():
            open_conflicts[f"{conflict.kind.value}:{conflict.attribute}"] += 1
        stale = sum(1 for entity in view.entities if entity.stale)
        return {
            "entity_counts": counts,
            "stale_entities": stale,
            "open_conflicts": dict(sorted(open_conflicts.items())),
        }

    def _critique(self, view: KnowledgeGraphView) -> dict[str, Any]:
        summary = self._summary(view)
        hotspots: list[dict[str, Any]] = []
        for entity in view.entities_of_kind(EntityKind.COMPONENT):
            fan_in = entity.value(vocab.FAN_IN)
            fan_out = entity.value(vocab.FAN_OUT)
            if not isinstance(fan_in, int) or not isinstance(fan_out, int):
                continue
            hotspots.append(
                {
                    "component": entity.ref.key,
                    "fan_in": fan_in,
                    "fan_out": fan_out,
                    "in_cycle": entity.value(vocab.IN_CYCLE) is True,
                }
            )
        hotspots.sort(key=lambda item: (-item["fan_in"], -item["fan_out"], item["component"]))
        summary["hotspots"] = hotspots
        return summary


def _files(view: KnowledgeGraphView) -> list[Entity]:
    return [
        entity
        for entity in view.entities_of_kind(EntityKind.COMPONENT)
        if entity.value(vocab.KIND) == vocab.KIND_FILE
    ]


def _single_str(entity: Entity, attribute: str) -> str:
    values = entity.values(attribute)
    if not values:
        return "unknown"
    if len(values) > 1:
        return DISPUTED
    return str(values[0])


def _component_exists(view: KnowledgeGraphView, key: str) -> bool:
    entity = view.entity(component_ref(key))
    return entity is not None and not entity.stale


__all__ = [
    "CouplingGraph",
    "DISPUTED",
    "PhaseAggregate",
    "Synthesizer",
    "build_coupling_graph",
    "find_cycles",
]
