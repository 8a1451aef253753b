"""
repo-atlas — deterministic heuristic worker

Purpose
- Produce findings for every phase without any external model: file facts
  during recon, entrypoints, directory inventory, import coupling resolved
  against the recon module map, file-name patterns, and fan-in/fan-out
  critique over the sealed coupling graph.

Non-functional requirements
- Every file read goes through the budget-charging scope reader.
- Output order is stable for a given scope and snapshot.
"""

from __future__ import annotations

import asyncio
import posixpath
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from typing import Any, Final

import structlog

from repo_atlas.constants import DEFAULT_MAX_CYCLE_LENGTH
from repo_atlas.domain import vocabulary as vocab
from repo_atlas.domain.models import (
    Confidence,
    EntityKind,
    Finding,
    FindingValue,
    Phase,
    Provenance,
    Task,
    component_ref,
    edge_ref,
    pattern_ref,
)
from repo_atlas.knowledge_plane.adapters import AdapterRegistry, importable_module_names
from repo_atlas.knowledge_plane.store import KnowledgeGraphView
from repo_atlas.synthesis_plane.synthesizer import build_coupling_graph
from repo_atlas.workers.base import WorkerContext, WorkerResult

_SCRIPT_SUFFIXES: Final[tuple[str, ...]] = (".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx")

# First matching rule wins; globs are matched against the file name.
PATTERN_RULES: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    ("test_suite", ("test_*.py", "*_test.py", "*_test.go", "*.test.js", "*.test.ts", "*.spec.ts")),
    ("package_marker", ("__init__.py", "package.json", "go.mod", "Cargo.toml")),
    (
        "build_file",
        ("setup.py", "pyproject.toml", "Makefile", "CMakeLists.txt", "build.gradle", "pom.xml"),
    ),
    ("config_file", ("*.toml", "*.ini", "*.cfg", "*.yaml", "*.yml", ".env*")),
)


def pattern_for(path: str) -> str | None:
    """Name of the pattern ``path`` is an instance of, if any."""
    name = PurePosixPath(path).name
    for pattern, globs in PATTERN_RULES:
        if any(fnmatchcase(name, glob) for glob in globs):
            return pattern
    return None


@dataclass(slots=True)
class _Collector:
    task_id: str
    findings: list[Finding] = field(default_factory=list)

    def add(
        self,
        subject: Any,
        attribute: str,
        value: object,
        *,
        confidence: Confidence = Confidence.OBSERVED,
    ) -> None:
        self.findings.append(
            Finding(
                subject=subject,
                attribute=attribute,
                value=value,
                provenance=Provenance(task_id=self.task_id, confidence=confidence),
            )
        )


class HeuristicWorker:
    """Stateless worker that analyzes a scope with language adapters and path heuristics."""

    def __init__(
        self,
        *,
        registry: AdapterRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._registry = registry if registry is not None else AdapterRegistry()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        handlers = {
            Phase.RECON: self._recon,
            Phase.ENTRYPOINTS: self._entrypoints,
            Phase.INVENTORY: self._inventory,
            Phase.COUPLING: self._coupling,
            Phase.PATTERNS: self._patterns,
            Phase.BEHAVIOR: self._behavior,
            Phase.CRITIQUE: self._critique,
        }
        collector = _Collector(task_id=task.id)
        # Handlers read files synchronously; keep them off the event loop.
        await asyncio.to_thread(handlers[task.phase], task, context, collector)
        self._logger.debug(
            "heuristic_worker_finished",
            task_id=task.id,
            phase=task.phase.value,
            finding_count=len(collector.findings),
        )
        return WorkerResult.complete(collector.findings, consumed=context.reader.consumed)

    def _recon(self, task: Task, context: WorkerContext, out: _Collector) -> None:
        for path in task.scope.paths:
            context.checkpoint()
            content = context.reader.read(path)
            analysis = self._registry.analyze(path, content)
            subject = component_ref(path)
            out.add(subject, vocab.KIND, vocab.KIND_FILE)
            out.add(subject, vocab.LANGUAGE, analysis.language)
            out.add(subject, vocab.SIZE_BYTES, len(content))
            modules = importable_module_names(PurePosixPath(path))
            if modules:
                out.add(subject, vocab.MODULES, modules)
            if analysis.parse_error is not None:
                out.add(subject, vocab.PARSE_ERROR, analysis.parse_error)

    def _entrypoints(self, task: Task, context: WorkerContext, out: _Collector) -> None:
        for path in task.scope.paths:
            context.checkpoint()
            analysis = self._registry.analyze(path, context.reader.read(path))
            if analysis.entrypoint is not None:
                out.add(component_ref(path), vocab.ENTRYPOINT, analysis.entrypoint)

    def _inventory(self, task: Task, context: WorkerContext, out: _Collector) -> None:
        directories: set[str] = set()
        for path in task.scope.paths:
            context.checkpoint()
            directory = vocab.directory_of(path)
            directories.add(directory)
            out.add(component_ref(path), vocab.COMPONENT, directory)
        for directory in sorted(directories):
            out.add(component_ref(directory), vocab.KIND, vocab.KIND_DIRECTORY)

    def _coupling(self, task: Task, context: WorkerContext, out: _Collector) -> None:
        snapshot = context.latest_snapshot()
        modules = _module_map(snapshot)
        known_files = _known_files(snapshot)
        for path in task.scope.paths:
            context.checkpoint()
            analysis = self._registry.analyze(path, context.reader.read(path))
            source = vocab.directory_of(path)
            targets: dict[str, set[str]] = {}
            for imported in analysis.imports:
                resolved = _resolve_import(path, imported, modules, known_files)
                if resolved is None:
                    continue
                target = vocab.directory_of(resolved)
                if target != source:
                    targets.setdefault(target, set()).add(imported)
            for target, names in sorted(targets.items()):
                subject = edge_ref(path, target)
                out.add(subject, vocab.IMPORTS, tuple(sorted(names)))
                out.add(subject, vocab.SOURCE_COMPONENT, source)

    def _patterns(self, task: Task, context: WorkerContext, out: _Collector) -> None:
        for path in task.scope.paths:
            context.checkpoint()
            name = pattern_for(path)
            if name is None:
                continue
            subject = pattern_ref(name, path)
            out.add(subject, vocab.PATTERN, name)
            out.add(subject, vocab.COMPONENT, vocab.directory_of(path))

    def _behavior(self, task: Task, context: WorkerContext, out: _Collector) -> None:
        # Behavioral analysis needs a model-backed worker; the heuristic one only yields.
        context.checkpoint()

    def _critique(self, task: Task, context: WorkerContext, out: _Collector) -> None:
        coupling = build_coupling_graph(context.latest_snapshot())
        graph = coupling.graph
        in_cycle = {
            node for cycle in graph.simple_cycles(DEFAULT_MAX_CYCLE_LENGTH) for node in cycle
        }
        directories = sorted({vocab.directory_of(path) for path in task.scope.paths})
        for directory in directories:
            context.checkpoint()
            present = directory in graph
            subject = component_ref(directory)
            out.add(
                subject,
                vocab.FAN_IN,
                graph.in_degree(directory) if present else 0,
                confidence=Confidence.INFERRED,
            )
            out.add(
                subject,
                vocab.FAN_OUT,
                graph.out_degree(directory) if present else 0,
                confidence=Confidence.INFERRED,
            )
            out.add(subject, vocab.IN_CYCLE, directory in in_cycle, confidence=Confidence.INFERRED)


def _file_entities(view: KnowledgeGraphView) -> Iterable[Any]:
    for entity in view.entities_of_kind(EntityKind.COMPONENT):
        if entity.value(vocab.KIND) == vocab.KIND_FILE:
            yield entity


def _module_map(view: KnowledgeGraphView) -> dict[str, str]:
    """Dotted module name to file path, from recon findings."""
    modules: dict[str, str] = {}
    for entity in _file_entities(view):
        names: FindingValue = entity.value(vocab.MODULES, ())
        if not isinstance(names, tuple):
            continue
        for name in names:
            if isinstance(name, str):
                modules.setdefault(name, entity.ref.key)
    return modules


def _known_files(view: KnowledgeGraphView) -> frozenset[str]:
    return frozenset(entity.ref.key for entity in _file_entities(view))


def _resolve_import(
    path: str,
    imported: str,
    modules: Mapping[str, str],
    known_files: frozenset[str],
) -> str | None:
    """File that ``imported`` refers to from ``path``, or ``None`` for external imports."""
    if imported.startswith("."):
        base = posixpath.dirname(path)
        candidate = posixpath.normpath(posixpath.join(base, imported))
        if candidate.startswith(".."):
            return None
        options = [candidate]
        options.extend(candidate + suffix for suffix in _SCRIPT_SUFFIXES)
        options.extend(f"{candidate}/index{suffix}" for suffix in _SCRIPT_SUFFIXES)
        for option in options:
            if option in known_files:
                return option
        return None

    parts = imported.split(".")
    while parts:
        resolved = modules.get(".".join(parts))
        if resolved is not None:
            return resolved
        parts.pop()
    return None


__all__ = ["PATTERN_RULES", "HeuristicWorker", "pattern_for"]
