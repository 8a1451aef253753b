"""
Budget-aware scope decomposition.

The decomposer splits a Task along directory boundaries into children whose
scopes partition the parent's scope exactly. Sizes come from the scope
provider and are measured in bytes, the same unit as ``Budget``. One file per
Task is the finest grain.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

import structlog

from repo_atlas.domain.ids import TaskIdAllocator
from repo_atlas.domain.models import Budget, Phase, Scope, Task, TaskStatus

if TYPE_CHECKING:
    from repo_atlas.knowledge_plane.scope import ScopeProvider


class UnsplittableTaskError(ValueError):
    """Raised when a Task is already at the finest grain and cannot be split."""

    def __init__(self, task_id: str, scope_key: str) -> None:
        super().__init__(f"task {task_id} is already a single file ({scope_key})")
        self.task_id = task_id
        self.scope_key = scope_key


class Decomposer:
    """Split oversized Tasks into smaller Tasks covering disjoint sub-scopes."""

    def __init__(
        self,
        provider: ScopeProvider,
        *,
        allocator: TaskIdAllocator,
        logger: Any | None = None,
    ) -> None:
        self._provider = provider
        self._allocator = allocator
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def estimate(self, scope: Scope) -> int:
        """Estimated resource need of ``scope`` in bytes."""
        return sum(entry.size for entry in self._provider.list(scope))

    def split(self, task: Task, budget_hint: Budget | None = None) -> tuple[Task, ...]:
        """
        Split ``task`` into children ordered by scope key.

        ``budget_hint`` is the sizing target for the children; without it the
        parent's own limit is used. Children always get the parent's full limit
        as their budget. The result always has at least two children.
        """
        if task.scope.file_count <= 1:
            raise UnsplittableTaskError(task.id, task.scope.key)

        target = budget_hint.limit if budget_hint is not None else task.budget.limit
        sizes = {entry.path: entry.size for entry in self._provider.list(task.scope)}
        scopes = sorted(
            self._partition(task.scope, sizes, target, force=True),
            key=lambda scope: (scope.key, scope.paths),
        )

        children = tuple(
            Task(
                id=self._allocator.allocate(),
                scope=scope,
                phase=task.phase,
                budget=task.budget.fresh(),
                depends_on=task.depends_on,
                parent=task.id,
                deadline_seconds=task.deadline_seconds,
            )
            for scope in scopes
        )
        self._logger.info(
            "decomposer_task_split",
            task_id=task.id,
            phase=task.phase.value,
            child_count=len(children),
            target_bytes=target,
            file_count=task.scope.file_count,
        )
        return children

    def fit(self, task: Task) -> tuple[Task, ...]:
        """
        Proactively split ``task`` when its estimated size exceeds its budget.

        Returns ``(task,)`` when it already fits or cannot be split, otherwise
        the parent marked ``SPLIT`` followed by its children.
        """
        if task.scope.file_count <= 1 or self.estimate(task.scope) <= task.budget.limit:
            return (task,)
        children = self.split(task)
        parent = replace(
            task, status=TaskStatus.SPLIT, children=tuple(child.id for child in children)
        )
        return (parent, *children)

    def plan_phases(self, root: Task, phase_order: Sequence[Phase]) -> tuple[Task, ...]:
        """
        Plan one child Task per phase over the root scope.

        Returns the root marked ``SPLIT`` followed by the phase Tasks in
        ``phase_order``. Ordering between phases is the scheduler's phase
        barrier, not explicit dependencies.
        """
        if len(set(phase_order)) != len(phase_order):
            raise ValueError("phase_order must not contain duplicates")
        phase_tasks = tuple(
            Task(
                id=self._allocator.allocate(),
                scope=root.scope,
                phase=phase,
                budget=root.budget.fresh(),
                parent=root.id,
                deadline_seconds=root.deadline_seconds,
            )
            for phase in phase_order
        )
        planned_root = replace(
            root, status=TaskStatus.SPLIT, children=tuple(task.id for task in phase_tasks)
        )
        return (planned_root, *phase_tasks)

    def _partition(
        self,
        scope: Scope,
        sizes: dict[str, int],
        target: int,
        *,
        force: bool,
    ) -> list[Scope]:
        if scope.file_count <= 1:
            return [Scope.of_file(path) for path in scope.paths]

        prefix = f"{scope.base}/" if scope.base else ""
        groups: dict[str, list[str]] = {}
        loose: list[str] = []
        for path in scope.paths:
            relative = PurePosixPath(path[len(prefix) :])
            if len(relative.parts) > 1:
                groups.setdefault(relative.parts[0], []).append(path)
            else:
                loose.append(path)

        parts: list[Scope] = []
        for directory in sorted(groups):
            sub_scope = Scope(paths=tuple(groups[directory]), base=f"{prefix}{directory}")
            if _size_of(sub_scope, sizes) > target:
                parts.extend(self._partition(sub_scope, sizes, target, force=False))
            else:
                parts.append(sub_scope)
        parts.extend(_pack_files(loose, scope.base, sizes, target))

        if force and len(parts) == 1:
            # Every split must make progress: descend or fall back to one file per Task.
            only = parts[0]
            if only.base != scope.base:
                return self._partition(only, sizes, target, force=True)
            return [Scope.of_file(path) for path in only.paths]
        return parts


def _size_of(scope: Scope, sizes: dict[str, int]) -> int:
    return sum(sizes[path] for path in scope.paths)


def _pack_files(paths: list[str], base: str, sizes: dict[str, int], target: int) -> list[Scope]:
    """Greedily pack sibling files into chunks that stay under ``target`` bytes."""
    chunks: list[list[str]] = []
    current: list[str] = []
    current_size = 0
    for path in paths:
        size = sizes[path]
        if current and current_size + size > target:
            chunks.append(current)
            current, current_size = [], 0
        current.append(path)
        current_size += size
    if current:
        chunks.append(current)

    return [
        Scope.of_file(chunk[0]) if len(chunk) == 1 else Scope(paths=tuple(chunk), base=base)
        for chunk in chunks
    ]


__all__ = ["Decomposer", "UnsplittableTaskError"]
