"""Deterministic scheduler for dependency- and phase-ordered Task dispatch."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import structlog

from repo_atlas.control_plane.budgets import BudgetAction, BudgetPolicy
from repo_atlas.domain.models import (
    SPLIT_STATUSES,
    TERMINAL_STATUSES,
    FailureReason,
    Phase,
    Task,
    TaskFailure,
    TaskStatus,
)
from repo_atlas.knowledge_plane.store import MergeError
from repo_atlas.observability.metrics import (
    TASKS_CANCELED,
    TASKS_COMPLETED,
    TASKS_DISPATCHED,
    TASKS_FAILED,
    TASKS_OVERFLOWED,
    TASKS_RETRIED,
    TASKS_RUNNING,
    MetricsRegistry,
)
from repo_atlas.planning.decomposer import UnsplittableTaskError
from repo_atlas.planning.task_graph import TaskGraph

if TYPE_CHECKING:
    from repo_atlas.domain.models import Conflict, Finding
    from repo_atlas.knowledge_plane.store import KnowledgeStore
    from repo_atlas.planning.decomposer import Decomposer

_DISPATCHABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.READY})
_FAILED_DEPENDENCY_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELED})
_STARTED_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.DONE})


class SchedulerError(RuntimeError):
    """Raised for unknown task ids, illegal transitions and dependency cycles."""


@dataclass(frozen=True, slots=True)
class UnresolvedScope:
    """A FAILED Task reported back to the caller with its reason."""

    task_id: str
    phase: Phase
    scope_key: str
    reason: FailureReason
    detail: str

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "phase": self.phase.value,
            "scope": self.scope_key,
            "reason": self.reason.value,
            "detail": self.detail,
        }


class Scheduler:
    """
    Own the Task DAG and decide what runs next.

    Readiness rules:
    - every ``depends_on`` Task is DONE (a split Task is DONE once all of its
      children are)
    - every Task of an earlier phase in ``phase_order`` is terminal
    - at most ``concurrency_limit`` Tasks are RUNNING; ties break by ascending id
    """

    def __init__(
        self,
        *,
        store: KnowledgeStore,
        policy: BudgetPolicy,
        decomposer: Decomposer | None = None,
        concurrency_limit: int = 1,
        phase_order: Sequence[Phase] = tuple(Phase),
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if not phase_order or len(set(phase_order)) != len(phase_order):
            raise ValueError("phase_order must be non-empty and free of duplicates")
        self._store = store
        self._policy = policy
        self._decomposer = decomposer
        self._concurrency_limit = concurrency_limit
        self._phase_order = tuple(phase_order)
        self._phase_index = {phase: index for index, phase in enumerate(self._phase_order)}
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._graph = TaskGraph()
        self._cancel_requested: set[str] = set()
        self._settled: dict[str, TaskStatus] = {}

    @property
    def concurrency_limit(self) -> int:
        return self._concurrency_limit

    @property
    def phase_order(self) -> tuple[Phase, ...]:
        return self._phase_order

    # ------------------------------------------------------------------
    # Enqueue and dispatch
    # ------------------------------------------------------------------

    def enqueue(self, task: Task) -> Task:
        """Add a PENDING (or already split) Task to the DAG."""
        with self._lock:
            return self._enqueue_locked(task)

    def enqueue_many(self, tasks: Iterable[Task]) -> tuple[Task, ...]:
        with self._lock:
            return tuple(self._enqueue_locked(task) for task in tasks)

    def next_ready(self) -> Task | None:
        """Mark the lowest-id READY Task as RUNNING and return it, or ``None``."""
        with self._lock:
            if len(self.running()) >= self._concurrency_limit:
                return None
            ready = self._promote()
            if not ready:
                return None
            task = replace(self._tasks[ready[0]], status=TaskStatus.RUNNING)
            self._tasks[task.id] = task
            running_count = len(self.running())

        if self._metrics is not None:
            self._metrics.inc(TASKS_DISPATCHED, labels={"phase": task.phase.value})
            self._metrics.set_gauge(TASKS_RUNNING, running_count)
        self._logger.info(
            "scheduler_task_dispatched",
            task_id=task.id,
            phase=task.phase.value,
            attempt=task.attempt,
            scope_key=task.scope.key,
            file_count=task.scope.file_count,
        )
        return task

    def expand(self, task_id: str, children: Sequence[Task]) -> tuple[Task, ...]:
        """Replace a not-yet-started Task by ``children`` (the Task becomes SPLIT)."""
        with self._lock:
            task = self._require(task_id)
            if task.status not in _DISPATCHABLE_STATUSES:
                raise SchedulerError(f"cannot expand {task.status.value} task {task_id}")
            if not children:
                raise SchedulerError(f"expanding {task_id} requires at least one child")
            self._check_children(task, children)
            self._tasks[task_id] = replace(
                task,
                status=TaskStatus.SPLIT,
                children=tuple(child.id for child in children),
            )
            enqueued = tuple(self._enqueue_locked(child) for child in children)
        self._logger.info("scheduler_task_expanded", task_id=task_id, child_count=len(enqueued))
        return enqueued

    # ------------------------------------------------------------------
    # Worker outcomes
    # ------------------------------------------------------------------

    def complete(
        self, task_id: str, findings: Iterable[Finding], *, canceled: bool = False
    ) -> frozenset[Conflict]:
        """
        Merge a RUNNING Task's findings; it becomes DONE.

        It becomes CANCELED instead when a cancel was requested or the worker
        reported ``canceled``; its findings are then flagged ``from_canceled_task``.
        """
        batch = tuple(findings)
        with self._lock:
            task = self._require_running(task_id)
            try:
                conflicts = self._store.merge(batch)
            except MergeError as exc:
                self._logger.error("scheduler_merge_rejected", task_id=task_id, error=str(exc))
                self._finish_failed(task, FailureReason.WORKER_ERROR, str(exc))
                return frozenset()

            if canceled or task_id in self._cancel_requested:
                self._store.mark_canceled(task_id)
                self._finish_canceled(task)
                return conflicts

            self._set_terminal(task, TaskStatus.DONE, failure=None)
        if self._metrics is not None:
            self._metrics.inc(TASKS_COMPLETED, labels={"phase": task.phase.value})
        self._logger.info(
            "scheduler_task_completed",
            task_id=task_id,
            finding_count=len(batch),
            conflict_count=len(conflicts),
        )
        return conflicts

    def fail(self, task_id: str, reason: FailureReason, detail: str = "") -> Task:
        """Record a failed attempt; transient failures are retried up to ``retry_limit``."""
        if reason is FailureReason.OVERFLOW:
            self.overflow(task_id)
            return self.get(task_id)

        with self._lock:
            task = self._require(task_id)
            if task.status not in _DISPATCHABLE_STATUSES | {TaskStatus.RUNNING}:
                raise SchedulerError(f"cannot fail {task.status.value} task {task_id}")
            if task_id in self._cancel_requested:
                self._finish_canceled(task)
                return self._tasks[task_id]

            decision = self._policy.decide(task, reason)
            if decision.action is BudgetAction.RETRY:
                retried = replace(
                    task,
                    status=TaskStatus.PENDING,
                    attempt=task.attempt + 1,
                    failure=TaskFailure(reason=reason, detail=detail),
                )
                self._tasks[task_id] = retried
                if self._metrics is not None:
                    self._metrics.inc(TASKS_RETRIED)
                self._logger.info(
                    "scheduler_task_retried", task_id=task_id, next_attempt=retried.attempt
                )
                return retried

            self._finish_failed(task, decision.failure_reason, detail)
            return self._tasks[task_id]

    def overflow(self, task_id: str, consumed: int | None = None) -> tuple[Task, ...]:
        """
        Handle a budget or deadline overflow.

        The Task becomes OVERFLOWED and its scope is re-split with a tightened
        budget hint; the new children are returned. A finest-grain Task is
        FAILED with ``UNSPLITTABLE_OVERFLOW`` instead and ``()`` is returned.
        """
        with self._lock:
            task = self._require_running(task_id)
            if task_id in self._cancel_requested:
                self._finish_canceled(task)
                return ()

            decision = self._policy.decide(task, FailureReason.OVERFLOW, consumed=consumed)
            if self._metrics is not None:
                self._metrics.inc(TASKS_OVERFLOWED, labels={"phase": task.phase.value})
            if decision.action is not BudgetAction.SPLIT or self._decomposer is None:
                self._finish_failed(
                    task,
                    FailureReason.UNSPLITTABLE_OVERFLOW,
                    f"consumed {consumed} of {task.budget.limit} bytes",
                )
                return ()

            try:
                children = self._decomposer.split(task, self._policy.split_hint(task))
            except UnsplittableTaskError as exc:
                self._finish_failed(task, FailureReason.UNSPLITTABLE_OVERFLOW, str(exc))
                return ()

            self._tasks[task_id] = replace(
                task,
                status=TaskStatus.OVERFLOWED,
                children=tuple(child.id for child in children),
                failure=TaskFailure(
                    reason=FailureReason.OVERFLOW,
                    detail=f"consumed {consumed} of {task.budget.limit} bytes",
                ),
            )
            enqueued = tuple(self._enqueue_locked(child) for child in children)
        self._logger.info(
            "scheduler_task_overflowed",
            task_id=task_id,
            consumed=consumed,
            limit=task.budget.limit,
            child_count=len(enqueued),
        )
        return enqueued

    def cancel(self, task_id: str) -> tuple[str, ...]:
        """
        Cancel ``task_id`` and its descendants.

        Un-started Tasks become CANCELED immediately; RUNNING ones are marked
        for cooperative cancellation and their ids are returned so the caller
        can trip their tokens. DONE Tasks are left untouched.
        """
        running: list[str] = []
        canceled: list[str] = []
        with self._lock:
            self._require(task_id)
            pending = [task_id]
            while pending:
                current = self._tasks[pending.pop()]
                pending.extend(current.children)
                if current.status is TaskStatus.RUNNING:
                    self._cancel_requested.add(current.id)
                    running.append(current.id)
                elif current.status in _DISPATCHABLE_STATUSES:
                    self._set_terminal(
                        current,
                        TaskStatus.CANCELED,
                        failure=TaskFailure(reason=FailureReason.CANCELED, detail="canceled"),
                    )
                    canceled.append(current.id)
                elif current.status in SPLIT_STATUSES and current.id not in self._settled:
                    # Settles as CANCELED once every child is terminal.
                    self._cancel_requested.add(current.id)

        if self._metrics is not None and canceled:
            self._metrics.inc(TASKS_CANCELED, len(canceled))
        self._logger.info(
            "scheduler_task_canceled",
            task_id=task_id,
            canceled_tasks=sorted(canceled),
            running_tasks=sorted(running),
        )
        return tuple(sorted(running))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> Task:
        with self._lock:
            return self._require(task_id)

    def status_of(self, task_id: str) -> TaskStatus:
        """Effective status; a settled split Task reports its outcome instead of SPLIT."""
        with self._lock:
            self._require(task_id)
            return self._status_of(task_id)

    def tasks(self) -> tuple[Task, ...]:
        with self._lock:
            return tuple(self._tasks[task_id] for task_id in sorted(self._tasks))

    def running(self) -> tuple[Task, ...]:
        with self._lock:
            return tuple(
                self._tasks[task_id]
                for task_id in sorted(self._tasks)
                if self._tasks[task_id].status is TaskStatus.RUNNING
            )

    def is_cancel_requested(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._cancel_requested

    def is_finished(self) -> bool:
        with self._lock:
            return all(self._status_of(task_id) in TERMINAL_STATUSES for task_id in self._tasks)

    def phase_settled(self, phase: Phase) -> bool:
        """True once every executable Task of ``phase`` is terminal."""
        with self._lock:
            return all(
                task.is_terminal
                for task in self._tasks.values()
                if task.phase is phase and task.status not in SPLIT_STATUSES
            )

    def open_phase(self) -> Phase | None:
        """The earliest phase in ``phase_order`` that is not settled yet."""
        with self._lock:
            for phase in self._phase_order:
                if not self.phase_settled(phase):
                    return phase
            return None

    def pending_in_phase(self, phase: Phase) -> tuple[Task, ...]:
        with self._lock:
            return tuple(
                task
                for task in self.tasks()
                if task.phase is phase and task.status in _DISPATCHABLE_STATUSES
            )

    def unresolved(self) -> tuple[UnresolvedScope, ...]:
        """FAILED Tasks that carry a failure reason, in id order."""
        with self._lock:
            return tuple(
                UnresolvedScope(
                    task_id=task.id,
                    phase=task.phase,
                    scope_key=task.scope.key,
                    reason=task.failure.reason,
                    detail=task.failure.detail,
                )
                for task in self.tasks()
                if task.status is TaskStatus.FAILED and task.failure is not None
            )

    def status_counts(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in TaskStatus}
            for task in self._tasks.values():
                counts[task.status.value] += 1
            return counts

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------

    def _enqueue_locked(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise SchedulerError(f"duplicate task id {task.id}")
        if task.phase not in self._phase_index:
            raise SchedulerError(f"phase {task.phase.value!r} is not part of phase_order")
        if task.status not in _DISPATCHABLE_STATUSES | SPLIT_STATUSES:
            raise SchedulerError(f"cannot enqueue {task.status.value} task {task.id}")
        if task.parent is not None and task.parent not in self._tasks:
            raise SchedulerError(f"unknown parent {task.parent} for task {task.id}")
        for dependency in sorted(task.depends_on):
            if dependency not in self._tasks:
                raise SchedulerError(f"unknown dependency {dependency} for task {task.id}")
            if self._graph.would_create_cycle(dependency, task.id):
                raise SchedulerError(f"dependency {dependency} -> {task.id} closes a cycle")
        if task.status in _DISPATCHABLE_STATUSES and self._phase_closed(task.phase):
            raise SchedulerError(
                f"cannot enqueue {task.id}: a later phase than {task.phase.value} already started"
            )

        stored = task
        if task.status is TaskStatus.READY:
            stored = replace(task, status=TaskStatus.PENDING)
        self._tasks[stored.id] = stored
        self._graph.add_node(stored.id)
        for dependency in stored.depends_on:
            self._graph.add_edge(dependency, stored.id)
        self._store.register_task(stored)

        failed_dependencies = sorted(
            dependency
            for dependency in stored.depends_on
            if self._status_of(dependency) in _FAILED_DEPENDENCY_STATUSES
        )
        if failed_dependencies and stored.status is TaskStatus.PENDING:
            self._finish_failed(
                stored,
                FailureReason.DEPENDENCY_FAILED,
                f"dependencies ended unsuccessfully: {', '.join(failed_dependencies)}",
            )
        self._logger.debug(
            "scheduler_task_enqueued",
            task_id=stored.id,
            phase=stored.phase.value,
            parent_id=stored.parent,
            scope_key=stored.scope.key,
        )
        return self._tasks[stored.id]

    def _phase_closed(self, phase: Phase) -> bool:
        index = self._phase_index[phase]
        return any(
            self._phase_index[task.phase] > index
            and task.status in _STARTED_STATUSES
            for task in self._tasks.values()
        )

    def _promote(self) -> list[str]:
        """Flip eligible PENDING Tasks to READY; return READY ids in ascending order."""
        open_index = len(self._phase_order)
        for index, phase in enumerate(self._phase_order):
            if not self.phase_settled(phase):
                open_index = index
                break

        ready: list[str] = []
        for task_id in sorted(self._tasks):
            task = self._tasks[task_id]
            if task.status not in _DISPATCHABLE_STATUSES:
                continue
            if self._phase_index[task.phase] > open_index:
                continue
            if not all(self._status_of(dep) is TaskStatus.DONE for dep in task.depends_on):
                continue
            if task.status is TaskStatus.PENDING:
                self._tasks[task_id] = replace(task, status=TaskStatus.READY)
            ready.append(task_id)
        return ready

    def _check_children(self, parent: Task, children: Sequence[Task]) -> None:
        for child in children:
            if child.parent != parent.id:
                raise SchedulerError(f"child {child.id} does not name {parent.id} as parent")
            if child.phase is not parent.phase:
                raise SchedulerError(f"child {child.id} changes phase of {parent.id}")

    def _finish_failed(self, task: Task, reason: FailureReason, detail: str) -> None:
        self._set_terminal(
            task, TaskStatus.FAILED, failure=TaskFailure(reason=reason, detail=detail)
        )
        if self._metrics is not None:
            self._metrics.inc(TASKS_FAILED, labels={"reason": reason.value})
        self._logger.warning(
            "scheduler_task_failed",
            task_id=task.id,
            reason=reason.value,
            detail=detail,
            scope_key=task.scope.key,
        )

    def _finish_canceled(self, task: Task) -> None:
        self._set_terminal(
            task,
            TaskStatus.CANCELED,
            failure=TaskFailure(reason=FailureReason.CANCELED, detail="canceled while running"),
        )
        if self._metrics is not None:
            self._metrics.inc(TASKS_CANCELED)

    def _set_terminal(
        self, task: Task, status: TaskStatus, *, failure: TaskFailure | None
    ) -> None:
        current = self._tasks[task.id]
        self._tasks[task.id] = replace(current, status=status, failure=failure)
        self._after_terminal(current.id, status, current.parent)

    def _after_terminal(self, task_id: str, status: TaskStatus, parent_id: str | None) -> None:
        self._cancel_requested.discard(task_id)
        if status in _FAILED_DEPENDENCY_STATUSES:
            self._propagate_dependency_failure(task_id)
        if parent_id is not None:
            self._settle_parent(parent_id)

    def _settle_parent(self, parent_id: str) -> None:
        # Split Tasks keep their SPLIT/OVERFLOWED record; the outcome is tracked beside it.
        parent = self._tasks[parent_id]
        if parent.status not in SPLIT_STATUSES or parent_id in self._settled:
            return
        statuses = [self._status_of(child_id) for child_id in parent.children]
        if not all(status in TERMINAL_STATUSES for status in statuses):
            return

        if parent_id in self._cancel_requested:
            settled = TaskStatus.CANCELED
        elif all(status is TaskStatus.DONE for status in statuses):
            settled = TaskStatus.DONE
        elif any(status is TaskStatus.FAILED for status in statuses):
            settled = TaskStatus.FAILED
        else:
            settled = TaskStatus.CANCELED
        self._settled[parent_id] = settled
        self._logger.debug("scheduler_split_settled", task_id=parent_id, status=settled.value)
        self._after_terminal(parent_id, settled, parent.parent)

    def _status_of(self, task_id: str) -> TaskStatus:
        return self._settled.get(task_id, self._tasks[task_id].status)

    def _propagate_dependency_failure(self, task_id: str) -> None:
        # Split children copy their parent's depends_on, so they are direct dependents too.
        for dependent_id in self._graph.get_dependents(task_id):
            dependent = self._tasks[dependent_id]
            if dependent.status in _DISPATCHABLE_STATUSES:
                self._finish_failed(
                    dependent,
                    FailureReason.DEPENDENCY_FAILED,
                    f"dependency {task_id} ended {self._status_of(task_id).value}",
                )

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise SchedulerError(f"unknown task id {task_id}")
        return task

    def _require_running(self, task_id: str) -> Task:
        task = self._require(task_id)
        if task.status is not TaskStatus.RUNNING:
            raise SchedulerError(f"task {task_id} is {task.status.value}, expected running")
        return task


__all__ = ["Scheduler", "SchedulerError", "UnresolvedScope"]
