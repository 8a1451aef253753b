"""
repo-atlas — run coordinator

Purpose
- Wire Decomposer, Scheduler, Workers, Knowledge Store and Synthesizer into
  one analysis run over a scope.
- Plan each phase lazily once it opens, so planners can use the aggregate of
  the phase before it.
- Drive a fixed pool of at most ``concurrency_limit`` asyncio worker tasks and
  apply every outcome on the coordinator loop.

Non-functional requirements
- Scheduler and store mutations happen only on the coordinator loop.
- A run always returns: unresolved scopes are reported, never raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from repo_atlas.config.schema import OrchestrationSettings
from repo_atlas.control_plane.budgets import BudgetPolicy
from repo_atlas.control_plane.scheduler import Scheduler, SchedulerError, UnresolvedScope
from repo_atlas.domain.ids import TaskIdAllocator, generate_run_id
from repo_atlas.domain.models import Budget, Conflict, Phase, Scope, Task
from repo_atlas.knowledge_plane.scope import ScopeProvider
from repo_atlas.knowledge_plane.store import KnowledgeGraphView, KnowledgeStore
from repo_atlas.observability.logging import correlation_scope
from repo_atlas.observability.metrics import MetricsRegistry
from repo_atlas.planning.decomposer import Decomposer
from repo_atlas.synthesis_plane.synthesizer import PhaseAggregate, Synthesizer
from repo_atlas.utils.concurrency import CancellationToken
from repo_atlas.workers.base import (
    ScopeReader,
    Worker,
    WorkerContext,
    WorkerResult,
    WorkerStatus,
    run_worker,
)
from repo_atlas.workers.heuristic import HeuristicWorker


@dataclass(frozen=True, slots=True)
class RunResult:
    """Everything a run produced, usable even when some scopes stayed unresolved."""

    run_id: str
    graph: KnowledgeGraphView
    conflicts: tuple[Conflict, ...]
    phase_outputs: Mapping[Phase, PhaseAggregate]
    unresolved: tuple[UnresolvedScope, ...]
    task_counts: Mapping[str, int] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.unresolved

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "complete": self.complete,
            "graph": self.graph.to_dict(),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "phase_outputs": {
                phase.value: aggregate.to_dict() for phase, aggregate in self.phase_outputs.items()
            },
            "unresolved": [scope.to_dict() for scope in self.unresolved],
            "task_counts": dict(self.task_counts),
        }


class PhasePlanner(Protocol):
    """Turns a phase Task into the Tasks that will actually run (empty to run it as is)."""

    def plan(
        self,
        task: Task,
        *,
        previous: PhaseAggregate | None,
        view: KnowledgeGraphView,
    ) -> Sequence[Task]: ...


class WholeScopePlanner:
    """Default planner: one Task per phase over the whole scope, split up front if oversized."""

    def __init__(self, decomposer: Decomposer) -> None:
        self._decomposer = decomposer

    def plan(
        self,
        task: Task,
        *,
        previous: PhaseAggregate | None,
        view: KnowledgeGraphView,
    ) -> Sequence[Task]:
        return self._decomposer.fit(task)[1:]


class RunCoordinator:
    """Coordinate one or more analysis runs against a single scope provider and store."""

    def __init__(
        self,
        provider: ScopeProvider,
        *,
        settings: OrchestrationSettings | None = None,
        config: Mapping[str, object] | None = None,
        worker: Worker | None = None,
        store: KnowledgeStore | None = None,
        planner: PhasePlanner | None = None,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if settings is not None and config is not None:
            raise ValueError("pass either settings or config, not both")
        if config is not None:
            settings = OrchestrationSettings.from_config(config)
        self._settings = settings if settings is not None else OrchestrationSettings()
        self._provider = provider
        self._worker: Worker = worker if worker is not None else HeuristicWorker()
        self._metrics = metrics if metrics is not None else MetricsRegistry()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._store = store if store is not None else KnowledgeStore(metrics=self._metrics)
        self._allocator = TaskIdAllocator()
        for task_id in self._store.task_ids():
            self._allocator.observe(task_id)
        self._decomposer = Decomposer(provider, allocator=self._allocator)
        self._planner = planner if planner is not None else WholeScopePlanner(self._decomposer)
        self._synthesizer = Synthesizer(max_cycle_length=self._settings.max_cycle_length)
        self._scheduler: Scheduler | None = None
        self._tokens: dict[str, CancellationToken] = {}

    @property
    def settings(self) -> OrchestrationSettings:
        return self._settings

    @property
    def store(self) -> KnowledgeStore:
        return self._store

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    @property
    def scheduler(self) -> Scheduler | None:
        """Scheduler of the current (or most recent) run."""
        return self._scheduler

    def cancel(self, task_id: str) -> tuple[str, ...]:
        """Cancel ``task_id`` and its descendants; trips tokens of running ones."""
        if self._scheduler is None:
            raise SchedulerError("no run in progress")
        running = self._scheduler.cancel(task_id)
        for running_id in running:
            token = self._tokens.get(running_id)
            if token is not None:
                token.cancel(f"cancel requested for {task_id}")
        return running

    def plan_root(self, root_scope: Scope | None = None, *, rescan_of: str | None = None) -> Task:
        """Create the root Task of a run without starting it."""
        settings = self._settings
        scope = root_scope if root_scope is not None else self._provider.root_scope()
        return Task(
            id=self._allocator.allocate(),
            scope=scope,
            phase=settings.phase_order[0],
            budget=Budget(limit=settings.limit_bytes),
            deadline_seconds=settings.deadline_seconds,
            rescan_of=rescan_of,
        )

    async def run(
        self,
        root_scope: Scope | None = None,
        *,
        rescan_of: str | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """
        Analyze ``root_scope`` (the provider's whole tree by default) through every phase.

        ``rescan_of`` names the root Task of an earlier run over the same
        scope; findings of this run then supersede that run's findings
        instead of conflicting with them.
        """
        settings = self._settings
        run_id = run_id if run_id is not None else generate_run_id()
        scheduler = Scheduler(
            store=self._store,
            policy=BudgetPolicy(
                retry_limit=settings.retry_limit, split_factor=settings.split_factor
            ),
            decomposer=self._decomposer,
            concurrency_limit=settings.concurrency_limit,
            phase_order=settings.phase_order,
            metrics=self._metrics,
        )
        self._scheduler = scheduler

        with correlation_scope(run_id=run_id):
            root = self.plan_root(root_scope, rescan_of=rescan_of)
            scheduler.enqueue_many(self._decomposer.plan_phases(root, settings.phase_order))
            self._logger.info(
                "run_started",
                run_id=run_id,
                root_task_id=root.id,
                scope_key=root.scope.key,
                file_count=root.scope.file_count,
                concurrency_limit=settings.concurrency_limit,
                rescan_of=rescan_of,
            )
            aggregates = await self._drive(scheduler)

        result = RunResult(
            run_id=run_id,
            graph=self._store.snapshot(),
            conflicts=self._store.conflicts(),
            phase_outputs=aggregates,
            unresolved=scheduler.unresolved(),
            task_counts=scheduler.status_counts(),
        )
        self._logger.info(
            "run_finished",
            run_id=run_id,
            complete=result.complete,
            unresolved_count=len(result.unresolved),
            conflict_count=len(result.conflicts),
            entity_count=len(result.graph),
        )
        return result

    async def _drive(self, scheduler: Scheduler) -> dict[Phase, PhaseAggregate]:
        aggregates: dict[Phase, PhaseAggregate] = {}
        planned: set[Phase] = set()
        in_flight: dict[asyncio.Task[WorkerResult], Task] = {}

        while True:
            self._seal_settled(scheduler, aggregates)
            phase = scheduler.open_phase()
            if phase is not None and phase not in planned:
                planned.add(phase)
                self._plan_phase(scheduler, phase, aggregates)
                continue

            while (task := scheduler.next_ready()) is not None:
                in_flight[asyncio.create_task(self._execute(task, aggregates))] = task

            if not in_flight:
                if scheduler.is_finished():
                    return aggregates
                raise SchedulerError("run stalled: no task is running or ready")

            done, _ = await asyncio.wait(set(in_flight), return_when=asyncio.FIRST_COMPLETED)
            for future in sorted(done, key=lambda item: in_flight[item].id):
                task = in_flight.pop(future)
                self._apply(scheduler, task, future.result())

    def _plan_phase(
        self,
        scheduler: Scheduler,
        phase: Phase,
        aggregates: Mapping[Phase, PhaseAggregate],
    ) -> None:
        order = scheduler.phase_order
        index = order.index(phase)
        previous = aggregates.get(order[index - 1]) if index > 0 else None
        view = self._store.snapshot()
        for task in scheduler.pending_in_phase(phase):
            children = self._planner.plan(task, previous=previous, view=view)
            if children:
                scheduler.expand(task.id, children)

    def _seal_settled(
        self,
        scheduler: Scheduler,
        aggregates: dict[Phase, PhaseAggregate],
    ) -> None:
        for phase in scheduler.phase_order:
            if phase in aggregates:
                continue
            if not scheduler.phase_settled(phase):
                return
            view = self._store.seal_phase(phase)
            aggregate = self._synthesizer.aggregate(phase, view)
            if aggregate.conflicts:
                self._store.record_conflicts(aggregate.conflicts)
            aggregates[phase] = aggregate
            self._logger.info(
                "run_phase_sealed",
                phase=phase.value,
                entity_count=len(view),
                conflict_count=len(aggregate.conflicts),
            )

    async def _execute(
        self,
        task: Task,
        aggregates: Mapping[Phase, PhaseAggregate],
    ) -> WorkerResult:
        token = CancellationToken()
        self._tokens[task.id] = token
        context = WorkerContext(
            task=task,
            reader=ScopeReader(self._provider, task.scope, task.budget),
            cancel_token=token,
            snapshots={phase: self._store.snapshot(phase) for phase in aggregates},
            aggregates=aggregates,
        )
        try:
            with correlation_scope(task_id=task.id):
                return await run_worker(self._worker, task, context, metrics=self._metrics)
        finally:
            self._tokens.pop(task.id, None)

    def _apply(self, scheduler: Scheduler, task: Task, result: WorkerResult) -> None:
        if result.status in {WorkerStatus.COMPLETE, WorkerStatus.CANCELED}:
            scheduler.complete(
                task.id, result.findings, canceled=result.status is WorkerStatus.CANCELED
            )
        elif result.status is WorkerStatus.OVERFLOW:
            scheduler.overflow(task.id, result.consumed)
        elif result.reason is not None:
            scheduler.fail(task.id, result.reason, result.detail)
        else:
            raise SchedulerError(f"worker error for {task.id} carries no failure reason")


def run_analysis(
    provider: ScopeProvider,
    *,
    settings: OrchestrationSettings | None = None,
    store: KnowledgeStore | None = None,
    rescan_of: str | None = None,
) -> RunResult:
    """Synchronous convenience wrapper around :meth:`RunCoordinator.run`."""
    coordinator = RunCoordinator(provider, settings=settings, store=store)
    return asyncio.run(coordinator.run(rescan_of=rescan_of))


__all__ = [
    "PhasePlanner",
    "RunCoordinator",
    "RunResult",
    "WholeScopePlanner",
    "run_analysis",
]
