"""
repo-atlas — worker contract and execution harness

Purpose
- Define what a Worker may see (one Task's scope and budget, sealed snapshots
  of earlier phases, a cooperative cancellation token) and what it returns.
- Enforce the contract around every execution: deadlines and budget
  overruns become OVERFLOW, foreign provenance becomes ERROR, crashes become
  retryable failures, cancellation keeps partial findings.

Non-functional requirements
- Workers never touch shared mutable state; the harness never holds a lock.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Protocol

import structlog

from repo_atlas.control_plane.budgets import BudgetExceededError, BudgetMeter
from repo_atlas.domain.models import Budget, FailureReason, Finding, Phase, Scope, Task
from repo_atlas.knowledge_plane.scope import ScopeAccessError, ScopeEntry, ScopeProvider
from repo_atlas.knowledge_plane.store import KnowledgeGraphView
from repo_atlas.observability.metrics import (
    WORKER_BYTES_CONSUMED,
    WORKER_DURATION_SECONDS,
    MetricsRegistry,
)
from repo_atlas.synthesis_plane.synthesizer import PhaseAggregate
from repo_atlas.utils.concurrency import (
    CancellationRequested,
    CancellationToken,
    run_with_timeout,
)


class WorkerStatus(StrEnum):
    COMPLETE = "complete"
    OVERFLOW = "overflow"
    ERROR = "error"
    CANCELED = "canceled"


class WorkerError(Exception):
    """Raised by a worker to report a failure; ``retryable`` selects retry versus give-up."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class WorkerCancelled(CancellationRequested):
    """Raised at a checkpoint by a worker that wants its partial findings kept."""

    def __init__(self, findings: Sequence[Finding] = (), reason: str = "") -> None:
        super().__init__(reason)
        self.findings = tuple(findings)


@dataclass(frozen=True, slots=True)
class WorkerResult:
    """Outcome of one Task execution."""

    status: WorkerStatus
    findings: tuple[Finding, ...] = ()
    consumed: int = 0
    reason: FailureReason | None = None
    detail: str = ""

    @classmethod
    def complete(cls, findings: Sequence[Finding], *, consumed: int) -> WorkerResult:
        return cls(status=WorkerStatus.COMPLETE, findings=tuple(findings), consumed=consumed)

    @classmethod
    def overflow(cls, *, consumed: int, detail: str = "") -> WorkerResult:
        return cls(
            status=WorkerStatus.OVERFLOW,
            consumed=consumed,
            reason=FailureReason.OVERFLOW,
            detail=detail,
        )

    @classmethod
    def error(cls, reason: FailureReason, detail: str, *, consumed: int = 0) -> WorkerResult:
        return cls(status=WorkerStatus.ERROR, consumed=consumed, reason=reason, detail=detail)

    @classmethod
    def canceled(cls, findings: Sequence[Finding], *, consumed: int) -> WorkerResult:
        return cls(
            status=WorkerStatus.CANCELED,
            findings=tuple(findings),
            consumed=consumed,
            reason=FailureReason.CANCELED,
        )


class ScopeReader:
    """
    Budget-charging access to one Task's scope.

    Listing is free; every ``read`` charges the file size before any byte is
    returned and raises :class:`BudgetExceededError` instead of truncating.
    """

    def __init__(self, provider: ScopeProvider, scope: Scope, budget: Budget) -> None:
        self._provider = provider
        self._scope = scope
        self._meter = BudgetMeter(budget)
        self._entries: dict[str, ScopeEntry] | None = None

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def consumed(self) -> int:
        return self._meter.consumed

    @property
    def remaining(self) -> int:
        return self._meter.remaining

    def entries(self) -> tuple[ScopeEntry, ...]:
        return tuple(self._index().values())

    def size(self, path: str) -> int:
        return self._entry(path).size

    def read(self, path: str) -> bytes:
        entry = self._entry(path)
        self._meter.charge(entry.size)
        return self._provider.read(path)

    def _entry(self, path: str) -> ScopeEntry:
        if not self._scope.contains(path):
            raise ScopeAccessError(f"{path!r} is outside scope {self._scope.key!r}")
        return self._index()[path]

    def _index(self) -> dict[str, ScopeEntry]:
        if self._entries is None:
            self._entries = {entry.path: entry for entry in self._provider.list(self._scope)}
        return self._entries


@dataclass(frozen=True, slots=True)
class WorkerContext:
    """Everything a worker may touch while executing one Task."""

    task: Task
    reader: ScopeReader
    cancel_token: CancellationToken
    snapshots: Mapping[Phase, KnowledgeGraphView] = field(default_factory=dict)
    aggregates: Mapping[Phase, PhaseAggregate] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "snapshots", MappingProxyType(dict(self.snapshots)))
        object.__setattr__(self, "aggregates", MappingProxyType(dict(self.aggregates)))

    @property
    def budget(self) -> Budget:
        return self.task.budget

    def latest_snapshot(self) -> KnowledgeGraphView:
        """Snapshot of the most recently sealed phase, or an empty view."""
        # ``snapshots`` is keyed in the order the phases were sealed.
        views = tuple(self.snapshots.values())
        return views[-1] if views else KnowledgeGraphView()

    def checkpoint(self) -> None:
        self.cancel_token.checkpoint()


class Worker(Protocol):
    """Stateless executor for one Task at a time."""

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult: ...


async def run_worker(
    worker: Worker,
    task: Task,
    context: WorkerContext,
    *,
    metrics: MetricsRegistry | None = None,
    logger: Any | None = None,
) -> WorkerResult:
    """Execute ``worker`` on ``task`` and normalize every outcome into a :class:`WorkerResult`."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    reader = context.reader
    started = time.monotonic()

    try:
        raw = await run_with_timeout(
            worker.execute(task, context), task.deadline_seconds, context.cancel_token
        )
    except TimeoutError:
        # Work running in a thread outlives the await; its next checkpoint stops it.
        context.cancel_token.cancel("deadline exceeded")
        result = WorkerResult.overflow(
            consumed=reader.consumed, detail=f"deadline of {task.deadline_seconds}s exceeded"
        )
    except BudgetExceededError as exc:
        result = WorkerResult.overflow(consumed=exc.consumed, detail=str(exc))
    except CancellationRequested as exc:
        partial = exc.findings if isinstance(exc, WorkerCancelled) else ()
        result = WorkerResult.canceled(partial, consumed=reader.consumed)
    except asyncio.CancelledError:
        if not _token_aborted(context.cancel_token):
            raise
        result = WorkerResult.canceled((), consumed=reader.consumed)
    except WorkerError as exc:
        reason = FailureReason.TRANSIENT_FAILURE if exc.retryable else FailureReason.WORKER_ERROR
        result = WorkerResult.error(reason, str(exc), consumed=reader.consumed)
    except Exception as exc:
        log.exception("worker_crashed", task_id=task.id, error_type=type(exc).__name__)
        result = WorkerResult.error(
            FailureReason.TRANSIENT_FAILURE,
            f"{type(exc).__name__}: {exc}",
            consumed=reader.consumed,
        )
    else:
        result = _check_result(raw, task, reader, context.cancel_token)

    duration = time.monotonic() - started
    if metrics is not None:
        metrics.observe(WORKER_DURATION_SECONDS, duration, labels={"phase": task.phase.value})
        metrics.observe(WORKER_BYTES_CONSUMED, result.consumed, labels={"phase": task.phase.value})
    log.info(
        "worker_run_finished",
        task_id=task.id,
        status=result.status.value,
        reason=None if result.reason is None else result.reason.value,
        finding_count=len(result.findings),
        consumed=result.consumed,
        limit=task.budget.limit,
        duration_seconds=round(duration, 6),
    )
    return result


def _token_aborted(token: CancellationToken) -> bool:
    # Tells a token-driven abort apart from cancellation of the awaiting task itself.
    current = asyncio.current_task()
    return token.is_cancelled and (current is None or current.cancelling() == 0)


def _check_result(
    raw: object,
    task: Task,
    reader: ScopeReader,
    token: CancellationToken,
) -> WorkerResult:
    if not isinstance(raw, WorkerResult):
        return WorkerResult.error(
            FailureReason.WORKER_ERROR,
            f"worker returned {type(raw).__name__}, expected WorkerResult",
            consumed=reader.consumed,
        )

    consumed = max(raw.consumed, reader.consumed)
    if raw.status is WorkerStatus.OVERFLOW or consumed > task.budget.limit:
        return WorkerResult.overflow(
            consumed=consumed,
            detail=raw.detail or f"consumed {consumed} of {task.budget.limit} bytes",
        )

    foreign = sorted({finding.task_id for finding in raw.findings if finding.task_id != task.id})
    if foreign:
        return WorkerResult.error(
            FailureReason.WORKER_ERROR,
            f"findings carry provenance of other tasks: {', '.join(foreign)}",
            consumed=consumed,
        )

    if token.is_cancelled or raw.status is WorkerStatus.CANCELED:
        return WorkerResult.canceled(raw.findings, consumed=consumed)
    if raw.status is WorkerStatus.ERROR:
        return WorkerResult.error(
            raw.reason if raw.reason is not None else FailureReason.TRANSIENT_FAILURE,
            raw.detail,
            consumed=consumed,
        )
    return WorkerResult.complete(raw.findings, consumed=consumed)


__all__ = [
    "ScopeReader",
    "Worker",
    "WorkerCancelled",
    "WorkerContext",
    "WorkerError",
    "WorkerResult",
    "WorkerStatus",
    "run_worker",
]
