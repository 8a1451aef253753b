"""
Budget metering and deterministic control-plane decisions.

This module enforces the per-task budget envelope and decides what happens to a
task after an unsuccessful attempt:
- per-task metering of bytes read (``BudgetMeter``), raising instead of truncating
- deterministic next-action decisions (``retry``, ``split``, ``fail``)

It integrates with:
- ``Scheduler`` which applies the decisions
- ``structlog`` for machine-parseable decision logs
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from repo_atlas.domain.models import Budget, FailureReason

if TYPE_CHECKING:
    from repo_atlas.domain.models import Task


class BudgetExceededError(Exception):
    """Raised when a charge would push a task past its budget limit."""

    def __init__(self, *, limit: int, consumed: int) -> None:
        super().__init__(f"budget exceeded: consumed {consumed} of {limit} bytes")
        self.limit = limit
        self.consumed = consumed


class BudgetAction(StrEnum):
    """Deterministic control action for a task after an unsuccessful attempt."""

    RETRY = "retry"
    SPLIT = "split"
    FAIL = "fail"


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    """Deterministic decision for a task that did not complete."""

    action: BudgetAction
    reason_codes: tuple[str, ...]
    task_id: str
    attempt: int
    failure_reason: FailureReason
    consumed: int | None
    limit: int

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason_codes": list(self.reason_codes),
            "task_id": self.task_id,
            "attempt": self.attempt,
            "failure_reason": self.failure_reason.value,
            "consumed": self.consumed,
            "limit": self.limit,
        }


class BudgetMeter:
    """Charge bytes against one task's budget; never lets consumption pass the limit silently."""

    __slots__ = ("_budget",)

    def __init__(self, budget: Budget) -> None:
        self._budget = budget.fresh()

    @property
    def budget(self) -> Budget:
        return self._budget

    @property
    def consumed(self) -> int:
        return self._budget.consumed

    @property
    def remaining(self) -> int:
        return self._budget.remaining

    def charge(self, amount: int) -> Budget:
        """Charge ``amount`` bytes or raise :class:`BudgetExceededError`.

        An over-limit charge is still recorded so callers can report how far
        over the limit the attempt went.
        """
        self._budget = self._budget.charge(amount)
        if self._budget.overflowed:
            raise BudgetExceededError(limit=self._budget.limit, consumed=self._budget.consumed)
        return self._budget


class BudgetPolicy:
    """
    Derive deterministic next actions for tasks that did not complete.

    Action semantics:
    - ``retry``: re-enqueue the same scope with a fresh budget (transient failures only)
    - ``split``: hand the scope to the decomposer with a tightened budget hint
    - ``fail``: record the failure as unresolved
    """

    def __init__(
        self,
        *,
        retry_limit: int,
        split_factor: float,
        logger: Any | None = None,
    ) -> None:
        if retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        if not 0.0 < split_factor < 1.0:
            raise ValueError("split_factor must be between 0 and 1 (exclusive)")
        self._retry_limit = retry_limit
        self._split_factor = split_factor
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def retry_limit(self) -> int:
        return self._retry_limit

    def split_hint(self, task: Task) -> Budget:
        """Sizing target for children of an overflowed task."""
        return task.budget.tightened(self._split_factor)

    def decide(
        self,
        task: Task,
        reason: FailureReason,
        *,
        consumed: int | None = None,
    ) -> BudgetDecision:
        reasons: list[str] = []
        failure_reason = reason

        if reason is FailureReason.OVERFLOW:
            if task.scope.file_count <= 1:
                action = BudgetAction.FAIL
                failure_reason = FailureReason.UNSPLITTABLE_OVERFLOW
                reasons.append("unsplittable_scope")
            else:
                action = BudgetAction.SPLIT
                reasons.append("budget_exceeded")
        elif reason is FailureReason.TRANSIENT_FAILURE:
            if task.attempt - 1 < self._retry_limit:
                action = BudgetAction.RETRY
                reasons.append("within_retry_limit")
            else:
                action = BudgetAction.FAIL
                reasons.append("retry_limit_reached")
        else:
            action = BudgetAction.FAIL
            reasons.append("not_retryable")

        decision = BudgetDecision(
            action=action,
            reason_codes=tuple(reasons),
            task_id=task.id,
            attempt=task.attempt,
            failure_reason=failure_reason,
            consumed=consumed,
            limit=task.budget.limit,
        )
        self._log_decision(decision)
        return decision

    def _log_decision(self, decision: BudgetDecision) -> None:
        self._logger.info(
            "control_plane_budget_decision",
            action=decision.action.value,
            reason_codes=list(decision.reason_codes),
            task_id=decision.task_id,
            attempt=decision.attempt,
            failure_reason=decision.failure_reason.value,
            consumed=decision.consumed,
            limit=decision.limit,
        )


__all__ = [
    "BudgetAction",
    "BudgetDecision",
    "BudgetExceededError",
    "BudgetMeter",
    "BudgetPolicy",
]
