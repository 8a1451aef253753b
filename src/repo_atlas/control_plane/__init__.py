"""Control-plane public API."""

from repo_atlas.control_plane.budgets import (
    BudgetAction,
    BudgetDecision,
    BudgetExceededError,
    BudgetMeter,
    BudgetPolicy,
)
from repo_atlas.control_plane.controller import (
    PhasePlanner,
    RunCoordinator,
    RunResult,
    WholeScopePlanner,
    run_analysis,
)
from repo_atlas.control_plane.scheduler import Scheduler, SchedulerError, UnresolvedScope

__all__ = [
    "BudgetAction",
    "BudgetDecision",
    "BudgetExceededError",
    "BudgetMeter",
    "BudgetPolicy",
    "PhasePlanner",
    "RunCoordinator",
    "RunResult",
    "Scheduler",
    "SchedulerError",
    "UnresolvedScope",
    "WholeScopePlanner",
    "run_analysis",
]
