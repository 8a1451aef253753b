"""Workers: the execution contract, its harness, and the built-in heuristic analyzer."""

from repo_atlas.workers.base import (
    ScopeReader,
    Worker,
    WorkerCancelled,
    WorkerContext,
    WorkerError,
    WorkerResult,
    WorkerStatus,
    run_worker,
)
from repo_atlas.workers.heuristic import HeuristicWorker, pattern_for

__all__ = [
    "HeuristicWorker",
    "ScopeReader",
    "Worker",
    "WorkerCancelled",
    "WorkerContext",
    "WorkerError",
    "WorkerResult",
    "WorkerStatus",
    "pattern_for",
    "run_worker",
]
