"""
repo-atlas — run metrics.

Counters, gauges and sample distributions for one run, keyed by metric
name plus sorted string labels (``atlas_tasks_completed_total{phase=recon}``).
The registry is shared by the scheduler, the knowledge store and the worker
harness; every method is safe to call from any thread.
"""

from __future__ import annotations

import json
import math
import threading
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from repo_atlas.utils.fs import atomic_write

TASKS_DISPATCHED: Final[str] = "atlas_tasks_dispatched_total"
TASKS_COMPLETED: Final[str] = "atlas_tasks_completed_total"
TASKS_FAILED: Final[str] = "atlas_tasks_failed_total"
TASKS_OVERFLOWED: Final[str] = "atlas_tasks_overflowed_total"
TASKS_RETRIED: Final[str] = "atlas_tasks_retried_total"
TASKS_CANCELED: Final[str] = "atlas_tasks_canceled_total"
TASKS_RUNNING: Final[str] = "atlas_tasks_running"
FINDINGS_MERGED: Final[str] = "atlas_findings_merged_total"
CONFLICTS_RECORDED: Final[str] = "atlas_conflicts_recorded_total"
MERGE_BATCH_SIZE: Final[str] = "atlas_merge_batch_size"
WORKER_DURATION_SECONDS: Final[str] = "atlas_worker_duration_seconds"
WORKER_BYTES_CONSUMED: Final[str] = "atlas_worker_bytes_consumed"

Labels = Mapping[str, str]


@dataclass(slots=True)
class Distribution:
    count: int = 0
    sum: float = 0.0
    min: float | None = None
    max: float | None = None

    def add(self, sample: float) -> None:
        self.count += 1
        self.sum += sample
        self.min = sample if self.min is None else min(self.min, sample)
        self.max = sample if self.max is None else max(self.max, sample)

    def summary(self) -> dict[str, float | int | None]:
        return {**asdict(self), "avg": self.sum / self.count if self.count else 0.0}


def series_id(name: str, labels: Labels | None = None) -> str:
    """Render ``name`` and ``labels`` as one stable identifier."""
    metric = name.strip() if isinstance(name, str) else ""
    if not metric:
        raise ValueError("metric name must be a non-empty string")
    if not labels:
        return metric
    rendered: list[str] = []
    for key in sorted(labels):
        value = labels[key]
        if not isinstance(value, str) or not key.strip() or not value.strip():
            raise ValueError(f"label {key!r} must have a non-empty key and value")
        rendered.append(f"{key.strip()}={value.strip()}")
    return f"{metric}{{{','.join(rendered)}}}"


def _finite(value: float, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be numeric, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError(f"{what} must be finite")
    return float(value)


class MetricsRegistry:
    """In-memory metrics of one analysis run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = datetime.now(tz=UTC)
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._distributions: dict[str, Distribution] = {}

    def inc(self, name: str, amount: float = 1.0, *, labels: Labels | None = None) -> None:
        delta = _finite(amount, "amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        series = series_id(name, labels)
        with self._lock:
            self._counters[series] = self._counters.get(series, 0.0) + delta

    def set_gauge(self, name: str, value: float, *, labels: Labels | None = None) -> None:
        series = series_id(name, labels)
        current = _finite(value, "value")
        with self._lock:
            self._gauges[series] = current

    def observe(self, name: str, value: float, *, labels: Labels | None = None) -> None:
        series = series_id(name, labels)
        sample = _finite(value, "value")
        with self._lock:
            self._distributions.setdefault(series, Distribution()).add(sample)

    def get_counter(self, name: str, *, labels: Labels | None = None) -> float:
        with self._lock:
            return self._counters.get(series_id(name, labels), 0.0)

    def get_gauge(self, name: str, *, labels: Labels | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(series_id(name, labels))

    def get_distribution(
        self, name: str, *, labels: Labels | None = None
    ) -> dict[str, float | int | None] | None:
        with self._lock:
            distribution = self._distributions.get(series_id(name, labels))
            return None if distribution is None else distribution.summary()

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            counters = dict(sorted(self._counters.items()))
            gauges = dict(sorted(self._gauges.items()))
            distributions = {
                series: distribution.summary()
                for series, distribution in sorted(self._distributions.items())
            }
        now = datetime.now(tz=UTC)
        return {
            "metadata": {
                "started_at": _iso(self._started),
                "snapshot_at": _iso(now),
                "uptime_seconds": max(0.0, (now - self._started).total_seconds()),
            },
            "counters": counters,
            "gauges": gauges,
            "distributions": distributions,
        }

    def export_json(self, path: str | Path, *, indent: int = 2) -> Path:
        """Atomically write :meth:`snapshot` as JSON to ``path``."""
        target = Path(path)
        atomic_write(target, json.dumps(self.snapshot(), sort_keys=True, indent=indent) + "\n")
        return target


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "CONFLICTS_RECORDED",
    "Distribution",
    "FINDINGS_MERGED",
    "MERGE_BATCH_SIZE",
    "MetricsRegistry",
    "TASKS_CANCELED",
    "TASKS_COMPLETED",
    "TASKS_DISPATCHED",
    "TASKS_FAILED",
    "TASKS_OVERFLOWED",
    "TASKS_RETRIED",
    "TASKS_RUNNING",
    "WORKER_BYTES_CONSUMED",
    "WORKER_DURATION_SECONDS",
    "series_id",
]
