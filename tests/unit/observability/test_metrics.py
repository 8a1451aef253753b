"""Unit tests for the run metrics registry."""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING

import pytest

from repo_atlas.observability.metrics import (
    TASKS_COMPLETED,
    WORKER_BYTES_CONSUMED,
    MetricsRegistry,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_counters_gauges_and_distributions() -> None:
    registry = MetricsRegistry()

    registry.inc(TASKS_COMPLETED, labels={"phase": "recon"})
    registry.inc(TASKS_COMPLETED, 2, labels={"phase": "recon"})
    registry.set_gauge("atlas_tasks_running", 3)
    for value in (10, 30, 20):
        registry.observe(WORKER_BYTES_CONSUMED, value, labels={"phase": "coupling"})

    assert registry.get_counter(TASKS_COMPLETED, labels={"phase": "recon"}) == 3.0
    assert registry.get_counter(TASKS_COMPLETED) == 0.0
    assert registry.get_gauge("atlas_tasks_running") == 3.0
    distribution = registry.get_distribution(WORKER_BYTES_CONSUMED, labels={"phase": "coupling"})
    assert distribution == {"count": 3, "sum": 60.0, "min": 10.0, "max": 30.0, "avg": 20.0}


def test_invalid_samples_are_rejected() -> None:
    registry = MetricsRegistry()

    with pytest.raises(ValueError, match=">= 0"):
        registry.inc(TASKS_COMPLETED, -1)
    with pytest.raises(ValueError, match="finite"):
        registry.observe(WORKER_BYTES_CONSUMED, float("inf"))
    with pytest.raises(ValueError, match="non-empty"):
        registry.inc(TASKS_COMPLETED, labels={"phase": " "})


def test_concurrent_increments_are_not_lost() -> None:
    registry = MetricsRegistry()

    def _bump() -> None:
        for _ in range(500):
            registry.inc(TASKS_COMPLETED)

    threads = [threading.Thread(target=_bump) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.get_counter(TASKS_COMPLETED) == 4_000.0


def test_snapshot_export_uses_labelled_identifiers(tmp_path: Path) -> None:
    registry = MetricsRegistry()
    registry.inc(TASKS_COMPLETED, labels={"phase": "recon", "attempt": "1"})

    path = registry.export_json(tmp_path / "metrics.json")
    payload = json.loads(path.read_text(encoding="utf-8"))

    assert payload["counters"] == {"atlas_tasks_completed_total{attempt=1,phase=recon}": 1.0}
    assert payload["gauges"] == {}
