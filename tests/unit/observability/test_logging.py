"""
repo-atlas — unit tests for observability logging

Purpose
- Validate JSON-lines output, correlation propagation across asyncio tasks,
  structlog routing and queue shutdown behavior.

Non-functional requirements
- Offline, deterministic and non-flaky.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from repo_atlas.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"repo_atlas.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_records_are_json_lines_with_run_and_task_correlation(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-logging-1", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(task_id="T000001", phase="recon"):
        logger.info("task_started", extra={"scope_key": "src"})
    logger.warning("outside_scope")

    shutdown_logging(handle)
    assert handle.log_path == tmp_path / "run-logging-1" / "atlas.jsonl"
    first, second = _read_json_lines(handle.log_path)

    assert first["event"] == "task_started"
    assert first["run_id"] == "run-logging-1"
    assert first["task_id"] == "T000001"
    assert first["phase"] == "recon"
    assert first["fields"] == {"scope_key": "src"}
    assert second["level"] == "WARNING"
    assert "task_id" not in second


def test_structlog_events_reach_the_file_sink(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_level": "DEBUG", "log_dir": str(tmp_path)}, run_id="run-logging-2"
    )

    structlog.get_logger("repo_atlas.tests.structlog").info(
        "phase_sealed", sealed_phase="coupling", finding_count=3
    )
    handle.shutdown()

    assert handle.log_path is not None
    records = _read_json_lines(handle.log_path)
    assert [record["event"] for record in records] == ["phase_sealed"]
    assert records[0]["fields"] == {"finding_count": 3, "sealed_phase": "coupling"}


def test_level_filtering_drops_debug_records(tmp_path: Path) -> None:
    handle = setup_logging({"log_level": "WARNING", "log_dir": str(tmp_path)}, run_id="run-lvl")
    logger = logging.getLogger("repo_atlas.tests.levels")

    logger.info("quiet")
    logger.error("loud")
    handle.shutdown()

    assert handle.log_path is not None
    assert [record["event"] for record in _read_json_lines(handle.log_path)] == ["loud"]


def test_correlation_scope_nests_and_restores() -> None:
    with correlation_scope(run_id="run-a"):
        with correlation_scope(task_id="T000002"):
            assert get_correlation_context() == {"run_id": "run-a", "task_id": "T000002"}
            with correlation_scope(task_id=None):
                assert get_correlation_context() == {"run_id": "run-a"}
        assert get_correlation_context() == {"run_id": "run-a"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError):
        with correlation_scope(task_id=""):
            pass


@pytest.mark.asyncio
async def test_correlation_scope_is_isolated_between_asyncio_tasks() -> None:
    seen: dict[str, dict[str, str]] = {}

    async def _worker(task_id: str) -> None:
        with correlation_scope(task_id=task_id):
            await asyncio.sleep(0)
            seen[task_id] = get_correlation_context()

    with correlation_scope(run_id="run-async"):
        await asyncio.gather(_worker("T000001"), _worker("T000002"))

    assert seen == {
        "T000001": {"run_id": "run-async", "task_id": "T000001"},
        "T000002": {"run_id": "run-async", "task_id": "T000002"},
    }


def test_shutdown_is_idempotent_and_without_sinks_nothing_is_written(tmp_path: Path) -> None:
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-null", base_log_dir=None, logger_name=_logger_name())
    )

    handle.shutdown()
    handle.shutdown()

    assert handle.is_shutdown
    assert handle.log_path is None
    assert list(tmp_path.iterdir()) == []
