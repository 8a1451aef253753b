"""Tests for cancellation tokens and deadline-bounded awaiting."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings

import pytest

from repo_atlas.utils.concurrency import (
    CancellationRequested,
    CancellationToken,
    run_with_timeout,
)


@pytest.fixture
def unraisable(monkeypatch: pytest.MonkeyPatch) -> list[object]:
    """Collects anything CPython reports through ``sys.unraisablehook``."""
    seen: list[object] = []
    monkeypatch.setattr(sys, "unraisablehook", seen.append)
    return seen


async def _quick() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slow() -> int:
    await asyncio.sleep(0.05)
    return 1


async def test_pre_cancelled_token_closes_the_coroutine(unraisable: list[object]) -> None:
    token = CancellationToken()
    token.cancel()

    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        pending = _quick()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(pending, 1.0, token)
        del pending
        gc.collect()

    assert unraisable == []


async def test_deadline_raises_timeout_and_reaps_the_work(unraisable: list[object]) -> None:
    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError, match="timed out after 0.001 seconds"):
            await run_with_timeout(_slow(), 0.001)
        gc.collect()

    assert unraisable == []


async def test_no_deadline_returns_the_value() -> None:
    assert await run_with_timeout(_quick(), None) == 1


@pytest.mark.parametrize("deadline", [0, -1.5])
async def test_non_positive_deadline_is_rejected(deadline: float) -> None:
    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        await run_with_timeout(_quick(), deadline)


async def test_token_tripped_mid_flight_cancels_the_work() -> None:
    token = CancellationToken()
    work = asyncio.ensure_future(asyncio.sleep(5))

    async def _trip() -> None:
        await asyncio.sleep(0.005)
        token.cancel("operator abort")

    tripper = asyncio.create_task(_trip())
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(work, 10.0, token)
    await tripper

    assert work.cancelled()


def test_checkpoint_reports_the_first_reason() -> None:
    token = CancellationToken()
    token.checkpoint()

    token.cancel("first")
    token.cancel("second")

    assert token.is_cancelled
    assert token.reason == "first"
    with pytest.raises(CancellationRequested, match="first") as excinfo:
        token.checkpoint()
    assert excinfo.value.reason == "first"
    assert str(CancellationRequested()) == "operation cancelled"
