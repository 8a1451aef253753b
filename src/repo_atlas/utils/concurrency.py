"""Cooperative cancellation tokens and deadline-bounded awaiting for worker tasks."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class CancellationRequested(Exception):
    """A worker reached a checkpoint after its run was canceled."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or "operation cancelled")
        self.reason = reason


class CancellationToken:
    """
    Run-wide cancel flag.

    Workers poll :meth:`checkpoint` between units of work. The harness can also
    await :meth:`wait` to abort a worker that never reaches a checkpoint. Only the
    first reason given to :meth:`cancel` is kept.
    """

    __slots__ = ("_tripped", "_reason")

    def __init__(self) -> None:
        self._tripped = asyncio.Event()
        self._reason = ""

    @property
    def is_cancelled(self) -> bool:
        return self._tripped.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> None:
        if self.is_cancelled:
            return
        self._reason = reason
        self._tripped.set()

    async def wait(self) -> None:
        await self._tripped.wait()

    def checkpoint(self) -> None:
        if self.is_cancelled:
            raise CancellationRequested(self._reason)


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float | None,
    cancel_token: CancellationToken | None = None,
) -> T:
    """
    Await ``awaitable`` for at most ``timeout_seconds`` (``None`` waits forever).

    Raises ``TimeoutError`` when the deadline passes. Raises
    ``asyncio.CancelledError`` when ``cancel_token`` trips first. In both
    cases the underlying work is canceled before this returns.
    """
    if timeout_seconds is not None and timeout_seconds <= 0:
        _discard(awaitable)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _discard(awaitable)
        raise asyncio.CancelledError("operation cancelled")

    work = asyncio.ensure_future(awaitable)
    watcher = None
    if cancel_token is not None:
        watcher = asyncio.create_task(_cancel_on_trip(cancel_token, work))
    try:
        async with asyncio.timeout(timeout_seconds):
            return await work
    except TimeoutError:
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds") from None
    finally:
        if watcher is not None:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher


async def _cancel_on_trip(token: CancellationToken, work: asyncio.Future[object]) -> None:
    await token.wait()
    work.cancel()


def _discard(awaitable: Awaitable[object]) -> None:
    # A coroutine object that is never awaited warns when collected.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationRequested",
    "CancellationToken",
    "run_with_timeout",
]
