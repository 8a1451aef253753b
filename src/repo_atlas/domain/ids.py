"""
Run and task identifiers.

- Task ids (``T000001``) are sequential so that lexical order is creation
  order; the scheduler breaks ties between ready tasks with it.
- Run ids (``run-<ULID>``) are globally unique and sort by start time.
"""

from __future__ import annotations

import re
import secrets
import threading
import time
from collections.abc import Callable
from typing import Final

TASK_ID_PREFIX: Final[str] = "T"
TASK_ID_WIDTH: Final[int] = 6
RUN_ID_PREFIX: Final[str] = "run-"

# Crockford base32 without I, L, O and U.
ULID_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26

_TASK_ID = re.compile(rf"{TASK_ID_PREFIX}(\d{{{TASK_ID_WIDTH},}})")
_ULID = re.compile(rf"[0-7][{ULID_ALPHABET}]{{{ULID_LENGTH - 1}}}")
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_RANDOM_BYTES: Final[int] = 10


class TaskIdAllocator:
    """Thread-safe source of increasing task ids."""

    __slots__ = ("_lock", "_next")

    def __init__(self, start: int = 1) -> None:
        if start < 1:
            raise ValueError("start must be >= 1")
        self._lock = threading.Lock()
        self._next = start

    def allocate(self) -> str:
        with self._lock:
            sequence = self._next
            self._next += 1
        return format_task_id(sequence)

    def observe(self, task_id: str) -> None:
        """Never issue ``task_id`` or anything before it (used for ids loaded from a store)."""
        sequence = validate_task_id(task_id)
        with self._lock:
            self._next = max(self._next, sequence + 1)


def format_task_id(sequence: int) -> str:
    if sequence < 1:
        raise ValueError("task sequence must be >= 1")
    return f"{TASK_ID_PREFIX}{sequence:0{TASK_ID_WIDTH}d}"


def validate_task_id(task_id: str) -> int:
    """Return the sequence number of ``task_id``; raise ``ValueError`` if malformed."""
    match = _TASK_ID.fullmatch(task_id) if isinstance(task_id, str) else None
    if match is None:
        raise ValueError(f"task id must look like {format_task_id(1)} (got {task_id!r})")
    return int(match.group(1))


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    """48-bit millisecond timestamp followed by 80 random bits, base32 encoded."""
    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= stamp <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {stamp}")
    entropy = bytes(randbytes(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")
    value = (stamp << 80) | int.from_bytes(entropy, "big")
    digits = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(ULID_ALPHABET[digit])
    return "".join(reversed(digits))


def generate_run_id(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    return RUN_ID_PREFIX + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_run_id(run_id: str) -> None:
    if not isinstance(run_id, str) or not run_id.startswith(RUN_ID_PREFIX):
        raise ValueError(f"run id must start with expected prefix {RUN_ID_PREFIX!r}")
    if _ULID.fullmatch(run_id[len(RUN_ID_PREFIX) :].upper()) is None:
        raise ValueError(f"run id must end in a {ULID_LENGTH}-character ULID (got {run_id!r})")


__all__ = [
    "RUN_ID_PREFIX",
    "TASK_ID_PREFIX",
    "TaskIdAllocator",
    "ULID_LENGTH",
    "format_task_id",
    "generate_run_id",
    "generate_ulid",
    "validate_run_id",
    "validate_task_id",
]
