"""Filesystem and async helpers shared across the planes."""

from repo_atlas.utils.concurrency import (
    CancellationRequested,
    CancellationToken,
    run_with_timeout,
)
from repo_atlas.utils.fs import atomic_write

__all__ = [
    "CancellationRequested",
    "CancellationToken",
    "atomic_write",
    "run_with_timeout",
]
