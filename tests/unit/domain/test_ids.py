"""Unit tests for task and run id helpers."""

from __future__ import annotations

import pytest

from repo_atlas.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def test_task_ids_are_zero_padded_and_sort_in_allocation_order() -> None:
    allocator = ids.TaskIdAllocator()
    issued = [allocator.allocate() for _ in range(12)]

    assert issued[0] == "T000001"
    assert issued[-1] == "T000012"
    assert sorted(issued) == issued


def test_allocator_observe_skips_ids_already_in_use() -> None:
    allocator = ids.TaskIdAllocator()
    allocator.observe("T000041")
    allocator.observe("T000007")

    assert allocator.allocate() == "T000042"


def test_validate_task_id_returns_sequence_and_rejects_malformed_ids() -> None:
    assert ids.validate_task_id("T000123") == 123

    for bad in ["T12", "task-1", "t000001", ""]:
        with pytest.raises(ValueError, match="task id must look like"):
            ids.validate_task_id(bad)
    with pytest.raises(ValueError, match="must be >= 1"):
        ids.format_task_id(0)


def test_run_ids_carry_prefix_and_validate() -> None:
    run_id = ids.generate_run_id(timestamp_ms=1_700_000_000_000, randbytes=_zero_bytes)

    assert run_id.startswith("run-")
    assert len(run_id) == len("run-") + ids.ULID_LENGTH
    ids.validate_run_id(run_id)

    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_run_id("job-" + run_id[4:])


def test_run_ids_do_not_collide() -> None:
    generated = {ids.generate_run_id() for _ in range(2_000)}
    assert len(generated) == 2_000
