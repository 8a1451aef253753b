"""Unit tests for domain models: validation, derived properties and serialization."""

from __future__ import annotations

from dataclasses import replace

import pytest
from hypothesis import given
from hypothesis import strategies as st

from repo_atlas.domain.models import (
    Budget,
    Confidence,
    Conflict,
    ConflictEntry,
    ConflictKind,
    Entity,
    EntityKind,
    FailureReason,
    Finding,
    Phase,
    Provenance,
    RecordedFinding,
    Scope,
    Task,
    TaskFailure,
    TaskStatus,
    component_ref,
    edge_endpoints,
    edge_ref,
    pattern_ref,
)


def _make_task(task_id: str = "T000001", **overrides: object) -> Task:
    fields: dict[str, object] = {
        "id": task_id,
        "scope": Scope(paths=("pkg/a.py", "pkg/b.py"), base="pkg"),
        "phase": Phase.RECON,
        "budget": Budget(limit=1_000),
    }
    fields.update(overrides)
    return Task(**fields)  # type: ignore[arg-type]


def _make_record(task_id: str, value: object, *, sequence: int = 0) -> RecordedFinding:
    finding = Finding(component_ref("pkg/a.py"), "language", value, Provenance(task_id))
    return RecordedFinding(finding=finding, sequence=sequence)


def test_budget_charge_remaining_and_overflow() -> None:
    budget = Budget(limit=100)
    charged = budget.charge(60).charge(50)

    assert budget.consumed == 0
    assert charged.consumed == 110
    assert charged.remaining == 0
    assert charged.overflowed
    assert charged.fresh() == Budget(limit=100)


def test_budget_tightened_is_fresh_and_bounded() -> None:
    budget = Budget(limit=1_000, consumed=900)

    assert budget.tightened(0.5) == Budget(limit=500)
    assert Budget(limit=1).tightened(0.1) == Budget(limit=1)
    with pytest.raises(ValueError, match="must be in"):
        budget.tightened(0.0)
    with pytest.raises(ValueError):
        Budget(limit=0)


def test_scope_normalizes_paths_and_rejects_escapes() -> None:
    scope = Scope(paths=("pkg/b.py", "pkg/a.py", "pkg/a.py"), base="pkg/")

    assert scope.paths == ("pkg/a.py", "pkg/b.py")
    assert scope.base == "pkg"
    assert scope.key == "pkg"
    assert scope.file_count == 2
    assert not scope.is_single_file
    assert Scope(paths=("README.md",)).key == "."

    with pytest.raises(ValueError, match="outside scope base"):
        Scope(paths=("other/x.py",), base="pkg")
    with pytest.raises(ValueError, match="normalized path"):
        Scope(paths=("pkg/../x.py",))
    with pytest.raises(ValueError, match="relative"):
        Scope(paths=("/etc/passwd",))


def test_scope_union_and_disjointness() -> None:
    left = Scope(paths=("pkg/a/x.py",), base="pkg/a")
    right = Scope(paths=("pkg/b/y.py",), base="pkg/b")
    single = Scope.of_file("pkg/a/x.py")

    merged = left.union(right)
    assert merged.paths == ("pkg/a/x.py", "pkg/b/y.py")
    assert merged.base == "pkg"
    assert left.is_disjoint(right)
    assert not left.is_disjoint(single)
    assert single.is_single_file


def test_task_children_only_allowed_on_split_like_statuses() -> None:
    with pytest.raises(ValueError, match="cannot have children"):
        _make_task(children=("T000002",))

    split = _make_task(status=TaskStatus.SPLIT, children=("T000002", "T000003"))
    assert split.is_split
    assert replace(split, status=TaskStatus.CANCELED).children == ("T000002", "T000003")


def test_task_rejects_self_dependency_and_bad_deadline() -> None:
    with pytest.raises(ValueError, match="depend on itself"):
        _make_task(depends_on=frozenset({"T000001"}))
    with pytest.raises(ValueError, match="must be > 0"):
        _make_task(deadline_seconds=0)


def test_task_round_trips_through_json() -> None:
    task = _make_task(
        status=TaskStatus.FAILED,
        depends_on=frozenset({"T000009", "T000003"}),
        attempt=3,
        deadline_seconds=2.5,
        failure=TaskFailure(FailureReason.TRANSIENT_FAILURE, "boom"),
    )

    restored = Task.from_json(task.to_json())
    assert restored == task
    assert task.to_dict()["depends_on"] == ["T000003", "T000009"]
    assert restored.failure is not None and restored.failure.retryable


def test_entity_refs_encode_edges_and_patterns() -> None:
    edge = edge_ref("src/app", "")

    assert edge.kind is EntityKind.COUPLING_EDGE
    assert edge.key == "src/app->."
    assert edge_endpoints(edge) == ("src/app", ".")
    assert pattern_ref("test_suite", "tests/test_x.py").key == "test_suite@tests/test_x.py"
    assert str(component_ref("")) == "component:."
    with pytest.raises(ValueError, match="not a coupling edge"):
        edge_endpoints(component_ref("src"))


def test_finding_values_are_frozen_and_validated() -> None:
    finding = Finding(component_ref("a.py"), "modules", ["a", ["b"]], Provenance("T000001"))

    assert finding.value == ("a", ("b",))
    assert finding.task_id == "T000001"
    with pytest.raises(ValueError, match="finite"):
        Finding(component_ref("a.py"), "size", float("nan"), Provenance("T000001"))
    with pytest.raises(ValueError, match="unsupported finding value"):
        Finding(component_ref("a.py"), "size", {"x": 1}, Provenance("T000001"))


def test_entity_value_is_none_when_disputed() -> None:
    agreed = Entity(
        ref=component_ref("pkg/a.py"),
        findings=(_make_record("T000001", "python"), _make_record("T000002", "python", sequence=1)),
    )
    disputed = Entity(
        ref=component_ref("pkg/a.py"),
        findings=(_make_record("T000001", "python"), _make_record("T000002", "go", sequence=1)),
    )
    superseded = Entity(
        ref=component_ref("pkg/a.py"),
        findings=(
            replace(_make_record("T000001", "python"), superseded_by="T000002"),
            _make_record("T000002", "go", sequence=1),
        ),
    )

    assert agreed.value("language") == "python"
    assert disputed.values("language") == ("go", "python")
    assert disputed.value("language", "?") == "?"
    assert superseded.value("language") == "go"


def test_conflict_distinct_values_and_round_trip() -> None:
    conflict = Conflict(
        kind=ConflictKind.CONFLICT,
        subject=component_ref("pkg/a.py"),
        attribute="language",
        values=frozenset(
            {
                ConflictEntry("python", Provenance("T000001")),
                ConflictEntry("python", Provenance("T000003", Confidence.INFERRED)),
                ConflictEntry("go", Provenance("T000002")),
            }
        ),
    )

    assert conflict.distinct_values == ("go", "python")
    assert not conflict.resolved
    assert Conflict.from_json(conflict.to_json()) == conflict


@given(
    st.lists(
        st.sampled_from(["a.py", "b/c.py", "b/d.py", "e/f/g.py", "h.txt"]),
        min_size=1,
        max_size=8,
    )
)
def test_scope_paths_are_sorted_and_unique(paths: list[str]) -> None:
    scope = Scope(paths=tuple(paths))

    assert list(scope.paths) == sorted(set(paths))
    assert Scope.from_dict(scope.to_dict()) == scope
