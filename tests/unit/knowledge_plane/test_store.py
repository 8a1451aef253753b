"""Unit tests for the conflict-aware knowledge store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from repo_atlas.domain.models import (
    Budget,
    Conflict,
    ConflictEntry,
    ConflictKind,
    EntityKind,
    Finding,
    Phase,
    Provenance,
    Scope,
    Task,
    component_ref,
    edge_ref,
)
from repo_atlas.knowledge_plane.store import (
    KnowledgeStore,
    MergeError,
    StoreLoadError,
)
from repo_atlas.observability.metrics import FINDINGS_MERGED, MetricsRegistry


def _make_task(task_id: str, **overrides: object) -> Task:
    fields: dict[str, object] = {
        "id": task_id,
        "scope": Scope(paths=("pkg/a.py", "pkg/old.py"), base="pkg"),
        "phase": Phase.RECON,
        "budget": Budget(limit=1_000),
    }
    fields.update(overrides)
    return Task(**fields)  # type: ignore[arg-type]


def _finding(path: str, value: object, task_id: str, attribute: str = "language") -> Finding:
    return Finding(component_ref(path), attribute, value, Provenance(task_id))


def _store_with_roots(*task_ids: str, metrics: MetricsRegistry | None = None) -> KnowledgeStore:
    store = KnowledgeStore(metrics=metrics)
    for task_id in task_ids:
        store.register_task(_make_task(task_id))
    return store


def test_merge_is_idempotent() -> None:
    metrics = MetricsRegistry()
    store = _store_with_roots("T000001", metrics=metrics)
    batch = [
        _finding("pkg/a.py", "python", "T000001"),
        _finding("pkg/a.py", 120, "T000001", "size_bytes"),
    ]

    store.merge(batch)
    before = store.snapshot().to_dict()
    changed = store.merge(batch)

    assert changed == frozenset()
    assert store.snapshot().to_dict() == before
    assert len(list(store.snapshot().findings())) == 2
    assert metrics.get_counter(FINDINGS_MERGED) == 2


def test_disagreeing_tasks_produce_one_conflict_with_both_values() -> None:
    store = _store_with_roots("T000001", "T000002")

    store.merge([_finding("pkg/a.py", "python", "T000001")])
    changed = store.merge([_finding("pkg/a.py", "go", "T000002")])

    assert len(changed) == 1
    (conflict,) = store.conflicts()
    assert conflict.kind is ConflictKind.CONFLICT
    assert conflict.subject == component_ref("pkg/a.py")
    assert conflict.attribute == "language"
    assert conflict.distinct_values == ("go", "python")
    assert {entry.provenance.task_id for entry in conflict.values} == {"T000001", "T000002"}

    entity = store.snapshot().entity(component_ref("pkg/a.py"))
    assert entity is not None
    assert entity.values("language") == ("go", "python")
    assert entity.value("language", "<disputed>") == "<disputed>"


def test_a_third_agreeing_value_does_not_change_the_conflict() -> None:
    store = _store_with_roots("T000001", "T000002", "T000003")
    store.merge([_finding("pkg/a.py", "python", "T000001"), _finding("pkg/a.py", "go", "T000002")])

    changed = store.merge([_finding("pkg/a.py", "go", "T000003")])

    assert len(changed) == 1
    (conflict,) = store.conflicts()
    assert len(conflict.values) == 3
    assert conflict.distinct_values == ("go", "python")


def test_rescan_supersedes_prior_findings_and_marks_unseen_entities_stale() -> None:
    store = _store_with_roots("T000001")
    store.merge(
        [
            _finding("pkg/a.py", "python", "T000001"),
            _finding("pkg/old.py", "python", "T000001"),
        ]
    )

    store.register_task(_make_task("T000002", rescan_of="T000001"))
    store.register_task(
        _make_task("T000003", parent="T000002", scope=Scope.of_file("pkg/a.py"))
    )
    store.merge([_finding("pkg/a.py", "go", "T000003")])

    view = store.snapshot()
    current = view.entity(component_ref("pkg/a.py"))
    stale = view.entity(component_ref("pkg/old.py"))
    assert current is not None and stale is not None
    assert current.values("language") == ("go",)
    assert not current.stale
    assert stale.stale
    assert stale.values("language") == ()
    assert [record.superseded_by for record in stale.findings] == ["T000003"]
    assert store.conflicts() == ()
    assert view.entities_of_kind(EntityKind.COMPONENT) == (current,)
    assert len(view.entities_of_kind(EntityKind.COMPONENT, include_stale=True)) == 2



def test_rescan_leaves_recorded_disagreements_in_the_conflict_log() -> None:
    store = _store_with_roots("T000001", "T000002")
    store.merge([_finding("pkg/a.py", "python", "T000001"), _finding("pkg/a.py", "go", "T000002")])
    before = store.conflicts()

    store.register_task(_make_task("T000003", rescan_of="T000001"))
    store.register_task(
        _make_task("T000004", parent="T000003", scope=Scope.of_file("pkg/a.py"))
    )
    changed = store.merge([_finding("pkg/a.py", "go", "T000004")])

    assert changed == frozenset()
    assert store.conflicts() == before
    entity = store.snapshot().entity(component_ref("pkg/a.py"))
    assert entity is not None
    assert entity.values("language") == ("go",)

def test_stale_entity_comes_back_when_observed_again() -> None:
    store = _store_with_roots("T000001")
    store.merge([_finding("pkg/old.py", "python", "T000001")])
    store.register_task(_make_task("T000002", rescan_of="T000001"))
    store.merge([_finding("pkg/a.py", "python", "T000002")])
    stale = store.snapshot().entity(component_ref("pkg/old.py"))
    assert stale is not None and stale.stale

    store.register_task(_make_task("T000003", parent="T000002"))
    store.merge([_finding("pkg/old.py", "python", "T000003")])

    revived = store.snapshot().entity(component_ref("pkg/old.py"))
    assert revived is not None and not revived.stale


def test_merge_rejects_whole_batch_when_provenance_is_unregistered() -> None:
    store = _store_with_roots("T000001")

    with pytest.raises(MergeError, match=r"batch\[1\]: provenance names unregistered task"):
        store.merge(
            [_finding("pkg/a.py", "python", "T000001"), _finding("pkg/b.py", "go", "T000009")]
        )
    with pytest.raises(MergeError, match="expected Finding"):
        store.merge(["not a finding"])  # type: ignore[list-item]

    assert len(store.snapshot()) == 0


def test_mark_canceled_flags_existing_and_later_findings() -> None:
    store = _store_with_roots("T000001", "T000002")
    store.merge([_finding("pkg/a.py", "python", "T000001"), _finding("pkg/b.py", "go", "T000002")])

    assert store.mark_canceled("T000001") == 1
    assert store.mark_canceled("T000001") == 0
    store.merge([_finding("pkg/c.py", "rust", "T000001")])

    flags = {
        record.finding.subject.key: record.from_canceled_task
        for record in store.snapshot().findings()
    }
    assert flags == {"pkg/a.py": True, "pkg/b.py": False, "pkg/c.py": True}


def test_sealed_snapshot_is_frozen_and_unsealed_phase_raises() -> None:
    store = _store_with_roots("T000001")
    store.merge([_finding("pkg/a.py", "python", "T000001")])

    sealed = store.seal_phase(Phase.RECON)
    store.merge([_finding("pkg/b.py", "go", "T000001")])

    assert store.is_sealed(Phase.RECON)
    assert store.snapshot(Phase.RECON) is sealed
    assert len(sealed) == 1
    assert component_ref("pkg/b.py") not in sealed
    assert len(store.snapshot()) == 2
    assert store.snapshot().sealed_phases == (Phase.RECON,)
    with pytest.raises(KeyError, match="has not been sealed"):
        store.snapshot(Phase.COUPLING)


def test_reconcile_keeps_conflict_and_attaches_resolution() -> None:
    store = _store_with_roots("T000001", "T000002")
    store.merge([_finding("pkg/a.py", "python", "T000001"), _finding("pkg/a.py", "go", "T000002")])

    resolved = store.reconcile(component_ref("pkg/a.py"), "language", "python", "shebang wins")

    assert resolved.resolved
    assert resolved.resolution is not None and resolved.resolution.note == "shebang wins"
    assert store.conflicts() == (resolved,)
    assert store.snapshot().open_conflicts() == ()
    with pytest.raises(KeyError):
        store.reconcile(component_ref("pkg/zzz.py"), "language", "go")


def test_record_conflicts_deduplicates_by_key() -> None:
    store = _store_with_roots("T000001")
    missing = Conflict(
        kind=ConflictKind.MISSING_REFERENT,
        subject=edge_ref("a", "b"),
        attribute="target",
        values=frozenset({ConflictEntry(value="b", provenance=Provenance("T000001"))}),
    )

    assert store.record_conflicts([missing]) == frozenset({missing})
    assert store.record_conflicts([missing]) == frozenset()
    assert store.conflicts() == (missing,)
    with pytest.raises(MergeError, match="expected Conflict"):
        store.record_conflicts(["nope"])  # type: ignore[list-item]


def test_save_and_load_round_trip_rebuilds_sealed_views(tmp_path: Path) -> None:
    store = _store_with_roots("T000001", "T000002")
    store.merge([_finding("pkg/a.py", "python", "T000001"), _finding("pkg/a.py", "go", "T000002")])
    store.mark_canceled("T000002")
    store.seal_phase(Phase.RECON)
    store.merge([_finding("pkg/b.py", ("pkg",), "T000001", "imports")])
    target = store.save(tmp_path / "state" / "knowledge.json")

    loaded = KnowledgeStore.load(target)

    assert loaded.snapshot().to_dict() == store.snapshot().to_dict()
    assert loaded.snapshot(Phase.RECON).to_dict() == store.snapshot(Phase.RECON).to_dict()
    assert loaded.task_ids() == ("T000001", "T000002")
    assert loaded.root_task_ids() == ("T000001", "T000002")
    # Reloaded stores keep deduplicating.
    assert loaded.merge([_finding("pkg/a.py", "python", "T000001")]) == frozenset()


def test_load_rejects_incompatible_payloads(tmp_path: Path) -> None:
    path = tmp_path / "knowledge.json"

    path.write_text(json.dumps({"schema_version": 999}), encoding="utf-8")
    with pytest.raises(StoreLoadError, match="unsupported schema_version"):
        KnowledgeStore.load(path)

    store = KnowledgeStore()
    store.save(path)
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["extra"] = True
    path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(StoreLoadError, match="unexpected fields"):
        KnowledgeStore.load(path)

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreLoadError, match="invalid JSON"):
        KnowledgeStore.load(path)
    with pytest.raises(StoreLoadError, match="unable to read"):
        KnowledgeStore.load(tmp_path / "missing.json")


_FINDING_SPECS = st.lists(
    st.tuples(
        st.sampled_from(["pkg/a.py", "pkg/b.py"]),
        st.sampled_from(["python", "go", "rust"]),
        st.sampled_from(["T000001", "T000002", "T000003"]),
    ),
    max_size=12,
)


@settings(max_examples=50, deadline=None)
@given(specs=_FINDING_SPECS)
def test_merge_order_does_not_change_values_or_conflicts(
    specs: list[tuple[str, str, str]],
) -> None:
    findings = [_finding(path, value, task_id) for path, value, task_id in specs]

    def _outcome(ordered: list[Finding]) -> tuple[object, object]:
        store = _store_with_roots("T000001", "T000002", "T000003")
        for finding in ordered:
            store.merge([finding])
        values = {entity.ref: entity.values("language") for entity in store.snapshot().entities}
        conflicts = {conflict.key: conflict.values for conflict in store.conflicts()}
        return values, conflicts

    assert _outcome(findings) == _outcome(list(reversed(findings)))
