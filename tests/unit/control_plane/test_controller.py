"""Tests for the run coordinator wiring every plane into one analysis run."""

from __future__ import annotations

import pytest

from repo_atlas.config.schema import OrchestrationSettings, default_config
from repo_atlas.control_plane.controller import RunCoordinator, run_analysis
from repo_atlas.control_plane.scheduler import SchedulerError
from repo_atlas.domain.models import (
    FailureReason,
    Finding,
    Phase,
    Provenance,
    Task,
    component_ref,
)
from repo_atlas.knowledge_plane.scope import InMemoryScopeProvider
from repo_atlas.knowledge_plane.store import KnowledgeStore
from repo_atlas.utils.concurrency import CancellationRequested
from repo_atlas.workers.base import WorkerCancelled, WorkerContext, WorkerResult

_REPO = {
    "pkg/__init__.py": "",
    "pkg/core.py": "from app.main import run\n",
    "app/main.py": (
        "import pkg.core\n\n\ndef run():\n    pass\n\n\nif __name__ == '__main__':\n    run()\n"
    ),
    "README.md": "# demo\n",
}


class _CrashingWorker:
    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        raise RuntimeError("worker process died")


class _CancelingWorker:
    """Cancels the whole run from inside its first execution."""

    def __init__(self) -> None:
        self.coordinator: RunCoordinator | None = None
        self.running: tuple[str, ...] = ()

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        assert self.coordinator is not None
        partial = [
            Finding(component_ref(path), "language", "python", Provenance(task.id))
            for path in task.scope.paths[:1]
        ]
        self.running = self.coordinator.cancel("T000001")
        try:
            context.checkpoint()
        except CancellationRequested as exc:
            raise WorkerCancelled(partial, reason=exc.reason) from exc
        return WorkerResult.complete(partial, consumed=0)



class _GivingUpWorker:
    """Stops early on its own and hands back what it found so far."""

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        partial = [
            Finding(component_ref(path), "language", "python", Provenance(task.id))
            for path in task.scope.paths[:1]
        ]
        raise WorkerCancelled(partial, reason="gave up")

async def test_full_run_produces_every_phase_view() -> None:
    coordinator = RunCoordinator(InMemoryScopeProvider(_REPO))

    result = await coordinator.run()

    assert result.complete
    assert result.run_id.startswith("run-")
    assert tuple(result.phase_outputs) == tuple(Phase)
    assert result.conflicts == ()
    assert result.phase_outputs[Phase.RECON].views["languages"] == {"markdown": 1, "python": 3}
    entrypoints = result.phase_outputs[Phase.ENTRYPOINTS].views["entrypoints"]
    assert entrypoints == [{"path": "app/main.py", "kind": "main_guard"}]
    coupling = result.phase_outputs[Phase.COUPLING].views
    assert coupling["cycles"] == [["app", "pkg"]]
    assert coupling["matrix"] == {"app": {"pkg": 1}, "pkg": {"app": 1}}
    patterns = result.phase_outputs[Phase.PATTERNS].views["patterns"]
    assert patterns == {"package_marker": ["pkg"]}
    hotspots = result.phase_outputs[Phase.CRITIQUE].views["hotspots"]
    assert {item["component"] for item in hotspots if item["in_cycle"]} == {"app", "pkg"}
    assert result.task_counts["done"] == len(Phase)
    assert result.task_counts["split"] == 1
    assert result.to_dict()["complete"] is True


async def test_oversized_scope_is_split_up_front() -> None:
    files = {"a/one.py": "x = 1\n" * 3, "a/two.py": "y = 2\n" * 3, "b/three.py": "z = 3\n" * 3}
    settings = OrchestrationSettings(limit_bytes=40, phase_order=(Phase.RECON,))
    coordinator = RunCoordinator(InMemoryScopeProvider(files), settings=settings)

    result = await coordinator.run()

    assert result.complete
    assert result.phase_outputs[Phase.RECON].views["file_count"] == 3
    assert result.task_counts["split"] >= 2
    assert result.task_counts["failed"] == 0


async def test_single_file_over_budget_is_reported_unresolved() -> None:
    settings = OrchestrationSettings(limit_bytes=10, phase_order=(Phase.RECON,))
    coordinator = RunCoordinator(InMemoryScopeProvider({"big.py": "x" * 100}), settings=settings)

    result = await coordinator.run()

    assert not result.complete
    (unresolved,) = result.unresolved
    assert unresolved.phase is Phase.RECON
    assert unresolved.reason is FailureReason.UNSPLITTABLE_OVERFLOW
    assert len(result.graph) == 0


async def test_crashing_worker_is_retried_then_reported() -> None:
    settings = OrchestrationSettings(retry_limit=1, phase_order=(Phase.RECON, Phase.INVENTORY))
    coordinator = RunCoordinator(
        InMemoryScopeProvider(_REPO), settings=settings, worker=_CrashingWorker()
    )

    result = await coordinator.run()

    assert not result.complete
    assert [scope.phase for scope in result.unresolved] == [Phase.RECON, Phase.INVENTORY]
    assert {scope.reason for scope in result.unresolved} == {FailureReason.TRANSIENT_FAILURE}
    assert result.unresolved[0].detail == "RuntimeError: worker process died"
    assert coordinator.scheduler is not None
    assert coordinator.scheduler.get(result.unresolved[0].task_id).attempt == 2


async def test_cancel_mid_run_keeps_flagged_partial_findings() -> None:
    worker = _CancelingWorker()
    coordinator = RunCoordinator(InMemoryScopeProvider(_REPO), worker=worker)
    worker.coordinator = coordinator

    result = await coordinator.run()

    assert worker.running == ("T000002",)
    assert result.task_counts["canceled"] == len(Phase)
    assert result.unresolved == ()
    records = list(result.graph.findings())
    assert len(records) == 1
    assert records[0].from_canceled_task



async def test_worker_that_cancels_itself_is_recorded_canceled() -> None:
    settings = OrchestrationSettings(phase_order=(Phase.RECON, Phase.INVENTORY))
    coordinator = RunCoordinator(
        InMemoryScopeProvider(_REPO), settings=settings, worker=_GivingUpWorker()
    )

    result = await coordinator.run()

    assert result.task_counts.get("done", 0) == 0
    assert result.task_counts["canceled"] >= 2
    records = list(result.graph.findings())
    assert records
    assert all(record.from_canceled_task for record in records)


async def test_acyclic_coupling_reports_fan_in_and_fan_out() -> None:
    result = await RunCoordinator(
        InMemoryScopeProvider({"a/x.py": "import b.y\n", "b/y.py": ""})
    ).run()

    assert result.complete
    assert result.unresolved == ()
    hotspots = result.phase_outputs[Phase.CRITIQUE].views["hotspots"]
    assert hotspots == [
        {"component": "b", "fan_in": 1, "fan_out": 0, "in_cycle": False},
        {"component": "a", "fan_in": 0, "fan_out": 1, "in_cycle": False},
    ]

async def test_rescan_supersedes_previous_run_instead_of_conflicting() -> None:
    store = KnowledgeStore()
    first = await RunCoordinator(InMemoryScopeProvider(_REPO), store=store).run()
    assert first.complete
    (first_root,) = store.root_task_ids()

    changed = dict(_REPO)
    del changed["README.md"]
    changed["pkg/core.py"] = "from app.main import run\n\nVERSION = 2\n"
    second = await RunCoordinator(InMemoryScopeProvider(changed), store=store).run(
        rescan_of=first_root
    )

    assert second.complete
    assert second.conflicts == ()
    readme = second.graph.entity(component_ref("README.md"))
    assert readme is not None and readme.stale
    core = second.graph.entity(component_ref("pkg/core.py"))
    assert core is not None and core.value("size_bytes") == len(changed["pkg/core.py"])
    assert second.phase_outputs[Phase.RECON].views["file_count"] == 3


async def test_rerun_without_rescan_records_disagreements() -> None:
    store = KnowledgeStore()
    await RunCoordinator(InMemoryScopeProvider(_REPO), store=store).run()
    changed = dict(_REPO, **{"pkg/core.py": "from app.main import run\n\nVERSION = 2\n"})

    second = await RunCoordinator(InMemoryScopeProvider(changed), store=store).run()

    attributes = {(conflict.subject.key, conflict.attribute) for conflict in second.conflicts}
    assert ("pkg/core.py", "size_bytes") in attributes


def test_run_analysis_is_a_synchronous_wrapper() -> None:
    result = run_analysis(
        InMemoryScopeProvider(_REPO),
        settings=OrchestrationSettings(phase_order=(Phase.RECON,)),
    )

    assert result.complete
    assert tuple(result.phase_outputs) == (Phase.RECON,)


def test_coordinator_argument_validation() -> None:
    provider = InMemoryScopeProvider(_REPO)

    with pytest.raises(ValueError, match="either settings or config"):
        RunCoordinator(provider, settings=OrchestrationSettings(), config={})
    with pytest.raises(SchedulerError, match="no run in progress"):
        RunCoordinator(provider).cancel("T000001")

    config = default_config()
    config["orchestration"]["concurrency_limit"] = 2
    config["orchestration"]["retry_limit"] = 0
    configured = RunCoordinator(provider, config=config)
    assert configured.settings.concurrency_limit == 2
    assert configured.settings.retry_limit == 0
