import asyncio
import json

import pytest

from automode.abort import AbortHandle
from automode.agents.feature_executor import ExecutionResult
from automode.agents.scheduler import ConcurrencyScheduler, RunningTaskRegistry
from automode.errors import FeatureAdmissionError, InvalidFeatureIdError
from automode.domain.feature import Feature
from automode.services.feature_loader import FileFeatureLoader, features_root


class FakeExecutor:
    """Stands in for ``FeatureExecutor.implement_feature``."""

    def __init__(self, loader, *, gate=None, fail=(), block_until_abort=()):
        self.loader = loader
        self.gate = gate
        self.fail = set(fail)
        self.block_until_abort = set(block_until_abort)
        self.started = []
        self.peak = 0
        self.active = 0

    async def implement_feature(self, feature, project_path, send, record):
        self.started.append(feature.id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if feature.id in self.block_until_abort:
                record.abort = AbortHandle()
                await record.abort.wait()
                return ExecutionResult(False, "Auto mode aborted")
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if feature.id in self.fail:
                raise RuntimeError(f"{feature.id} exploded")
            self.loader.update_feature_status(project_path, feature.id, "verified")
            return ExecutionResult(True, f"{feature.id} done")
        finally:
            self.active -= 1

    async def commit_changes_only(self, feature, project_path, send, record):
        self.started.append(feature.id)
        raise RuntimeError("nothing to commit")


def _write(project, feature_id, **fields):
    payload = {"id": feature_id, "description": feature_id, "status": "backlog", **fields}
    path = features_root(project) / feature_id / "feature.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


@pytest.fixture
def loader():
    return FileFeatureLoader()


def test_registry_enforces_capacity_and_uniqueness():
    registry = RunningTaskRegistry()

    assert registry.try_register("a", 2) is not None
    assert registry.try_register("a", 2) is None
    assert registry.try_register("b", 2) is not None
    assert registry.try_register("c", 2) is None
    assert registry.release("a").feature_id == "a"
    assert registry.release("a") is None
    assert "b" in registry
    assert len(registry) == 1


@pytest.mark.parametrize("value", [0, -1, True, "2", 1.5])
def test_max_concurrency_must_be_positive_int(loader, value):
    scheduler = ConcurrencyScheduler(FakeExecutor(loader), loader)

    with pytest.raises(ValueError):
        scheduler.max_concurrency = value
    assert scheduler.max_concurrency == 3


def test_select_eligible_respects_status_dependencies_and_slots(loader):
    scheduler = ConcurrencyScheduler(FakeExecutor(loader), loader, max_concurrency=2)
    features = [
        Feature(id="done", status="verified"),
        Feature(id="a", dependencies=["done"]),
        Feature(id="b", dependencies=["pending"]),
        Feature(id="c", dependencies=["missing"]),
        Feature(id="pending", status="in_progress"),
        Feature(id="d"),
        Feature(id="e"),
    ]

    assert [feature.id for feature in scheduler.select_eligible(features)] == ["a", "d"]


def test_never_exceeds_max_concurrency(tmp_path, loader):
    for feature_id in ("f1", "f2", "f3"):
        _write(tmp_path, feature_id)

    async def _run():
        gate = asyncio.Event()
        executor = FakeExecutor(loader, gate=gate)
        scheduler = ConcurrencyScheduler(executor, loader, max_concurrency=2)
        events = []

        started = await scheduler.start_next_eligible(tmp_path, events.append)
        again = await scheduler.start_next_eligible(tmp_path, events.append)
        await asyncio.sleep(0)
        snapshot = scheduler.status()

        gate.set()
        await asyncio.gather(*(record.task for record in started))
        return executor, scheduler, started, again, snapshot, events

    executor, scheduler, started, again, snapshot, events = asyncio.run(_run())

    assert [record.feature_id for record in started] == ["f1", "f2"]
    assert again == []
    assert snapshot == {
        "running_features": ["f1", "f2"],
        "running_count": 2,
        "max_concurrency": 2,
        "can_start_new_task": False,
    }
    assert executor.peak == 2
    assert scheduler.running_feature_ids() == []
    assert [event["featureId"] for event in events] == ["f1", "f2"]
    assert all(event["passes"] for event in events)
    assert loader.get_feature(tmp_path, "f3").status == "backlog"


def test_run_until_idle_completes_dependency_chain(tmp_path, loader):
    _write(tmp_path, "f1")
    _write(tmp_path, "f2", dependencies=["f1"])
    _write(tmp_path, "f3")
    executor = FakeExecutor(loader)
    scheduler = ConcurrencyScheduler(executor, loader, max_concurrency=2, poll_interval=0.01)
    events = []

    asyncio.run(asyncio.wait_for(scheduler.run_until_idle(tmp_path, events.append), timeout=10))

    assert executor.started == ["f1", "f3", "f2"]
    assert executor.peak <= 2
    assert events[0]["type"] == "auto_mode_started"
    assert events[-1]["type"] == "auto_mode_stopped"
    assert {loader.get_feature(tmp_path, fid).status for fid in ("f1", "f2", "f3")} == {"verified"}


def test_failure_releases_slot_and_resets_feature(tmp_path, loader):
    _write(tmp_path, "f1")
    _write(tmp_path, "f2")
    executor = FakeExecutor(loader, fail={"f1"})
    scheduler = ConcurrencyScheduler(executor, loader, max_concurrency=1, poll_interval=0.01)
    events = []

    asyncio.run(asyncio.wait_for(scheduler.run_until_idle(tmp_path, events.append), timeout=10))

    failed = loader.get_feature(tmp_path, "f1")
    assert executor.started == ["f1", "f2"]
    assert failed.status == "backlog"
    assert failed.error == "f1 exploded"
    assert loader.get_feature(tmp_path, "f2").status == "verified"
    assert scheduler.running_feature_ids() == []
    complete = [event for event in events if event["type"] == "auto_mode_feature_complete"]
    assert [(event["featureId"], event["passes"]) for event in complete] == [("f1", False), ("f2", True)]


def test_stop_feature_aborts_and_frees_slot(tmp_path, loader):
    _write(tmp_path, "f1")

    async def _run():
        executor = FakeExecutor(loader, block_until_abort={"f1"})
        scheduler = ConcurrencyScheduler(executor, loader)
        events = []
        (record,) = await scheduler.start_next_eligible(tmp_path, events.append)
        while record.abort is None:
            await asyncio.sleep(0)

        stopped = scheduler.stop_feature("f1")
        unknown = scheduler.stop_feature("nope")
        await asyncio.gather(record.task, return_exceptions=True)
        return scheduler, record, stopped, unknown, events

    scheduler, record, stopped, unknown, events = asyncio.run(_run())

    assert stopped is True
    assert unknown is False
    assert record.abort.aborted
    assert scheduler.status()["running_count"] == 0
    assert events[-1]["featureId"] == "f1"
    assert events[-1]["passes"] is False


def test_stop_all_prevents_new_starts(tmp_path, loader):
    _write(tmp_path, "f1")
    scheduler = ConcurrencyScheduler(FakeExecutor(loader), loader)

    scheduler.stop_all()

    assert asyncio.run(scheduler.start_next_eligible(tmp_path, lambda event: None)) == []


def test_start_feature_validates_mode_id_and_slots(tmp_path, loader):
    _write(tmp_path, "f1")
    _write(tmp_path, "f2")
    scheduler = ConcurrencyScheduler(FakeExecutor(loader, block_until_abort={"f1"}), loader)
    scheduler.max_concurrency = 1

    async def _run():
        with pytest.raises(ValueError):
            await scheduler.start_feature(tmp_path, "f1", lambda event: None, mode="deploy")
        with pytest.raises(InvalidFeatureIdError):
            await scheduler.start_feature(tmp_path, "../f1", lambda event: None)
        record = await scheduler.start_feature(tmp_path, "f1", lambda event: None)
        while record.abort is None:
            await asyncio.sleep(0)
        with pytest.raises(FeatureAdmissionError, match="already running"):
            await scheduler.start_feature(tmp_path, "f1", lambda event: None)
        with pytest.raises(FeatureAdmissionError, match="slots are in use"):
            await scheduler.start_feature(tmp_path, "f2", lambda event: None)
        scheduler.stop_feature("f1")
        await asyncio.gather(record.task, return_exceptions=True)

    asyncio.run(_run())

    assert scheduler.running_feature_ids() == []
    assert loader.get_feature(tmp_path, "f2").status == "backlog"


def test_failed_commit_run_keeps_feature_status(tmp_path, loader):
    _write(tmp_path, "f1", status="verified")
    executor = FakeExecutor(loader)
    scheduler = ConcurrencyScheduler(executor, loader)
    events = []

    async def _run():
        record = await scheduler.start_feature(tmp_path, "f1", events.append, mode="commit")
        return await record.task

    result = asyncio.run(_run())

    assert result is None
    assert executor.started == ["f1"]
    assert events[-1]["passes"] is False
    assert loader.get_feature(tmp_path, "f1").status == "verified"
    assert scheduler.running_feature_ids() == []
