import json
import os
import pathlib
import re

import pytest

from automode.domain.pipeline import PipelineConfig, PipelineStep
from automode.errors import PipelineStepNotFoundError
from automode.pipeline import service as pipeline_service
from automode.pipeline.service import (
    PipelineService,
    atomic_write_json,
    generate_step_id,
    pipeline_config_path,
)


def _config(*steps):
    return PipelineConfig(
        steps=[PipelineStep(id=step_id, name=step_id, order=index) for index, step_id in enumerate(steps)]
    )


@pytest.fixture
def service():
    return PipelineService()


def test_missing_config_returns_default(tmp_path, service):
    config = service.get_pipeline_config(tmp_path)

    assert config.version == 1
    assert config.steps == []


def test_corrupt_config_returns_default(tmp_path, service):
    path = pipeline_config_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    assert service.get_pipeline_config(tmp_path).steps == []


def test_generate_step_id_shape():
    step_id = generate_step_id()

    assert re.fullmatch(r"step_[0-9a-z]+_[0-9a-z]{6}", step_id)
    assert generate_step_id() != step_id


def test_add_step_persists_and_renumbers(tmp_path, service):
    first = service.add_step(tmp_path, name="Review", instructions="Review the diff")
    second = service.add_step(tmp_path, name="Docs", order=0)

    stored = json.loads(pipeline_config_path(tmp_path).read_text(encoding="utf-8"))
    orders = {step["id"]: step["order"] for step in stored["steps"]}

    assert stored["version"] == 1
    assert orders[first.id] == 1
    assert orders[second.id] == 0
    assert stored["steps"][0]["createdAt"]
    assert not list(pipeline_config_path(tmp_path).parent.glob("*.tmp.*"))


def test_failed_rename_removes_temp_file_and_keeps_original(tmp_path, service, monkeypatch):
    service.add_step(tmp_path, name="Review")
    path = pipeline_config_path(tmp_path)
    before = path.read_text(encoding="utf-8")

    def failing_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(pipeline_service.os, "replace", failing_replace)

    with pytest.raises(OSError, match="disk full"):
        service.add_step(tmp_path, name="Docs")

    assert path.read_text(encoding="utf-8") == before
    assert not list(path.parent.glob("*.tmp.*"))


def test_failed_write_removes_partial_temp_file(tmp_path, monkeypatch):
    target = tmp_path / "pipeline.json"
    original_write_text = pathlib.Path.write_text

    def partial_write(self, data, *args, **kwargs):
        original_write_text(self, data[:5], *args, **kwargs)
        raise OSError("interrupted")

    monkeypatch.setattr(pathlib.Path, "write_text", partial_write)

    with pytest.raises(OSError, match="interrupted"):
        atomic_write_json(target, {"version": 1, "steps": []})

    assert not target.exists()
    assert os.listdir(tmp_path) == []


def test_add_then_delete_restores_steps(tmp_path, service):
    service.add_step(tmp_path, name="A")
    service.add_step(tmp_path, name="B")
    before = [(step.id, step.order) for step in service.get_pipeline_config(tmp_path).steps]

    added = service.add_step(tmp_path, name="C")
    service.delete_step(tmp_path, added.id)

    after = [(step.id, step.order) for step in service.get_pipeline_config(tmp_path).steps]
    assert after == before


def test_update_step_protects_id_and_created_at(tmp_path, service):
    step = service.add_step(tmp_path, name="Review")

    updated = service.update_step(
        tmp_path,
        step.id,
        {"id": "hijack", "created_at": "yesterday", "name": "Code review"},
    )

    assert updated.id == step.id
    assert updated.created_at == step.created_at
    assert updated.name == "Code review"
    assert service.get_step(tmp_path, step.id).name == "Code review"


def test_unknown_step_operations_raise(tmp_path, service):
    service.add_step(tmp_path, name="Review")

    with pytest.raises(PipelineStepNotFoundError):
        service.update_step(tmp_path, "missing", {"name": "x"})
    with pytest.raises(PipelineStepNotFoundError):
        service.delete_step(tmp_path, "missing")
    with pytest.raises(PipelineStepNotFoundError):
        service.reorder_steps(tmp_path, ["missing"])


def test_reorder_is_authoritative_and_idempotent(tmp_path, service):
    a = service.add_step(tmp_path, name="A")
    b = service.add_step(tmp_path, name="B")
    c = service.add_step(tmp_path, name="C")

    service.reorder_steps(tmp_path, [c.id, a.id, b.id])
    orders = {step.id: step.order for step in service.get_pipeline_config(tmp_path).steps}
    assert orders == {c.id: 0, a.id: 1, b.id: 2}

    current = [step.id for step in service.get_pipeline_config(tmp_path).sorted_steps()]
    service.reorder_steps(tmp_path, current)
    assert {step.id: step.order for step in service.get_pipeline_config(tmp_path).steps} == orders

    service.reorder_steps(tmp_path, [b.id])
    assert [step.id for step in service.get_pipeline_config(tmp_path).steps] == [b.id]


def test_next_status_walks_steps_in_order(service):
    config = _config("A", "B")

    assert service.get_next_status("in_progress", config, False, []) == "pipeline_A"
    assert service.get_next_status("pipeline_A", config, False, []) == "pipeline_B"
    assert service.get_next_status("pipeline_B", config, False, []) == "verified"


def test_next_status_skips_excluded_steps(service):
    config = _config("A", "B")

    assert service.get_next_status("in_progress", config, False, ["A"]) == "pipeline_B"
    assert service.get_next_status("in_progress", config, True, ["A", "B"]) == "waiting_approval"


def test_next_status_without_steps(service):
    assert service.get_next_status("in_progress", None, True) == "waiting_approval"
    assert service.get_next_status("in_progress", PipelineConfig(), False) == "verified"


def test_next_status_from_excluded_current_step_moves_forward(service):
    config = _config("A", "B", "C")

    assert service.get_next_status("pipeline_B", config, False, ["B"]) == "pipeline_C"


def test_next_status_for_deleted_step_is_terminal(service):
    config = _config("A", "B")

    assert service.get_next_status("pipeline_gone", config, False) == "verified"
    assert service.get_next_status("pipeline_gone", config, True) == "waiting_approval"


def test_other_statuses_are_unchanged(service):
    assert service.get_next_status("backlog", _config("A"), False) == "backlog"
    assert service.get_next_status("verified", _config("A"), False) == "verified"


@pytest.mark.parametrize("count", [0, 1, 3, 6])
def test_n_steps_reach_terminal_after_n_plus_one_advances(service, count):
    config = _config(*[f"s{index}" for index in range(count)])
    status = "in_progress"
    advances = 0
    while status not in ("verified", "waiting_approval"):
        status = service.get_next_status(status, config, False)
        advances += 1
        assert advances <= count + 1

    assert advances == count + 1
    assert status == "verified"


def test_pipeline_status_helpers(service):
    assert service.is_pipeline_status("pipeline_abc")
    assert not service.is_pipeline_status("in_progress")
    assert service.get_step_id_from_status("pipeline_abc") == "abc"
    assert service.get_step_id_from_status("verified") is None
