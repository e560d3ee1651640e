import asyncio
import json
import threading

import pytest

from automode.domain.feature import Feature
from automode.errors import FeatureNotFoundError, InvalidFeatureIdError
from automode.pipeline.service import PipelineService
from automode.services.context_manager import FileContextManager
from automode.services.feature_loader import FileFeatureLoader, feature_dir, features_root
from automode.services.feature_tools import (
    TOOL_SERVER_NAME,
    FeatureStatusTool,
    create_feature_tools_server,
)


def _write_feature(project, payload):
    path = features_root(project) / payload["id"] / "feature.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def loader():
    return FileFeatureLoader()


def test_load_features_orders_and_skips_bad_files(tmp_path, loader):
    _write_feature(tmp_path, {"id": "b", "description": "second"})
    _write_feature(tmp_path, {"id": "z", "description": "first", "order": 0})
    _write_feature(tmp_path, {"id": "a", "description": "third"})
    broken = features_root(tmp_path) / "broken" / "feature.json"
    broken.parent.mkdir(parents=True)
    broken.write_text("{", encoding="utf-8")

    features = loader.load_features(tmp_path)

    assert [feature.id for feature in features] == ["z", "a", "b"]


def test_missing_project_has_no_features(tmp_path, loader):
    assert loader.load_features(tmp_path / "nowhere") == []


def test_get_feature_raises_for_unknown_id(tmp_path, loader):
    with pytest.raises(FeatureNotFoundError):
        loader.get_feature(tmp_path, "ghost")


def test_update_status_keeps_unknown_keys(tmp_path, loader):
    _write_feature(
        tmp_path,
        {"id": "f1", "description": "Add login", "skipTests": True, "imagePaths": ["a.png"]},
    )

    updated = loader.update_feature_status(tmp_path, "f1", "in_progress", summary="started")
    stored = json.loads(loader.feature_path(tmp_path, "f1").read_text(encoding="utf-8"))

    assert updated.status == "in_progress"
    assert stored["status"] == "in_progress"
    assert stored["summary"] == "started"
    assert stored["imagePaths"] == ["a.png"]
    assert stored["skipTests"] is True
    assert "updatedAt" in stored


def test_save_feature_round_trips(tmp_path, loader):
    feature = Feature(id="f2", description="Docs", dependencies=["f1"], model="sonnet")

    loader.save_feature(tmp_path, feature)

    assert loader.get_feature(tmp_path, "f2") == feature


def test_context_manager_appends_output(tmp_path):
    context = FileContextManager()

    assert context.read_context(tmp_path, "f1") == ""

    async def _write():
        await context.write_to_context_file(tmp_path, "f1", "one\n")
        await context.write_to_context_file(tmp_path, "f1", "")
        await context.write_to_context_file(tmp_path, "f1", "two")

    asyncio.run(_write())

    assert context.read_context(tmp_path, "f1") == "one\ntwo"


def _tool(tmp_path, loader, *step_names):
    pipeline = PipelineService()
    steps = [pipeline.add_step(tmp_path, name=name) for name in step_names]
    return FeatureStatusTool(loader, pipeline, tmp_path), steps


def test_completion_claim_without_pipeline_lands_directly(tmp_path, loader):
    _write_feature(tmp_path, {"id": "f1", "status": "in_progress"})
    status_tool, _ = _tool(tmp_path, loader)

    message = asyncio.run(status_tool.update_status("f1", "verified", "done"))

    assert message == "Successfully updated feature f1 to status: verified"
    assert loader.get_feature(tmp_path, "f1").summary == "done"


def test_completion_claim_enters_first_pipeline_step(tmp_path, loader):
    _write_feature(tmp_path, {"id": "f1", "status": "in_progress"})
    status_tool, steps = _tool(tmp_path, loader, "Review", "Docs")

    asyncio.run(status_tool.update_status("f1", "verified"))

    assert loader.get_feature(tmp_path, "f1").status == f"pipeline_{steps[0].id}"


def test_completion_claim_respects_exclusions_and_skip_tests(tmp_path, loader):
    status_tool, steps = _tool(tmp_path, loader, "Review")
    _write_feature(
        tmp_path,
        {"id": "f1", "status": "in_progress", "skipTests": True, "excludedPipelineSteps": [steps[0].id]},
    )

    asyncio.run(status_tool.update_status("f1", "verified"))

    assert loader.get_feature(tmp_path, "f1").status == "waiting_approval"


def test_handle_reports_errors_as_tool_results(tmp_path, loader):
    _write_feature(tmp_path, {"id": "f1", "status": "in_progress"})
    status_tool, _ = _tool(tmp_path, loader)

    bad_status = asyncio.run(status_tool.handle({"featureId": "f1", "status": "pipeline_x"}))
    missing = asyncio.run(status_tool.handle({"featureId": "ghost", "status": "verified"}))
    ok = asyncio.run(status_tool.handle({"featureId": "f1", "status": "backlog"}))

    assert bad_status["is_error"] is True
    assert missing["is_error"] is True
    assert "is_error" not in ok
    assert loader.get_feature(tmp_path, "f1").status == "backlog"


def test_tools_server_is_named(tmp_path, loader):
    status_tool, _ = _tool(tmp_path, loader)

    server = create_feature_tools_server(status_tool)

    assert server["name"] == TOOL_SERVER_NAME
    assert server["type"] == "sdk"


@pytest.mark.parametrize(
    "raw, expected",
    [("false", False), ("0", False), ("", False), ("True", True), ("yes", True), (1, True), (None, False)],
)
def test_skip_tests_accepts_string_flags(raw, expected):
    feature = Feature.from_mapping({"id": "f1", "skipTests": raw})

    assert feature.skip_tests is expected


def test_string_false_skip_tests_lands_in_verified(tmp_path, loader):
    status_tool, _ = _tool(tmp_path, loader)
    _write_feature(tmp_path, {"id": "f1", "status": "in_progress", "skipTests": "false"})

    asyncio.run(status_tool.update_status("f1", "verified"))

    assert loader.get_feature(tmp_path, "f1").status == "verified"


@pytest.mark.parametrize("feature_id", ["../../etc", "a/b", "..\\outside", "..", ".", ""])
def test_feature_ids_outside_the_features_root_are_rejected(tmp_path, loader, feature_id):
    with pytest.raises(InvalidFeatureIdError):
        feature_dir(tmp_path, feature_id)
    with pytest.raises(InvalidFeatureIdError):
        loader.update_feature_status(tmp_path, feature_id, "verified")


def test_handle_rejects_traversal_ids_without_writing(tmp_path, loader):
    escape = tmp_path / ".automaker" / "escape"
    escape.mkdir(parents=True)
    (escape / "feature.json").write_text(json.dumps({"id": "escape", "status": "backlog"}), encoding="utf-8")
    status_tool, _ = _tool(tmp_path, loader)

    result = asyncio.run(status_tool.handle({"featureId": "../escape", "status": "verified"}))

    assert result["is_error"] is True
    assert "Invalid feature id" in result["content"][0]["text"]
    stored = json.loads((escape / "feature.json").read_text(encoding="utf-8"))
    assert stored["status"] == "backlog"


def test_completion_claim_reads_pipeline_off_the_event_loop(tmp_path, loader):
    _write_feature(tmp_path, {"id": "f1", "status": "in_progress"})
    status_tool, _ = _tool(tmp_path, loader)
    original = status_tool.pipeline.get_pipeline_config
    readers = []

    def recording(project_path):
        readers.append(threading.get_ident())
        return original(project_path)

    status_tool.pipeline.get_pipeline_config = recording

    async def _claim():
        return threading.get_ident(), await status_tool.update_status("f1", "verified")

    loop_thread, _ = asyncio.run(_claim())

    assert readers and loop_thread not in readers
