import asyncio
import importlib
import json
import logging

import pytest

import automode.logging as logging_module


@pytest.fixture(autouse=True)
def _reload_logging_module():
    importlib.reload(logging_module)
    yield
    importlib.reload(logging_module)


def _propagating(caplog, level, name):
    base_logger = logging.getLogger("automode")
    previous = base_logger.propagate
    base_logger.propagate = True
    caplog.set_level(level, logger=name)
    return base_logger, previous


def test_configure_logging_writes_json(tmp_path, monkeypatch):
    monkeypatch.setenv("AUTOMODE_LOG_DIR", str(tmp_path))
    logging_module.configure_logging(level="info")
    logger = logging_module.get_logger("tests.logging")
    logger.info("structured message", extra={"metadata": {"feature_id": "f1"}})
    for handler in logging.getLogger("automode").handlers:
        handler.flush()
    contents = (tmp_path / "automode.log").read_text(encoding="utf-8").strip().splitlines()
    payload = json.loads(contents[-1])

    assert payload["message"] == "structured message"
    assert payload["metadata"]["feature_id"] == "f1"
    assert payload["level"] == "INFO"
    assert payload["component"] == "automode.tests.logging"


def test_log_level_comes_from_environment(monkeypatch):
    monkeypatch.setenv("AUTOMODE_LOG_LEVEL", "warning")
    logging_module.configure_logging()

    assert logging.getLogger("automode").level == logging.WARNING


def test_log_action_decorator_logs_success(caplog):
    logger = logging_module.get_logger("tests.actions")
    base_logger, previous = _propagating(caplog, "INFO", logger.name)

    @logging_module.log_action("sample-action", logger_factory=lambda: logger)
    def _run():
        return "ok"

    try:
        assert _run() == "ok"
    finally:
        base_logger.propagate = previous

    assert "sample-action:start" not in caplog.text
    assert "sample-action:success" in caplog.text


def test_log_action_wraps_coroutines(caplog):
    logger = logging_module.get_logger("tests.async_actions")
    base_logger, previous = _propagating(caplog, "DEBUG", logger.name)

    @logging_module.log_action("async-action", logger_factory=lambda: logger)
    async def _run():
        await asyncio.sleep(0)
        raise RuntimeError("nope")

    try:
        with pytest.raises(RuntimeError):
            asyncio.run(_run())
    finally:
        base_logger.propagate = previous

    assert "async-action:start" in caplog.text
    assert "async-action:error" in caplog.text


def test_log_exceptions_records_errors(caplog):
    logger = logging_module.get_logger("tests.exceptions")
    base_logger, previous = _propagating(caplog, "ERROR", logger.name)

    try:
        with pytest.raises(RuntimeError):
            with logging_module.log_exceptions(logger, message="Run failed"):
                raise RuntimeError("boom")
    finally:
        base_logger.propagate = previous

    assert "Run failed" in caplog.text
