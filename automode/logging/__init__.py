"""Structured logging helpers for automode components."""

from __future__ import annotations

import functools
import inspect
import json
import logging
import os
import sys
import threading
import time
from collections.abc import Callable, Mapping
from contextlib import ContextDecorator
from logging import Handler, LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

_DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
_DEFAULT_BACKUP_COUNT = 5
_LOGGER_NAME = "automode"
_LOCK = threading.RLock()
_CONFIGURED = False
_FILE_HANDLER: Optional[Handler] = None

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",  # cyan
    "INFO": "\033[32m",  # green
    "WARNING": "\033[33m",  # yellow
    "ERROR": "\033[31m",  # red
    "CRITICAL": "\033[41m",  # red background
}
_RESET_COLOR = "\033[0m"


def _record_metadata(record: LogRecord) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    if hasattr(record, "metadata") and isinstance(record.metadata, Mapping):
        metadata.update(record.metadata)
    extra = record.__dict__.get("extra")
    if isinstance(extra, Mapping) and isinstance(extra.get("metadata"), Mapping):
        metadata.update(extra["metadata"])
    return metadata


class AutomodeJsonFormatter(logging.Formatter):
    """JSON formatter that carries the ``metadata`` extra as a nested object."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        metadata = _record_metadata(record)
        if metadata:
            payload["metadata"] = metadata
        return json.dumps(payload, default=str, ensure_ascii=False)


class AutomodeConsoleFormatter(logging.Formatter):
    """Console formatter with colour support and a compact feature tag."""

    default_time_format = "%H:%M:%S"

    def format(self, record: LogRecord) -> str:  # noqa: D401 - inherited docs
        record.__dict__.setdefault("component", record.name)
        feature_id = _record_metadata(record).get("feature_id")
        record.__dict__["feature_tag"] = f" [{feature_id}]" if feature_id else ""
        base = super().format(record)
        colour = _LEVEL_COLORS.get(record.levelname)
        if not colour or not sys.stderr.isatty():
            return base
        return f"{colour}{base}{_RESET_COLOR}"


def _coerce_level(value: Optional[str | int]) -> int:
    if not value:
        return logging.INFO
    if isinstance(value, int):
        return value
    value = value.strip()
    if value.isdigit():
        return int(value)
    mapped = getattr(logging, value.upper(), None)
    if isinstance(mapped, int):
        return mapped
    return logging.INFO


def _create_log_directory() -> Path:
    log_dir = Path(os.getenv("AUTOMODE_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def configure_logging(
    level: Optional[str | int] = None,
    *,
    log_file: Optional[Path | str] = None,
    enable_json: bool = True,
) -> None:
    """Initialise automode logging: console output plus a rotating file sink."""

    global _CONFIGURED, _FILE_HANDLER

    with _LOCK:
        resolved_level = _coerce_level(level or os.getenv("AUTOMODE_LOG_LEVEL"))
        logger = logging.getLogger(_LOGGER_NAME)

        if not _CONFIGURED:
            logger.handlers.clear()
            logger.setLevel(resolved_level)
            logger.propagate = False

            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                AutomodeConsoleFormatter(
                    fmt="%(asctime)s %(levelname)s %(component)s%(feature_tag)s %(message)s",
                    datefmt="%H:%M:%S",
                )
            )
            logger.addHandler(console_handler)
            _CONFIGURED = True
        else:
            logger.setLevel(resolved_level)

        if log_file:
            target_file = Path(log_file)
            target_file.parent.mkdir(parents=True, exist_ok=True)
        else:
            target_file = _create_log_directory() / "automode.log"

        if _FILE_HANDLER and getattr(_FILE_HANDLER, "baseFilename", None) == os.path.abspath(
            target_file
        ):
            return

        if _FILE_HANDLER is not None:
            logger.removeHandler(_FILE_HANDLER)
            try:
                _FILE_HANDLER.close()
            finally:
                _FILE_HANDLER = None

        rotation_handler = RotatingFileHandler(
            target_file,
            maxBytes=_DEFAULT_MAX_BYTES,
            backupCount=_DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )

        if enable_json:
            formatter: logging.Formatter = AutomodeJsonFormatter()
        else:
            formatter = logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

        rotation_handler.setFormatter(formatter)
        logger.addHandler(rotation_handler)
        _FILE_HANDLER = rotation_handler


def get_logger(name: str) -> logging.Logger:
    """Return a logger scoped under the ``automode`` namespace."""

    configure_logging()
    qualified = name if name.startswith(f"{_LOGGER_NAME}.") else f"{_LOGGER_NAME}.{name}"
    return logging.getLogger(qualified)


class log_exceptions(ContextDecorator):
    """Context manager/decorator that logs uncaught exceptions."""

    def __init__(self, logger: logging.Logger, *, message: str = "Unhandled error") -> None:
        self.logger = logger
        self.message = message

    def __enter__(self) -> "log_exceptions":  # noqa: D401 - context protocol
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback) -> bool:
        if exc_type is not None and not issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            self.logger.error(
                self.message,
                exc_info=(exc_type, exc_value, exc_traceback),
            )
        return False


def log_action(
    action: str,
    *,
    start_level: int = logging.DEBUG,
    success_level: int = logging.INFO,
    failure_level: int = logging.ERROR,
    logger_factory: Callable[[], logging.Logger] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator that emits structured start/success/error logs around a callable.

    Coroutine functions are wrapped with an async wrapper so the timing covers
    the awaited body rather than coroutine creation.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        func_logger = logger_factory() if logger_factory else get_logger(func.__module__)

        def _start() -> float:
            func_logger.log(
                start_level,
                "%s:start",
                action,
                extra={"metadata": {"action": action, "event": "start"}},
            )
            return time.perf_counter()

        def _failed() -> None:
            func_logger.log(
                failure_level,
                "%s:error",
                action,
                extra={"metadata": {"action": action, "event": "error"}},
                exc_info=True,
            )

        def _succeeded(start_time: float) -> None:
            duration = time.perf_counter() - start_time
            func_logger.log(
                success_level,
                "%s:success",
                action,
                extra={"metadata": {"action": action, "event": "success", "duration": duration}},
            )

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start_time = _start()
                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    _failed()
                    raise
                _succeeded(start_time)
                return result

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = _start()
            try:
                result = func(*args, **kwargs)
            except Exception:
                _failed()
                raise
            _succeeded(start_time)
            return result

        return wrapper

    return decorator


__all__ = [
    "AutomodeConsoleFormatter",
    "AutomodeJsonFormatter",
    "configure_logging",
    "get_logger",
    "log_action",
    "log_exceptions",
]
