"""Concurrency control for auto-mode feature runs."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Union

from automode.abort import AbortHandle
from automode.domain.feature import Feature, FeatureStatus
from automode.errors import FeatureAdmissionError
from automode.logging import get_logger, log_action
from automode.services.feature_loader import FeatureLoader, validate_feature_id

if TYPE_CHECKING:
    from automode.agents.feature_executor import ExecutionResult, FeatureExecutor


logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 3

# Executor entry points a single admitted feature can run.
RUN_MODES = ("implement", "resume", "commit", "pipeline")
_RESET_ON_FAILURE = frozenset({"implement", "resume"})

SendToRenderer = Callable[[dict[str, Any]], Any]
PathLike = Union[str, Path]


@dataclass
class RunningTask:
    """Run record shared between a feature's run and stop requests.

    ``abort`` and ``stream`` are set by the executor while the agent is
    active and cleared again on every exit path.
    """

    feature_id: str
    abort: Optional[AbortHandle] = None
    task: Optional[asyncio.Task] = None
    stream: Any = None
    started_at: float = field(default_factory=time.time)


class RunningTaskRegistry:
    """Feature id to run record table; every mutation happens under one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, RunningTask] = {}

    def try_register(self, feature_id: str, max_concurrency: int) -> Optional[RunningTask]:
        """Insert a record if a slot is free and the feature is not running."""

        with self._lock:
            if feature_id in self._tasks or len(self._tasks) >= max_concurrency:
                return None
            record = RunningTask(feature_id=feature_id)
            self._tasks[feature_id] = record
            return record

    def release(self, feature_id: str) -> Optional[RunningTask]:
        with self._lock:
            return self._tasks.pop(feature_id, None)

    def get(self, feature_id: str) -> Optional[RunningTask]:
        with self._lock:
            return self._tasks.get(feature_id)

    def running_ids(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def records(self) -> list[RunningTask]:
        with self._lock:
            return list(self._tasks.values())

    def count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, feature_id: object) -> bool:
        with self._lock:
            return feature_id in self._tasks

    def __len__(self) -> int:
        return self.count()


def _validate_concurrency(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"max_concurrency must be a positive integer, got {value!r}")
    return value


class ConcurrencyScheduler:
    """Admits backlog features into at most ``max_concurrency`` parallel runs."""

    def __init__(
        self,
        executor: "FeatureExecutor",
        loader: FeatureLoader,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        poll_interval: float = 1.0,
    ) -> None:
        self.executor = executor
        self.loader = loader
        self.registry = RunningTaskRegistry()
        self._max_concurrency = _validate_concurrency(max_concurrency)
        self.poll_interval = poll_interval
        self._stopping = False
        self._failed: set[str] = set()

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------
    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @max_concurrency.setter
    def max_concurrency(self, value: int) -> None:
        self._max_concurrency = _validate_concurrency(value)
        logger.info(
            "Max concurrency set to %s",
            value,
            extra={"metadata": {"max_concurrency": value}},
        )

    def can_start_new_task(self) -> bool:
        return self.registry.count() < self._max_concurrency

    def running_feature_ids(self) -> list[str]:
        return self.registry.running_ids()

    def status(self) -> dict[str, Any]:
        return {
            "running_features": self.registry.running_ids(),
            "running_count": self.registry.count(),
            "max_concurrency": self._max_concurrency,
            "can_start_new_task": self.can_start_new_task(),
        }

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def select_eligible(self, features: Iterable[Feature]) -> list[Feature]:
        """Backlog features to admit next, limited to the free slots."""

        features = list(features)
        free = self._max_concurrency - self.registry.count()
        if free <= 0:
            return []

        by_id = {feature.id: feature for feature in features}
        selected: list[Feature] = []
        for feature in features:
            if len(selected) >= free:
                break
            if feature.status != FeatureStatus.BACKLOG.value:
                continue
            if feature.id in self.registry or feature.id in self._failed:
                continue
            blocking = [
                dep
                for dep in feature.dependencies
                if dep not in by_id or not by_id[dep].is_done()
            ]
            if blocking:
                logger.debug(
                    "Feature %s waiting on dependencies %s",
                    feature.id,
                    ", ".join(blocking),
                    extra={"metadata": {"feature_id": feature.id}},
                )
                continue
            selected.append(feature)
        return selected

    async def start_next_eligible(
        self, project_path: PathLike, send_to_renderer: SendToRenderer
    ) -> list[RunningTask]:
        """Start as many eligible backlog features as there are free slots."""

        if self._stopping:
            return []
        features = await asyncio.to_thread(self.loader.load_features, project_path)
        started: list[RunningTask] = []
        for feature in self.select_eligible(features):
            record = self.registry.try_register(feature.id, self._max_concurrency)
            if record is None:
                break
            try:
                await asyncio.to_thread(
                    self.loader.update_feature_status,
                    project_path,
                    feature.id,
                    FeatureStatus.IN_PROGRESS.value,
                )
            except Exception:
                self.registry.release(feature.id)
                raise
            feature = feature.with_changes(status=FeatureStatus.IN_PROGRESS.value)
            record.task = asyncio.create_task(
                self.run_feature(feature, project_path, send_to_renderer, record),
                name=f"automode-{feature.id}",
            )
            started.append(record)
            logger.info(
                "Started feature %s (%s/%s slots)",
                feature.id,
                self.registry.count(),
                self._max_concurrency,
                extra={"metadata": {"feature_id": feature.id}},
            )
        return started

    async def run_feature(
        self,
        feature: Feature,
        project_path: PathLike,
        send_to_renderer: SendToRenderer,
        record: RunningTask,
        mode: str = "implement",
    ) -> Optional["ExecutionResult"]:
        """Run one admitted feature and free its slot however the run ends."""

        result = None
        try:
            result = await self._execute(mode, feature, project_path, send_to_renderer, record)
        except asyncio.CancelledError:
            logger.info(
                "Feature %s cancelled",
                feature.id,
                extra={"metadata": {"feature_id": feature.id}},
            )
            raise
        except Exception as exc:
            logger.error(
                "Feature %s failed: %s",
                feature.id,
                exc,
                extra={"metadata": {"feature_id": feature.id}},
            )
            if mode in _RESET_ON_FAILURE:
                self._failed.add(feature.id)
                await self._record_failure(project_path, feature.id, str(exc))
        finally:
            self.registry.release(feature.id)
            send_to_renderer(
                {
                    "type": "auto_mode_feature_complete",
                    "featureId": feature.id,
                    "passes": bool(result and result.passes),
                    "message": result.message if result else "Feature run did not complete",
                }
            )
        return result

    async def _execute(
        self,
        mode: str,
        feature: Feature,
        project_path: PathLike,
        send_to_renderer: SendToRenderer,
        record: RunningTask,
    ) -> "ExecutionResult":
        executor = self.executor
        if mode == "resume":
            previous = await asyncio.to_thread(
                executor.context.read_context, project_path, feature.id
            )
            return await executor.resume_feature_with_context(
                feature, project_path, send_to_renderer, previous, record
            )
        if mode == "commit":
            return await executor.commit_changes_only(
                feature, project_path, send_to_renderer, record
            )
        if mode == "pipeline":
            return await executor.run_pipeline_steps(
                feature, project_path, send_to_renderer, record
            )
        return await executor.implement_feature(feature, project_path, send_to_renderer, record)

    async def start_feature(
        self,
        project_path: PathLike,
        feature_id: str,
        send_to_renderer: SendToRenderer,
        *,
        mode: str = "implement",
    ) -> RunningTask:
        """Admit one named feature outside the backlog loop.

        ``mode`` selects the executor entry point (see :data:`RUN_MODES`). The
        run shares the slot table with auto mode, so it counts against
        ``max_concurrency`` and can be stopped with :meth:`stop_feature`.
        """

        if mode not in RUN_MODES:
            raise ValueError(f"Unknown run mode '{mode}'; expected one of {', '.join(RUN_MODES)}")
        validate_feature_id(feature_id)
        feature = await asyncio.to_thread(self.loader.get_feature, project_path, feature_id)
        if feature.id in self.registry:
            raise FeatureAdmissionError(feature.id, "it is already running")
        record = self.registry.try_register(feature.id, self._max_concurrency)
        if record is None:
            raise FeatureAdmissionError(
                feature.id, f"all {self._max_concurrency} slots are in use"
            )
        if mode == "implement" and feature.status != FeatureStatus.IN_PROGRESS.value:
            try:
                await asyncio.to_thread(
                    self.loader.update_feature_status,
                    project_path,
                    feature.id,
                    FeatureStatus.IN_PROGRESS.value,
                )
            except Exception:
                self.registry.release(feature.id)
                raise
            feature = feature.with_changes(status=FeatureStatus.IN_PROGRESS.value)

        record.task = asyncio.create_task(
            self.run_feature(feature, project_path, send_to_renderer, record, mode),
            name=f"automode-{mode}-{feature.id}",
        )
        logger.info(
            "Started %s run for feature %s",
            mode,
            feature.id,
            extra={"metadata": {"feature_id": feature.id, "mode": mode}},
        )
        return record

    async def _record_failure(self, project_path: PathLike, feature_id: str, error: str) -> None:
        try:
            await asyncio.to_thread(
                self.loader.update_feature,
                project_path,
                feature_id,
                status=FeatureStatus.BACKLOG.value,
                error=error,
            )
        except Exception as exc:  # noqa: BLE001 - the run already failed
            logger.warning(
                "Could not record failure for %s: %s",
                feature_id,
                exc,
                extra={"metadata": {"feature_id": feature_id}},
            )

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------
    def stop_feature(self, feature_id: str) -> bool:
        """Trigger the run's abort handle and cancel its task.

        Safe to call from threads other than the one running the loop.
        """

        record = self.registry.get(feature_id)
        if record is None:
            return False
        if record.abort is not None:
            record.abort.abort("Stopped by user")
        task = record.task
        if task is not None and not task.done():
            try:
                loop = task.get_loop()
                if loop.is_running():
                    loop.call_soon_threadsafe(task.cancel)
                else:
                    task.cancel()
            except RuntimeError:
                task.cancel()
        logger.info(
            "Stop requested for feature %s",
            feature_id,
            extra={"metadata": {"feature_id": feature_id}},
        )
        return True

    def stop_all(self) -> list[str]:
        self._stopping = True
        stopped = [fid for fid in self.registry.running_ids() if self.stop_feature(fid)]
        return stopped

    @log_action("auto-mode-run", logger_factory=lambda: logger)
    async def run_until_idle(
        self, project_path: PathLike, send_to_renderer: SendToRenderer
    ) -> None:
        """Auto-mode loop: keep slots filled until nothing is left to start."""

        self._stopping = False
        self._failed.clear()
        send_to_renderer({"type": "auto_mode_started", "projectPath": str(project_path)})
        while not self._stopping:
            await self.start_next_eligible(project_path, send_to_renderer)
            tasks = [record.task for record in self.registry.records() if record.task]
            if not tasks:
                break
            await asyncio.wait(
                tasks, timeout=self.poll_interval, return_when=asyncio.FIRST_COMPLETED
            )

        remaining = [record.task for record in self.registry.records() if record.task]
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)
        send_to_renderer({"type": "auto_mode_stopped", "projectPath": str(project_path)})
        logger.info("Auto mode idle for %s", project_path)


__all__ = [
    "DEFAULT_MAX_CONCURRENCY",
    "RUN_MODES",
    "ConcurrencyScheduler",
    "RunningTask",
    "RunningTaskRegistry",
]
