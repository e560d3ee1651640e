"""HTTP control surface for a running auto-mode scheduler."""

from __future__ import annotations

import asyncio
from collections import deque
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from automode import __version__
from automode.agents.scheduler import ConcurrencyScheduler
from automode.errors import (
    FeatureAdmissionError,
    FeatureNotFoundError,
    InvalidFeatureIdError,
)
from automode.logging import get_logger
from automode.pipeline.service import PipelineService
from automode.providers.factory import ProviderFactory


logger = get_logger(__name__)

EVENT_BUFFER_SIZE = 500


class StopFeatureRequest(BaseModel):
    featureId: str


class FeatureRunRequest(BaseModel):
    featureId: str


class StartAutoModeRequest(BaseModel):
    maxConcurrency: Optional[int] = None


class MaxConcurrencyRequest(BaseModel):
    maxConcurrency: int


def create_app(
    scheduler: ConcurrencyScheduler,
    pipeline: PipelineService,
    project_path: Path | str,
    factory: Optional[ProviderFactory] = None,
) -> FastAPI:
    """Create a FastAPI app bound to one scheduler and project.

    Runs started over HTTP are tasks on the server's event loop. Their
    renderer events are kept in a bounded buffer served by
    ``/api/auto-mode/events``.
    """

    root_path = Path(project_path)
    app = FastAPI(title="automode", version=__version__)
    events: deque[dict[str, Any]] = deque(maxlen=EVENT_BUFFER_SIZE)
    loop_state: dict[str, Optional[asyncio.Task]] = {"task": None}

    def record_event(event: dict[str, Any]) -> None:
        events.append(event)

    def loop_running() -> bool:
        task = loop_state["task"]
        return task is not None and not task.done()

    async def start_run(request: FeatureRunRequest, mode: str) -> dict[str, Any]:
        try:
            await scheduler.start_feature(root_path, request.featureId, record_event, mode=mode)
        except InvalidFeatureIdError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FeatureNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except FeatureAdmissionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"success": True, "featureId": request.featureId, "mode": mode}

    @app.get("/healthz")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/auto-mode/status")
    def auto_mode_status() -> dict[str, Any]:
        return {"success": True, "auto_mode_running": loop_running(), **scheduler.status()}

    @app.get("/api/auto-mode/events")
    def auto_mode_events() -> dict[str, Any]:
        return {"success": True, "events": list(events)}

    @app.post("/api/auto-mode/start")
    async def start_auto_mode(request: StartAutoModeRequest) -> dict[str, Any]:
        if loop_running():
            raise HTTPException(status_code=409, detail="Auto mode is already running")
        if request.maxConcurrency is not None:
            try:
                scheduler.max_concurrency = request.maxConcurrency
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        loop_state["task"] = asyncio.create_task(
            scheduler.run_until_idle(root_path, record_event), name="automode-loop"
        )
        logger.info("Auto mode started over HTTP", extra={"metadata": {"root": str(root_path)}})
        return {"success": True, "started": True}

    @app.post("/api/auto-mode/stop")
    def stop_auto_mode() -> dict[str, Any]:
        return {"success": True, "stopped": scheduler.stop_all()}

    @app.post("/api/auto-mode/run-feature")
    async def run_feature(request: FeatureRunRequest) -> dict[str, Any]:
        return await start_run(request, "implement")

    @app.post("/api/auto-mode/resume-feature")
    async def resume_feature(request: FeatureRunRequest) -> dict[str, Any]:
        return await start_run(request, "resume")

    @app.post("/api/auto-mode/commit-feature")
    async def commit_feature(request: FeatureRunRequest) -> dict[str, Any]:
        return await start_run(request, "commit")

    @app.post("/api/auto-mode/run-pipeline")
    async def run_pipeline(request: FeatureRunRequest) -> dict[str, Any]:
        return await start_run(request, "pipeline")

    @app.post("/api/auto-mode/stop-feature")
    def stop_feature(request: StopFeatureRequest) -> dict[str, Any]:
        stopped = scheduler.stop_feature(request.featureId)
        if not stopped:
            raise HTTPException(
                status_code=404,
                detail=f"Feature {request.featureId} is not running",
            )
        return {"success": True, "stopped": True}

    @app.put("/api/auto-mode/max-concurrency")
    def set_max_concurrency(request: MaxConcurrencyRequest) -> dict[str, Any]:
        try:
            scheduler.max_concurrency = request.maxConcurrency
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True, "max_concurrency": scheduler.max_concurrency}

    @app.get("/api/pipeline")
    def get_pipeline() -> dict[str, Any]:
        config = pipeline.get_pipeline_config(root_path)
        logger.debug("Served pipeline config", extra={"metadata": {"root": str(root_path)}})
        return {"success": True, "config": config.to_dict()}

    @app.get("/api/providers")
    async def get_providers() -> dict[str, Any]:
        if factory is None:
            return {"success": True, "providers": {}}
        statuses = await factory.detect_all()
        return {
            "success": True,
            "providers": {name: status.to_dict() for name, status in statuses.items()},
        }

    return app


__all__ = [
    "FeatureRunRequest",
    "MaxConcurrencyRequest",
    "StartAutoModeRequest",
    "StopFeatureRequest",
    "create_app",
]
