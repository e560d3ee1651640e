"""Pipeline step storage and status transitions."""

from automode.pipeline.service import PipelineService, pipeline_service

__all__ = ["PipelineService", "pipeline_service"]
