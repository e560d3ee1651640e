"""Domain records shared across automode components."""

from automode.domain.feature import (
    PIPELINE_STATUS_PREFIX,
    THINKING_LEVELS,
    Feature,
    FeatureStatus,
    pipeline_status,
)
from automode.domain.pipeline import PipelineConfig, PipelineStep

__all__ = [
    "PIPELINE_STATUS_PREFIX",
    "THINKING_LEVELS",
    "Feature",
    "FeatureStatus",
    "PipelineConfig",
    "PipelineStep",
    "pipeline_status",
]
