"""Feature execution and auto-mode scheduling."""

from automode.agents.feature_executor import ExecutionResult, FeatureExecutor
from automode.agents.scheduler import ConcurrencyScheduler, RunningTask, RunningTaskRegistry

__all__ = [
    "ConcurrencyScheduler",
    "ExecutionResult",
    "FeatureExecutor",
    "RunningTask",
    "RunningTaskRegistry",
]
