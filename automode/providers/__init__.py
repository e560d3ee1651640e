"""Agent backends and the canonical message protocol they emit."""

from automode.providers.base import AgentProvider
from automode.providers.factory import PROVIDER_CLASSES, ProviderFactory
from automode.providers.messages import (
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)

__all__ = [
    "AgentProvider",
    "ContentBlock",
    "ExecuteOptions",
    "InstallationStatus",
    "ModelDefinition",
    "PROVIDER_CLASSES",
    "ProviderFactory",
    "ProviderMessage",
]
