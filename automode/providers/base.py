"""Capability-tagged interface implemented by every agent backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, ClassVar, Optional

from automode.errors import ProviderError
from automode.providers.messages import (
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)


class AgentProvider(ABC):
    """Base class for agent backends.

    Subclasses declare ``name`` and the ``features`` they support; callers use
    :meth:`supports_feature` instead of checking provider identity.
    """

    name: ClassVar[str] = ""
    features: ClassVar[frozenset[str]] = frozenset({"tools", "text"})

    def __init__(self, config: Optional[dict[str, Any]] = None) -> None:
        self.config: dict[str, Any] = dict(config or {})

    @abstractmethod
    def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        """Return a lazy, finite stream of canonical messages for one run."""

    @abstractmethod
    def normalize_event(self, event: Any) -> Optional[ProviderMessage]:
        """Convert one raw backend record; ``None`` means suppress it."""

    @abstractmethod
    async def detect_installation(self) -> InstallationStatus:
        pass

    @abstractmethod
    def get_available_models(self) -> list[ModelDefinition]:
        pass

    def list_models(self) -> list[ModelDefinition]:
        return list(self.get_available_models())

    def supports_feature(self, feature: str) -> bool:
        return feature in self.features

    def classify_error(self, message: str) -> ProviderError:
        """Classify an error the backend reported inside its stream."""

        return ProviderError(message, provider=self.name)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


__all__ = ["AgentProvider"]
