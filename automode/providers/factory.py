"""Provider factory: the one place that maps model ids to backends."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Mapping
from typing import Any, Dict, Optional

from automode.logging import get_logger
from automode.providers.base import AgentProvider
from automode.providers.claude_provider import ClaudeProvider
from automode.providers.codex_provider import CodexProvider
from automode.providers.gemini_provider import GeminiProvider
from automode.providers.messages import InstallationStatus, ModelDefinition
from automode.providers.models import provider_for_model
from automode.providers.opencode_provider import OpencodeProvider


logger = get_logger(__name__)

PROVIDER_CLASSES: Dict[str, type[AgentProvider]] = {
    "claude": ClaudeProvider,
    "codex": CodexProvider,
    "gemini": GeminiProvider,
    "opencode": OpencodeProvider,
}

_ALIASES = {
    "anthropic": "claude",
    "openai": "codex",
    "google": "gemini",
}


class ProviderFactory:
    """Creates and caches one provider instance per backend.

    ``provider_config`` maps provider names to the keyword configuration their
    constructor receives, for example ``{"codex": {"cli_path": "/opt/codex"}}``.
    """

    def __init__(
        self,
        provider_config: Optional[Mapping[str, Mapping[str, Any]]] = None,
        *,
        classes: Optional[Mapping[str, type[AgentProvider]]] = None,
    ) -> None:
        self._config: Dict[str, Dict[str, Any]] = {
            str(name): dict(options) for name, options in (provider_config or {}).items()
        }
        self._classes: Dict[str, type[AgentProvider]] = dict(classes or PROVIDER_CLASSES)
        self._instances: Dict[str, AgentProvider] = {}
        self._lock = threading.Lock()

    @property
    def provider_names(self) -> list[str]:
        return list(self._classes)

    def _normalize(self, name: str) -> str:
        key = (name or "").strip().lower()
        return _ALIASES.get(key, key)

    def get_provider(self, name: str) -> AgentProvider:
        key = self._normalize(name)
        provider_cls = self._classes.get(key)
        if provider_cls is None:
            raise ValueError(
                f"Unknown provider '{name}'. Available: {', '.join(sorted(self._classes))}"
            )
        with self._lock:
            provider = self._instances.get(key)
            if provider is None:
                provider = provider_cls(self._config.get(key))
                self._instances[key] = provider
                logger.debug("Created %s provider", key)
            return provider

    def get_provider_for_model(self, model_id: Optional[str]) -> AgentProvider:
        return self.get_provider(provider_for_model(model_id))

    def all_providers(self) -> list[AgentProvider]:
        return [self.get_provider(name) for name in self._classes]

    def list_models(self) -> list[ModelDefinition]:
        models: list[ModelDefinition] = []
        for provider in self.all_providers():
            models.extend(provider.list_models())
        return models

    async def detect_all(self) -> Dict[str, InstallationStatus]:
        providers = self.all_providers()
        statuses = await asyncio.gather(
            *(provider.detect_installation() for provider in providers)
        )
        return {provider.name: status for provider, status in zip(providers, statuses)}


__all__ = ["PROVIDER_CLASSES", "ProviderFactory"]
