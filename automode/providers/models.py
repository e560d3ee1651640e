"""Model registry: which backend serves a model id and what it supports."""

from __future__ import annotations

from typing import Optional

from automode.errors import InvalidModelIdError
from automode.providers.messages import ModelDefinition

DEFAULT_MODEL_KEY = "opus"

# Prefixes a feature may use to force routing; providers only ever see bare ids.
PROVIDER_ROUTING_PREFIXES = {
    "codex-": "codex",
    "opencode-": "opencode",
}

THINKING_BUDGETS: dict[str, Optional[int]] = {
    "none": None,
    "low": 4096,
    "medium": 16384,
    "high": 65536,
    "ultrathink": 262144,
}

_CODEX_MODEL_IDS = frozenset(
    {
        "gpt-5.1-codex-max",
        "gpt-5.1-codex",
        "gpt-5.1-codex-mini",
        "gpt-5.1",
        "o3",
        "o3-mini",
        "o4-mini",
        "gpt-4o",
        "gpt-4o-mini",
    }
)


def _claude(id_: str, name: str, model_string: str, tier: str, description: str, **extra) -> ModelDefinition:
    return ModelDefinition(
        id=id_,
        name=name,
        model_string=model_string,
        provider="claude",
        description=description,
        tier=tier,
        supports_vision=True,
        supports_thinking=True,
        context_window=200000,
        **extra,
    )


def _codex(id_: str, name: str, tier: str, description: str, **extra) -> ModelDefinition:
    return ModelDefinition(
        id=id_,
        name=name,
        model_string=id_,
        provider="codex",
        description=description,
        tier=tier,
        context_window=128000,
        **extra,
    )


def _gemini(id_: str, name: str, tier: str, description: str, **extra) -> ModelDefinition:
    return ModelDefinition(
        id=id_,
        name=name,
        model_string=id_,
        provider="gemini",
        description=description,
        tier=tier,
        supports_vision=True,
        supports_thinking=True,
        context_window=1048576,
        **extra,
    )


def _opencode(id_: str, name: str, tier: str, description: str, **extra) -> ModelDefinition:
    return ModelDefinition(
        id=id_,
        name=name,
        model_string=id_,
        provider="opencode",
        description=description,
        tier=tier,
        **extra,
    )


MODELS: dict[str, ModelDefinition] = {
    model.id: model
    for model in (
        _claude("haiku", "Claude Haiku", "claude-haiku-4-5", "basic", "Fast and efficient for simple tasks"),
        _claude("sonnet", "Claude Sonnet", "claude-sonnet-4-20250514", "standard", "Balanced performance and capabilities"),
        _claude(
            "opus",
            "Claude Opus 4.5",
            "claude-opus-4-5-20251101",
            "premium",
            "Most capable model for complex tasks",
            default=True,
        ),
        _codex(
            "gpt-5.1-codex-max",
            "GPT-5.1 Codex Max",
            "premium",
            "Deep and fast reasoning for coding",
            default=True,
        ),
        _codex("gpt-5.1-codex", "GPT-5.1 Codex", "standard", "Optimized for code generation"),
        _codex("gpt-5.1-codex-mini", "GPT-5.1 Codex Mini", "basic", "Faster and cheaper option"),
        _codex("gpt-5.1", "GPT-5.1", "standard", "Broad world knowledge with strong reasoning"),
        _codex("o3", "O3", "premium", "Advanced reasoning model"),
        _codex("o3-mini", "O3 Mini", "standard", "Efficient reasoning model"),
        _codex("o4-mini", "O4 Mini", "basic", "Fast reasoning with lower cost"),
        _gemini("gemini-2.5-pro", "Gemini 2.5 Pro", "premium", "Most capable Gemini model"),
        _gemini(
            "gemini-2.5-flash",
            "Gemini 2.5 Flash",
            "standard",
            "Fast Gemini model with thinking support",
            default=True,
        ),
        _gemini("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite", "basic", "Lowest-latency Gemini model"),
        _opencode(
            "opencode/big-pickle",
            "Big Pickle (Free)",
            "basic",
            "OpenCode free tier model for general coding",
            default=True,
        ),
        _opencode("opencode/gpt-5-nano", "GPT-5 Nano (Free)", "basic", "Fast and lightweight free tier model"),
        _opencode("opencode/grok-code", "Grok Code (Free)", "basic", "OpenCode free tier Grok model for coding"),
        _opencode(
            "amazon-bedrock/anthropic.claude-sonnet-4-5-20250929-v1:0",
            "Claude Sonnet 4.5 (Bedrock)",
            "premium",
            "Claude Sonnet via AWS Bedrock",
            supports_vision=True,
        ),
    )
}


def get_model(model_key: Optional[str]) -> Optional[ModelDefinition]:
    if not model_key:
        return None
    return MODELS.get(strip_provider_prefix(model_key.strip()))


def models_for_provider(provider: str) -> list[ModelDefinition]:
    return [model for model in MODELS.values() if model.provider == provider]


def strip_provider_prefix(model: str) -> str:
    for prefix in PROVIDER_ROUTING_PREFIXES:
        if model.startswith(prefix):
            return model[len(prefix) :]
    return model


def provider_for_model(model_key: Optional[str]) -> str:
    """Name of the provider family that serves ``model_key``."""

    key = (model_key or DEFAULT_MODEL_KEY).strip()
    for prefix, provider in PROVIDER_ROUTING_PREFIXES.items():
        if key.startswith(prefix):
            return provider

    definition = MODELS.get(key)
    if definition is not None:
        return definition.provider
    if key in _CODEX_MODEL_IDS or key.startswith(("gpt-", "o3-", "o4-")):
        return "codex"
    if key.startswith("gemini-"):
        return "gemini"
    if "/" in key:
        return "opencode"
    return "claude"


def resolve_model_string(model_key: Optional[str]) -> str:
    """Bare backend model string for a feature's model key."""

    key = strip_provider_prefix((model_key or DEFAULT_MODEL_KEY).strip())
    definition = MODELS.get(key)
    return definition.model_string if definition is not None else key


def model_supports_thinking(model_key: Optional[str]) -> bool:
    definition = get_model(model_key or DEFAULT_MODEL_KEY)
    if definition is not None:
        return definition.supports_thinking
    return provider_for_model(model_key) == "claude"


def thinking_budget(level: Optional[str]) -> Optional[int]:
    return THINKING_BUDGETS.get((level or "none").lower())


def validate_bare_model_id(model: Optional[str], provider_name: str) -> None:
    if not model:
        return
    for prefix in PROVIDER_ROUTING_PREFIXES:
        if model.startswith(prefix):
            raise InvalidModelIdError(
                f"{provider_name} received model id '{model}' with provider prefix "
                f"'{prefix}'; prefixes must be stripped before dispatch."
            )


__all__ = [
    "DEFAULT_MODEL_KEY",
    "MODELS",
    "PROVIDER_ROUTING_PREFIXES",
    "THINKING_BUDGETS",
    "get_model",
    "model_supports_thinking",
    "models_for_provider",
    "provider_for_model",
    "resolve_model_string",
    "strip_provider_prefix",
    "thinking_budget",
    "validate_bare_model_id",
]
