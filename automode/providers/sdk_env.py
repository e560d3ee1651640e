"""Explicit environment allow-list for the Claude agent SDK.

:func:`build_sdk_env` assembles a fresh mapping from a fixed set of names;
forwarding anything new requires adding it to :data:`ALLOWED_ENV_VARS`.
:func:`isolated_sdk_env` turns that mapping into the options env the SDK
receives, blanking every inherited variable it does not name.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from automode.logging import get_logger


logger = get_logger(__name__)

SYSTEM_ENV_VARS: tuple[str, ...] = ("PATH", "HOME", "SHELL", "TERM", "USER", "LANG", "LC_ALL")

ALLOWED_ENV_VARS: tuple[str, ...] = (
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_AUTH_TOKEN",
    "ANTHROPIC_BASE_URL",
    "API_TIMEOUT_MS",
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_DEFAULT_OPUS_MODEL",
    "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC",
    *SYSTEM_ENV_VARS,
)

# Keys the SDK transport sets or strips itself.
_SDK_MANAGED_VARS = frozenset({"CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT"})

API_KEY_SOURCES = ("inline", "env", "credentials")

_MODEL_MAPPING_VARS = {
    "haiku": "ANTHROPIC_DEFAULT_HAIKU_MODEL",
    "sonnet": "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "opus": "ANTHROPIC_DEFAULT_OPUS_MODEL",
}


@dataclass
class ClaudeApiProfile:
    """Named alternative endpoint configuration (proxy, gateway, Bedrock shim)."""

    name: str
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_source: str = "inline"
    use_auth_token: bool = False
    timeout_ms: Optional[int] = None
    model_mappings: dict[str, str] = field(default_factory=dict)
    disable_nonessential_traffic: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ClaudeApiProfile":
        source = str(data.get("api_key_source") or data.get("apiKeySource") or "inline")
        if source not in API_KEY_SOURCES:
            raise ValueError(
                f"Unknown api_key_source '{source}'; expected one of {', '.join(API_KEY_SOURCES)}"
            )
        timeout = data.get("timeout_ms", data.get("timeoutMs"))
        mappings = data.get("model_mappings", data.get("modelMappings")) or {}
        return cls(
            name=str(data.get("name") or "default"),
            base_url=data.get("base_url", data.get("baseUrl")),
            api_key=data.get("api_key", data.get("apiKey")),
            api_key_source=source,
            use_auth_token=bool(data.get("use_auth_token", data.get("useAuthToken", False))),
            timeout_ms=int(timeout) if timeout is not None else None,
            model_mappings={str(k): str(v) for k, v in dict(mappings).items() if v},
            disable_nonessential_traffic=bool(
                data.get(
                    "disable_nonessential_traffic",
                    data.get("disableNonessentialTraffic", False),
                )
            ),
        )


def _credential_api_key(credentials: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not credentials:
        return None
    api_keys = credentials.get("api_keys") or credentials.get("apiKeys") or {}
    return api_keys.get("anthropic") if isinstance(api_keys, Mapping) else None


def _profile_env(
    profile: ClaudeApiProfile,
    credentials: Optional[Mapping[str, Any]],
    environ: Mapping[str, str],
) -> dict[str, Optional[str]]:
    logger.debug(
        "Building SDK environment from profile %s",
        profile.name,
        extra={"metadata": {"api_key_source": profile.api_key_source}},
    )
    if profile.api_key_source == "env":
        api_key = environ.get("ANTHROPIC_API_KEY")
    elif profile.api_key_source == "credentials":
        api_key = _credential_api_key(credentials)
    else:
        api_key = profile.api_key
    if not api_key:
        logger.warning(
            'No API key found for profile "%s" with source "%s"',
            profile.name,
            profile.api_key_source,
        )

    env: dict[str, Optional[str]] = {
        "ANTHROPIC_AUTH_TOKEN" if profile.use_auth_token else "ANTHROPIC_API_KEY": api_key,
        "ANTHROPIC_BASE_URL": profile.base_url,
    }
    if profile.timeout_ms:
        env["API_TIMEOUT_MS"] = str(profile.timeout_ms)
    for alias, variable in _MODEL_MAPPING_VARS.items():
        if profile.model_mappings.get(alias):
            env[variable] = profile.model_mappings[alias]
    if profile.disable_nonessential_traffic:
        env["CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC"] = "1"
    return env


def build_sdk_env(
    profile: Optional[ClaudeApiProfile] = None,
    credentials: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """Environment handed to the SDK for one run.

    With a profile the auth, endpoint, model-mapping and traffic settings come
    from the profile alone. Without one only the API key, auth token and base
    URL are passed through from the environment. System variables are always
    copied. Keys outside :data:`ALLOWED_ENV_VARS` are never emitted.
    """

    source = os.environ if environ is None else environ
    if profile is not None:
        env = _profile_env(profile, credentials, source)
    else:
        env = {
            key: source.get(key)
            for key in ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_BASE_URL")
        }

    for key in SYSTEM_ENV_VARS:
        env[key] = source.get(key)

    return {key: value for key, value in env.items() if value and key in ALLOWED_ENV_VARS}


def isolated_sdk_env(
    env: Mapping[str, str],
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """Overlay for ``ClaudeAgentOptions.env`` that hides the ambient environment.

    The SDK spawns its runtime with ``os.environ`` merged under the options
    env, so every inherited key missing from ``env`` is overridden with an
    empty value. The child then sees the allow-listed values and nothing else.
    """

    source = os.environ if environ is None else environ
    overlay = {key: "" for key in source if key not in env and key not in _SDK_MANAGED_VARS}
    overlay.update(env)
    return overlay


__all__ = [
    "ALLOWED_ENV_VARS",
    "API_KEY_SOURCES",
    "ClaudeApiProfile",
    "SYSTEM_ENV_VARS",
    "build_sdk_env",
    "isolated_sdk_env",
]
