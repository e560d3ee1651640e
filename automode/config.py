"""Settings loaded from ``automode.yaml`` with environment overrides."""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from automode.agents.scheduler import DEFAULT_MAX_CONCURRENCY
from automode.logging import get_logger
from automode.providers.models import DEFAULT_MODEL_KEY
from automode.providers.sdk_env import ClaudeApiProfile


logger = get_logger(__name__)

CONFIG_FILENAME = "automode.yaml"

_DEFAULTS: dict[str, Any] = {
    "max_concurrency": DEFAULT_MAX_CONCURRENCY,
    "default_model": DEFAULT_MODEL_KEY,
    "max_turns": 1000,
    "log_level": None,
    "providers": {},
    "claude_profile": None,
    "server": {"host": "127.0.0.1", "port": 3008},
}


@dataclass
class AutomodeSettings:
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    default_model: str = DEFAULT_MODEL_KEY
    max_turns: int = 1000
    log_level: Optional[str] = None
    provider_paths: dict[str, str] = field(default_factory=dict)
    claude_profile: Optional[ClaudeApiProfile] = None
    server_host: str = "127.0.0.1"
    server_port: int = 3008

    def provider_config(self) -> dict[str, dict[str, Any]]:
        """Constructor configuration for :class:`ProviderFactory`."""

        return {name: {"cli_path": path} for name, path in self.provider_paths.items()}


def _merge_overrides(base: dict, overrides: Optional[Mapping[str, Any]]) -> dict:
    if not overrides:
        return base

    def merge(target: dict, updates: Mapping[str, Any]) -> None:
        for key, value in updates.items():
            if isinstance(value, Mapping) and isinstance(target.get(key), dict):
                merge(target[key], value)
            else:
                target[key] = value

    merged = deepcopy(base)
    merge(merged, overrides)
    return merged


def _positive_int(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc
    if number < 1:
        raise ValueError(f"{name} must be at least 1, got {number}")
    return number


def _read_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return loaded


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if environ.get("AUTOMODE_MAX_CONCURRENCY"):
        overrides["max_concurrency"] = environ["AUTOMODE_MAX_CONCURRENCY"]
    if environ.get("AUTOMODE_DEFAULT_MODEL"):
        overrides["default_model"] = environ["AUTOMODE_DEFAULT_MODEL"]
    if environ.get("AUTOMODE_LOG_LEVEL"):
        overrides["log_level"] = environ["AUTOMODE_LOG_LEVEL"]
    return overrides


def load_settings(
    path: Optional[Path | str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> AutomodeSettings:
    """Resolve settings from defaults, the YAML file, the environment then ``overrides``.

    ``path`` falls back to ``automode.yaml`` in the working directory; a
    missing default file simply means defaults.
    """

    data = deepcopy(_DEFAULTS)
    config_path = Path(path) if path is not None else Path(CONFIG_FILENAME)
    if config_path.is_file():
        data = _merge_overrides(data, _read_yaml(config_path))
        logger.debug("Loaded settings", extra={"metadata": {"path": str(config_path)}})
    elif path is not None:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    data = _merge_overrides(data, _env_overrides(os.environ if environ is None else environ))
    data = _merge_overrides(data, overrides)

    providers = data.get("providers") or {}
    provider_paths = {
        str(name): str(options["cli_path"])
        for name, options in providers.items()
        if isinstance(options, Mapping) and options.get("cli_path")
    }
    profile_data = data.get("claude_profile")
    server = data.get("server") or {}

    return AutomodeSettings(
        max_concurrency=_positive_int(data["max_concurrency"], "max_concurrency"),
        default_model=str(data["default_model"] or DEFAULT_MODEL_KEY),
        max_turns=_positive_int(data["max_turns"], "max_turns"),
        log_level=data.get("log_level") or None,
        provider_paths=provider_paths,
        claude_profile=(
            ClaudeApiProfile.from_mapping(profile_data)
            if isinstance(profile_data, Mapping)
            else None
        ),
        server_host=str(server.get("host") or "127.0.0.1"),
        server_port=_positive_int(server.get("port") or 3008, "server.port"),
    )


__all__ = ["CONFIG_FILENAME", "AutomodeSettings", "load_settings"]
