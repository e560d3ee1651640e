"""Gemini provider that drives ``gemini -p --output-format stream-json``."""

from __future__ import annotations

import json
import os
import sys
import uuid
from pathlib import Path
from typing import Any, Optional, Sequence

from automode.errors import ErrorCode
from automode.logging import get_logger
from automode.providers.cli_provider import CliProvider, ErrorRule
from automode.providers.messages import (
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)
from automode.providers.models import models_for_provider


logger = get_logger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"

_THINKING_LEVELS = {
    "none": "off",
    "low": "low",
    "medium": "medium",
    "high": "high",
    "ultrathink": "high",
}

_GEMINI_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorCode.NOT_AUTHENTICATED,
        ("not authenticated", "please log in", "unauthorized", "login required"),
        True,
        'Run "gemini" and choose a login method, or set GEMINI_API_KEY',
        "Gemini CLI is not authenticated",
    ),
    ErrorRule(
        ErrorCode.RATE_LIMITED,
        ("rate limit", "too many requests", "429", "quota exceeded"),
        True,
        "Wait a few minutes and try again. Free tier: 60 req/min, 1000 req/day",
        "Gemini API rate limit exceeded",
    ),
    ErrorRule(
        ErrorCode.MODEL_UNAVAILABLE,
        ("model not available", "invalid model", "unknown model"),
        True,
        f'Try using "{DEFAULT_GEMINI_MODEL}" or select a different model',
        "Requested model is not available",
    ),
    ErrorRule(
        ErrorCode.NETWORK_ERROR,
        ("network", "connection", "econnrefused", "timeout"),
        True,
        "Check your internet connection and try again",
        "Network connection error",
    ),
    ErrorRule(
        ErrorCode.PROCESS_CRASHED,
        ("killed", "sigterm"),
        True,
        "The process may have run out of memory. Try a simpler task.",
        "Gemini CLI process was terminated",
    ),
)


def map_thinking_level(level: Optional[str]) -> str:
    return _THINKING_LEVELS.get((level or "none").lower(), "off")


class GeminiProvider(CliProvider):
    """Google Gemini CLI backend.

    The only CLI backend that accepts a thinking level; it is passed as
    ``--thinking-level`` and omitted entirely when it maps to ``off``.
    """

    name = "gemini"
    display_name = "Gemini"
    cli_name = "gemini"
    install_instructions = (
        "npm install -g @google/gemini-cli (or visit https://github.com/google-gemini/gemini-cli)"
    )
    features = frozenset({"tools", "text", "streaming", "vision", "thinking"})

    def common_paths(self) -> Sequence[str]:
        if sys.platform == "win32":
            home = Path.home()
            return [
                str(home / "AppData" / "Roaming" / "npm" / "gemini.cmd"),
                str(home / ".npm-global" / "gemini.cmd"),
            ]
        return [
            "~/.local/bin/gemini",
            "/usr/local/bin/gemini",
            "/opt/homebrew/bin/gemini",
            "~/.npm-global/bin/gemini",
        ]

    def build_cli_args(self, options: ExecuteOptions) -> list[str]:
        model = options.model or DEFAULT_GEMINI_MODEL
        args = ["-p", "--output-format", "stream-json"]
        if model != "auto":
            args.extend(["--model", model])
        thinking = map_thinking_level(options.thinking_level)
        if thinking != "off":
            args.extend(["--thinking-level", thinking.upper()])
        args.append("-")
        return args

    def error_rules(self) -> Sequence[ErrorRule]:
        return _GEMINI_RULES

    def get_available_models(self) -> list[ModelDefinition]:
        return models_for_provider(self.name)

    async def detect_installation(self) -> InstallationStatus:
        status = await super().detect_installation()
        status.has_api_key = bool(os.getenv("GEMINI_API_KEY"))
        status.authenticated = status.installed and self._has_credentials()
        return status

    def _has_credentials(self) -> bool:
        if os.getenv("GEMINI_API_KEY"):
            return True
        if os.getenv("GOOGLE_APPLICATION_CREDENTIALS") or os.getenv("GOOGLE_CLOUD_PROJECT"):
            return True

        settings_path = Path.home() / ".gemini" / "settings.json"
        try:
            with settings_path.open("r", encoding="utf-8") as handle:
                settings = json.load(handle)
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug("Unreadable Gemini settings at %s: %s", settings_path, exc)
            return False
        return isinstance(settings, dict) and any(
            settings.get(key) for key in ("auth", "credentials", "apiKey")
        )

    # ------------------------------------------------------------------
    # Stream handling
    # ------------------------------------------------------------------
    def capture_session_id(self, event: Any) -> Optional[str]:
        if (
            isinstance(event, dict)
            and event.get("type") == "system"
            and event.get("subtype") == "init"
        ):
            session_id = event.get("session_id")
            return str(session_id) if session_id else None
        return None

    def normalize_event(self, event: Any) -> Optional[ProviderMessage]:
        if not isinstance(event, dict):
            return None
        event_type = event.get("type")
        session_id = event.get("session_id")

        if event_type in ("system", "user"):
            return None
        if event_type == "assistant":
            message = event.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            blocks = []
            for block in content if isinstance(content, list) else []:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and "text" in block:
                    blocks.append(ContentBlock.text_block(str(block["text"])))
                elif block.get("type") == "thinking" and "thinking" in block:
                    blocks.append(ContentBlock.thinking_block(str(block["thinking"])))
            return ProviderMessage.assistant(blocks, session_id=session_id) if blocks else None
        if event_type == "tool_call":
            return self._normalize_tool_call(event)
        if event_type == "result":
            if event.get("is_error"):
                return ProviderMessage.error_message(
                    event.get("error") or event.get("result") or "Unknown error",
                    session_id=session_id,
                )
            return ProviderMessage.result_success(event.get("result"), session_id=session_id)
        if event_type == "error":
            return ProviderMessage.error_message(
                event.get("error") or "Unknown error", session_id=session_id
            )
        return None

    def _normalize_tool_call(self, event: dict[str, Any]) -> Optional[ProviderMessage]:
        tool_call = event.get("tool_call")
        function = tool_call.get("function") if isinstance(tool_call, dict) else None
        if not isinstance(function, dict):
            return None

        call_id = str(event.get("call_id") or f"gemini-tool-{uuid.uuid4().hex[:12]}")
        name = str(function.get("name") or "unknown")
        raw_arguments = function.get("arguments") or "{}"
        if isinstance(raw_arguments, dict):
            tool_input: Any = raw_arguments
        else:
            try:
                tool_input = json.loads(raw_arguments)
            except (TypeError, json.JSONDecodeError):
                tool_input = {"raw": raw_arguments}

        use_block = ContentBlock.tool_use_block(name, tool_input, call_id)
        subtype = event.get("subtype")
        if subtype == "started":
            return ProviderMessage.assistant([use_block], session_id=event.get("session_id"))
        if subtype == "completed":
            result_block = ContentBlock.tool_result_block(call_id, tool_call.get("result"))
            return ProviderMessage.assistant(
                [use_block, result_block], session_id=event.get("session_id")
            )
        return None


__all__ = ["DEFAULT_GEMINI_MODEL", "GeminiProvider", "map_thinking_level"]
