"""OpenCode provider that streams ``opencode run --format json`` output."""

from __future__ import annotations

import itertools
import os
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from automode.providers.cli_provider import CliProvider
from automode.providers.messages import (
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)
from automode.providers.models import models_for_provider, strip_provider_prefix


class OpencodeProvider(CliProvider):
    """OpenCode CLI backend.

    Records look like ``{"type": "text", "sessionID": ..., "part": {...}}``.
    Tool calls without a ``call_id`` get ``opencode-tool-<n>`` ids from a
    counter owned by the instance.
    """

    name = "opencode"
    display_name = "OpenCode"
    cli_name = "opencode"
    npx_package = "opencode-ai@latest"
    install_instructions = "npm install -g opencode-ai@latest"
    features = frozenset({"tools", "text", "vision"})

    def __init__(
        self,
        config: Optional[dict[str, Any]] = None,
        *,
        cli_path: Optional[str] = None,
    ) -> None:
        super().__init__(config, cli_path=cli_path)
        self._tool_ids = itertools.count(1)

    def common_paths(self) -> Sequence[str]:
        if sys.platform == "win32":
            # Windows installs go through npx.
            return []
        paths = [
            "~/.opencode/bin/opencode",
            "~/.npm-global/bin/opencode",
            "/usr/local/bin/opencode",
        ]
        if sys.platform == "darwin":
            paths.append("/opt/homebrew/bin/opencode")
        else:
            paths.append("/usr/bin/opencode")
        paths.append("~/.local/bin/opencode")
        return paths

    def build_cli_args(self, options: ExecuteOptions) -> list[str]:
        args = ["run", "--format", "json"]
        if options.model:
            args.extend(["--model", strip_provider_prefix(options.model)])
        return args

    def get_available_models(self) -> list[ModelDefinition]:
        return models_for_provider(self.name)

    async def detect_installation(self) -> InstallationStatus:
        status = await super().detect_installation()
        auth_file = Path.home() / ".local" / "share" / "opencode" / "auth.json"
        status.has_api_key = bool(os.getenv("ANTHROPIC_API_KEY") or os.getenv("OPENAI_API_KEY"))
        status.authenticated = status.has_api_key or auth_file.exists()
        return status

    def _next_tool_id(self) -> str:
        return f"opencode-tool-{next(self._tool_ids)}"

    def capture_session_id(self, event: Any) -> Optional[str]:
        if isinstance(event, dict) and event.get("sessionID"):
            return str(event["sessionID"])
        return None

    def normalize_event(self, event: Any) -> Optional[ProviderMessage]:
        if not isinstance(event, dict):
            return None
        event_type = event.get("type")
        session_id = event.get("sessionID")
        part = event.get("part")
        if not isinstance(part, dict):
            part = None

        if event_type == "text":
            text = part.get("text") if part else None
            if not text:
                return None
            return ProviderMessage.assistant_text(str(text), session_id=session_id)

        if event_type == "step_start":
            return None

        if event_type == "step_finish":
            if part and (part.get("error") or part.get("reason") == "error"):
                return ProviderMessage.error_message(
                    str(part.get("error") or "Step execution failed"),
                    session_id=session_id,
                )
            return ProviderMessage.result_success(
                part.get("result") if part else None, session_id=session_id
            )

        if event_type == "tool_call":
            if part is None:
                return None
            return ProviderMessage.tool_use(
                str(part.get("name") or "unknown"),
                part.get("args"),
                str(part.get("call_id") or self._next_tool_id()),
                session_id=session_id,
            )

        if event_type == "tool_result":
            if part is None:
                return None
            return ProviderMessage.tool_result(
                part.get("call_id"), part.get("output"), session_id=session_id
            )

        if event_type == "tool_error":
            error = part.get("error") if part else None
            return ProviderMessage.error_message(
                str(error or "Tool execution failed"), session_id=session_id
            )

        return None


__all__ = ["OpencodeProvider"]
