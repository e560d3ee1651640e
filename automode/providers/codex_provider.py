"""Codex provider that streams ``codex exec --json`` output."""

from __future__ import annotations

import itertools
import os
from pathlib import Path
from typing import Any, ClassVar, Iterable, Optional, Sequence

from automode.logging import get_logger
from automode.providers.cli_provider import CliProvider, default_common_paths
from automode.providers.messages import (
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
    extract_prompt_text,
)
from automode.providers.models import models_for_provider
from automode.providers.transport import RawLine


logger = get_logger(__name__)


class CodexProvider(CliProvider):
    """Runs the OpenAI Codex CLI non-interactively.

    The prompt travels over stdin (``-``) and a system prompt, when present,
    is prepended to it since ``codex exec`` has no separate flag for one.
    Codex does not accept a thinking level; one set on the options is ignored.
    """

    name = "codex"
    display_name = "Codex"
    cli_name = "codex"
    install_instructions = "npm install -g @openai/codex@latest"
    features = frozenset({"tools", "text"})

    _CLI_AUTH_FILE_ENV: ClassVar[str] = "CODEX_AUTH_FILE"
    _CLI_HOME_ENV: ClassVar[str] = "CODEX_HOME"

    def __init__(
        self,
        config: Optional[dict[str, Any]] = None,
        *,
        cli_path: Optional[str] = None,
    ) -> None:
        super().__init__(config, cli_path=cli_path)
        self._tool_ids = itertools.count(1)

    def common_paths(self) -> Sequence[str]:
        return default_common_paths(self.cli_name)

    def build_cli_args(self, options: ExecuteOptions) -> list[str]:
        return ["exec", "--model", options.model, "--json", "--full-auto", "-"]

    def extract_prompt_text(self, options: ExecuteOptions) -> str:
        prompt = extract_prompt_text(options.prompt)
        if options.system_prompt:
            return f"{options.system_prompt}\n\n---\n\n{prompt}"
        return prompt

    def get_available_models(self) -> list[ModelDefinition]:
        return models_for_provider(self.name)

    async def detect_installation(self) -> InstallationStatus:
        status = await super().detect_installation()
        status.has_api_key = bool(os.getenv("OPENAI_API_KEY"))
        status.authenticated = status.has_api_key or any(
            path.exists() for path in self._candidate_auth_paths()
        )
        return status

    def _candidate_auth_paths(self) -> Iterable[Path]:
        override = os.getenv(self._CLI_AUTH_FILE_ENV)
        if override:
            yield Path(override).expanduser()

        home_override = os.getenv(self._CLI_HOME_ENV)
        if home_override:
            yield Path(home_override).expanduser() / "auth.json"

        yield Path.home() / ".codex" / "auth.json"

    # ------------------------------------------------------------------
    # Stream handling
    # ------------------------------------------------------------------
    def capture_session_id(self, event: Any) -> Optional[str]:
        if isinstance(event, dict) and event.get("type") == "thread.started":
            thread_id = event.get("thread_id")
            return str(thread_id) if thread_id else None
        return None

    def handle_raw_line(self, line: RawLine) -> Optional[ProviderMessage]:
        return ProviderMessage.assistant_text(line.text + "\n")

    def finish_stream(self, received_output: bool) -> Optional[ProviderMessage]:
        if received_output:
            return None
        logger.warning("Codex CLI exited without producing any output")
        return ProviderMessage.error_message(
            "Codex CLI produced no output. Check that it is authenticated (codex login)."
        )

    def normalize_event(self, event: Any) -> Optional[ProviderMessage]:
        if not isinstance(event, dict):
            return None
        event_type = event.get("type")

        if event_type in ("thread.started", "turn.started"):
            return None
        if event_type == "item.started":
            item = event.get("item")
            if isinstance(item, dict) and item.get("type") == "command_execution":
                return ProviderMessage.tool_use(
                    "bash",
                    {"command": item.get("command", "")},
                    self._tool_id(item),
                )
            return None
        if event_type == "item.completed":
            item = event.get("item")
            return self._normalize_item(item) if isinstance(item, dict) else None
        if event_type in ("turn.completed", "thread.completed"):
            return ProviderMessage.result_success(event.get("result"))
        if event_type in ("turn.failed", "error"):
            return ProviderMessage.error_message(_error_text(event))
        return None

    def _tool_id(self, item: dict[str, Any]) -> str:
        value = item.get("id")
        return str(value) if value else f"codex-tool-{next(self._tool_ids)}"

    def _normalize_item(self, item: dict[str, Any]) -> Optional[ProviderMessage]:
        item_type = item.get("type")

        if item_type == "reasoning":
            text = item.get("text") or item.get("content")
            return ProviderMessage.assistant_thinking(str(text)) if text else None
        if item_type in ("agent_message", "message"):
            text = item.get("text") or item.get("content")
            return ProviderMessage.assistant_text(str(text)) if text else None
        if item_type == "command_execution":
            command = item.get("command", "")
            output = item.get("aggregated_output") or item.get("output") or ""
            return ProviderMessage.assistant_text(f"```bash\n{command}\n```\n\n{output}")
        if item_type == "tool_use":
            return ProviderMessage.tool_use(
                str(item.get("tool") or item.get("name") or "unknown"),
                item.get("input", item.get("args", {})),
                self._tool_id(item),
            )
        if item_type == "tool_result":
            return ProviderMessage.tool_result(
                item.get("tool_use_id") or self._tool_id(item),
                item.get("output", item.get("content", "")),
            )
        if item_type == "todo_list":
            todos = item.get("items")
            if not isinstance(todos, list):
                todos = []
            lines = [
                f"{index}. {todo.get('text', '') if isinstance(todo, dict) else todo}"
                for index, todo in enumerate(todos, start=1)
            ]
            return ProviderMessage.assistant_text("**Todo List:**\n" + "\n".join(lines))

        text = item.get("text") or item.get("content") or item.get("aggregated_output")
        if isinstance(text, str) and text:
            return ProviderMessage.assistant_text(text)
        return None


def _error_text(event: dict[str, Any]) -> str:
    for source in (event.get("error"), event.get("item"), event):
        if isinstance(source, dict) and source.get("message"):
            return str(source["message"])
        if isinstance(source, str) and source:
            return source
    return "Unknown error from Codex CLI"


__all__ = ["CodexProvider"]
