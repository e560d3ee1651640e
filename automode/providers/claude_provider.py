"""Claude provider backed by the Claude agent SDK rather than a spawned CLI."""

from __future__ import annotations

import os
import re
from typing import Any, AsyncIterator, Optional

from claude_agent_sdk import (
    ClaudeAgentOptions,
    CLINotFoundError,
    ProcessError,
    query,
)

from automode.errors import (
    ErrorCode,
    ProviderAuthenticationError,
    ProviderError,
    ProviderNotInstalledError,
    ProviderProcessError,
    ProviderRateLimitError,
)
from automode.logging import get_logger
from automode.providers.base import AgentProvider
from automode.providers.messages import (
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)
from automode.providers.models import thinking_budget, validate_bare_model_id
from automode.providers.sdk_env import build_sdk_env, isolated_sdk_env


logger = get_logger(__name__)

DEFAULT_MAX_TURNS = 20

RATE_LIMIT_TIP = (
    "Tip: If you're running multiple features in auto-mode, consider reducing "
    "concurrency (max_concurrency setting) to avoid hitting rate limits."
)

_RATE_LIMIT_PATTERNS = ("rate limit", "rate_limit", "429", "too many requests", "overloaded")
_AUTH_PATTERNS = ("authentication", "unauthorized", "invalid api key", "x-api-key", "401")
_NETWORK_PATTERNS = ("econnrefused", "enotfound", "network", "connection error")
_RETRY_AFTER = re.compile(r"retry[- _]after[\"':\s]*(\d+(?:\.\d+)?)", re.IGNORECASE)
_RETRY_SECONDS = re.compile(r"(?:try again|retry) in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)

CLAUDE_MODELS = [
    ModelDefinition(
        id="claude-opus-4-5-20251101",
        name="Claude Opus 4.5",
        model_string="claude-opus-4-5-20251101",
        provider="claude",
        description="Most capable Claude model",
        tier="premium",
        supports_vision=True,
        supports_thinking=True,
        context_window=200000,
        default=True,
    ),
    ModelDefinition(
        id="claude-sonnet-4-20250514",
        name="Claude Sonnet 4",
        model_string="claude-sonnet-4-20250514",
        provider="claude",
        description="Balanced performance and cost",
        tier="standard",
        supports_vision=True,
        supports_thinking=True,
        context_window=200000,
    ),
    ModelDefinition(
        id="claude-3-5-sonnet-20241022",
        name="Claude 3.5 Sonnet",
        model_string="claude-3-5-sonnet-20241022",
        provider="claude",
        description="Fast and capable",
        tier="standard",
        supports_vision=True,
        context_window=200000,
    ),
    ModelDefinition(
        id="claude-haiku-4-5-20251001",
        name="Claude Haiku 4.5",
        model_string="claude-haiku-4-5-20251001",
        provider="claude",
        description="Fastest Claude model",
        tier="basic",
        supports_vision=True,
        supports_thinking=True,
        context_window=200000,
    ),
]


def extract_retry_after(text: str) -> Optional[float]:
    for pattern in (_RETRY_AFTER, _RETRY_SECONDS):
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return None


def classify_sdk_error(error: BaseException) -> ProviderError:
    """Turn an SDK exception into a classified :class:`ProviderError`."""

    if isinstance(error, ProviderError):
        return error
    if isinstance(error, CLINotFoundError):
        return ProviderNotInstalledError(
            "Claude Code runtime not found",
            provider="claude",
            suggestion="npm install -g @anthropic-ai/claude-code",
        )
    return classify_sdk_message(str(error) or error.__class__.__name__, error)


def classify_sdk_message(
    message: str, error: Optional[BaseException] = None
) -> ProviderError:
    """Classify an SDK failure from its text, e.g. an ``is_error`` result."""

    lowered = message.lower()
    if any(pattern in lowered for pattern in _RATE_LIMIT_PATTERNS):
        return ProviderRateLimitError(
            f"{message}\n\n{RATE_LIMIT_TIP}",
            provider="claude",
            suggestion="Wait before retrying or lower max_concurrency",
            retry_after=extract_retry_after(message),
        )
    if any(pattern in lowered for pattern in _AUTH_PATTERNS):
        return ProviderAuthenticationError(
            message,
            provider="claude",
            suggestion="Set ANTHROPIC_API_KEY or configure a Claude API profile",
        )
    if isinstance(error, ProcessError):
        return ProviderProcessError(
            message,
            provider="claude",
            exit_code=getattr(error, "exit_code", None),
            stderr=getattr(error, "stderr", None) or "",
        )
    if any(pattern in lowered for pattern in _NETWORK_PATTERNS):
        return ProviderError(
            message,
            provider="claude",
            code=ErrorCode.NETWORK_ERROR,
            recoverable=True,
            suggestion="Check your internet connection and try again",
        )
    return ProviderError(message, provider="claude")


async def _single_user_message(content: Any) -> AsyncIterator[dict[str, Any]]:
    yield {
        "type": "user",
        "session_id": "",
        "message": {"role": "user", "content": list(content)},
        "parent_tool_use_id": None,
    }


class ClaudeProvider(AgentProvider):
    """Runs queries through ``claude_agent_sdk.query``.

    The spawned runtime only sees the allow-listed environment from
    :func:`automode.providers.sdk_env.build_sdk_env`; the rest of
    ``os.environ`` is blanked in the options env.
    """

    name = "claude"
    features = frozenset({"tools", "text", "vision", "thinking", "mcp"})

    def build_sdk_options(self, options: ExecuteOptions) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {
            "model": options.model,
            "max_turns": options.max_turns or DEFAULT_MAX_TURNS,
            "cwd": options.cwd,
            "env": isolated_sdk_env(
                build_sdk_env(options.claude_profile, self.config.get("credentials"))
            ),
            "permission_mode": options.permission_mode or "bypassPermissions",
        }
        if options.system_prompt:
            kwargs["system_prompt"] = options.system_prompt
        if options.allowed_tools:
            kwargs["allowed_tools"] = list(options.allowed_tools)
        if options.sdk_session_id and options.conversation_history:
            kwargs["resume"] = options.sdk_session_id
        if options.mcp_servers:
            kwargs["mcp_servers"] = dict(options.mcp_servers)
        budget = options.max_thinking_tokens or thinking_budget(options.thinking_level)
        if budget:
            kwargs["max_thinking_tokens"] = budget
        return ClaudeAgentOptions(**kwargs)

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        validate_bare_model_id(options.model, self.name)

        sdk_options = self.build_sdk_options(options)
        prompt: Any = options.prompt
        if not isinstance(prompt, str):
            prompt = _single_user_message(prompt)

        logger.info(
            "Running claude query",
            extra={"metadata": {"model": options.model, "cwd": options.cwd}},
        )
        session_id: Optional[str] = None
        stream = query(prompt=prompt, options=sdk_options)
        try:
            async for raw in stream:
                if options.abort is not None and options.abort.aborted:
                    logger.debug("Abort requested; closing SDK stream")
                    return
                session_id = self._session_from(raw) or session_id
                message = self.normalize_event(raw)
                if message is not None:
                    yield message.with_session(session_id)
        except Exception as exc:
            if options.abort is not None and options.abort.aborted:
                return
            error = classify_sdk_error(exc)
            logger.error(
                "Claude query failed: %s",
                error.message,
                extra={
                    "metadata": {
                        "code": error.code.value,
                        "retry_after": error.retry_after,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            raise error from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _session_from(raw: Any) -> Optional[str]:
        if isinstance(raw, dict):
            value = raw.get("session_id")
        else:
            value = getattr(raw, "session_id", None)
            data = getattr(raw, "data", None)
            if not value and isinstance(data, dict):
                value = data.get("session_id")
        return str(value) if value else None

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------
    def normalize_event(self, event: Any) -> Optional[ProviderMessage]:
        if isinstance(event, dict):
            return self._normalize_record(event)

        kind = type(event).__name__
        if kind == "AssistantMessage":
            blocks = [_sdk_block(block) for block in getattr(event, "content", None) or []]
            blocks = [block for block in blocks if block is not None]
            return ProviderMessage.assistant(blocks) if blocks else None
        if kind == "UserMessage":
            content = getattr(event, "content", None)
            if not isinstance(content, list):
                return None
            blocks = [
                _sdk_block(block)
                for block in content
                if type(block).__name__ == "ToolResultBlock"
            ]
            blocks = [block for block in blocks if block is not None]
            return ProviderMessage.assistant(blocks) if blocks else None
        if kind == "ResultMessage":
            return _result_message(
                is_error=bool(getattr(event, "is_error", False)),
                subtype=getattr(event, "subtype", None),
                result=getattr(event, "result", None),
                session_id=getattr(event, "session_id", None),
            )
        return None

    def _normalize_record(self, record: dict[str, Any]) -> Optional[ProviderMessage]:
        record_type = record.get("type")
        session_id = record.get("session_id")
        if record_type in ("assistant", "user"):
            message = record.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if not isinstance(content, list):
                return None
            blocks = [_record_block(block) for block in content if isinstance(block, dict)]
            if record_type == "user":
                blocks = [block for block in blocks if block and block.type == "tool_result"]
            blocks = [block for block in blocks if block is not None]
            return ProviderMessage.assistant(blocks, session_id=session_id) if blocks else None
        if record_type == "result":
            return _result_message(
                is_error=bool(record.get("is_error")),
                subtype=record.get("subtype"),
                result=record.get("result"),
                session_id=session_id,
            )
        if record_type == "error":
            return ProviderMessage.error_message(
                str(record.get("error") or "Unknown error"), session_id=session_id
            )
        return None

    async def detect_installation(self) -> InstallationStatus:
        has_api_key = bool(os.getenv("ANTHROPIC_API_KEY") or os.getenv("ANTHROPIC_AUTH_TOKEN"))
        return InstallationStatus(
            installed=True,
            method="sdk",
            has_api_key=has_api_key,
            authenticated=has_api_key,
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return list(CLAUDE_MODELS)

    def classify_error(self, message: str) -> ProviderError:
        return classify_sdk_message(message)


def _result_message(
    *,
    is_error: bool,
    subtype: Optional[str],
    result: Any,
    session_id: Optional[str],
) -> ProviderMessage:
    if is_error or (subtype and subtype != "success"):
        return ProviderMessage.error_message(
            str(result or f"Claude run ended with {subtype or 'an error'}"),
            session_id=session_id,
        )
    return ProviderMessage.result_success(result, session_id=session_id)


def _sdk_block(block: Any) -> Optional[ContentBlock]:
    kind = type(block).__name__
    if kind == "TextBlock":
        return ContentBlock.text_block(getattr(block, "text", ""))
    if kind == "ThinkingBlock":
        return ContentBlock.thinking_block(getattr(block, "thinking", ""))
    if kind == "ToolUseBlock":
        return ContentBlock.tool_use_block(
            getattr(block, "name", "unknown"),
            getattr(block, "input", {}),
            getattr(block, "id", None),
        )
    if kind == "ToolResultBlock":
        return ContentBlock.tool_result_block(
            getattr(block, "tool_use_id", None), getattr(block, "content", None)
        )
    return None


def _record_block(block: dict[str, Any]) -> Optional[ContentBlock]:
    kind = block.get("type")
    if kind == "text":
        return ContentBlock.text_block(str(block.get("text", "")))
    if kind == "thinking":
        return ContentBlock.thinking_block(str(block.get("thinking", "")))
    if kind == "tool_use":
        return ContentBlock.tool_use_block(
            str(block.get("name") or "unknown"), block.get("input", {}), block.get("id")
        )
    if kind == "tool_result":
        return ContentBlock.tool_result_block(block.get("tool_use_id"), block.get("content"))
    return None


__all__ = [
    "CLAUDE_MODELS",
    "ClaudeProvider",
    "RATE_LIMIT_TIP",
    "classify_sdk_error",
    "classify_sdk_message",
    "extract_retry_after",
]
