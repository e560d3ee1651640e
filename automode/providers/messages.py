"""Canonical, backend-agnostic message protocol emitted by every provider.

Each provider converts its own streaming records into :class:`ProviderMessage`
instances. A message is one of three kinds:

``assistant``
    Carries an ordered tuple of :class:`ContentBlock` items (``text``,
    ``thinking``, ``tool_use`` or ``tool_result``).
``result``
    Terminal marker with a ``subtype`` of ``success`` or ``error`` and an
    optional textual ``result`` payload.
``error``
    Carries an ``error`` string describing a backend failure.

Messages are ephemeral: they are produced and consumed within one run.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from automode.abort import AbortHandle

__all__ = [
    "ContentBlock",
    "ExecuteOptions",
    "InstallationStatus",
    "ModelDefinition",
    "PromptInput",
    "ProviderMessage",
    "extract_prompt_text",
]

PromptInput = Union[str, Sequence[dict[str, Any]]]


@dataclass(frozen=True)
class ContentBlock:
    type: str
    text: Optional[str] = None
    thinking: Optional[str] = None
    name: Optional[str] = None
    input: Any = None
    tool_use_id: Optional[str] = None
    content: Optional[str] = None

    @classmethod
    def text_block(cls, text: str) -> "ContentBlock":
        return cls(type="text", text=text)

    @classmethod
    def thinking_block(cls, thinking: str) -> "ContentBlock":
        return cls(type="thinking", thinking=thinking)

    @classmethod
    def tool_use_block(cls, name: str, tool_input: Any, tool_use_id: Optional[str]) -> "ContentBlock":
        return cls(type="tool_use", name=name, input=tool_input, tool_use_id=tool_use_id)

    @classmethod
    def tool_result_block(cls, tool_use_id: Optional[str], content: Any) -> "ContentBlock":
        return cls(type="tool_result", tool_use_id=tool_use_id, content=_stringify(content))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for key in ("text", "thinking", "name", "input", "tool_use_id", "content"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


@dataclass(frozen=True)
class ProviderMessage:
    type: str
    content: tuple[ContentBlock, ...] = ()
    subtype: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    session_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def assistant(
        cls, blocks: Sequence[ContentBlock], *, session_id: Optional[str] = None
    ) -> "ProviderMessage":
        return cls(type="assistant", content=tuple(blocks), session_id=session_id)

    @classmethod
    def assistant_text(cls, text: str, *, session_id: Optional[str] = None) -> "ProviderMessage":
        return cls.assistant([ContentBlock.text_block(text)], session_id=session_id)

    @classmethod
    def assistant_thinking(
        cls, thinking: str, *, session_id: Optional[str] = None
    ) -> "ProviderMessage":
        return cls.assistant([ContentBlock.thinking_block(thinking)], session_id=session_id)

    @classmethod
    def tool_use(
        cls,
        name: str,
        tool_input: Any,
        tool_use_id: Optional[str],
        *,
        session_id: Optional[str] = None,
    ) -> "ProviderMessage":
        return cls.assistant(
            [ContentBlock.tool_use_block(name, tool_input, tool_use_id)],
            session_id=session_id,
        )

    @classmethod
    def tool_result(
        cls, tool_use_id: Optional[str], content: Any, *, session_id: Optional[str] = None
    ) -> "ProviderMessage":
        return cls.assistant(
            [ContentBlock.tool_result_block(tool_use_id, content)],
            session_id=session_id,
        )

    @classmethod
    def result_success(
        cls, result: Any = None, *, session_id: Optional[str] = None
    ) -> "ProviderMessage":
        return cls(
            type="result",
            subtype="success",
            result=_stringify(result),
            session_id=session_id,
        )

    @classmethod
    def error_message(cls, error: str, *, session_id: Optional[str] = None) -> "ProviderMessage":
        return cls(type="error", error=error or "Unknown error", session_id=session_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def with_session(self, session_id: Optional[str]) -> "ProviderMessage":
        if self.session_id or not session_id:
            return self
        return ProviderMessage(
            type=self.type,
            content=self.content,
            subtype=self.subtype,
            result=self.result,
            error=self.error,
            session_id=session_id,
        )

    @property
    def text(self) -> str:
        return "".join(block.text or "" for block in self.content if block.type == "text")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.content:
            payload["message"] = {
                "role": "assistant",
                "content": [block.to_dict() for block in self.content],
            }
        for key in ("subtype", "result", "error", "session_id"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class ExecuteOptions:
    """Backend-agnostic execution request, immutable for the run's lifetime."""

    prompt: PromptInput
    model: str
    cwd: str
    system_prompt: Optional[str] = None
    max_turns: Optional[int] = None
    allowed_tools: Optional[tuple[str, ...]] = None
    permission_mode: Optional[str] = None
    thinking_level: Optional[str] = None
    max_thinking_tokens: Optional[int] = None
    abort: Optional[AbortHandle] = None
    sdk_session_id: Optional[str] = None
    conversation_history: Optional[tuple[Any, ...]] = None
    mcp_servers: Optional[dict[str, Any]] = None
    env: Optional[dict[str, str]] = None
    claude_profile: Any = None


def extract_prompt_text(prompt: PromptInput) -> str:
    """Flatten a text or content-block prompt into plain text."""

    if isinstance(prompt, str):
        return prompt
    if isinstance(prompt, Sequence):
        return "\n".join(
            str(block.get("text"))
            for block in prompt
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
        )
    raise TypeError("Invalid prompt format: expected string or content block list")


@dataclass
class InstallationStatus:
    installed: bool
    path: Optional[str] = None
    method: Optional[str] = None
    version: Optional[str] = None
    has_api_key: Optional[bool] = None
    authenticated: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value is not None}


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    name: str
    model_string: str
    provider: str
    description: str = ""
    tier: str = "standard"
    supports_tools: bool = True
    supports_vision: bool = False
    supports_thinking: bool = False
    context_window: Optional[int] = None
    default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "modelString": self.model_string,
            "provider": self.provider,
            "description": self.description,
            "tier": self.tier,
            "supportsTools": self.supports_tools,
            "supportsVision": self.supports_vision,
            "supportsThinking": self.supports_thinking,
            "contextWindow": self.context_window,
            "default": self.default,
        }
