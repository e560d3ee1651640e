import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import pytest
from claude_agent_sdk import CLINotFoundError, ProcessError

from automode.abort import AbortHandle
from automode.errors import (
    ErrorCode,
    InvalidModelIdError,
    ProviderAuthenticationError,
    ProviderError,
    ProviderNotInstalledError,
    ProviderProcessError,
    ProviderRateLimitError,
)
from automode.providers import claude_provider
from automode.providers.claude_provider import (
    RATE_LIMIT_TIP,
    ClaudeProvider,
    classify_sdk_error,
    extract_retry_after,
)
from automode.providers.messages import ExecuteOptions
from automode.providers.sdk_env import ClaudeApiProfile


# Stand-ins for the SDK message classes; normalization keys on class names.
@dataclass
class TextBlock:
    text: str


@dataclass
class ThinkingBlock:
    thinking: str
    signature: str = ""


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: Any = None


@dataclass
class AssistantMessage:
    content: list
    model: str = "claude"


@dataclass
class UserMessage:
    content: Any


@dataclass
class ResultMessage:
    subtype: str
    is_error: bool = False
    result: Optional[str] = None
    session_id: str = "sess-1"


@dataclass
class SystemMessage:
    subtype: str
    data: dict = field(default_factory=dict)


def _options(**overrides):
    values = {"prompt": "hi", "model": "claude-sonnet-4-20250514", "cwd": "/tmp/project"}
    values.update(overrides)
    return ExecuteOptions(**values)


def test_normalizes_assistant_blocks():
    message = ClaudeProvider().normalize_event(
        AssistantMessage(
            [TextBlock("Hello"), ThinkingBlock("hmm"), ToolUseBlock("t1", "Read", {"path": "a"})]
        )
    )

    assert [block.type for block in message.content] == ["text", "thinking", "tool_use"]
    assert message.content[2].tool_use_id == "t1"
    assert message.content[2].input == {"path": "a"}


def test_user_messages_only_surface_tool_results():
    provider = ClaudeProvider()

    assert provider.normalize_event(UserMessage("plain prompt")) is None
    message = provider.normalize_event(UserMessage([ToolResultBlock("t1", "ok"), TextBlock("x")]))
    assert [block.type for block in message.content] == ["tool_result"]
    assert message.content[0].content == "ok"


def test_result_messages():
    provider = ClaudeProvider()

    success = provider.normalize_event(ResultMessage("success", result="done"))
    failed = provider.normalize_event(ResultMessage("error_max_turns", is_error=True))

    assert success.subtype == "success"
    assert success.session_id == "sess-1"
    assert failed.type == "error"
    assert "error_max_turns" in failed.error


@pytest.mark.parametrize(
    "event",
    [SystemMessage("init"), {"type": "stream_event"}, {"type": "assistant"}, 42, None],
)
def test_unrecognized_records_normalize_to_none(event):
    assert ClaudeProvider().normalize_event(event) is None


def test_dict_records_are_normalized():
    provider = ClaudeProvider()

    message = provider.normalize_event(
        {"type": "assistant", "session_id": "s", "message": {"content": [{"type": "text", "text": "hey"}]}}
    )
    error = provider.normalize_event({"type": "error", "error": "bad"})

    assert message.text == "hey"
    assert message.session_id == "s"
    assert error.error == "bad"


def test_build_sdk_options(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.setenv("SECRET_TOKEN", "do-not-leak")
    provider = ClaudeProvider()

    sdk_options = provider.build_sdk_options(
        _options(
            system_prompt="system",
            allowed_tools=("Read", "Bash"),
            thinking_level="high",
            permission_mode="acceptEdits",
            sdk_session_id="prev",
        )
    )

    assert sdk_options.model == "claude-sonnet-4-20250514"
    assert sdk_options.max_turns == claude_provider.DEFAULT_MAX_TURNS
    assert sdk_options.allowed_tools == ["Read", "Bash"]
    assert sdk_options.permission_mode == "acceptEdits"
    assert sdk_options.max_thinking_tokens == 65536
    assert sdk_options.env["ANTHROPIC_API_KEY"] == "sk-test"
    assert sdk_options.env["SECRET_TOKEN"] == ""
    # resume needs both a session id and conversation history
    assert sdk_options.resume is None


def test_build_sdk_options_uses_profile():
    profile = ClaudeApiProfile(
        name="gateway", base_url="https://gw.example", api_key="inline-key", use_auth_token=True
    )

    sdk_options = ClaudeProvider().build_sdk_options(
        _options(claude_profile=profile, sdk_session_id="prev", conversation_history=({"role": "user"},))
    )

    assert sdk_options.env["ANTHROPIC_AUTH_TOKEN"] == "inline-key"
    assert sdk_options.env["ANTHROPIC_BASE_URL"] == "https://gw.example"
    assert sdk_options.resume == "prev"


def test_execute_query_streams_and_attaches_session(monkeypatch):
    captured = {}

    async def fake_query(*, prompt, options):
        captured["prompt"] = prompt
        captured["options"] = options
        yield SystemMessage("init", {"session_id": "sess-1"})
        yield AssistantMessage([TextBlock("Working")])
        yield ResultMessage("success", result="done")

    monkeypatch.setattr(claude_provider, "query", fake_query)

    async def _run():
        return [message async for message in ClaudeProvider().execute_query(_options())]

    messages = asyncio.run(_run())

    assert [message.type for message in messages] == ["assistant", "result"]
    assert all(message.session_id == "sess-1" for message in messages)
    assert captured["prompt"] == "hi"
    assert captured["options"].cwd == "/tmp/project"


def test_execute_query_stops_after_abort(monkeypatch):
    handle = AbortHandle()

    async def fake_query(*, prompt, options):
        yield AssistantMessage([TextBlock("one")])
        handle.abort()
        yield AssistantMessage([TextBlock("two")])

    monkeypatch.setattr(claude_provider, "query", fake_query)

    async def _run():
        return [message async for message in ClaudeProvider().execute_query(_options(abort=handle))]

    messages = asyncio.run(_run())

    assert [message.text for message in messages] == ["one"]


def test_execute_query_classifies_failures(monkeypatch):
    async def fake_query(*, prompt, options):
        raise RuntimeError("429 rate limit reached, retry-after: 30")
        yield  # pragma: no cover

    monkeypatch.setattr(claude_provider, "query", fake_query)

    async def _run():
        return [message async for message in ClaudeProvider().execute_query(_options())]

    with pytest.raises(ProviderRateLimitError) as excinfo:
        asyncio.run(_run())

    assert excinfo.value.retry_after == 30
    assert RATE_LIMIT_TIP in str(excinfo.value)


def test_execute_query_rejects_prefixed_model():
    async def _run():
        return [m async for m in ClaudeProvider().execute_query(_options(model="opencode-sonnet"))]

    with pytest.raises(InvalidModelIdError):
        asyncio.run(_run())


def test_classify_sdk_error():
    assert isinstance(classify_sdk_error(CLINotFoundError("missing")), ProviderNotInstalledError)
    assert isinstance(classify_sdk_error(RuntimeError("401 Unauthorized")), ProviderAuthenticationError)

    process = classify_sdk_error(ProcessError("Command failed", exit_code=2, stderr="segfault"))
    assert isinstance(process, ProviderProcessError)
    assert process.exit_code == 2
    assert process.stderr == "segfault"

    network = classify_sdk_error(RuntimeError("ECONNREFUSED 127.0.0.1"))
    assert network.code is ErrorCode.NETWORK_ERROR

    unknown = classify_sdk_error(ValueError("weird"))
    assert type(unknown) is ProviderError
    assert unknown.code is ErrorCode.UNKNOWN

    already = ProviderRateLimitError("slow down", provider="claude")
    assert classify_sdk_error(already) is already


def test_error_results_are_classified_from_their_text():
    provider = ClaudeProvider()

    limited = provider.classify_error("API Error: 429 rate_limit_error, retry-after: 30")
    auth = provider.classify_error("Invalid API key · Please run /login")
    other = provider.classify_error("Claude run ended with error_max_turns")

    assert isinstance(limited, ProviderRateLimitError)
    assert limited.retry_after == 30.0
    assert claude_provider.RATE_LIMIT_TIP in limited.message
    assert isinstance(auth, ProviderAuthenticationError)
    assert other.code is ErrorCode.UNKNOWN


@pytest.mark.parametrize(
    "text, expected",
    [("retry-after: 12", 12.0), ("Please try again in 4.5s", 4.5), ("no hint", None)],
)
def test_extract_retry_after(text, expected):
    assert extract_retry_after(text) == expected


def test_detect_installation_and_models(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)
    provider = ClaudeProvider()

    status = asyncio.run(provider.detect_installation())

    assert status.installed is True
    assert status.method == "sdk"
    assert status.authenticated is False
    assert provider.supports_feature("thinking")
    assert {model.provider for model in provider.list_models()} == {"claude"}
