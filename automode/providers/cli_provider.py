"""Shared plumbing for providers that drive an agent CLI over JSONL."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import threading
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, ClassVar, Optional, Sequence

from automode.errors import (
    ErrorCode,
    ProviderError,
    ProviderNotInstalledError,
    provider_error_for,
)
from automode.logging import get_logger
from automode.providers.base import AgentProvider
from automode.providers.messages import (
    ExecuteOptions,
    InstallationStatus,
    ProviderMessage,
    extract_prompt_text,
)
from automode.providers.models import validate_bare_model_id
from automode.providers.transport import ProcessExitError, RawLine, spawn_jsonl_process


logger = get_logger(__name__)

_VERSION_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class CliErrorInfo:
    code: ErrorCode
    message: str
    recoverable: bool = False
    suggestion: Optional[str] = None


@dataclass(frozen=True)
class CliResolution:
    """Where the CLI lives and how it was found."""

    path: Optional[str] = None
    method: Optional[str] = None
    prefix_args: tuple[str, ...] = ()

    @property
    def installed(self) -> bool:
        return bool(self.path)


@dataclass(frozen=True)
class ErrorRule:
    code: ErrorCode
    patterns: tuple[str, ...]
    recoverable: bool
    suggestion: Optional[str] = None
    message: Optional[str] = None


_GENERIC_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorCode.NOT_AUTHENTICATED,
        ("not authenticated", "unauthorized", "please log in", "login required", "invalid api key"),
        True,
        "Authenticate the CLI and try again",
    ),
    ErrorRule(
        ErrorCode.RATE_LIMITED,
        ("rate limit", "too many requests", "429", "quota exceeded"),
        True,
        "Wait a few minutes and try again",
    ),
    ErrorRule(
        ErrorCode.NETWORK_ERROR,
        ("network", "econnrefused", "enotfound", "connection refused", "connection reset"),
        True,
        "Check your internet connection",
    ),
    ErrorRule(
        ErrorCode.TIMEOUT,
        ("timed out", "timeout"),
        True,
        "Try again with a simpler prompt",
    ),
    ErrorRule(
        ErrorCode.PROCESS_CRASHED,
        ("killed", "sigterm", "sigkill"),
        True,
        "The process may have run out of memory. Try a simpler task.",
    ),
)


class CliProvider(AgentProvider):
    """Base for process-backed providers.

    Subclasses supply ``build_cli_args`` and ``normalize_event``; everything
    else (locating the executable, spawning it, classifying failures) lives
    here. The executable is resolved once per instance in this order: an
    explicit ``cli_path`` or ``<NAME>_CLI_PATH``, ``PATH``, the provider's
    common install locations, and finally ``npx`` when an ``npx_package`` is
    declared.
    """

    cli_name: ClassVar[str] = ""
    display_name: ClassVar[str] = ""
    npx_package: ClassVar[Optional[str]] = None
    install_instructions: ClassVar[str] = ""
    prompt_via_stdin: ClassVar[bool] = True

    def __init__(
        self,
        config: Optional[dict[str, Any]] = None,
        *,
        cli_path: Optional[str] = None,
    ) -> None:
        super().__init__(config)
        self._explicit_cli_path = cli_path or self.config.get("cli_path")
        self._resolution: Optional[CliResolution] = None
        self._resolution_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------
    @property
    def cli_path_env(self) -> str:
        return f"{self.name.upper()}_CLI_PATH"

    def common_paths(self) -> Sequence[str]:
        """Per-OS install locations checked after ``PATH``."""

        return ()

    def resolve_cli(self) -> CliResolution:
        with self._resolution_lock:
            if self._resolution is None:
                self._resolution = self._resolve_cli()
                if self._resolution.installed:
                    logger.debug(
                        "Resolved %s CLI at %s via %s",
                        self.name,
                        self._resolution.path,
                        self._resolution.method,
                    )
            return self._resolution

    def _resolve_cli(self) -> CliResolution:
        explicit = self._explicit_cli_path or os.getenv(self.cli_path_env)
        if isinstance(explicit, str) and explicit.strip():
            return CliResolution(explicit.strip(), "env")

        found = shutil.which(self.cli_name)
        if found:
            return CliResolution(found, "path")

        for candidate in self.common_paths():
            expanded = os.path.expanduser(candidate)
            if os.path.isfile(expanded) and os.access(expanded, os.X_OK):
                return CliResolution(expanded, "common")

        if self.npx_package:
            npx = shutil.which("npx")
            if npx:
                return CliResolution(npx, "npx", ("--yes", self.npx_package))

        return CliResolution()

    async def detect_installation(self) -> InstallationStatus:
        resolution = self.resolve_cli()
        if not resolution.installed:
            return InstallationStatus(
                installed=False,
                error=f"{self.display_name} CLI not found. Install with: {self.install_instructions}",
            )
        return InstallationStatus(
            installed=True,
            path=resolution.path,
            method=resolution.method,
            version=await self._detect_version(resolution),
        )

    async def _detect_version(self, resolution: CliResolution) -> Optional[str]:
        assert resolution.path is not None
        try:
            process = await asyncio.create_subprocess_exec(
                resolution.path,
                *resolution.prefix_args,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.debug("Could not run %s CLI: %s", self.name, exc)
            return None
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=_VERSION_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.debug("%s CLI did not report a version in time", self.name)
            return None
        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        return lines[0].strip() if lines else None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    @abstractmethod
    def build_cli_args(self, options: ExecuteOptions) -> list[str]:
        """Ordered CLI arguments; never embeds the prompt when stdin is used."""

    def extract_prompt_text(self, options: ExecuteOptions) -> str:
        return extract_prompt_text(options.prompt)

    def capture_session_id(self, event: Any) -> Optional[str]:
        return None

    def handle_raw_line(self, line: RawLine) -> Optional[ProviderMessage]:
        logger.debug("Ignoring non-JSON %s output: %s", self.name, line.text[:200])
        return None

    def finish_stream(self, received_output: bool) -> Optional[ProviderMessage]:
        """Optional trailing message once the process exits cleanly."""

        return None

    def build_env(self, options: ExecuteOptions) -> Optional[dict[str, str]]:
        if not options.env:
            return None
        env = dict(os.environ)
        env.update(options.env)
        return env

    def error_rules(self) -> Sequence[ErrorRule]:
        return _GENERIC_RULES

    def map_error(self, stderr: str, exit_code: Optional[int]) -> CliErrorInfo:
        text = (stderr or "").strip()
        lowered = text.lower()
        message = text or f"{self.display_name} CLI exited with code {exit_code}"

        for rule in self.error_rules():
            if any(pattern in lowered for pattern in rule.patterns):
                return CliErrorInfo(
                    rule.code, rule.message or message, rule.recoverable, rule.suggestion
                )
        if exit_code == 137:
            return CliErrorInfo(
                ErrorCode.PROCESS_CRASHED,
                f"{self.display_name} CLI process was terminated",
                True,
                "The process may have run out of memory. Try a simpler task.",
            )
        return CliErrorInfo(
            ErrorCode.UNKNOWN,
            message,
            False,
            "Check the CLI output above for details",
        )

    def classify_error(self, message: str) -> ProviderError:
        info = self.map_error(message, None)
        return provider_error_for(
            info.code,
            info.message,
            provider=self.name,
            recoverable=info.recoverable,
            suggestion=info.suggestion,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        validate_bare_model_id(options.model, self.name)

        resolution = self.resolve_cli()
        if not resolution.installed:
            raise ProviderNotInstalledError(
                f"{self.display_name} CLI is not installed. Install with: {self.install_instructions}",
                provider=self.name,
                suggestion=self.install_instructions,
            )
        assert resolution.path is not None

        args = [*resolution.prefix_args, *self.build_cli_args(options)]
        stdin_data = self.extract_prompt_text(options) if self.prompt_via_stdin else None
        session_id: Optional[str] = None
        received_output = False

        logger.info(
            "Running %s query",
            self.name,
            extra={"metadata": {"model": options.model, "cwd": options.cwd}},
        )
        try:
            async for event in spawn_jsonl_process(
                resolution.path,
                args,
                cwd=options.cwd,
                env=self.build_env(options),
                stdin_data=stdin_data,
                abort=options.abort,
            ):
                received_output = True
                if isinstance(event, RawLine):
                    message = self.handle_raw_line(event)
                else:
                    session_id = self.capture_session_id(event) or session_id
                    message = self.normalize_event(event)
                if message is not None:
                    yield message.with_session(session_id)
        except ProcessExitError as exc:
            info = self.map_error(exc.stderr, exc.exit_code)
            logger.warning(
                "%s CLI failed: %s",
                self.display_name,
                info.message,
                extra={"metadata": {"code": info.code.value, "exit_code": exc.exit_code}},
            )
            raise provider_error_for(
                info.code,
                info.message,
                provider=self.name,
                recoverable=info.recoverable,
                suggestion=info.suggestion,
                exit_code=exc.exit_code,
                stderr=exc.stderr,
            ) from exc

        if options.abort is not None and options.abort.aborted:
            return
        trailing = self.finish_stream(received_output)
        if trailing is not None:
            yield trailing.with_session(session_id)


def default_common_paths(executable: str, extra: Sequence[str] = ()) -> list[str]:
    """Typical global npm and Homebrew locations for ``executable``."""

    if sys.platform == "win32":
        appdata = os.getenv("APPDATA", "")
        return [
            *extra,
            os.path.join(appdata, "npm", f"{executable}.cmd"),
            os.path.join(appdata, "npm", executable),
        ]
    return [
        *extra,
        f"~/.local/bin/{executable}",
        f"~/.npm-global/bin/{executable}",
        f"/usr/local/bin/{executable}",
        f"/opt/homebrew/bin/{executable}",
    ]


__all__ = [
    "CliErrorInfo",
    "CliProvider",
    "CliResolution",
    "ErrorRule",
    "default_common_paths",
]
