"""Subprocess transport that streams JSONL records from an agent CLI."""

from __future__ import annotations

import asyncio
import json
import shlex
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional, Sequence

import psutil

from automode.abort import AbortHandle
from automode.logging import get_logger


logger = get_logger(__name__)

# Agent CLIs emit whole tool outputs on a single line.
_STREAM_LIMIT = 16 * 1024 * 1024
_DEFAULT_TERMINATE_TIMEOUT = 5.0


@dataclass(frozen=True)
class RawLine:
    """A stdout line that was not valid JSON."""

    text: str


class ProcessExitError(Exception):
    """Raised when the spawned process exits with a non-zero status."""

    def __init__(self, exit_code: Optional[int], stderr: str) -> None:
        summary = stderr.strip().splitlines()[0] if stderr.strip() else "no error output"
        super().__init__(f"Process exited with code {exit_code}: {summary}")
        self.exit_code = exit_code
        self.stderr = stderr


def terminate_process_tree(pid: int, timeout: float = _DEFAULT_TERMINATE_TIMEOUT) -> None:
    """Send SIGTERM to ``pid`` and its descendants, escalating to SIGKILL."""

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    processes = [*children, parent]
    for proc in processes:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    _, alive = psutil.wait_procs(processes, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    if alive:
        logger.warning(
            "Killed %d process(es) that ignored SIGTERM",
            len(alive),
            extra={"metadata": {"pid": pid}},
        )


async def _terminate(process: asyncio.subprocess.Process, timeout: float) -> None:
    if process.returncode is None:
        await asyncio.to_thread(terminate_process_tree, process.pid, timeout)
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Process %s did not exit after termination", process.pid)


async def _drain(stream: Optional[asyncio.StreamReader]) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def _write_stdin(process: asyncio.subprocess.Process, stdin_data: str) -> None:
    assert process.stdin is not None
    try:
        process.stdin.write(stdin_data.encode("utf-8"))
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Process %s closed stdin before the prompt was written", process.pid)
    finally:
        process.stdin.close()


def _parse_line(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return RawLine(text)


async def spawn_jsonl_process(
    command: str,
    args: Sequence[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    stdin_data: Optional[str] = None,
    abort: Optional[AbortHandle] = None,
    terminate_timeout: float = _DEFAULT_TERMINATE_TIMEOUT,
) -> AsyncIterator[Any]:
    """Spawn ``command`` and yield one record per non-empty stdout line.

    JSON lines are yielded as parsed objects, anything else as
    :class:`RawLine`. The generator ends silently when ``abort`` fires, after
    terminating the process tree. A non-zero exit raises
    :class:`ProcessExitError` carrying the collected stderr.
    """

    logger.debug(
        "Spawning %s",
        shlex.join([command, *args]),
        extra={"metadata": {"cwd": cwd}},
    )
    process = await asyncio.create_subprocess_exec(
        command,
        *args,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        limit=_STREAM_LIMIT,
    )
    stderr_task = asyncio.create_task(_drain(process.stderr))
    abort_task = asyncio.create_task(abort.wait()) if abort is not None else None

    try:
        if stdin_data is not None:
            await _write_stdin(process, stdin_data)

        assert process.stdout is not None
        while True:
            if abort is not None and abort.aborted:
                await _terminate(process, terminate_timeout)
                return

            read_task = asyncio.ensure_future(process.stdout.readline())
            if abort_task is not None:
                done, _ = await asyncio.wait(
                    {read_task, abort_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if read_task not in done:
                    read_task.cancel()
                    logger.debug("Abort requested; terminating process %s", process.pid)
                    await _terminate(process, terminate_timeout)
                    return
            line = await read_task
            if not line:
                break

            text = line.decode("utf-8", errors="replace").strip()
            if text:
                yield _parse_line(text)

        exit_code = await process.wait()
        stderr_text = await stderr_task
        if abort is not None and abort.aborted:
            return
        if exit_code != 0:
            raise ProcessExitError(exit_code, stderr_text)
    finally:
        if abort_task is not None and not abort_task.done():
            abort_task.cancel()
        if process.returncode is None:
            await _terminate(process, terminate_timeout)
        if not stderr_task.done():
            stderr_task.cancel()


__all__ = [
    "ProcessExitError",
    "RawLine",
    "spawn_jsonl_process",
    "terminate_process_tree",
]
