import asyncio
import sys
import textwrap

import psutil
import pytest

from automode.abort import AbortHandle
from automode.providers.transport import ProcessExitError, RawLine, spawn_jsonl_process


def _write_script(tmp_path, body: str):
    script = tmp_path / "agent.py"
    script.write_text(textwrap.dedent(body), encoding="utf-8")
    return str(script)


async def _collect(command, args, **kwargs):
    return [record async for record in spawn_jsonl_process(command, args, **kwargs)]


def test_yields_parsed_json_and_raw_lines(tmp_path):
    script = _write_script(
        tmp_path,
        """
        import json, sys
        print(json.dumps({"type": "hello", "n": 1}))
        print("")
        print("not json at all")
        print(json.dumps({"type": "bye"}))
        """,
    )

    records = asyncio.run(_collect(sys.executable, [script]))

    assert records == [{"type": "hello", "n": 1}, RawLine("not json at all"), {"type": "bye"}]


def test_prompt_is_written_to_stdin(tmp_path):
    script = _write_script(
        tmp_path,
        """
        import json, sys
        print(json.dumps({"prompt": sys.stdin.read()}))
        """,
    )

    records = asyncio.run(_collect(sys.executable, [script], stdin_data="build the thing"))

    assert records == [{"prompt": "build the thing"}]


def test_non_zero_exit_raises_with_stderr(tmp_path):
    script = _write_script(
        tmp_path,
        """
        import json, sys
        print(json.dumps({"type": "partial"}))
        sys.stdout.flush()
        sys.stderr.write("Error: rate limit exceeded\\n")
        sys.exit(3)
        """,
    )

    received = []

    async def _run():
        async for record in spawn_jsonl_process(sys.executable, [script]):
            received.append(record)

    with pytest.raises(ProcessExitError) as excinfo:
        asyncio.run(_run())

    assert received == [{"type": "partial"}]
    assert excinfo.value.exit_code == 3
    assert "rate limit exceeded" in excinfo.value.stderr


def test_abort_terminates_process_and_ends_stream(tmp_path):
    pid_file = tmp_path / "pid"
    script = _write_script(
        tmp_path,
        f"""
        import json, os, sys, time
        with open({str(pid_file)!r}, "w") as handle:
            handle.write(str(os.getpid()))
        print(json.dumps({{"type": "started"}}))
        sys.stdout.flush()
        time.sleep(60)
        print(json.dumps({{"type": "never"}}))
        """,
    )
    handle = AbortHandle()

    async def _run():
        records = []
        async for record in spawn_jsonl_process(
            sys.executable, [script], abort=handle, terminate_timeout=2.0
        ):
            records.append(record)
            handle.abort("test")
        return records

    records = asyncio.run(asyncio.wait_for(_run(), timeout=30))

    assert records == [{"type": "started"}]
    pid = int(pid_file.read_text())
    assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE


def test_already_aborted_handle_yields_nothing(tmp_path):
    script = _write_script(
        tmp_path,
        """
        import json
        print(json.dumps({"type": "hello"}))
        """,
    )
    handle = AbortHandle()
    handle.abort()

    assert asyncio.run(_collect(sys.executable, [script], abort=handle)) == []
