"""Tests for the sandbox runner using a real interpreter subprocess.

No database or Docker required.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from graphsheet.exec_runtime.execution.sandbox import (
    CheckpointSignal,
    OutputChunk,
    ProcessExited,
    ProcessHandle,
    SandboxRunner,
    SessionEndedError,
    SpawnError,
)
from graphsheet.exec_runtime.models.enums import ExitReason
from graphsheet.exec_runtime.models.sheet import SessionKey

KEY = SessionKey("pg-1", "sheet-1")
MARKER = "::cp::"


def _runner(**overrides) -> SandboxRunner:
    options = {
        "python_executable": sys.executable,
        "execution_timeout": 20.0,
        "max_output_bytes": 1024 * 1024,
        "checkpoint_marker": MARKER,
        "env_allowlist": ["PATH"],
        "terminate_grace": 0.5,
    }
    options.update(overrides)
    return SandboxRunner(**options)


def _script(tmp_path: Path, code: str) -> Path:
    (tmp_path / "main.py").write_text(code, encoding="utf-8")
    return tmp_path


async def _collect(handle: ProcessHandle) -> list:
    return [event async for event in handle.events()]


def _text(events: list) -> str:
    return "".join(e.text for e in events if isinstance(e, OutputChunk))


async def test_output_and_exit_code(tmp_path: Path) -> None:
    workdir = _script(tmp_path, "print('hello')\nraise SystemExit(3)\n")
    handle = await _runner().spawn(KEY, workdir, "main.py")

    events = await _collect(handle)

    assert _text(events) == "hello\n"
    exits = [e for e in events if isinstance(e, ProcessExited)]
    assert exits == [events[-1]]
    assert exits[0].exit_code == 3
    assert exits[0].reason == ExitReason.EXITED
    assert handle.has_exited


async def test_stderr_is_merged_in_order(tmp_path: Path) -> None:
    code = "import sys\nprint('out')\nprint('err', file=sys.stderr)\nprint('out2')\n"
    handle = await _runner().spawn(KEY, _script(tmp_path, code), "main.py")

    events = await _collect(handle)

    assert _text(events) == "out\nerr\nout2\n"


async def test_prompt_without_newline_and_input(tmp_path: Path) -> None:
    code = "name = input('name? ')\nprint('hi ' + name)\n"
    handle = await _runner().spawn(KEY, _script(tmp_path, code), "main.py")
    handle.write_input("bob\n")

    events = await _collect(handle)

    assert _text(events) == "name? hi bob\n"


async def test_inputs_are_written_in_order(tmp_path: Path) -> None:
    code = "a = input()\nb = input()\nc = input()\nprint(a, b, c)\n"
    handle = await _runner().spawn(KEY, _script(tmp_path, code), "main.py")
    for word in ("one\n", "two\n", "three\n"):
        handle.write_input(word)

    events = await _collect(handle)

    assert _text(events) == "one two three\n"


async def test_write_after_exit_raises(tmp_path: Path) -> None:
    handle = await _runner().spawn(KEY, _script(tmp_path, "pass\n"), "main.py")
    await _collect(handle)

    with pytest.raises(SessionEndedError):
        handle.write_input("late\n")


async def test_timeout_kills_process(tmp_path: Path) -> None:
    code = "import time\nprint('sleeping', flush=True)\ntime.sleep(30)\n"
    handle = await _runner(execution_timeout=0.5).spawn(KEY, _script(tmp_path, code), "main.py")

    events = await _collect(handle)

    exited = events[-1]
    assert isinstance(exited, ProcessExited)
    assert exited.reason == ExitReason.TIMEOUT
    assert exited.detail is not None and "time limit" in exited.detail
    assert "sleeping" in _text(events)


async def test_output_budget_truncates_and_kills(tmp_path: Path) -> None:
    code = "import sys\nfor _ in range(1000):\n    sys.stdout.write('x' * 100)\n"
    handle = await _runner(max_output_bytes=250).spawn(KEY, _script(tmp_path, code), "main.py")

    events = await _collect(handle)

    assert _text(events) == "x" * 250
    assert handle.bytes_out == 250
    exited = events[-1]
    assert isinstance(exited, ProcessExited)
    assert exited.reason == ExitReason.OUTPUT_BUDGET


async def test_terminate(tmp_path: Path) -> None:
    code = "import time\nprint('ready', flush=True)\ntime.sleep(30)\n"
    handle = await _runner().spawn(KEY, _script(tmp_path, code), "main.py")

    async for event in handle.events():
        if isinstance(event, OutputChunk) and "ready" in event.text:
            break
    await handle.terminate()
    rest = await _collect(handle)

    exited = rest[-1]
    assert isinstance(exited, ProcessExited)
    assert exited.reason == ExitReason.TERMINATED
    assert exited.exit_code is not None and exited.exit_code < 0


async def test_terminate_after_natural_exit_keeps_reason(tmp_path: Path) -> None:
    # A grandchild holds stdout open, so the output drain outlives the process.
    code = (
        "import subprocess, sys\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(0.3)'])\n"
        "print('bye', flush=True)\n"
    )
    handle = await _runner().spawn(KEY, _script(tmp_path, code), "main.py")

    await handle._process.wait()
    await handle.terminate()
    events = await _collect(handle)

    exited = events[-1]
    assert isinstance(exited, ProcessExited)
    assert exited.reason == ExitReason.EXITED
    assert exited.exit_code == 0


async def test_terminate_escalates_to_kill(tmp_path: Path) -> None:
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    handle = await _runner(terminate_grace=0.3).spawn(KEY, _script(tmp_path, code), "main.py")

    async for event in handle.events():
        if isinstance(event, OutputChunk) and "ready" in event.text:
            break
    await handle.terminate()

    assert await handle.wait() == -9


async def test_checkpoint_signal_in_stream_position(tmp_path: Path) -> None:
    code = f"print('a')\nprint('{MARKER}')\nprint('b')\n"
    handle = await _runner().spawn(KEY, _script(tmp_path, code), "main.py")

    events = await _collect(handle)

    signals = [i for i, e in enumerate(events) if isinstance(e, CheckpointSignal)]
    assert len(signals) == 1
    assert _text(events[: signals[0]]) == "a\n"
    assert _text(events) == "a\nb\n"


async def test_multibyte_output_split_across_reads(tmp_path: Path) -> None:
    code = "print('h\\u00e9llo \\u2192 \\u4e16\\u754c')\n"
    handle = await _runner(read_size=1).spawn(KEY, _script(tmp_path, code), "main.py")

    events = await _collect(handle)

    assert _text(events) == "héllo → 世界\n"


async def test_environment_is_minimised(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GRAPHSHEET_TEST_SECRET", "s3cr3t")
    code = (
        "import os\n"
        "print(os.environ.get('GRAPHSHEET_TEST_SECRET'))\n"
        "print(os.path.realpath(os.environ['HOME']) == os.path.realpath(os.getcwd()))\n"
    )
    handle = await _runner().spawn(KEY, _script(tmp_path, code), "main.py")

    events = await _collect(handle)

    assert _text(events) == "None\nTrue\n"


async def test_missing_interpreter_raises_spawn_error(tmp_path: Path) -> None:
    runner = _runner(python_executable=str(tmp_path / "no-such-python"))

    with pytest.raises(SpawnError):
        await runner.spawn(KEY, _script(tmp_path, "pass\n"), "main.py")


def test_build_env_only_copies_allowlisted(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PATH", "/usr/bin")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "nope")

    env = _runner().build_env(tmp_path)

    assert env["PATH"] == "/usr/bin"
    assert "AWS_SECRET_ACCESS_KEY" not in env
    assert env["PYTHONUNBUFFERED"] == "1"
    assert env["HOME"] == str(tmp_path)
