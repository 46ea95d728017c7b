"""Process sandbox runner.

Spawns one interpreter process per run and supervises it:

- **Isolation**: the process gets its own process group, a working directory
  scoped to the sheet's files and a minimised environment (allow-listed
  variables only).
- **Output**: stdout and stderr are merged by the OS, read in fixed-size
  chunks and decoded incrementally.  Nothing waits for a newline, so prompts
  and partial lines reach the terminal as soon as the process writes them.
- **Input**: writes go through a per-handle queue drained by one writer task,
  which serialises concurrent writers and preserves write order.
- **Limits**: a wall-clock timeout and an output-byte budget.  Exceeding
  either kills the process group; the terminal event carries the reason.

Every handle emits exactly one ``ProcessExited`` event, always last.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from graphsheet.exec_runtime.models.enums import ExitReason, Phase

if TYPE_CHECKING:
    from graphsheet.exec_runtime.models.sheet import SessionKey
    from graphsheet.exec_runtime.settings import GraphsheetSettings

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = 4096

_READER_DRAIN_TIMEOUT = 2.0
"""How long to keep reading after exit; orphaned grandchildren may hold the pipe."""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class SpawnError(RuntimeError):
    """The sandboxed process could not be started.  Fatal to the run."""

    def __init__(self, message: str, *, phase: Phase = Phase.SETUP) -> None:
        super().__init__(message)
        self.phase = phase


class SessionEndedError(RuntimeError):
    """Raised when writing input to a process that has exited."""


# ---------------------------------------------------------------------------
# Runner events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputChunk:
    text: str


@dataclass(frozen=True)
class CheckpointSignal:
    """The running code printed the checkpoint marker."""


@dataclass(frozen=True)
class ProcessExited:
    exit_code: int | None
    reason: ExitReason = ExitReason.EXITED
    detail: str | None = None


RunnerEvent = OutputChunk | CheckpointSignal | ProcessExited


# ---------------------------------------------------------------------------
# Checkpoint marker detection
# ---------------------------------------------------------------------------


class CheckpointScanner:
    """Splits decoded output into text chunks and checkpoint signals.

    The marker and one newline directly after it are removed from the text.
    A trailing fragment that could be the start of a marker is held back
    until the next ``feed`` (or ``flush``) resolves it.
    """

    def __init__(self, marker: str) -> None:
        if not marker:
            msg = "Checkpoint marker must be non-empty"
            raise ValueError(msg)
        self._marker = marker
        self._pending = ""
        self._strip_newline = False

    def feed(self, text: str) -> list[OutputChunk | CheckpointSignal]:
        buf = self._pending + text
        self._pending = ""
        events: list[OutputChunk | CheckpointSignal] = []

        while buf:
            if self._strip_newline:
                if buf == "\r":
                    # Can't tell "\r\n" from a bare "\r" yet.
                    self._pending = buf
                    return events
                if buf.startswith("\r\n"):
                    buf = buf[2:]
                elif buf.startswith("\n"):
                    buf = buf[1:]
                self._strip_newline = False
                continue

            idx = buf.find(self._marker)
            if idx < 0:
                break
            if idx:
                events.append(OutputChunk(buf[:idx]))
            events.append(CheckpointSignal())
            buf = buf[idx + len(self._marker) :]
            self._strip_newline = True

        held = self._held_suffix(buf)
        if held:
            self._pending = buf[-held:]
            buf = buf[:-held]
        if buf:
            events.append(OutputChunk(buf))
        return events

    def flush(self) -> list[OutputChunk]:
        """Release any held-back text at end of stream."""
        text, self._pending = self._pending, ""
        self._strip_newline = False
        return [OutputChunk(text)] if text else []

    def _held_suffix(self, buf: str) -> int:
        for size in range(min(len(buf), len(self._marker) - 1), 0, -1):
            if self._marker.startswith(buf[-size:]):
                return size
        return 0


# ---------------------------------------------------------------------------
# Process handle
# ---------------------------------------------------------------------------


class ProcessHandle:
    """Live handle on one sandboxed interpreter process.

    Owns the process pipes and three background tasks: the output reader,
    the stdin writer and the supervisor that enforces the timeout and emits
    the terminal event.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        key: SessionKey,
        scanner: CheckpointScanner,
        timeout: float | None,
        max_output_bytes: int,
        terminate_grace: float = 2.0,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        self.key = key
        self._process = process
        self._scanner = scanner
        self._timeout = timeout or None
        self._max_output_bytes = max_output_bytes
        self._terminate_grace = terminate_grace
        self._read_size = read_size

        self._events: asyncio.Queue[RunnerEvent] = asyncio.Queue()
        self._stdin: asyncio.Queue[bytes] = asyncio.Queue()
        self._bytes_out = 0
        self._kill_reason: ExitReason | None = None
        self._input_closed = False
        self._exited = asyncio.Event()
        self.exit_code: int | None = None

        self._reader = asyncio.create_task(self._read_output(), name=f"sandbox-reader:{key}")
        self._writer = asyncio.create_task(self._write_input(), name=f"sandbox-writer:{key}")
        self._supervisor = asyncio.create_task(self._supervise(), name=f"sandbox-supervisor:{key}")

    # -- Properties ------------------------------------------------------------

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    @property
    def bytes_out(self) -> int:
        return self._bytes_out

    # -- Public API ------------------------------------------------------------

    def write_input(self, text: str) -> None:
        """Queue *text* for the process's stdin.

        Returns immediately.  Raises ``SessionEndedError`` once the process
        has exited.
        """
        if self._input_closed:
            msg = f"Session {self.key} has ended"
            raise SessionEndedError(msg)
        self._stdin.put_nowait(text.encode("utf-8"))

    async def events(self) -> AsyncIterator[RunnerEvent]:
        """Yield runner events in production order, ending with ``ProcessExited``."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, ProcessExited):
                return

    async def terminate(self) -> None:
        """Stop the process group: SIGTERM, then SIGKILL after the grace period."""
        if self._exited.is_set():
            return
        # Already reaped but still draining output: that exit was natural.
        if self._process.returncode is None:
            self._set_reason(ExitReason.TERMINATED)
        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self._terminate_grace)
        except TimeoutError:
            logger.warning("Process %s ignored SIGTERM, killing", self.key)
            self._signal(signal.SIGKILL)
            await self._exited.wait()

    async def wait(self) -> int | None:
        """Wait for the terminal event to be emitted and return the exit code."""
        await self._exited.wait()
        return self.exit_code

    # -- Internals -------------------------------------------------------------

    def _set_reason(self, reason: ExitReason) -> None:
        if self._kill_reason is None:
            self._kill_reason = reason

    def _signal(self, sig: int) -> None:
        if self._process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            os.killpg(self._process.pid, sig)

    def _kill(self, reason: ExitReason) -> None:
        self._set_reason(reason)
        self._signal(signal.SIGKILL)

    def _publish(self, text: str) -> None:
        if text:
            for event in self._scanner.feed(text):
                self._events.put_nowait(event)

    async def _read_output(self) -> None:
        stream = self._process.stdout
        assert stream is not None  # noqa: S101
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            data = await stream.read(self._read_size)
            if not data:
                break
            remaining = self._max_output_bytes - self._bytes_out
            if len(data) > remaining:
                self._bytes_out += remaining
                self._publish(decoder.decode(data[:remaining]))
                logger.warning("Process %s exceeded output budget (%d bytes)", self.key, self._max_output_bytes)
                self._kill(ExitReason.OUTPUT_BUDGET)
                return
            self._bytes_out += len(data)
            self._publish(decoder.decode(data))

        self._publish(decoder.decode(b"", final=True))

    async def _write_input(self) -> None:
        stdin = self._process.stdin
        assert stdin is not None  # noqa: S101
        while True:
            data = await self._stdin.get()
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("stdin of %s closed, dropping further input", self.key)
                return

    async def _supervise(self) -> None:
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("Process %s exceeded execution timeout (%ss)", self.key, self._timeout)
            self._kill(ExitReason.TIMEOUT)
            await self._process.wait()

        self._input_closed = True
        self._writer.cancel()
        if self._process.stdin is not None:
            with contextlib.suppress(OSError):
                self._process.stdin.close()

        done, _ = await asyncio.wait({self._reader}, timeout=_READER_DRAIN_TIMEOUT)
        if not done:
            self._reader.cancel()
        elif self._reader.exception() is not None:
            logger.error("Output reader for %s failed: %r", self.key, self._reader.exception())

        for event in self._scanner.flush():
            self._events.put_nowait(event)

        self.exit_code = self._process.returncode
        reason = self._kill_reason or ExitReason.EXITED
        self._events.put_nowait(ProcessExited(self.exit_code, reason, self._describe(reason)))
        self._exited.set()
        logger.info("Process %s exited: code=%s, reason=%s", self.key, self.exit_code, reason)

    def _describe(self, reason: ExitReason) -> str | None:
        if reason == ExitReason.TIMEOUT:
            return f"Execution exceeded the {self._timeout:g}s time limit"
        if reason == ExitReason.OUTPUT_BUDGET:
            return f"Output exceeded the {self._max_output_bytes} byte budget"
        if reason == ExitReason.TERMINATED:
            return "Execution was terminated"
        return None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class SandboxRunner:
    """Factory for sandboxed interpreter processes."""

    def __init__(
        self,
        *,
        python_executable: str,
        execution_timeout: float | None,
        max_output_bytes: int,
        checkpoint_marker: str,
        env_allowlist: Sequence[str] = (),
        terminate_grace: float = 2.0,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        if max_output_bytes <= 0:
            msg = "max_output_bytes must be positive"
            raise ValueError(msg)
        self._python = python_executable
        self._timeout = execution_timeout or None
        self._max_output_bytes = max_output_bytes
        self._marker = checkpoint_marker
        self._env_allowlist = list(env_allowlist)
        self._terminate_grace = terminate_grace
        self._read_size = read_size

    @classmethod
    def from_settings(cls, settings: GraphsheetSettings) -> SandboxRunner:
        return cls(
            python_executable=settings.python_executable,
            execution_timeout=settings.execution_timeout,
            max_output_bytes=settings.max_output_bytes,
            checkpoint_marker=settings.checkpoint_marker,
            env_allowlist=settings.env_allowlist,
            terminate_grace=settings.terminate_grace,
        )

    @property
    def max_output_bytes(self) -> int:
        return self._max_output_bytes

    def build_env(self, workdir: Path) -> dict[str, str]:
        """Minimal environment: allow-listed variables plus interpreter I/O settings."""
        env = {name: os.environ[name] for name in self._env_allowlist if name in os.environ}
        env.update(
            PYTHONUNBUFFERED="1",
            PYTHONIOENCODING="utf-8",
            PYTHONDONTWRITEBYTECODE="1",
            HOME=str(workdir),
        )
        return env

    async def spawn(self, key: SessionKey, workdir: Path, entrypoint: str) -> ProcessHandle:
        """Start ``python -u <entrypoint>`` in *workdir*.  Raises ``SpawnError``."""
        argv = [self._python, "-u", entrypoint]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(workdir),
                env=self.build_env(workdir),
                start_new_session=True,
            )
        except OSError as exc:
            msg = f"Failed to start interpreter for {key}: {exc}"
            raise SpawnError(msg, phase=Phase.EXECUTION) from exc

        logger.info("Process %s spawned: pid=%d, entrypoint=%s", key, process.pid, entrypoint)
        return ProcessHandle(
            process,
            key=key,
            scanner=CheckpointScanner(self._marker),
            timeout=self._timeout,
            max_output_bytes=self._max_output_bytes,
            terminate_grace=self._terminate_grace,
            read_size=self._read_size,
        )
