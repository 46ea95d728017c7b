"""Execution session: the per-sheet actor.

One ``ExecutionSession`` exists per ``(playground_id, sheet_id)`` key.  It owns
at most one live process at a time, the set of attached connections, the
output sequence counter and the event history of the current run.  All state
changes happen on the event loop; methods that must be race-free (``start``)
make their state transition before their first suspension point.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Coroutine, Sequence
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger

from graphsheet.exec_runtime.execution.sandbox import ProcessExited, ProcessHandle, SessionEndedError, SpawnError
from graphsheet.exec_runtime.models.enums import ErrorCode, ExitReason, SessionStatus, StartOutcome
from graphsheet.exec_runtime.models.events import (
    ErrorDetail,
    ExecutionEvent,
    ExitedEvent,
    OutputEvent,
    StartedEvent,
)
from graphsheet.exec_runtime.models.sheet import SessionKey, SheetFile

if TYPE_CHECKING:
    from graphsheet.exec_runtime.registry import SessionRegistry


class NotStartedError(RuntimeError):
    """Input arrived for a session that has never started a run."""


class Subscriber(Protocol):
    """Receiving side of a connection, as seen by a session."""

    connection_id: str

    def offer(self, event: ExecutionEvent) -> bool:
        """Queue *event* for delivery.  ``False`` means the connection overflowed."""
        ...

    def replay(self, events: Sequence[ExecutionEvent]) -> None:
        """Queue history ahead of live events, outside the overflow bound."""
        ...


class Launcher(Protocol):
    """Starts the process for a session's run.  Raises ``SpawnError``."""

    async def launch(self, session: ExecutionSession) -> None: ...


_EXIT_ERRORS = {
    ExitReason.TIMEOUT: ErrorCode.EXECUTION_TIMEOUT,
    ExitReason.OUTPUT_BUDGET: ErrorCode.OUTPUT_BUDGET_EXCEEDED,
    ExitReason.SPAWN_FAILED: ErrorCode.SPAWN_FAILED,
}


class ExecutionSession:
    def __init__(
        self,
        key: SessionKey,
        *,
        launcher: Launcher,
        registry: SessionRegistry,
        grace_period: float,
    ) -> None:
        self.key = key
        self.status = SessionStatus.IDLE
        self.run_id: str | None = None
        self.handle: ProcessHandle | None = None
        self.files: list[SheetFile] = []
        self.extraction_lock = asyncio.Lock()

        self._launcher = launcher
        self._registry = registry
        self._grace_period = grace_period
        self._seq = 0
        self._history: list[ExecutionEvent] = []
        self._connections: dict[str, Subscriber] = {}
        self._pending_input: list[str] = []
        self._tasks: set[asyncio.Task] = set()
        self._reaper: asyncio.TimerHandle | None = None
        self._finished = asyncio.Event()
        self._finished.set()

    # -- Properties ------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.STARTING, SessionStatus.RUNNING)

    @property
    def last_seq(self) -> int:
        return self._seq

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def history(self) -> list[ExecutionEvent]:
        return list(self._history)

    # -- Connections -----------------------------------------------------------

    def attach(self, conn: Subscriber, *, replay: bool = True) -> None:
        """Attach *conn*; optionally replay the current run's events to it."""
        self._cancel_reaper()
        self._connections[conn.connection_id] = conn
        if replay:
            conn.replay(self._history)
        logger.debug("Connection {} attached to {} (replay={})", conn.connection_id, self.key, replay)

    def detach(self, conn: Subscriber) -> None:
        """Detach *conn*.  Never terminates the run."""
        if self._connections.pop(conn.connection_id, None) is None:
            return
        logger.debug("Connection {} detached from {}", conn.connection_id, self.key)
        if not self._connections:
            self._schedule_reaper()

    def _drop(self, conn: Subscriber) -> None:
        logger.warning("Connection {} overflowed on {}, dropping it", conn.connection_id, self.key)
        self._registry.detach(conn)

    # -- Run lifecycle ---------------------------------------------------------

    async def start(self) -> StartOutcome:
        """Start a new run unless one is active (fan-in)."""
        if self.is_active:
            return StartOutcome.ALREADY_RUNNING
        # No await between the check above and this transition.
        self.status = SessionStatus.STARTING
        self.run_id = uuid.uuid4().hex
        self._history = []
        self._pending_input = []
        self._finished.clear()
        self._registry.run_started(self)

        launch = asyncio.ensure_future(self._launch())
        self._track(launch)
        return await asyncio.shield(launch)

    async def _launch(self) -> StartOutcome:
        try:
            await self._launcher.launch(self)
        except SpawnError as exc:
            logger.warning("Run {} for {} failed to start: {}", self.run_id, self.key, exc)
            self._spawn_failed(str(exc))
            return StartOutcome.FAILED
        except Exception as exc:
            logger.exception("Unexpected error launching run {} for {}", self.run_id, self.key)
            self._spawn_failed(f"Internal error: {exc}")
            return StartOutcome.FAILED
        return StartOutcome.STARTED

    def bind_process(self, handle: ProcessHandle) -> None:
        """Called by the launcher once the process is spawned."""
        self.handle = handle
        self.status = SessionStatus.RUNNING
        self.publish(
            StartedEvent(
                run_id=self.run_id or "",
                playground_id=self.key.playground_id,
                sheet_id=self.key.sheet_id,
            )
        )
        logger.info("Run {} started for {} (pid={})", self.run_id, self.key, handle.pid)
        pending, self._pending_input = self._pending_input, []
        for text in pending:
            handle.write_input(text)
        if not self._connections:
            self._schedule_reaper()

    def finish_run(self, exited: ProcessExited) -> None:
        """Publish the terminal event for the current run."""
        self.handle = None
        self._pending_input = []
        self.status = SessionStatus.EXITED
        error = None
        if exited.reason in _EXIT_ERRORS:
            error = ErrorDetail(code=_EXIT_ERRORS[exited.reason], message=exited.detail or str(exited.reason))
        self.publish(
            ExitedEvent(run_id=self.run_id or "", exit_code=exited.exit_code, reason=exited.reason, error=error)
        )
        logger.info("Run {} for {} exited: code={}, reason={}", self.run_id, self.key, exited.exit_code, exited.reason)
        self._finished.set()
        self._registry.run_finished(self)
        if not self._connections:
            self._schedule_reaper()

    def _spawn_failed(self, message: str) -> None:
        self.finish_run(ProcessExited(None, ExitReason.SPAWN_FAILED, message))

    def write_input(self, text: str) -> None:
        """Forward *text* to the process stdin.

        Input sent while the run is starting is held and written once the
        process is up.  Raises ``SessionEndedError`` after the run exited and
        ``NotStartedError`` if no run was ever started.
        """
        if self.handle is not None:
            self.handle.write_input(text)
        elif self.status == SessionStatus.STARTING:
            self._pending_input.append(text)
        elif self.status == SessionStatus.EXITED:
            msg = f"Session {self.key} has ended"
            raise SessionEndedError(msg)
        else:
            msg = f"Session {self.key} has not been started"
            raise NotStartedError(msg)

    async def terminate(self) -> bool:
        """Terminate the active process.  Returns ``False`` if nothing was running."""
        handle = self.handle
        if handle is None:
            return False
        logger.info("Terminating run {} for {}", self.run_id, self.key)
        await handle.terminate()
        return True

    async def wait_finished(self) -> None:
        """Wait until the current run (if any) has published its terminal event."""
        await self._finished.wait()

    # -- Fan-out ---------------------------------------------------------------

    def publish_output(self, text: str) -> None:
        self._seq += 1
        self.publish(OutputEvent(seq=self._seq, text=text))

    def publish(self, event: ExecutionEvent) -> None:
        """Record *event* in the run history and offer it to every connection."""
        self._history.append(event)
        for conn in list(self._connections.values()):
            if not conn.offer(event):
                self._drop(conn)

    # -- Background tasks ------------------------------------------------------

    def spawn_task(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}:{self.key}")
        self._track(task)
        return task

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._tasks.discard)

    # -- Reaper ----------------------------------------------------------------

    def _schedule_reaper(self) -> None:
        self._cancel_reaper()
        loop = asyncio.get_running_loop()
        self._reaper = loop.call_later(self._grace_period, self._on_reaper)

    def _cancel_reaper(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            self._reaper = None

    def _on_reaper(self) -> None:
        self._reaper = None
        if self._connections:
            return
        self.spawn_task(self._reap(), "session-reaper")

    async def _reap(self) -> None:
        if self._connections:
            return
        if self.is_active:
            logger.info("No connection reattached to {} within {}s, terminating", self.key, self._grace_period)
            if self.status == SessionStatus.STARTING:
                # Spawn still in flight; the exit path reschedules the reaper.
                return
            await self.terminate()
            await self.wait_finished()
        if not self._connections and not self.is_active:
            self._registry.remove(self.key, self)
            logger.info("Session {} reaped", self.key)
