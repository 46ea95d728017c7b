"""In-process session registry.

Maps ``(playground_id, sheet_id)`` keys to live ``ExecutionSession`` objects
and connections to the session they are attached to.  Ephemeral: empty on
process restart.  Sheets and graphs are the durable state.

The registry also provides a drain mechanism for graceful shutdown:
``wait_until_drained`` blocks until no session has an active run.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from graphsheet.exec_runtime.session import ExecutionSession, Launcher, Subscriber

if TYPE_CHECKING:
    from graphsheet.exec_runtime.models.enums import StartOutcome
    from graphsheet.exec_runtime.models.sheet import SessionKey


class ShuttingDownError(RuntimeError):
    """Raised when attempting to start a run during shutdown."""


class SessionRegistry:
    """Registry of execution sessions and connection bindings.

    All methods run on the event loop.  Only ``start``/``try_start`` and the
    termination helpers suspend; binding changes are synchronous.
    """

    def __init__(self, launcher: Launcher, *, grace_period: float = 30.0) -> None:
        self._launcher = launcher
        self._grace_period = grace_period
        self._sessions: dict[SessionKey, ExecutionSession] = {}
        self._bindings: dict[str, SessionKey] = {}
        self._active: set[SessionKey] = set()
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no runs).
        self._shutting_down = False

    # -- Sessions --------------------------------------------------------------

    def get_or_create(self, key: SessionKey) -> ExecutionSession:
        session = self._sessions.get(key)
        if session is None:
            session = ExecutionSession(key, launcher=self._launcher, registry=self, grace_period=self._grace_period)
            self._sessions[key] = session
            logger.debug("Registry: created session {}", key)
        return session

    def get(self, key: SessionKey) -> ExecutionSession | None:
        return self._sessions.get(key)

    def remove(self, key: SessionKey, session: ExecutionSession | None = None) -> None:
        """Forget the session for *key* (only if it is still *session*, when given)."""
        current = self._sessions.get(key)
        if current is None or (session is not None and current is not session):
            return
        del self._sessions[key]
        self._active.discard(key)
        if not self._active:
            self._drain_event.set()
        logger.debug("Registry: removed session {}", key)

    def all_sessions(self) -> list[ExecutionSession]:
        """Return a snapshot of all known sessions."""
        return list(self._sessions.values())

    @property
    def active_count(self) -> int:
        return len(self._active)

    # -- Connections -----------------------------------------------------------

    def attach(self, conn: Subscriber, key: SessionKey, *, replay: bool = True) -> ExecutionSession:
        """Bind *conn* to the session for *key*, moving it off any previous session."""
        bound = self._bindings.get(conn.connection_id)
        if bound == key:
            return self.get_or_create(key)
        if bound is not None:
            self.detach(conn)
        session = self.get_or_create(key)
        self._bindings[conn.connection_id] = key
        session.attach(conn, replay=replay)
        return session

    def detach(self, conn: Subscriber) -> None:
        """Unbind *conn*.  The session keeps running."""
        key = self._bindings.pop(conn.connection_id, None)
        if key is None:
            return
        session = self._sessions.get(key)
        if session is not None:
            session.detach(conn)

    def session_for(self, conn: Subscriber) -> ExecutionSession | None:
        key = self._bindings.get(conn.connection_id)
        return self._sessions.get(key) if key is not None else None

    # -- Runs ------------------------------------------------------------------

    async def try_start(self, key: SessionKey) -> StartOutcome:
        """Start a run for *key* unless one is active.  Raises ``ShuttingDownError``."""
        if self._shutting_down:
            raise ShuttingDownError
        return await self.get_or_create(key).start()

    async def start(self, conn: Subscriber, key: SessionKey) -> tuple[ExecutionSession, StartOutcome]:
        """Attach *conn* to *key* and start a run (fan-in if one is active).

        History is replayed only when joining an active run; a connection
        that starts a fresh run sees just that run's events.
        """
        if self._shutting_down:
            raise ShuttingDownError
        session = self.get_or_create(key)
        if self._bindings.get(conn.connection_id) != key:
            self.attach(conn, key, replay=session.is_active)
        return session, await session.start()

    async def terminate(self, key: SessionKey) -> bool:
        session = self._sessions.get(key)
        if session is None:
            return False
        return await session.terminate()

    def run_started(self, session: ExecutionSession) -> None:
        self._active.add(session.key)
        self._drain_event.clear()

    def run_finished(self, session: ExecutionSession) -> None:
        self._active.discard(session.key)
        if not self._active:
            self._drain_event.set()

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New runs are refused."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new runs")
        if not self._active:
            self._drain_event.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until no session has an active run.

        Returns ``True`` if drained, ``False`` if *timeout* expired with runs
        still active.
        """
        if not self._active:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} runs still active",
                timeout,
                len(self._active),
            )
            return False
        else:
            return True

    async def terminate_all(self) -> int:
        """Terminate every active run.  Returns the number of processes signalled."""
        results = await asyncio.gather(*(s.terminate() for s in self._sessions.values()))
        count = sum(1 for r in results if r)
        if count:
            logger.info("Registry: terminated {} running processes", count)
        return count
