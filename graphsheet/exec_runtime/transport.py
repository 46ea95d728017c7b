"""Streaming transport.

A ``Connection`` is one client's outbound channel: a bounded queue of server
events drained by a sender task.  Sessions offer events to connections
without awaiting, so one slow client never stalls output for the others; a
connection whose queue is full is closed and dropped from its session.

``serve_websocket`` runs the duplex protocol for one WebSocket:

- a receive loop that parses client frames and dispatches them in arrival
  order (``start``, ``input``, ``terminate``)
- a sender loop that writes queued events as JSON frames

Whichever loop finishes first cancels the other, and the connection is
always detached from its session on the way out.

``watch_session`` serves the same events to read-only SSE listeners.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from collections import deque
from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from graphsheet.exec_runtime.execution.sandbox import SessionEndedError
from graphsheet.exec_runtime.models.enums import ErrorCode, Phase, Transport
from graphsheet.exec_runtime.models.events import (
    ClientMessage,
    ConnectErrorEvent,
    DisconnectEvent,
    ErrorEvent,
    ExecutionEvent,
    InputMessage,
    StartMessage,
    TerminateMessage,
    client_message_adapter,
)
from graphsheet.exec_runtime.models.sheet import SessionKey
from graphsheet.exec_runtime.registry import SessionRegistry, ShuttingDownError
from graphsheet.exec_runtime.session import NotStartedError

if TYPE_CHECKING:
    from graphsheet.exec_runtime.session import ExecutionSession

OVERFLOW_REASON = ErrorCode.TRANSPORT_OVERFLOW


class Connection:
    """Outbound side of one client connection.

    Replayed history sits in its own queue ahead of live events and does not
    count against ``max_pending``; only live events can overflow a connection.
    """

    def __init__(self, *, max_pending: int, transport: Transport = Transport.WEBSOCKET) -> None:
        self.connection_id = uuid.uuid4().hex
        self.transport = transport
        self.close_reason: str | None = None
        self._max_pending = max_pending
        self._replay: deque[ExecutionEvent] = deque()
        self._pending: deque[ExecutionEvent] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        return self.close_reason == OVERFLOW_REASON

    def offer(self, event: ExecutionEvent) -> bool:
        """Queue *event* without blocking.  Returns ``False`` once the connection is unusable."""
        if self._closed:
            return False
        if len(self._pending) >= self._max_pending:
            logger.warning(
                "Connection {} overflowed ({} events pending), closing",
                self.connection_id,
                len(self._pending),
            )
            self.close(OVERFLOW_REASON)
            return False
        self._pending.append(event)
        self._wakeup.set()
        return True

    def replay(self, events: Sequence[ExecutionEvent]) -> None:
        """Queue a session's history ahead of any live event."""
        if self._closed or not events:
            return
        self._replay.extend(events)
        self._wakeup.set()

    def close(self, reason: str | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_reason = reason
        self._replay.clear()
        self._pending.clear()
        self._wakeup.set()

    async def outbound(self) -> AsyncIterator[ExecutionEvent]:
        """Yield replayed then live events in order until the connection is closed."""
        while not self._closed:
            if self._replay:
                yield self._replay.popleft()
            elif self._pending:
                yield self._pending.popleft()
            else:
                self._wakeup.clear()
                await self._wakeup.wait()


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


async def serve_websocket(websocket: WebSocket, registry: SessionRegistry, *, max_pending: int) -> None:
    """Run the terminal protocol on *websocket* until either side goes away."""
    await websocket.accept()
    conn = Connection(max_pending=max_pending, transport=Transport.WEBSOCKET)
    logger.info("Connection {} opened", conn.connection_id)

    receiver = asyncio.create_task(_receive_loop(websocket, conn, registry), name=f"ws-recv:{conn.connection_id}")
    sender = asyncio.create_task(_send_loop(websocket, conn), name=f"ws-send:{conn.connection_id}")
    try:
        done, pending = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.opt(exception=exc).error("Connection {} failed", conn.connection_id)
    finally:
        registry.detach(conn)
        conn.close()
        if WebSocketState.DISCONNECTED not in (websocket.application_state, websocket.client_state):
            # The peer may already be gone; nothing left to report then.
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await websocket.close()
        logger.info("Connection {} closed", conn.connection_id)


async def _send_loop(websocket: WebSocket, conn: Connection) -> None:
    async for event in conn.outbound():
        await websocket.send_json(event.wire())
    if conn.close_reason:
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await websocket.send_json(DisconnectEvent(reason=conn.close_reason).wire())


async def _receive_loop(websocket: WebSocket, conn: Connection, registry: SessionRegistry) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            message = client_message_adapter.validate_json(raw)
        except ValidationError as exc:
            conn.offer(ConnectErrorEvent(reason=f"Invalid frame: {_describe_validation(exc)}"))
            continue
        await dispatch(message, conn, registry)


def _describe_validation(exc: ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first['msg']}" if loc else first["msg"]


async def dispatch(message: ClientMessage, conn: Connection, registry: SessionRegistry) -> None:
    """Handle one parsed client message for *conn*."""
    if isinstance(message, StartMessage):
        key = SessionKey(message.data.playground_id, message.data.sheet_id)
        try:
            _, outcome = await registry.start(conn, key)
        except ShuttingDownError:
            conn.offer(
                ErrorEvent(
                    code=ErrorCode.SHUTTING_DOWN,
                    message="Server is shutting down",
                    phase=Phase.SETUP,
                    playground_id=key.playground_id,
                    sheet_id=key.sheet_id,
                )
            )
            return
        logger.info("Connection {} start {}: {}", conn.connection_id, key, outcome)

    elif isinstance(message, InputMessage):
        session = registry.session_for(conn)
        if session is None:
            conn.offer(
                ErrorEvent(code=ErrorCode.NOT_STARTED, message="Send 'start' before 'input'", phase=Phase.TRANSPORT)
            )
            return
        try:
            session.write_input(message.data.text)
        except SessionEndedError as exc:
            conn.offer(_session_error(session, ErrorCode.SESSION_ENDED, str(exc), Phase.EXECUTION))
        except NotStartedError as exc:
            conn.offer(_session_error(session, ErrorCode.NOT_STARTED, str(exc), Phase.TRANSPORT))

    elif isinstance(message, TerminateMessage):
        session = registry.session_for(conn)
        if session is not None:
            await session.terminate()


def _session_error(session: ExecutionSession, code: ErrorCode, message: str, phase: Phase) -> ErrorEvent:
    return ErrorEvent(
        code=code,
        message=message,
        phase=phase,
        playground_id=session.key.playground_id,
        sheet_id=session.key.sheet_id,
        run_id=session.run_id,
    )


# ---------------------------------------------------------------------------
# SSE watchers
# ---------------------------------------------------------------------------


async def watch_session(registry: SessionRegistry, key: SessionKey, *, max_pending: int) -> AsyncIterator[dict]:
    """Yield SSE-ready dicts for every event of *key*'s session.

    The watcher is attached with replay, so it first receives the current
    run's history.  It cannot send input.
    """
    conn = Connection(max_pending=max_pending, transport=Transport.SSE)
    registry.attach(conn, key, replay=True)
    logger.info("Watcher {} attached to {}", conn.connection_id, key)
    try:
        async for event in conn.outbound():
            frame = event.wire()
            yield {"event": frame["event"], "data": json.dumps(frame)}
        if conn.close_reason:
            yield {"event": "disconnect", "data": json.dumps(DisconnectEvent(reason=conn.close_reason).wire())}
    finally:
        registry.detach(conn)
        conn.close()
        logger.info("Watcher {} detached from {}", conn.connection_id, key)
