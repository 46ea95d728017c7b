"""Execution control endpoints.

Live sessions are in-memory only; these endpoints inspect and control them
and let read-only listeners follow a session over SSE.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status
from sse_starlette.sse import EventSourceResponse

from graphsheet.exec_runtime.deps import Registry
from graphsheet.exec_runtime.models.api import ExecutionResponse
from graphsheet.exec_runtime.models.sheet import SessionKey
from graphsheet.exec_runtime.session import ExecutionSession
from graphsheet.exec_runtime.transport import watch_session

router = APIRouter(prefix="/executions", tags=["executions"])


def _to_response(session: ExecutionSession) -> ExecutionResponse:
    return ExecutionResponse(
        playground_id=session.key.playground_id,
        sheet_id=session.key.sheet_id,
        status=session.status,
        run_id=session.run_id,
        pid=session.handle.pid if session.handle is not None else None,
        connections=session.connection_count,
        last_seq=session.last_seq,
    )


def _require_session(registry: Registry, playground_id: str, sheet_id: str) -> ExecutionSession:
    session = registry.get(SessionKey(playground_id, sheet_id))
    if session is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"No execution session for '{playground_id}/{sheet_id}'.")
    return session


@router.get("/list", response_model=list[ExecutionResponse])
async def list_executions(registry: Registry) -> list[ExecutionResponse]:
    """List sessions currently held in memory."""
    return [_to_response(s) for s in registry.all_sessions()]


@router.get("/{playground_id}/{sheet_id}/get", response_model=ExecutionResponse)
async def get_execution(playground_id: str, sheet_id: str, registry: Registry) -> ExecutionResponse:
    return _to_response(_require_session(registry, playground_id, sheet_id))


@router.post("/{playground_id}/{sheet_id}/terminate", response_model=ExecutionResponse)
async def terminate_execution(playground_id: str, sheet_id: str, registry: Registry) -> ExecutionResponse:
    """Terminate the running process (SIGTERM, then SIGKILL after the grace period)."""
    session = _require_session(registry, playground_id, sheet_id)
    if not await session.terminate():
        raise HTTPException(status.HTTP_409_CONFLICT, detail=f"Nothing is running for '{playground_id}/{sheet_id}'.")
    return _to_response(session)


@router.get("/{playground_id}/{sheet_id}/stream")
async def stream_execution(
    playground_id: str, sheet_id: str, request: Request, registry: Registry
) -> EventSourceResponse:
    """Follow a session's events over SSE (read-only)."""
    session = _require_session(registry, playground_id, sheet_id)
    max_pending = request.app.state.settings.outbound_queue_size
    return EventSourceResponse(watch_session(registry, session.key, max_pending=max_pending), ping=15)
