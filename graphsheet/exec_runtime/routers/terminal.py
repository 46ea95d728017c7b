"""Terminal WebSocket endpoint.

The terminal panel opens one WebSocket, sends ``start`` with the sheet it is
showing and then streams keystrokes as ``input`` frames.  See
``graphsheet.exec_runtime.transport`` for the frame protocol.
"""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, status

from graphsheet.exec_runtime.models.events import ConnectErrorEvent
from graphsheet.exec_runtime.registry import SessionRegistry
from graphsheet.exec_runtime.transport import serve_websocket

router = APIRouter(tags=["terminal"])


@router.websocket("/terminal")
async def terminal(websocket: WebSocket) -> None:
    registry: SessionRegistry | None = websocket.app.state.registry
    if registry is None:
        await websocket.accept()
        await websocket.send_json(ConnectErrorEvent(reason="Execution is not available").wire())
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return
    await serve_websocket(websocket, registry, max_pending=websocket.app.state.settings.outbound_queue_size)
