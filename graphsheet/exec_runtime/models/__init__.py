"""Data models for the execution runtime."""

from graphsheet.exec_runtime.models.api import (
    ExecutionResponse,
    FileDelete,
    FileUpsert,
    PlaygroundCreate,
    PlaygroundResponse,
    PlaygroundUpdate,
    SheetCreate,
    SheetResponse,
    SheetUpdate,
)
from graphsheet.exec_runtime.models.enums import (
    EdgeKind,
    ErrorCode,
    ExitReason,
    NodeKind,
    Phase,
    SessionStatus,
    StartOutcome,
    Transport,
)
from graphsheet.exec_runtime.models.events import (
    ConnectErrorEvent,
    DisconnectEvent,
    ErrorDetail,
    ErrorEvent,
    ExecutionEvent,
    ExitedEvent,
    GraphReadyEvent,
    InputMessage,
    OutputEvent,
    StartedEvent,
    StartMessage,
    TerminateMessage,
    client_message_adapter,
)
from graphsheet.exec_runtime.models.graph import AgentGraph, GraphEdge, GraphNode
from graphsheet.exec_runtime.models.sheet import PlaygroundIndex, SessionKey, SheetFile, SheetIndex

__all__ = [
    # Graph
    "AgentGraph",
    # Events
    "ConnectErrorEvent",
    "DisconnectEvent",
    # Enums
    "EdgeKind",
    "ErrorCode",
    "ErrorDetail",
    "ErrorEvent",
    "ExecutionEvent",
    # API schemas
    "ExecutionResponse",
    "ExitReason",
    "ExitedEvent",
    "FileDelete",
    "FileUpsert",
    "GraphEdge",
    "GraphNode",
    "GraphReadyEvent",
    "InputMessage",
    "NodeKind",
    "OutputEvent",
    "Phase",
    "PlaygroundCreate",
    # Sheet
    "PlaygroundIndex",
    "PlaygroundResponse",
    "PlaygroundUpdate",
    "SessionKey",
    "SessionStatus",
    "SheetCreate",
    "SheetFile",
    "SheetIndex",
    "SheetResponse",
    "SheetUpdate",
    "StartMessage",
    "StartOutcome",
    "StartedEvent",
    "TerminateMessage",
    "Transport",
    "client_message_adapter",
]
