"""Protocol event models.

Server events form a tagged union (``ExecutionEvent``) discriminated by the
``event`` field.  On the wire every frame is ``{"event": name, "data": ...}``;
``message`` frames carry the raw output text as ``data`` so the terminal can
write it unchanged.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

from graphsheet.exec_runtime.models.enums import ErrorCode, ExitReason, Phase

# -- Server -> client --------------------------------------------------------


class _ServerEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: str

    def wire(self) -> dict[str, Any]:
        """Serialize to the JSON frame sent to clients."""
        return {"event": self.event, "data": self.model_dump(mode="json", exclude={"event"})}


class OutputEvent(_ServerEvent):
    """A raw chunk of process output, ordered by ``seq`` within a session."""

    event: Literal["message"] = "message"
    seq: int
    text: str

    def wire(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.text, "seq": self.seq}


class StartedEvent(_ServerEvent):
    event: Literal["started"] = "started"
    run_id: str
    playground_id: str
    sheet_id: str


class ErrorDetail(BaseModel):
    code: ErrorCode
    message: str


class ExitedEvent(_ServerEvent):
    """Terminal event of a run.  ``error`` is set when the run did not end normally."""

    event: Literal["exited"] = "exited"
    run_id: str
    exit_code: int | None = None
    reason: ExitReason = ExitReason.EXITED
    error: ErrorDetail | None = None


class GraphReadyEvent(_ServerEvent):
    event: Literal["graph_ready"] = "graph_ready"
    run_id: str
    node_count: int = 0
    edge_count: int = 0


class ErrorEvent(_ServerEvent):
    """A reportable, non-terminal failure scoped to a session."""

    event: Literal["error"] = "error"
    code: ErrorCode
    message: str
    phase: Phase
    playground_id: str | None = None
    sheet_id: str | None = None
    run_id: str | None = None


class ConnectErrorEvent(_ServerEvent):
    """Rejected request on a connection (bad frame, execution unavailable)."""

    event: Literal["connect_error"] = "connect_error"
    reason: str


class DisconnectEvent(_ServerEvent):
    event: Literal["disconnect"] = "disconnect"
    reason: str


ExecutionEvent = Annotated[
    OutputEvent | StartedEvent | ExitedEvent | GraphReadyEvent | ErrorEvent | ConnectErrorEvent | DisconnectEvent,
    Field(discriminator="event"),
]


# -- Client -> server --------------------------------------------------------


class StartPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    playground_id: str = Field(min_length=1, validation_alias=AliasChoices("playgroundId", "playground_id"))
    sheet_id: str = Field(min_length=1, validation_alias=AliasChoices("sheetId", "sheet_id"))


class StartMessage(BaseModel):
    event: Literal["start"]
    data: StartPayload


class InputPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(validation_alias=AliasChoices("input", "text"))


class InputMessage(BaseModel):
    event: Literal["input"]
    data: InputPayload


class TerminateMessage(BaseModel):
    event: Literal["terminate"]
    data: dict = Field(default_factory=dict)


ClientMessage = Annotated[StartMessage | InputMessage | TerminateMessage, Field(discriminator="event")]

client_message_adapter: TypeAdapter[StartMessage | InputMessage | TerminateMessage] = TypeAdapter(ClientMessage)
"""Validates raw JSON frames received from clients."""
