"""API request / response schemas for the HTTP endpoints.

- **Create** schemas validate user input and provide defaults.
- **Update** schemas allow partial updates via ``exclude_unset``.
- **Response** schemas serialize ORM rows via ``from_attributes``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from graphsheet.exec_runtime.models.enums import SessionStatus
from graphsheet.exec_runtime.models.sheet import SheetFile

# ---------------------------------------------------------------------------
# Playground
# ---------------------------------------------------------------------------


class PlaygroundCreate(BaseModel):
    playground_id: str | None = Field(default=None, description="Optional; auto-generated UUID if omitted.")
    name: str = Field(min_length=1)
    description: str = ""


class PlaygroundUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None


class PlaygroundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    playground_id: str
    name: str
    description: str
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Sheet
# ---------------------------------------------------------------------------


class SheetCreate(BaseModel):
    sheet_id: str | None = Field(default=None, description="Optional; auto-generated UUID if omitted.")
    title: str = Field(min_length=1)
    files: list[SheetFile] = Field(default_factory=list)


class SheetUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    canvas_data: dict | None = None


class FileUpsert(BaseModel):
    """Create or replace one file on a sheet, keyed by filename."""

    filename: str = Field(min_length=1)
    code: str = ""
    language: str = "python"


class FileDelete(BaseModel):
    filename: str = Field(min_length=1)


class SheetResponse(BaseModel):
    """Sheet record with its latest extracted graph (``graph_data``)."""

    model_config = ConfigDict(from_attributes=True)

    sheet_id: str
    playground_id: str
    title: str
    files: list[SheetFile]
    canvas_data: dict | None = None
    graph_data: dict | None = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionResponse(BaseModel):
    """Snapshot of a live execution session."""

    playground_id: str
    sheet_id: str
    status: SessionStatus
    run_id: str | None = None
    pid: int | None = None
    connections: int = 0
    last_seq: int = 0
