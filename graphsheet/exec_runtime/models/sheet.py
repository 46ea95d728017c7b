"""Playground and sheet domain models."""

from __future__ import annotations

from datetime import datetime
from pathlib import PurePosixPath
from typing import NamedTuple

from pydantic import BaseModel, Field


class SessionKey(NamedTuple):
    """Identity of an execution session: one per sheet within a playground."""

    playground_id: str
    sheet_id: str

    def __str__(self) -> str:
        return f"{self.playground_id}/{self.sheet_id}"


class SheetFile(BaseModel):
    """A single source file stored on a sheet."""

    filename: str
    code: str = ""
    language: str = "python"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_python(self) -> bool:
        return self.language.lower() == "python" or PurePosixPath(self.filename).suffix == ".py"


class SheetIndex(BaseModel):
    """Sheet row (PG)."""

    sheet_id: str
    playground_id: str
    title: str
    files: list[SheetFile] = Field(default_factory=list)
    canvas_data: dict | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PlaygroundIndex(BaseModel):
    """Playground row (PG)."""

    playground_id: str
    name: str
    description: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
