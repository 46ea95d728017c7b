"""Sheet CRUD operations and the database-backed sheet source.

Files are stored inline on the sheet row as a JSONB list, in sheet order.
The list is always replaced as a whole so SQLAlchemy detects the change.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from graphsheet.exec_runtime.db.tables import Sheet
from graphsheet.exec_runtime.managers.playgrounds import get_playground
from graphsheet.exec_runtime.models.api import FileUpsert, SheetCreate, SheetUpdate
from graphsheet.exec_runtime.models.sheet import SessionKey, SheetFile


class DuplicateSheetError(ValueError):
    """Raised when a sheet with the given ID already exists."""


class DuplicateFileError(ValueError):
    """Raised when a sheet would hold two files with the same name."""


class SheetNotFoundError(LookupError):
    """Raised when a sheet is not found in the given playground."""


class SheetFileNotFoundError(LookupError):
    """Raised when a file is not present on a sheet."""


def _dump_files(files: Sequence[SheetFile]) -> list[dict]:
    return [f.model_dump(mode="json") for f in files]


def sheet_files(sheet: Sheet) -> list[SheetFile]:
    """Decode the JSONB ``files`` column."""
    return [SheetFile.model_validate(f) for f in sheet.files or []]


async def create_sheet(db: AsyncSession, playground_id: str, body: SheetCreate) -> Sheet:
    """Create a sheet in a playground.

    Raises ``PlaygroundNotFoundError``, ``DuplicateSheetError`` or
    ``DuplicateFileError``.
    """
    await get_playground(db, playground_id)
    sheet_id = body.sheet_id or str(uuid.uuid4())

    existing = await db.get(Sheet, sheet_id)
    if existing is not None:
        raise DuplicateSheetError(sheet_id)

    names = [f.filename for f in body.files]
    if len(names) != len(set(names)):
        msg = f"Duplicate filenames in sheet '{sheet_id}'"
        raise DuplicateFileError(msg)

    now = datetime.now(UTC)
    files = [
        f.model_copy(update={"created_at": f.created_at or now, "updated_at": f.updated_at or now})
        for f in body.files
    ]
    sheet = Sheet(sheet_id=sheet_id, playground_id=playground_id, title=body.title, files=_dump_files(files))
    db.add(sheet)
    await db.commit()
    await db.refresh(sheet)
    return sheet


async def list_sheets(db: AsyncSession, playground_id: str) -> list[Sheet]:
    """List a playground's sheets, oldest first (tab order).

    Raises ``PlaygroundNotFoundError`` if the playground is missing.
    """
    await get_playground(db, playground_id)
    stmt = select(Sheet).where(Sheet.playground_id == playground_id).order_by(Sheet.created_at, Sheet.sheet_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_sheet(db: AsyncSession, playground_id: str, sheet_id: str) -> Sheet:
    """Get a sheet.  Raises ``SheetNotFoundError`` if missing or in another playground."""
    sheet = await db.get(Sheet, sheet_id)
    if sheet is None or sheet.playground_id != playground_id:
        raise SheetNotFoundError(f"{playground_id}/{sheet_id}")
    return sheet


async def update_sheet(db: AsyncSession, playground_id: str, sheet_id: str, body: SheetUpdate) -> Sheet:
    """Partially update title / canvas data.  Raises ``SheetNotFoundError``."""
    sheet = await get_sheet(db, playground_id, sheet_id)

    changes = body.model_dump(exclude_unset=True)
    if not changes:
        return sheet

    for key, value in changes.items():
        setattr(sheet, key, value)

    await db.commit()
    await db.refresh(sheet)
    return sheet


async def delete_sheet(db: AsyncSession, playground_id: str, sheet_id: str) -> None:
    """Delete a sheet.  Raises ``SheetNotFoundError`` if missing."""
    sheet = await get_sheet(db, playground_id, sheet_id)
    await db.delete(sheet)
    await db.commit()


# -- Files ---------------------------------------------------------------------


async def upsert_file(db: AsyncSession, playground_id: str, sheet_id: str, body: FileUpsert) -> Sheet:
    """Create or replace a file by name, keeping its position in the sheet."""
    sheet = await get_sheet(db, playground_id, sheet_id)
    files = sheet_files(sheet)
    now = datetime.now(UTC)

    for i, f in enumerate(files):
        if f.filename == body.filename:
            files[i] = f.model_copy(update={"code": body.code, "language": body.language, "updated_at": now})
            break
    else:
        files.append(
            SheetFile(filename=body.filename, code=body.code, language=body.language, created_at=now, updated_at=now)
        )

    sheet.files = _dump_files(files)
    await db.commit()
    await db.refresh(sheet)
    return sheet


async def delete_file(db: AsyncSession, playground_id: str, sheet_id: str, filename: str) -> Sheet:
    """Remove a file from a sheet.  Raises ``SheetFileNotFoundError`` if absent."""
    sheet = await get_sheet(db, playground_id, sheet_id)
    files = sheet_files(sheet)
    remaining = [f for f in files if f.filename != filename]
    if len(remaining) == len(files):
        raise SheetFileNotFoundError(filename)

    sheet.files = _dump_files(remaining)
    await db.commit()
    await db.refresh(sheet)
    return sheet


# -- Execution source ----------------------------------------------------------


class DatabaseSheetSource:
    """Loads a sheet's files for execution, one short-lived DB session per load."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_files(self, key: SessionKey) -> list[SheetFile]:
        async with self._session_factory() as db:
            sheet = await get_sheet(db, key.playground_id, key.sheet_id)
            return sheet_files(sheet)
