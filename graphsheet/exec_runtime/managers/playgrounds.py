"""Playground CRUD operations."""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from graphsheet.exec_runtime.db.tables import Playground, Sheet
from graphsheet.exec_runtime.models.api import PlaygroundCreate, PlaygroundUpdate


class DuplicatePlaygroundError(ValueError):
    """Raised when a playground with the given ID already exists."""


class PlaygroundNotFoundError(LookupError):
    """Raised when a playground is not found."""


async def create_playground(db: AsyncSession, body: PlaygroundCreate) -> Playground:
    """Create a new playground.  Raises ``DuplicatePlaygroundError`` if ID exists."""
    playground_id = body.playground_id or str(uuid.uuid4())

    existing = await db.get(Playground, playground_id)
    if existing is not None:
        raise DuplicatePlaygroundError(playground_id)

    playground = Playground(playground_id=playground_id, name=body.name, description=body.description)
    db.add(playground)
    await db.commit()
    await db.refresh(playground)
    return playground


async def list_playgrounds(db: AsyncSession, *, limit: int = 50, offset: int = 0) -> list[Playground]:
    """List playgrounds, newest first."""
    stmt = select(Playground).order_by(Playground.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_playground(db: AsyncSession, playground_id: str) -> Playground:
    """Get a playground by ID.  Raises ``PlaygroundNotFoundError`` if missing."""
    playground = await db.get(Playground, playground_id)
    if playground is None:
        raise PlaygroundNotFoundError(playground_id)
    return playground


async def update_playground(db: AsyncSession, playground_id: str, body: PlaygroundUpdate) -> Playground:
    """Partially update a playground.  Raises ``PlaygroundNotFoundError`` if missing."""
    playground = await get_playground(db, playground_id)

    changes = body.model_dump(exclude_unset=True)
    if not changes:
        return playground

    for key, value in changes.items():
        setattr(playground, key, value)

    await db.commit()
    await db.refresh(playground)
    return playground


async def delete_playground(db: AsyncSession, playground_id: str) -> list[str]:
    """Delete a playground and its sheets.  Returns the deleted sheet IDs.

    Raises ``PlaygroundNotFoundError`` if missing.
    """
    playground = await get_playground(db, playground_id)
    result = await db.execute(select(Sheet.sheet_id).where(Sheet.playground_id == playground_id))
    sheet_ids = list(result.scalars().all())
    await db.delete(playground)
    await db.commit()
    return sheet_ids
