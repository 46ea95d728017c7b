"""Playground CRUD endpoints (RPC-style).

All write operations use POST; reads use GET.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from graphsheet.exec_runtime.db.tables import Playground
from graphsheet.exec_runtime.deps import DbSession, Graphs
from graphsheet.exec_runtime.managers import playgrounds as playground_manager
from graphsheet.exec_runtime.managers.playgrounds import DuplicatePlaygroundError, PlaygroundNotFoundError
from graphsheet.exec_runtime.models.api import PlaygroundCreate, PlaygroundResponse, PlaygroundUpdate

router = APIRouter(prefix="/playgrounds", tags=["playgrounds"])


def _not_found(playground_id: str) -> HTTPException:
    return HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Playground '{playground_id}' not found.")


@router.post("/create", response_model=PlaygroundResponse, status_code=status.HTTP_201_CREATED)
async def create_playground(body: PlaygroundCreate, db: DbSession) -> Playground:
    """Create a new playground."""
    try:
        return await playground_manager.create_playground(db, body)
    except DuplicatePlaygroundError:
        raise HTTPException(
            status.HTTP_409_CONFLICT, detail=f"Playground '{body.playground_id}' already exists."
        ) from None


@router.get("/list", response_model=list[PlaygroundResponse])
async def list_playgrounds(
    db: DbSession,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[Playground]:
    """List playgrounds, ordered by creation time (newest first)."""
    return await playground_manager.list_playgrounds(db, limit=limit, offset=offset)


@router.get("/{playground_id}/get", response_model=PlaygroundResponse)
async def get_playground(playground_id: str, db: DbSession) -> Playground:
    """Get a single playground by ID."""
    try:
        return await playground_manager.get_playground(db, playground_id)
    except PlaygroundNotFoundError:
        raise _not_found(playground_id) from None


@router.post("/{playground_id}/update", response_model=PlaygroundResponse)
async def update_playground(playground_id: str, body: PlaygroundUpdate, db: DbSession) -> Playground:
    """Partially update a playground."""
    try:
        return await playground_manager.update_playground(db, playground_id, body)
    except PlaygroundNotFoundError:
        raise _not_found(playground_id) from None


@router.post("/{playground_id}/delete", status_code=status.HTTP_204_NO_CONTENT)
async def delete_playground(playground_id: str, db: DbSession, graphs: Graphs) -> None:
    """Delete a playground, its sheets and their stored graphs."""
    try:
        sheet_ids = await playground_manager.delete_playground(db, playground_id)
    except PlaygroundNotFoundError:
        raise _not_found(playground_id) from None
    for sheet_id in sheet_ids:
        await graphs.delete(sheet_id)
