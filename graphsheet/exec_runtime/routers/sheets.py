"""Sheet CRUD endpoints (RPC-style), nested under a playground.

Sheet responses carry ``graph_data``: the latest extracted graph, read from
the graph store at request time (``null`` until a run has reached a
checkpoint).
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from graphsheet.exec_runtime.db.tables import Sheet
from graphsheet.exec_runtime.deps import DbSession, Graphs
from graphsheet.exec_runtime.managers import sheets as sheet_manager
from graphsheet.exec_runtime.managers.playgrounds import PlaygroundNotFoundError
from graphsheet.exec_runtime.managers.sheets import (
    DuplicateFileError,
    DuplicateSheetError,
    SheetFileNotFoundError,
    SheetNotFoundError,
    sheet_files,
)
from graphsheet.exec_runtime.models.api import FileDelete, FileUpsert, SheetCreate, SheetResponse, SheetUpdate
from graphsheet.exec_runtime.models.graph import AgentGraph
from graphsheet.exec_runtime.store.base import GraphStore

router = APIRouter(prefix="/playgrounds/{playground_id}/sheets", tags=["sheets"])


def _sheet_not_found(playground_id: str, sheet_id: str) -> HTTPException:
    return HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Sheet '{sheet_id}' not found in '{playground_id}'.")


async def _to_response(sheet: Sheet, graphs: GraphStore) -> SheetResponse:
    try:
        graph = await graphs.read_graph(sheet.sheet_id)
    except FileNotFoundError:
        graph_data = None
    else:
        graph_data = graph.graph_data()
    return SheetResponse(
        sheet_id=sheet.sheet_id,
        playground_id=sheet.playground_id,
        title=sheet.title,
        files=sheet_files(sheet),
        canvas_data=sheet.canvas_data,
        graph_data=graph_data,
        created_at=sheet.created_at,
        updated_at=sheet.updated_at,
    )


@router.post("/create", response_model=SheetResponse, status_code=status.HTTP_201_CREATED)
async def create_sheet(playground_id: str, body: SheetCreate, db: DbSession, graphs: Graphs) -> SheetResponse:
    """Create a sheet in a playground."""
    try:
        sheet = await sheet_manager.create_sheet(db, playground_id, body)
    except PlaygroundNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Playground '{playground_id}' not found.") from None
    except DuplicateSheetError:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=f"Sheet '{body.sheet_id}' already exists.") from None
    except DuplicateFileError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None
    return await _to_response(sheet, graphs)


@router.get("/list", response_model=list[SheetResponse])
async def list_sheets(playground_id: str, db: DbSession, graphs: Graphs) -> list[SheetResponse]:
    """List a playground's sheets in tab order."""
    try:
        sheets = await sheet_manager.list_sheets(db, playground_id)
    except PlaygroundNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Playground '{playground_id}' not found.") from None
    return [await _to_response(s, graphs) for s in sheets]


@router.get("/{sheet_id}/get", response_model=SheetResponse)
async def get_sheet(playground_id: str, sheet_id: str, db: DbSession, graphs: Graphs) -> SheetResponse:
    """Get a sheet with its files and latest graph."""
    try:
        sheet = await sheet_manager.get_sheet(db, playground_id, sheet_id)
    except SheetNotFoundError:
        raise _sheet_not_found(playground_id, sheet_id) from None
    return await _to_response(sheet, graphs)


@router.get("/{sheet_id}/graph", response_model=AgentGraph)
async def get_sheet_graph(playground_id: str, sheet_id: str, db: DbSession, graphs: Graphs) -> AgentGraph:
    """Get the full extracted graph for a sheet (404 until one exists)."""
    try:
        await sheet_manager.get_sheet(db, playground_id, sheet_id)
    except SheetNotFoundError:
        raise _sheet_not_found(playground_id, sheet_id) from None
    try:
        return await graphs.read_graph(sheet_id)
    except FileNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"No graph extracted for sheet '{sheet_id}'.") from None


@router.post("/{sheet_id}/update", response_model=SheetResponse)
async def update_sheet(
    playground_id: str, sheet_id: str, body: SheetUpdate, db: DbSession, graphs: Graphs
) -> SheetResponse:
    """Partially update a sheet's title or canvas data."""
    try:
        sheet = await sheet_manager.update_sheet(db, playground_id, sheet_id, body)
    except SheetNotFoundError:
        raise _sheet_not_found(playground_id, sheet_id) from None
    return await _to_response(sheet, graphs)


@router.post("/{sheet_id}/delete", status_code=status.HTTP_204_NO_CONTENT)
async def delete_sheet(playground_id: str, sheet_id: str, db: DbSession, graphs: Graphs) -> None:
    """Delete a sheet and its stored graph."""
    try:
        await sheet_manager.delete_sheet(db, playground_id, sheet_id)
    except SheetNotFoundError:
        raise _sheet_not_found(playground_id, sheet_id) from None
    await graphs.delete(sheet_id)


# -- Files ---------------------------------------------------------------------


@router.post("/{sheet_id}/files/upsert", response_model=SheetResponse)
async def upsert_file(
    playground_id: str, sheet_id: str, body: FileUpsert, db: DbSession, graphs: Graphs
) -> SheetResponse:
    """Create or replace one file on the sheet."""
    try:
        sheet = await sheet_manager.upsert_file(db, playground_id, sheet_id, body)
    except SheetNotFoundError:
        raise _sheet_not_found(playground_id, sheet_id) from None
    return await _to_response(sheet, graphs)


@router.post("/{sheet_id}/files/delete", response_model=SheetResponse)
async def delete_file(
    playground_id: str, sheet_id: str, body: FileDelete, db: DbSession, graphs: Graphs
) -> SheetResponse:
    """Remove one file from the sheet."""
    try:
        sheet = await sheet_manager.delete_file(db, playground_id, sheet_id, body.filename)
    except SheetNotFoundError:
        raise _sheet_not_found(playground_id, sheet_id) from None
    except SheetFileNotFoundError:
        raise HTTPException(
            status.HTTP_404_NOT_FOUND, detail=f"File '{body.filename}' not found on sheet '{sheet_id}'."
        ) from None
    return await _to_response(sheet, graphs)
