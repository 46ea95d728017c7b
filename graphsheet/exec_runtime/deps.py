"""FastAPI dependency injection for DB sessions, the session registry and the graph store.

Usage in route handlers::

    @router.post("/things")
    async def create_thing(db: DbSession, thing: ThingCreate) -> ThingResponse:
        ...

    @router.get("/{playground_id}/{sheet_id}/get")
    async def get_execution(registry: Registry, ...) -> ExecutionResponse:
        ...

Dependencies raise HTTP 503 if the backing service was not configured.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from graphsheet.exec_runtime.registry import SessionRegistry
from graphsheet.exec_runtime.store.base import GraphStore


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an async SQLAlchemy session, closing it after the request.

    The caller (route handler) is responsible for calling ``session.commit()``
    on success.  If the handler raises, the session is simply closed and the
    implicit transaction is rolled back by the connection pool.
    """
    session_factory = request.app.state.db_session_factory
    if session_factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured (GRAPHSHEET_DATABASE_URL is unset).",
        )
    session: AsyncSession = session_factory()
    try:
        yield session
    finally:
        await session.close()


def get_registry(request: Request) -> SessionRegistry:
    """Return the in-process session registry."""
    registry: SessionRegistry | None = request.app.state.registry
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Execution is not available (no sheet source configured).",
        )
    return registry


def get_graph_store(request: Request) -> GraphStore:
    """Return the configured graph store."""
    store: GraphStore | None = request.app.state.graph_store
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Graph store not configured.",
        )
    return store


# -- Annotated type aliases for concise route signatures ---------------------

DbSession = Annotated[AsyncSession, Depends(get_db)]
"""Annotated dependency: async SQLAlchemy session (auto-closed after request)."""

Registry = Annotated[SessionRegistry, Depends(get_registry)]
"""Annotated dependency: in-process session registry."""

Graphs = Annotated[GraphStore, Depends(get_graph_store)]
"""Annotated dependency: extracted-graph store."""
