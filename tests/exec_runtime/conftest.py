"""Shared fixtures for execution-runtime tests."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator

import pytest
from exec_fakes import MARKER, InMemorySheetSource
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from graphsheet.exec_runtime.app import app
from graphsheet.exec_runtime.deps import get_db
from graphsheet.exec_runtime.settings import GraphsheetSettings
from graphsheet.exec_runtime.store.local import LocalGraphStore


@pytest.fixture
def sheet_source() -> InMemorySheetSource:
    return InMemorySheetSource()


@pytest.fixture
def runtime_settings(tmp_path) -> GraphsheetSettings:
    """Settings with fast timeouts and a temporary data root."""
    return GraphsheetSettings(
        data_root=str(tmp_path / "data"),
        python_executable=sys.executable,
        execution_timeout=20.0,
        terminate_grace=0.5,
        reattach_grace_period=0.2,
        outbound_queue_size=256,
        checkpoint_marker=MARKER,
    )


@pytest.fixture
async def client(db_session: AsyncSession, tmp_path: object) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app with a test DB session.

    Overrides ``get_db`` so every request uses the savepoint-isolated
    ``db_session`` fixture from the root conftest.  The app lifespan does
    NOT run under ``ASGITransport``, so state fields are pre-set.
    """

    async def _override_get_db() -> AsyncIterator[AsyncSession]:
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    # Pre-set state fields (lifespan does not run under ASGITransport).
    app.state.settings = GraphsheetSettings(data_root=str(tmp_path))
    app.state.db_engine = None
    app.state.db_session_factory = None
    app.state.graph_store = LocalGraphStore(tmp_path)
    app.state.registry = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
