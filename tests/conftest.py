"""PostgreSQL fixtures for tests marked ``integration`` (Docker required).

One migrated container serves the whole run; ``db_session`` rolls every test
back to a clean schema.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from testcontainers.postgres import PostgresContainer

from graphsheet.exec_runtime.settings import _get_settings_cached

ALEMBIC_INI = Path(__file__).parent.parent / "graphsheet" / "exec_runtime" / "alembic.ini"


@pytest.fixture(scope="session")
def pg_container() -> Iterator[PostgresContainer]:
    container = PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="graphsheet_test",
        driver="psycopg",
    )
    with container as pg:
        yield pg


@pytest.fixture(scope="session")
def pg_url(pg_container: PostgresContainer) -> str:
    """Container URL with the schema at ``head``."""
    from alembic import command
    from alembic.config import Config

    url = pg_container.get_connection_url()
    os.environ["GRAPHSHEET_DATABASE_URL"] = url
    _get_settings_cached.cache_clear()
    command.upgrade(Config(str(ALEMBIC_INI)), "head")
    return url


@pytest.fixture(scope="session")
def async_engine(pg_url: str) -> Iterator[AsyncEngine]:
    engine = create_async_engine(pg_url)
    yield engine
    engine.sync_engine.dispose()


@pytest.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    # Commits in the code under test land in a savepoint; the outer transaction is rolled back.
    async with async_engine.connect() as conn:
        await conn.begin()
        session = AsyncSession(bind=conn, join_transaction_mode="create_savepoint")
        yield session
        await session.close()
        await conn.rollback()
