"""Engine and session factory for the playground/sheet database."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# Sheet CRUD and run-start file loads are the only database traffic.
ENGINE_DEFAULTS: dict[str, object] = {
    "echo": False,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_pre_ping": True,
    "pool_recycle": 3600,
}


def create_engine(database_url: str, **kwargs: object) -> AsyncEngine:
    """Create an engine for a ``postgresql+psycopg://`` URL; *kwargs* override ``ENGINE_DEFAULTS``."""
    return create_async_engine(database_url, **{**ENGINE_DEFAULTS, **kwargs})


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Records stay readable after commit; routers serialize them afterwards.
    return async_sessionmaker(engine, expire_on_commit=False)
