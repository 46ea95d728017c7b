from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.routing import APIRouter
from loguru import logger
from sse_starlette.sse import AppStatus

from graphsheet.exec_runtime.db.engine import create_engine, create_session_factory
from graphsheet.exec_runtime.execution.coordinator import ExecutionCoordinator, SheetSource
from graphsheet.exec_runtime.execution.extraction import StaticAgentExtractor
from graphsheet.exec_runtime.execution.pipeline import GraphPipeline
from graphsheet.exec_runtime.execution.sandbox import SandboxRunner
from graphsheet.exec_runtime.log import setup_logging
from graphsheet.exec_runtime.managers.sheets import DatabaseSheetSource
from graphsheet.exec_runtime.registry import SessionRegistry
from graphsheet.exec_runtime.settings import GraphsheetSettings, get_settings
from graphsheet.exec_runtime.store.base import GraphStore
from graphsheet.exec_runtime.store.local import LocalGraphStore


def _create_graph_store(settings: GraphsheetSettings) -> GraphStore:
    """Create the graph store backend based on configuration."""
    if settings.graph_store == "s3":
        from graphsheet.exec_runtime.store.s3 import S3GraphStore

        if not settings.s3_bucket:
            msg = "GRAPHSHEET_S3_BUCKET is required when GRAPHSHEET_GRAPH_STORE=s3"
            raise ValueError(msg)
        return S3GraphStore(
            bucket=settings.s3_bucket,
            endpoint_url=settings.s3_endpoint,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key.get_secret_value() if settings.s3_secret_key else None,
            prefix=settings.data_prefix,
            region=settings.s3_region,
            path_style=settings.s3_path_style,
        )
    return LocalGraphStore(settings.data_root, prefix=settings.data_prefix)


def build_registry(settings: GraphsheetSettings, sheets: SheetSource, graph_store: GraphStore) -> SessionRegistry:
    """Wire runner, extraction pipeline and coordinator into a session registry."""
    coordinator = ExecutionCoordinator(
        runner=SandboxRunner.from_settings(settings),
        pipeline=GraphPipeline(StaticAgentExtractor(), graph_store),
        sheets=sheets,
        settings=settings,
    )
    return SessionRegistry(coordinator, grace_period=settings.reattach_grace_period)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level)

    logger.info("Graphsheet runtime starting (host={}, port={})", settings.host, settings.port)
    prefix_info = f", prefix={settings.data_prefix}" if settings.data_prefix else ""
    logger.info("Data root: {} (graph_store={}{})", settings.data_root, settings.graph_store, prefix_info)

    # A sheet source set on app.state before startup takes precedence over the database.
    sheet_source: SheetSource | None = getattr(_app.state, "sheet_source", None)

    # -- Initialise state fields (always present, possibly None) ----------------
    _app.state.settings = settings
    _app.state.db_engine = None
    _app.state.db_session_factory = None
    _app.state.registry = None

    # -- Database --------------------------------------------------------------
    if settings.database_url:
        engine = create_engine(settings.database_url)
        _app.state.db_engine = engine
        _app.state.db_session_factory = create_session_factory(engine)
        logger.info("PostgreSQL: connected (pool_size=5, max_overflow=10)")
        if sheet_source is None:
            sheet_source = DatabaseSheetSource(_app.state.db_session_factory)
    else:
        logger.warning("GRAPHSHEET_DATABASE_URL not set -- sheet records disabled")

    # -- Graph store -----------------------------------------------------------
    graph_store = _create_graph_store(settings)
    _app.state.graph_store = graph_store

    # -- SSE -------------------------------------------------------------------
    # Let watcher streams complete naturally on shutdown so they can deliver
    # the terminal event of a draining run.
    AppStatus.disable_automatic_graceful_drain()

    # -- Execution -------------------------------------------------------------
    if sheet_source is not None:
        _app.state.registry = build_registry(settings, sheet_source, graph_store)
        logger.info(
            "Execution: ready (python={}, timeout={}s, max_output={} bytes)",
            settings.python_executable,
            settings.execution_timeout,
            settings.max_output_bytes,
        )
    else:
        logger.warning("No sheet source -- execution disabled")

    yield

    # -- Shutdown --------------------------------------------------------------
    registry: SessionRegistry | None = _app.state.registry
    if registry is not None:
        logger.info("Graphsheet runtime shutting down (active_runs={})", registry.active_count)

        # 1. Stop accepting new runs.
        registry.begin_shutdown()

        # 2. Wait for active runs to finish naturally.
        if registry.active_count > 0:
            timeout = settings.graceful_shutdown_timeout
            logger.info("Waiting for {} active runs to finish (timeout={}s)...", registry.active_count, timeout)
            drained = await registry.wait_until_drained(timeout=timeout)
            if not drained:
                # Last resort: kill whatever is left.
                terminated = await registry.terminate_all()
                logger.warning("Terminated {} processes after timeout", terminated)
                await registry.wait_until_drained(timeout=5.0)

    # 3. Signal SSE streams to close.  Must happen AFTER the drain so that
    #    watchers receive the terminal event before closing.
    AppStatus.should_exit = True
    logger.info("SSE: signalled streams to close")

    # Dispose DB engine (closes all pooled connections).
    if _app.state.db_engine is not None:
        await _app.state.db_engine.dispose()
        logger.info("PostgreSQL: disposed")


app = FastAPI(title="Graphsheet Execution Runtime", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- all backend endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


# -- Routers -----------------------------------------------------------------
from graphsheet.exec_runtime.routers.executions import router as executions_router  # noqa: E402
from graphsheet.exec_runtime.routers.playgrounds import router as playgrounds_router  # noqa: E402
from graphsheet.exec_runtime.routers.sheets import router as sheets_router  # noqa: E402
from graphsheet.exec_runtime.routers.terminal import router as terminal_router  # noqa: E402

api.include_router(playgrounds_router)
api.include_router(sheets_router)
api.include_router(executions_router)
api.include_router(terminal_router)

app.include_router(api)
