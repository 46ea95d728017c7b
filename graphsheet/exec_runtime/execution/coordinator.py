"""Execution coordinator: orchestrates setup, run and extraction.

The coordinator manages the lifecycle of a single run:

1. **Setup**: load the sheet's files, materialise the workspace, pick the
   entrypoint and spawn the interpreter
2. **Execute**: pump runner events into the session (output fan-out,
   checkpoint signals, the terminal event)
3. **Extract**: on each checkpoint, run the graph pipeline over the files
   snapshot taken at run start and notify attached connections

Process execution and transport delivery are decoupled.  The run continues
regardless of consumer speed or disconnection.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from anyio import to_thread

from graphsheet.exec_runtime.execution.extraction import ExtractionError
from graphsheet.exec_runtime.execution.sandbox import (
    CheckpointSignal,
    OutputChunk,
    ProcessExited,
    ProcessHandle,
    SandboxRunner,
    SpawnError,
)
from graphsheet.exec_runtime.execution.workspace import resolve_sheet_paths, select_entrypoint
from graphsheet.exec_runtime.models.enums import ErrorCode, Phase
from graphsheet.exec_runtime.models.events import ErrorEvent, GraphReadyEvent

if TYPE_CHECKING:
    from graphsheet.exec_runtime.execution.pipeline import GraphPipeline
    from graphsheet.exec_runtime.models.sheet import SessionKey, SheetFile
    from graphsheet.exec_runtime.session import ExecutionSession
    from graphsheet.exec_runtime.settings import GraphsheetSettings

logger = logging.getLogger(__name__)


class SheetSource(Protocol):
    """Where the coordinator loads a sheet's files from."""

    async def load_files(self, key: SessionKey) -> Sequence[SheetFile]:
        """Return the sheet's files.  Raises ``LookupError`` if it does not exist."""
        ...


class ExecutionCoordinator:
    """Implements the session ``Launcher`` protocol."""

    def __init__(
        self,
        runner: SandboxRunner,
        pipeline: GraphPipeline,
        sheets: SheetSource,
        settings: GraphsheetSettings,
    ) -> None:
        self._runner = runner
        self._pipeline = pipeline
        self._sheets = sheets
        self._settings = settings

    # -- Setup -----------------------------------------------------------------

    async def launch(self, session: ExecutionSession) -> None:
        """Spawn the process for *session*'s current run.  Raises ``SpawnError``."""
        key = session.key
        try:
            files = list(await self._sheets.load_files(key))
        except LookupError as exc:
            msg = f"Sheet not found: {key}"
            raise SpawnError(msg, phase=Phase.SETUP) from exc

        entrypoint = select_entrypoint(files)
        paths = resolve_sheet_paths(key, self._settings)
        try:
            await to_thread.run_sync(paths.materialize, files)
        except OSError as exc:
            msg = f"Failed to prepare workspace for {key}: {exc}"
            raise SpawnError(msg, phase=Phase.SETUP) from exc

        handle = await self._runner.spawn(key, paths.root, entrypoint)
        session.files = files
        session.bind_process(handle)
        session.spawn_task(self._pump(session, handle), "execution-pump")

    # -- Execute ---------------------------------------------------------------

    async def _pump(self, session: ExecutionSession, handle: ProcessHandle) -> None:
        run_id = session.run_id
        files = list(session.files)
        async for event in handle.events():
            if isinstance(event, OutputChunk):
                session.publish_output(event.text)
            elif isinstance(event, CheckpointSignal):
                logger.debug("Checkpoint reached in run %s for %s", run_id, session.key)
                session.spawn_task(self._extract(session, run_id, files), "graph-extraction")
            elif isinstance(event, ProcessExited):
                session.finish_run(event)

    # -- Extract ---------------------------------------------------------------

    async def _extract(self, session: ExecutionSession, run_id: str | None, files: list[SheetFile]) -> None:
        key = session.key
        async with session.extraction_lock:
            try:
                graph = await self._pipeline.run(key, run_id, files)
            except ExtractionError as exc:
                logger.warning("Graph extraction failed for %s (%s): %s", key, exc.phase, exc)
                if session.run_id != run_id:
                    return
                session.publish(
                    ErrorEvent(
                        code=ErrorCode.EXTRACTION_FAILED,
                        message=str(exc),
                        phase=exc.phase,
                        playground_id=key.playground_id,
                        sheet_id=key.sheet_id,
                        run_id=run_id,
                    )
                )
                return

        if session.run_id != run_id:
            # A newer run owns the session history now.
            logger.info("Run %s for %s was superseded, not announcing its graph", run_id, key)
            return
        session.publish(GraphReadyEvent(run_id=run_id or "", node_count=len(graph.nodes), edge_count=len(graph.edges)))
