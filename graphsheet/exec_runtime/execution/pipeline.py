"""Graph extraction pipeline.

Runs the configured ``GraphExtractor`` off the event loop, stamps the result
with run metadata and persists it.  A failure at any stage raises
``ExtractionError`` and leaves the previously stored graph untouched, since
the store is only written after extraction fully succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from functools import partial

from anyio import to_thread

from graphsheet.exec_runtime.execution.extraction import ExtractionError, GraphExtractor, source_digest
from graphsheet.exec_runtime.models.enums import Phase
from graphsheet.exec_runtime.models.graph import AgentGraph
from graphsheet.exec_runtime.models.sheet import SessionKey, SheetFile
from graphsheet.exec_runtime.store.base import GraphStore

logger = logging.getLogger(__name__)


class GraphPipeline:
    """Extract, stamp and store the agent graph for one sheet."""

    def __init__(self, extractor: GraphExtractor, store: GraphStore) -> None:
        self._extractor = extractor
        self._store = store

    @property
    def store(self) -> GraphStore:
        return self._store

    async def run(self, key: SessionKey, run_id: str | None, files: Sequence[SheetFile]) -> AgentGraph:
        snapshot = list(files)
        try:
            graph = await to_thread.run_sync(partial(self._extractor.extract, snapshot))
        except ExtractionError:
            raise
        except Exception as exc:
            logger.exception("Extractor crashed for %s", key)
            msg = f"Extractor failed: {exc}"
            raise ExtractionError(msg) from exc

        graph.sheet_id = key.sheet_id
        graph.run_id = run_id
        graph.source_digest = source_digest(snapshot)
        graph.extracted_at = datetime.now(UTC)

        try:
            await self._store.write_graph(key.sheet_id, graph)
        except Exception as exc:
            logger.exception("Failed to persist graph for %s", key)
            msg = f"Failed to persist graph: {exc}"
            raise ExtractionError(msg, phase=Phase.PERSIST) from exc

        logger.info(
            "Graph for %s extracted: run=%s, nodes=%d, edges=%d",
            key,
            run_id,
            len(graph.nodes),
            len(graph.edges),
        )
        return graph
