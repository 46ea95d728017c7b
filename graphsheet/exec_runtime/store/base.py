"""Graph store interface for extracted agent graphs.

The graph store holds the latest ``AgentGraph`` per sheet.  Graphs are
replaced wholesale (last writer wins) at checkpoint milestones and read when
the UI fetches a sheet.  The interface is async to support both local
filesystem and remote (S3) backends.

PostgreSQL stores the sheet record (files, title); the graph store holds the
extraction output, joined onto the sheet at read time.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from graphsheet.exec_runtime.models.graph import AgentGraph


@runtime_checkable
class GraphStore(Protocol):
    """Async protocol for reading and writing sheet graphs.

    Storage layout (keyed by sheet_id):
        {root}/graphs/{sheet_id}/graph.json
    """

    async def write_graph(self, sheet_id: str, graph: AgentGraph) -> None:
        """Replace the stored graph for a sheet."""
        ...

    async def read_graph(self, sheet_id: str) -> AgentGraph:
        """Read the latest graph.  Raises ``FileNotFoundError`` if not found."""
        ...

    async def exists(self, sheet_id: str) -> bool:
        """Check whether a graph exists for the given sheet."""
        ...

    async def delete(self, sheet_id: str) -> None:
        """Delete the stored graph for a sheet.  No-op if not found."""
        ...
