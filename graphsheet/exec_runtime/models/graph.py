"""Agent graph models.

The node/edge structure extracted from a sheet's source and served to the
UI as ``graph_data``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from graphsheet.exec_runtime.models.enums import EdgeKind, NodeKind


class GraphNode(BaseModel):
    id: str
    label: str
    kind: NodeKind
    model: str | None = None
    source: str | None = Field(default=None, description="Definition site as 'filename:line'")


class GraphEdge(BaseModel):
    source: str
    target: str
    kind: EdgeKind
    label: str | None = None


class AgentGraph(BaseModel):
    """Extracted graph for one sheet, versioned by the run that produced it."""

    sheet_id: str | None = None
    run_id: str | None = None
    source_digest: str | None = None
    extracted_at: datetime | None = None
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    def structure(self) -> tuple[frozenset[tuple], frozenset[tuple]]:
        """Node and edge sets, ignoring run metadata.

        Two extractions over identical source compare equal here.
        """
        nodes = frozenset((n.id, n.label, n.kind, n.model) for n in self.nodes)
        edges = frozenset((e.source, e.target, e.kind, e.label) for e in self.edges)
        return nodes, edges

    def graph_data(self) -> dict:
        """The ``graphData`` shape stored on the sheet record."""
        return {
            "nodes": [n.model_dump(mode="json") for n in self.nodes],
            "edges": [e.model_dump(mode="json") for e in self.edges],
            "run_id": self.run_id,
            "extracted_at": self.extracted_at.isoformat() if self.extracted_at else None,
        }
