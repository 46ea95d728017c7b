"""Local filesystem graph store.

Stores graphs as JSON files under the data root with optional namespace
prefix::

    {data_root}/{prefix}/graphs/{sheet_id}/graph.json

Uses ``anyio.to_thread.run_sync`` for non-blocking file I/O.  Writes are
atomic (temp file + rename) so a concurrent reader sees either the previous
graph or the new one, never a partial file.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from functools import partial
from pathlib import Path

from anyio import to_thread

from graphsheet.exec_runtime.models.graph import AgentGraph


class LocalGraphStore:
    """Local filesystem implementation of the GraphStore protocol."""

    def __init__(self, data_root: str | Path, prefix: str | None = None) -> None:
        base = Path(data_root)
        if prefix:
            base = base / prefix
        self._base = base / "graphs"

    def _graph_path(self, sheet_id: str) -> Path:
        return self._base / sheet_id / "graph.json"

    # -- Write -----------------------------------------------------------------

    async def write_graph(self, sheet_id: str, graph: AgentGraph) -> None:
        data = graph.model_dump_json(indent=2)
        await to_thread.run_sync(partial(_atomic_write, self._graph_path(sheet_id), data))

    # -- Read ------------------------------------------------------------------

    async def read_graph(self, sheet_id: str) -> AgentGraph:
        raw = await to_thread.run_sync(partial(_read_file, self._graph_path(sheet_id)))
        return AgentGraph.model_validate_json(raw)

    # -- Utilities -------------------------------------------------------------

    async def exists(self, sheet_id: str) -> bool:
        return await to_thread.run_sync(self._graph_path(sheet_id).exists)

    async def delete(self, sheet_id: str) -> None:
        await to_thread.run_sync(partial(_rmtree, self._base / sheet_id))


# -- Sync helpers (run in thread pool) -----------------------------------------


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file in the same directory + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_file(path: Path) -> str:
    """Read file contents.  Raises ``FileNotFoundError`` if missing."""
    return path.read_text(encoding="utf-8")


def _rmtree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
