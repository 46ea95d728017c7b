"""Integration tests for S3GraphStore against a real S3 endpoint.

These tests are marked with @pytest.mark.s3 and require S3 configuration
via GRAPHSHEET_S3_* environment variables. They use a unique test prefix to
avoid collisions and clean up after themselves.

Required env vars:
    GRAPHSHEET_S3_ENDPOINT
    GRAPHSHEET_S3_BUCKET
    GRAPHSHEET_S3_ACCESS_KEY
    GRAPHSHEET_S3_SECRET_KEY
"""

from __future__ import annotations

import os
import uuid

import pytest

from graphsheet.exec_runtime.models.enums import NodeKind
from graphsheet.exec_runtime.models.graph import AgentGraph, GraphNode
from graphsheet.exec_runtime.store.s3 import S3GraphStore

# -- Read S3 configuration from environment -----------------------------------
_S3_ENDPOINT = os.environ.get("GRAPHSHEET_S3_ENDPOINT")
_S3_BUCKET = os.environ.get("GRAPHSHEET_S3_BUCKET")
_S3_ACCESS_KEY = os.environ.get("GRAPHSHEET_S3_ACCESS_KEY")
_S3_SECRET_KEY = os.environ.get("GRAPHSHEET_S3_SECRET_KEY")

_s3_configured = all([_S3_ENDPOINT, _S3_BUCKET, _S3_ACCESS_KEY, _S3_SECRET_KEY])
_skip_reason = "S3 tests require GRAPHSHEET_S3_ENDPOINT, _BUCKET, _ACCESS_KEY and _SECRET_KEY"

pytestmark = [pytest.mark.s3, pytest.mark.skipif(not _s3_configured, reason=_skip_reason)]


@pytest.fixture
def s3_store() -> S3GraphStore:
    """S3 store with a unique test prefix to isolate test data."""
    assert _S3_ENDPOINT and _S3_BUCKET and _S3_ACCESS_KEY and _S3_SECRET_KEY
    return S3GraphStore(
        bucket=_S3_BUCKET,
        endpoint_url=_S3_ENDPOINT,
        access_key=_S3_ACCESS_KEY,
        secret_key=_S3_SECRET_KEY,
        prefix=f"test-{uuid.uuid4().hex[:8]}",
        path_style=True,
    )


async def test_write_read_delete(s3_store: S3GraphStore) -> None:
    graph = AgentGraph(run_id="run-1", nodes=[GraphNode(id="a", label="A", kind=NodeKind.AGENT)])
    try:
        await s3_store.write_graph("sheet-1", graph)
        assert await s3_store.exists("sheet-1") is True

        result = await s3_store.read_graph("sheet-1")
        assert result.structure() == graph.structure()
    finally:
        await s3_store.delete("sheet-1")

    assert await s3_store.exists("sheet-1") is False


async def test_read_graph_not_found(s3_store: S3GraphStore) -> None:
    with pytest.raises(FileNotFoundError):
        await s3_store.read_graph("nonexistent")
