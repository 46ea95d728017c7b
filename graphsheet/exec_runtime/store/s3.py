"""S3 graph store.

Stores graphs as JSON objects in S3 with optional namespace prefix::

    s3://{bucket}/{prefix}/graphs/{sheet_id}/graph.json

Uses ``anyio.to_thread.run_sync`` to run boto3 calls in the thread pool,
matching the same async pattern as LocalGraphStore.
"""

from __future__ import annotations

from functools import partial
from typing import Any

import boto3
from anyio import to_thread
from botocore.config import Config

from graphsheet.exec_runtime.models.graph import AgentGraph


def _create_s3_client(
    endpoint_url: str | None,
    access_key: str | None,
    secret_key: str | None,
    region: str | None = None,
    path_style: bool = False,
) -> Any:
    """Create a boto3 S3 client.

    Args:
        endpoint_url: S3 endpoint URL (``None`` for AWS).
        access_key: AWS access key ID (``None`` to use the default chain).
        secret_key: AWS secret access key.
        region: AWS region name.
        path_style: Use path-style addressing instead of virtual-hosted.
    """
    config = Config(
        request_checksum_calculation="when_required",
        response_checksum_validation="when_required",
        s3={"addressing_style": "path" if path_style else "auto"},
    )

    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name=region,
        config=config,
    )


class S3GraphStore:
    """S3 implementation of the GraphStore protocol."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        prefix: str | None = None,
        region: str | None = None,
        path_style: bool = False,
        client: Any = None,
    ) -> None:
        self._bucket = bucket
        self._client = client or _create_s3_client(
            endpoint_url, access_key, secret_key, region=region, path_style=path_style
        )
        self._key_prefix = f"{prefix}/graphs/" if prefix else "graphs/"

    def _object_key(self, sheet_id: str) -> str:
        return f"{self._key_prefix}{sheet_id}/graph.json"

    # -- Write -----------------------------------------------------------------

    async def write_graph(self, sheet_id: str, graph: AgentGraph) -> None:
        await to_thread.run_sync(
            partial(
                self._client.put_object,
                Bucket=self._bucket,
                Key=self._object_key(sheet_id),
                Body=graph.model_dump_json(indent=2).encode("utf-8"),
                ContentType="application/json",
            )
        )

    # -- Read ------------------------------------------------------------------

    async def read_graph(self, sheet_id: str) -> AgentGraph:
        body = await to_thread.run_sync(partial(self._get_object_body, self._object_key(sheet_id)))
        return AgentGraph.model_validate_json(body)

    def _get_object_body(self, key: str) -> str:
        """Get object and read body in the same thread."""
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=key)
        except self._client.exceptions.NoSuchKey:
            msg = f"Graph not found: {key}"
            raise FileNotFoundError(msg) from None
        return resp["Body"].read().decode("utf-8")

    # -- Utilities -------------------------------------------------------------

    async def exists(self, sheet_id: str) -> bool:
        try:
            await to_thread.run_sync(
                partial(self._client.head_object, Bucket=self._bucket, Key=self._object_key(sheet_id))
            )
        except self._client.exceptions.ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
                return False
            raise
        else:
            return True

    async def delete(self, sheet_id: str) -> None:
        # S3 delete is idempotent.
        await to_thread.run_sync(
            partial(self._client.delete_object, Bucket=self._bucket, Key=self._object_key(sheet_id))
        )
