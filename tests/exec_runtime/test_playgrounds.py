"""Integration tests for playground CRUD endpoints."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

PLAYGROUND_PAYLOAD = {"name": "Research crew", "description": "Agents that write reports"}


@pytest.mark.integration
async def test_create_playground(client: AsyncClient) -> None:
    resp = await client.post("/api/playgrounds/create", json=PLAYGROUND_PAYLOAD)
    assert resp.status_code == 201
    data = resp.json()
    assert data["name"] == "Research crew"
    assert data["playground_id"]  # auto-generated UUID
    assert data["description"] == "Agents that write reports"
    assert "created_at" in data


@pytest.mark.integration
async def test_create_playground_explicit_id(client: AsyncClient) -> None:
    resp = await client.post("/api/playgrounds/create", json={**PLAYGROUND_PAYLOAD, "playground_id": "pg-1"})
    assert resp.status_code == 201
    assert resp.json()["playground_id"] == "pg-1"


@pytest.mark.integration
async def test_create_playground_duplicate(client: AsyncClient) -> None:
    payload = {**PLAYGROUND_PAYLOAD, "playground_id": "dup"}
    resp1 = await client.post("/api/playgrounds/create", json=payload)
    assert resp1.status_code == 201
    resp2 = await client.post("/api/playgrounds/create", json=payload)
    assert resp2.status_code == 409


@pytest.mark.integration
async def test_create_playground_requires_name(client: AsyncClient) -> None:
    resp = await client.post("/api/playgrounds/create", json={"name": ""})
    assert resp.status_code == 422


@pytest.mark.integration
async def test_list_playgrounds(client: AsyncClient) -> None:
    await client.post("/api/playgrounds/create", json={**PLAYGROUND_PAYLOAD, "name": "P1"})
    await client.post("/api/playgrounds/create", json={**PLAYGROUND_PAYLOAD, "name": "P2"})

    resp = await client.get("/api/playgrounds/list")
    assert resp.status_code == 200
    assert {d["name"] for d in resp.json()} == {"P1", "P2"}

    resp = await client.get("/api/playgrounds/list", params={"limit": 1})
    assert len(resp.json()) == 1


@pytest.mark.integration
async def test_get_playground_not_found(client: AsyncClient) -> None:
    resp = await client.get("/api/playgrounds/nonexistent/get")
    assert resp.status_code == 404


@pytest.mark.integration
async def test_update_playground_partial(client: AsyncClient) -> None:
    await client.post("/api/playgrounds/create", json={**PLAYGROUND_PAYLOAD, "playground_id": "upd"})

    resp = await client.post("/api/playgrounds/upd/update", json={"name": "Renamed"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "Renamed"
    assert data["description"] == "Agents that write reports"  # unchanged


@pytest.mark.integration
async def test_delete_playground_cascades(client: AsyncClient) -> None:
    await client.post("/api/playgrounds/create", json={**PLAYGROUND_PAYLOAD, "playground_id": "gone"})
    await client.post("/api/playgrounds/gone/sheets/create", json={"sheet_id": "s1", "title": "Sheet 1"})

    resp = await client.post("/api/playgrounds/gone/delete")
    assert resp.status_code == 204

    assert (await client.get("/api/playgrounds/gone/get")).status_code == 404
    assert (await client.get("/api/playgrounds/gone/sheets/s1/get")).status_code == 404


@pytest.mark.integration
async def test_delete_playground_not_found(client: AsyncClient) -> None:
    resp = await client.post("/api/playgrounds/nonexistent/delete")
    assert resp.status_code == 404
