"""Tests for the streaming transport.

The WebSocket tests drive the real app through ``TestClient`` with an
in-memory sheet source preset on ``app.state``, so the lifespan wires a
registry without a database.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Iterator

import pytest
from exec_fakes import MARKER, InMemorySheetSource
from fastapi.testclient import TestClient
from sse_starlette.sse import AppStatus

from graphsheet.exec_runtime.app import app
from graphsheet.exec_runtime.models.enums import ErrorCode
from graphsheet.exec_runtime.models.events import OutputEvent, StartedEvent, client_message_adapter
from graphsheet.exec_runtime.models.sheet import SessionKey
from graphsheet.exec_runtime.registry import SessionRegistry
from graphsheet.exec_runtime.settings import _get_settings_cached
from graphsheet.exec_runtime.transport import OVERFLOW_REASON, Connection, dispatch, watch_session

KEY = SessionKey("pg-1", "sheet-1")


def _start(key: SessionKey = KEY) -> dict:
    return {"event": "start", "data": {"playgroundId": key.playground_id, "sheetId": key.sheet_id}}


# -- Connection ----------------------------------------------------------------


async def test_connection_delivers_in_order() -> None:
    conn = Connection(max_pending=8)
    outbound = conn.outbound()
    conn.offer(OutputEvent(seq=1, text="a"))
    conn.offer(OutputEvent(seq=2, text="b"))
    assert (await outbound.__anext__()).text == "a"
    assert (await outbound.__anext__()).text == "b"
    await outbound.aclose()


async def test_connection_overflow_closes() -> None:
    conn = Connection(max_pending=2)
    assert conn.offer(OutputEvent(seq=1, text="a"))
    assert conn.offer(OutputEvent(seq=2, text="b"))

    assert conn.offer(OutputEvent(seq=3, text="c")) is False
    assert conn.closed
    assert conn.overflowed
    assert conn.close_reason == OVERFLOW_REASON
    assert conn.offer(OutputEvent(seq=4, text="d")) is False


async def test_replay_does_not_count_against_the_bound() -> None:
    conn = Connection(max_pending=2)
    conn.replay([OutputEvent(seq=i, text=str(i)) for i in range(1, 6)])

    assert conn.offer(OutputEvent(seq=6, text="6"))
    assert conn.offer(OutputEvent(seq=7, text="7"))
    assert not conn.closed

    outbound = conn.outbound()
    assert [(await outbound.__anext__()).seq for _ in range(7)] == [1, 2, 3, 4, 5, 6, 7]
    await outbound.aclose()


async def test_outbound_wakes_on_offer() -> None:
    conn = Connection(max_pending=8)
    outbound = conn.outbound()
    pending = asyncio.ensure_future(outbound.__anext__())
    await asyncio.sleep(0.01)
    assert not pending.done()

    conn.offer(OutputEvent(seq=1, text="late"))
    assert (await asyncio.wait_for(pending, 1.0)).text == "late"
    await outbound.aclose()


# -- SSE watcher ---------------------------------------------------------------


class _IdleLauncher:
    async def launch(self, session) -> None:
        msg = "watchers never start runs"
        raise AssertionError(msg)


async def test_watcher_replays_and_follows() -> None:
    registry = SessionRegistry(_IdleLauncher(), grace_period=60)
    session = registry.get_or_create(KEY)
    session.publish(StartedEvent(run_id="r1", playground_id="pg-1", sheet_id="sheet-1"))

    stream = watch_session(registry, KEY, max_pending=16)
    first = await stream.__anext__()
    assert first["event"] == "started"
    assert session.connection_count == 1

    session.publish_output("tick")
    second = await asyncio.wait_for(stream.__anext__(), 1.0)
    assert second["event"] == "message"
    assert json.loads(second["data"]) == {"event": "message", "data": "tick", "seq": 1}

    await stream.aclose()
    assert session.connection_count == 0


async def test_start_during_shutdown_reports_error() -> None:
    registry = SessionRegistry(_IdleLauncher(), grace_period=60)
    registry.begin_shutdown()
    conn = Connection(max_pending=8)

    message = client_message_adapter.validate_python(_start())
    await dispatch(message, conn, registry)

    outbound = conn.outbound()
    event = await outbound.__anext__()
    await outbound.aclose()
    assert event.event == "error"
    assert event.code == ErrorCode.SHUTTING_DOWN
    assert event.sheet_id == "sheet-1"
    assert registry.get(KEY) is None


# -- WebSocket -----------------------------------------------------------------


@pytest.fixture
def ws_sources(monkeypatch, tmp_path) -> Iterator[InMemorySheetSource]:
    """Run the app lifespan with an in-memory sheet source and no database."""
    monkeypatch.delenv("GRAPHSHEET_DATABASE_URL", raising=False)
    monkeypatch.setenv("GRAPHSHEET_DATA_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("GRAPHSHEET_PYTHON_EXECUTABLE", sys.executable)
    monkeypatch.setenv("GRAPHSHEET_REATTACH_GRACE_PERIOD", "0.5")
    monkeypatch.setenv("GRAPHSHEET_GRACEFUL_SHUTDOWN_TIMEOUT", "5")
    monkeypatch.setenv("GRAPHSHEET_CHECKPOINT_MARKER", MARKER)
    _get_settings_cached.cache_clear()

    source = InMemorySheetSource()
    app.state.sheet_source = source
    yield source

    del app.state.sheet_source
    AppStatus.should_exit = False
    _get_settings_cached.cache_clear()


def _receive_until(ws, event: str, limit: int = 200) -> list[dict]:
    frames = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if frame["event"] == event:
            return frames
    msg = f"no {event!r} frame received"
    raise AssertionError(msg)


def _output(frames: list[dict]) -> str:
    return "".join(f["data"] for f in frames if f["event"] == "message")


def test_start_streams_output_and_exit(ws_sources: InMemorySheetSource) -> None:
    ws_sources.put(KEY, {"main.py": "print('hello from sheet')\n"})

    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_json(_start())
        frames = _receive_until(ws, "exited")

    assert frames[0]["event"] == "started"
    assert frames[0]["data"]["sheet_id"] == "sheet-1"
    assert "hello from sheet" in _output(frames)
    assert frames[-1]["data"]["exit_code"] == 0
    assert frames[-1]["data"]["run_id"] == frames[0]["data"]["run_id"]


def test_interactive_input(ws_sources: InMemorySheetSource) -> None:
    ws_sources.put(KEY, {"main.py": "answer = input('continue? ')\nprint('got', answer)\n"})

    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_json(_start())
        ws.send_json({"event": "input", "data": {"input": "yes\n"}})
        frames = _receive_until(ws, "exited")

    assert "got yes" in _output(frames)


def test_double_start_spawns_once(ws_sources: InMemorySheetSource) -> None:
    ws_sources.put(KEY, {"main.py": "import time\nprint('up', flush=True)\ntime.sleep(1)\n"})

    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_json(_start())
        ws.send_json(_start())
        frames = _receive_until(ws, "exited")

    assert [f["event"] for f in frames].count("started") == 1
    assert ws_sources.loads == 1


def test_checkpoint_sends_graph_ready(ws_sources: InMemorySheetSource) -> None:
    code = (
        "import time\n"
        "class ReviewerAgent:\n"
        "    pass\n"
        "reviewer = ReviewerAgent()\n"
        f"print('{MARKER}')\n"
        "time.sleep(0.5)\n"
    )
    ws_sources.put(KEY, {"main.py": code})

    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_json(_start())
        frames = _receive_until(ws, "graph_ready")
        executions = client.get("/api/executions/list").json()

    assert frames[-1]["data"]["node_count"] == 1
    assert MARKER not in _output(frames)
    assert executions[0]["sheet_id"] == "sheet-1"


def test_invalid_frame_gets_connect_error(ws_sources: InMemorySheetSource) -> None:
    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_text('{"event": "start", "data": {}}')
        frame = ws.receive_json()

    assert frame["event"] == "connect_error"
    assert frame["data"]["reason"].startswith("Invalid frame")


def test_input_before_start_is_an_error(ws_sources: InMemorySheetSource) -> None:
    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_json({"event": "input", "data": {"input": "x"}})
        frame = ws.receive_json()

    assert frame["event"] == "error"
    assert frame["data"]["code"] == "not_started"
    assert frame["data"]["phase"] == "transport"


def test_unknown_sheet_exits_with_spawn_error(ws_sources: InMemorySheetSource) -> None:
    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_json(_start(SessionKey("pg-1", "nope")))
        frame = ws.receive_json()

    assert frame["event"] == "exited"
    assert frame["data"]["reason"] == "spawn_failed"
    assert frame["data"]["error"]["code"] == "spawn_failed"


def test_terminate_over_websocket(ws_sources: InMemorySheetSource) -> None:
    ws_sources.put(KEY, {"main.py": "import time\nprint('waiting', flush=True)\ntime.sleep(60)\n"})

    with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
        ws.send_json(_start())
        _receive_until(ws, "message")
        ws.send_json({"event": "terminate"})
        frames = _receive_until(ws, "exited")

    assert frames[-1]["data"]["reason"] == "terminated"


def test_terminal_unavailable_without_registry(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("GRAPHSHEET_DATABASE_URL", raising=False)
    monkeypatch.setenv("GRAPHSHEET_DATA_ROOT", str(tmp_path))
    _get_settings_cached.cache_clear()
    try:
        with TestClient(app) as client, client.websocket_connect("/api/terminal") as ws:
            frame = ws.receive_json()
    finally:
        AppStatus.should_exit = False
        _get_settings_cached.cache_clear()

    assert frame == {"event": "connect_error", "data": {"reason": "Execution is not available"}}
