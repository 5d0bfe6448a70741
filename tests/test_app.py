"""WebSocket transport and REST mirror, driven through FastAPI's TestClient."""

from __future__ import annotations

import asyncio
import json
import threading

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from canvas_relay.server import app as app_module
from canvas_relay.server.app import create_app
from canvas_relay.server.config import Settings
from conftest import ScriptedBackend, draw

CANVAS = "data:image/png;base64,iVBORw0KGgo="


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        _env_file=None,
        command_delay_s=0,
        phase_settle_s=0,
        heartbeat_interval_s=3600,
        grid_overlay=False,
    )


@pytest.fixture
def app_backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def client(app_settings, app_backend):
    app = create_app(app_settings, app_backend)
    with TestClient(app) as test_client:
        yield test_client


def hub_of(client: TestClient):
    return client.app.state.hub


class TestWebSocket:
    def test_malformed_frame_gets_an_error(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            msg = ws.receive_json()
            assert msg["type"] == "ERROR"
            assert msg["message"].startswith("invalid message")

    def test_unknown_type_gets_an_error(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "LASER_BEAM"})
            assert ws.receive_json()["type"] == "ERROR"

    def test_repeated_errors_escalate_then_disconnect(self, client):
        with client.websocket_connect("/ws") as ws:
            for _ in range(2):
                ws.send_text("garbage")
                assert ws.receive_json()["type"] == "ERROR"

            ws.send_text("garbage")
            assert ws.receive_json()["type"] == "ERROR"
            recovery = ws.receive_json()
            assert recovery == {"type": "ERROR", "message": "Connection error. Please reconnect.", "recoverable": True}

            ws.send_text("garbage")
            ws.receive_json()
            assert ws.receive_json()["recoverable"] is True

            ws.send_text("garbage")
            ws.receive_json()
            assert ws.receive_json()["recoverable"] is False
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 1011
        assert hub_of(client).registry.consecutive_errors == 0

    def test_good_frame_resets_the_error_count(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("garbage")
            ws.receive_json()
            ws.send_json({"type": "TOGGLE_STREAMING_MODE", "enabled": False})
            ws.receive_json()
            assert hub_of(client).registry.consecutive_errors == 0

    def test_canvas_is_relayed_and_replayed_to_late_joiners(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a.send_json({"type": "CANVAS_UPDATE", "canvasData": CANVAS})
            relayed = b.receive_json()
            assert relayed["type"] == "CANVAS_UPDATE"
            assert relayed["canvasData"] == CANVAS
            assert isinstance(relayed["timestamp"], int)

            with client.websocket_connect("/ws") as late:
                assert late.receive_json() == {"type": "CANVAS_UPDATE", "canvasData": CANVAS}

        assert client.get("/api/canvas").json() == {"canvasData": CANVAS, "version": 1}

    def test_peer_draw_actions_are_relayed(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            action = {"tool": "brush", "color": "#ff0000", "points": [[1, 2], [3, 4]]}
            a.send_json({"type": "DRAW_ACTION", "action": action})
            assert b.receive_json() == {"type": "DRAW_ACTION", "action": action}

    def test_toggle_streaming_clamps_interval(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "TOGGLE_STREAMING_MODE", "enabled": True, "interval": 5000, "batchSize": 2})
            assert ws.receive_json() == {"type": "STREAMING_MODE_UPDATE", "enabled": True, "interval": 2000}

    def test_prompt_runs_a_batch(self, client, app_backend):
        app_backend.push(
            json.dumps([draw(), {"endpoint": "/api/continue", "params": {"completionPercentage": 96}}])
        )
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "AI_PROMPT", "prompt": "a tree"})
            assert ws.receive_json()["type"] == "DRAW_ACTION"
            assert ws.receive_json() == {"type": "COMPLETION_UPDATE", "percentage": 96, "phase": 1}
            assert ws.receive_json() == {"type": "DRAWING_COMPLETE"}
        assert app_backend.calls[0]["texts"] == ["a tree"]

    def test_streaming_prompt_asks_for_a_snapshot(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "AI_PROMPT", "prompt": "a cat", "streamingMode": True})
            assert ws.receive_json() == {"type": "STREAMING_MODE_STARTED", "prompt": "a cat"}
            assert ws.receive_json() == {"type": "REQUEST_CANVAS_UPDATE"}

    def test_disconnect_unregisters(self, client):
        with client.websocket_connect("/ws"):
            assert client.get("/healthz").json()["sessions"] == 1
        assert client.get("/healthz").json() == {"ok": True, "sessions": 0}


def test_prompt_without_model_server_fails_for_good(app_settings):
    with TestClient(create_app(app_settings)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "AI_PROMPT", "prompt": "a tree"})
            failed = ws.receive_json()
    assert failed["type"] == "DRAWING_FAILED"
    assert failed["recoverable"] is False


class StallingBackend:
    """Planner backend whose model call never returns."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.task: asyncio.Task | None = None

    async def generate(self, **kwargs) -> str:
        self.task = asyncio.current_task()
        self.entered.set()
        await asyncio.Event().wait()
        return "[]"


def test_shutdown_cancels_workers_stuck_in_a_model_call(app_settings):
    backend = StallingBackend()
    with TestClient(create_app(app_settings, backend)) as client:
        hub = hub_of(client)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "AI_PROMPT", "prompt": "a tree"})
            assert backend.entered.wait(timeout=5)
        assert backend.task in hub.workers

    assert backend.task.cancelled()
    assert hub.workers == set()


def test_main_runs_uvicorn_with_protocol_level_pings(monkeypatch):
    import uvicorn

    calls = {}
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.update(kwargs))
    monkeypatch.setattr("sys.argv", ["canvas-relay", "--port", "9001"])
    settings = Settings(_env_file=None)
    monkeypatch.setattr(app_module, "get_settings", lambda: settings)

    app_module.main()

    assert calls["port"] == 9001
    assert calls["ws_ping_interval"] == settings.ws_ping_interval_s
    assert calls["ws_ping_timeout"] == settings.ws_ping_timeout_s


class TestRestMirror:
    def test_draw_is_validated_and_broadcast(self, client):
        with client.websocket_connect("/ws") as ws:
            resp = client.post(
                "/api/draw",
                json={"tool": "pencil", "color": "#12", "lineWidth": 500, "startX": -10, "startY": 900, "x": 10, "y": 10},
            )
            assert resp.status_code == 200
            action = resp.json()["action"]
            assert (action["color"], action["lineWidth"], action["startX"], action["startY"]) == ("#000000", 50, 0, 600)
            assert ws.receive_json() == {"type": "DRAW_ACTION", "action": action}

    def test_tool_color_and_width(self, client):
        with client.websocket_connect("/ws") as ws:
            assert client.post("/api/tool", json={"tool": "laser"}).json() == {"success": True, "tool": "pencil"}
            assert client.post("/api/color", json={"color": "#abc"}).json()["color"] == "#aabbcc"
            assert client.post("/api/linewidth", json={"width": 99}).json()["width"] == 50
            assert [ws.receive_json()["type"] for _ in range(3)] == ["CHANGE_TOOL", "CHANGE_COLOR", "CHANGE_LINE_WIDTH"]

    def test_clear_resets_canvas_and_conversation(self, client):
        hub = hub_of(client)
        hub.registry.canvas.set(CANVAS)
        hub.planner.history = ["a tree", "[]"]
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()  # current canvas
            assert client.post("/api/clear").json() == {"success": True}
            assert ws.receive_json() == {"type": "CLEAR_CANVAS"}
        assert hub.registry.canvas.get() is None
        assert hub.planner.history == []

    def test_streaming_rate_is_clamped(self, client):
        with client.websocket_connect("/ws") as ws:
            assert client.post("/api/streaming-rate", json={"rate": 10}).json() == {"success": True, "rate": 100}
            assert ws.receive_json()["interval"] == 100

    def test_streaming_mode(self, client):
        with client.websocket_connect("/ws") as ws:
            resp = client.post("/api/streaming-mode", json={"enabled": True, "interval": 700})
            assert resp.json() == {"success": True, "enabled": True, "interval": 700}
            assert ws.receive_json() == {"type": "STREAMING_MODE_UPDATE", "enabled": True, "interval": 700}
