"""Shared fixtures: in-memory transports and a scripted planner backend."""

from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from canvas_relay.server.config import Settings
from canvas_relay.server.hub import Hub, build_hub
from canvas_relay.server.planner import PlannerError
from canvas_relay.server.sessions import Session


class FakeSocket:
    """Stands in for a starlette WebSocket; records every frame it is sent."""

    def __init__(self, name: str = "ws", timeline: list | None = None, fail: bool = False) -> None:
        self.name = name
        self.timeline = timeline if timeline is not None else []
        self.fail = fail
        self.sent: list[dict] = []
        self.closed_with: int | None = None
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        msg = json.loads(data)
        self.sent.append(msg)
        self.timeline.append((self.name, msg))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED

    def drop(self) -> None:
        """Peer vanished (e.g. the server-side ping timed out)."""
        self.client_state = WebSocketState.DISCONNECTED

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, t: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == t]


class ScriptedBackend:
    """
    PlannerBackend that replays canned replies in order.

    Each reply is a string (returned) or an exception (raised). Calls are recorded.
    """

    def __init__(self, *replies: str | BaseException) -> None:
        self.replies: list[str | BaseException] = list(replies)
        self.calls: list[dict[str, Any]] = []

    def push(self, *replies: str | BaseException) -> None:
        self.replies.extend(replies)

    async def generate(self, *, system, texts, image_b64, tool, temperature, max_tokens) -> str:
        self.calls.append(
            {
                "system": system,
                "texts": list(texts),
                "image_b64": image_b64,
                "tool": tool["function"]["name"] if tool else None,
            }
        )
        if not self.replies:
            raise PlannerError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


def draw(**params: Any) -> dict:
    base = {"tool": "pencil", "color": "#112233", "lineWidth": 2, "startX": 10, "startY": 10, "x": 20, "y": 20}
    base.update(params)
    return {"endpoint": "/api/draw", "params": base}


def analysis(completion: int, description: str = "a sketch") -> str:
    return json.dumps({"description": description, "suggestions": ["add a sun"], "completionPercentage": completion})


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        command_delay_s=0,
        phase_settle_s=0,
        streaming_interval_ms=0,
        streaming_interval_min_ms=0,
        heartbeat_interval_s=3600,
        grid_overlay=False,
        model_server_url=None,
    )


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def hub(settings: Settings, backend: ScriptedBackend) -> Hub:
    return build_hub(settings, backend)


@pytest.fixture
def timeline() -> list:
    return []


@pytest.fixture
def make_session(hub: Hub, timeline: list):
    def _make(name: str = "ws", *, fail: bool = False, register: bool = True) -> Session:
        session = Session(ws=FakeSocket(name, timeline, fail=fail))
        if register:
            hub.registry.register(session)
        return session

    return _make
