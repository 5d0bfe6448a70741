from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from canvas_relay.protocol.constants import FIRST_PHASE, LAST_PHASE
from canvas_relay.protocol.messages import Analysis

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanvasSnapshot:
    """Encoded full-canvas image (usually a PNG data URL) as sent by a client."""

    data: str
    has_grid_overlay: bool = False
    version: int = 0
    ts: float = field(default_factory=time.time)


class CanvasStore:
    """
    The single process-wide canvas.

    Last writer wins across all sessions; `version` is a monotonic stamp so
    readers can tell snapshots apart, it is not used to reject writes.
    """

    def __init__(self) -> None:
        self._current: CanvasSnapshot | None = None
        self._version = 0

    def get(self) -> CanvasSnapshot | None:
        return self._current

    def set(self, data: str, *, has_grid_overlay: bool = False) -> CanvasSnapshot:
        self._version += 1
        self._current = CanvasSnapshot(data=data, has_grid_overlay=has_grid_overlay, version=self._version)
        return self._current

    def clear(self) -> None:
        self._current = None


# Jobs consumed by the per-session worker (ai_worker.ai_loop), one at a time.


@dataclass(frozen=True)
class PromptJob:
    prompt: str
    streaming: bool = False


@dataclass(frozen=True)
class ContinueJob:
    pass


@dataclass(frozen=True)
class StreamRoundJob:
    pass


Job = Union[PromptJob, ContinueJob, StreamRoundJob]
STOP_WORKER = None


@dataclass(eq=False)
class Session:
    ws: Optional[WebSocket] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    # Drawing state
    original_prompt: str | None = None
    current_phase: int = FIRST_PHASE
    completion_percentage: int = 0
    drawing_complete: bool = False
    continuation_count: int = 0

    # Streaming state (Idle <-> Active)
    streaming_enabled: bool = False  # client preference from TOGGLE_STREAMING_MODE
    streaming_active: bool = False
    streaming_interval_ms: int = 500
    streaming_batch_size: int = 3
    streaming_failures: int = 0
    previous_analysis: Analysis | None = None
    last_round_started: float = 0.0

    # Only one executor batch per session at a time; snapshots arriving meanwhile
    # overwrite `pending_snapshot` (latest only, never a list).
    is_processing_command: bool = False
    round_queued: bool = False
    pending_snapshot: CanvasSnapshot | None = None
    last_snapshot_ts: float = 0.0

    # Transport health
    consecutive_error_count: int = 0
    closed: bool = False

    # Per-session worker (see ai_worker.ai_loop)
    ai_queue: asyncio.Queue[Job | None] = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task] = None

    def reset_for_prompt(self, prompt: str) -> None:
        self.original_prompt = prompt
        self.current_phase = FIRST_PHASE
        self.completion_percentage = 0
        self.drawing_complete = False
        self.continuation_count = 0
        self.previous_analysis = None
        self.streaming_failures = 0

    def advance_phase(self, next_phase: int) -> bool:
        """Move forward to `next_phase`; phases never go backwards and stop at the last one."""
        if next_phase > LAST_PHASE or next_phase <= self.current_phase:
            return False
        self.current_phase = next_phase
        return True


def encode(msg: dict) -> str:
    return json.dumps(msg, separators=(",", ":"), ensure_ascii=False)


class SessionRegistry:
    """Membership + delivery. Holds the shared canvas store; no business logic."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self.canvas = CanvasStore()
        # Transport-level errors are counted per process, not per session.
        self.consecutive_errors = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session: object) -> bool:
        return isinstance(session, Session) and self._sessions.get(session.id) is session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def register(self, session: Session) -> Session:
        self._sessions[session.id] = session
        log.info("session %s connected (%d total)", session.id, len(self._sessions))
        return session

    def unregister(self, session: Session) -> bool:
        session.closed = True
        if self._sessions.get(session.id) is not session:
            return False
        del self._sessions[session.id]
        log.info("session %s disconnected (%d remaining)", session.id, len(self._sessions))
        return True

    async def send(self, session: Session, msg: dict) -> bool:
        """Point-to-point delivery. A failed send drops the session."""
        if session.ws is None or session.closed:
            return False
        try:
            await session.ws.send_text(encode(msg))
        except Exception as e:
            log.warning("send to %s failed (%s); dropping session", session.id, e)
            self.unregister(session)
            return False
        return True

    async def broadcast(self, msg: dict, exclude: Session | None = None) -> int:
        """Deliver to every registered session; one dead transport never blocks the rest."""
        dead: list[Session] = []
        data = encode(msg)
        sent = 0
        for session in list(self._sessions.values()):
            if exclude is session or session.ws is None:
                continue
            try:
                await session.ws.send_text(data)
                sent += 1
            except Exception:
                dead.append(session)
        for session in dead:
            log.warning("broadcast to %s failed; dropping session", session.id)
            self.unregister(session)
        return sent

    async def sweep(self) -> list[Session]:
        """
        Liveness sweep: drop sessions whose socket is no longer connected.

        Keepalive itself is the server's protocol-level ping (uvicorn
        `ws_ping_interval` / `ws_ping_timeout`), which closes dead peers. Idle
        clients are never sent anything here.
        """
        removed: list[Session] = []
        for session in list(self._sessions.values()):
            if socket_open(session):
                continue
            removed.append(session)
            self.unregister(session)
            await close_quietly(session)
        if removed:
            log.info("liveness sweep removed %d session(s)", len(removed))
        return removed


def socket_open(session: Session) -> bool:
    ws = session.ws
    if ws is None or session.closed:
        return False
    return (
        ws.client_state != WebSocketState.DISCONNECTED
        and ws.application_state != WebSocketState.DISCONNECTED
    )


async def close_quietly(session: Session, code: int = 1000) -> None:
    if session.ws is None:
        return
    try:
        await session.ws.close(code=code)
    except Exception as e:
        # already gone
        log.debug("close %s: %s", session.id, e)
