from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from canvas_relay.protocol.constants import (
    T_CANVAS_UPDATE,
    T_CHANGE_COLOR,
    T_CHANGE_LINE_WIDTH,
    T_CHANGE_TOOL,
    T_CLEAR_CANVAS,
    T_DRAW_ACTION,
    T_ERROR,
    T_STREAMING_MODE_UPDATE,
)
from canvas_relay.protocol.messages import (
    AIPrompt,
    CanvasUpdate,
    ContinueDrawing,
    DrawAction,
    InboundMsg,
    ToggleStreamingMode,
    parse_inbound,
)

from .ai_worker import ai_loop
from .config import Settings, get_settings
from .hub import Hub, build_hub
from .planner import PlannerBackend
from .sessions import STOP_WORKER, ContinueJob, PromptJob, Session, close_quietly
from .validator import sanitize_color, sanitize_line_width, sanitize_tool, validate_draw_command

log = logging.getLogger(__name__)

router = APIRouter()


def get_hub(request: Request) -> Hub:
    return request.app.state.hub


# --- REST mirror (stateless tooling; every call fans out to all sessions) ---------------


class ToolRequest(BaseModel):
    tool: Any = None


class ColorRequest(BaseModel):
    color: Any = None


class LineWidthRequest(BaseModel):
    width: Any = None


class StreamingModeRequest(BaseModel):
    enabled: bool
    interval: Optional[float] = None
    batchSize: Optional[float] = None


class StreamingRateRequest(BaseModel):
    rate: float


@router.get("/healthz")
def healthz(hub: Hub = Depends(get_hub)):
    return {"ok": True, "sessions": len(hub.registry)}


@router.get("/api/canvas")
def get_canvas(hub: Hub = Depends(get_hub)):
    snapshot = hub.registry.canvas.get()
    if snapshot is None:
        return {"canvasData": None, "version": 0}
    return {"canvasData": snapshot.data, "version": snapshot.version}


@router.post("/api/draw")
async def post_draw(action: dict[str, Any], hub: Hub = Depends(get_hub)):
    cmd = validate_draw_command(action)
    await hub.registry.broadcast({"type": T_DRAW_ACTION, "action": cmd.model_dump()})
    return {"success": True, "action": cmd.model_dump()}


@router.post("/api/clear")
async def post_clear(hub: Hub = Depends(get_hub)):
    await hub.registry.broadcast({"type": T_CLEAR_CANVAS})
    hub.registry.canvas.clear()
    hub.planner.clear_conversation()
    return {"success": True}


@router.post("/api/tool")
async def post_tool(body: ToolRequest, hub: Hub = Depends(get_hub)):
    tool = sanitize_tool(body.tool)
    await hub.registry.broadcast({"type": T_CHANGE_TOOL, "tool": tool})
    return {"success": True, "tool": tool}


@router.post("/api/color")
async def post_color(body: ColorRequest, hub: Hub = Depends(get_hub)):
    color = sanitize_color(body.color)
    await hub.registry.broadcast({"type": T_CHANGE_COLOR, "color": color})
    return {"success": True, "color": color}


@router.post("/api/linewidth")
async def post_linewidth(body: LineWidthRequest, hub: Hub = Depends(get_hub)):
    width = sanitize_line_width(body.width)
    await hub.registry.broadcast({"type": T_CHANGE_LINE_WIDTH, "width": width})
    return {"success": True, "width": width}


@router.post("/api/streaming-mode")
async def post_streaming_mode(body: StreamingModeRequest, hub: Hub = Depends(get_hub)):
    for session in hub.registry:
        await _toggle_streaming(hub, session, body.enabled, body.interval, body.batchSize)
    interval = hub.coordinator.clamp_interval(
        body.interval if body.interval is not None else hub.settings.streaming_interval_ms
    )
    return {"success": True, "enabled": body.enabled, "interval": interval}


@router.post("/api/streaming-rate")
async def post_streaming_rate(body: StreamingRateRequest, hub: Hub = Depends(get_hub)):
    rate = hub.coordinator.clamp_interval(body.rate)
    for session in hub.registry:
        hub.coordinator.configure(session, interval_ms=rate)
        await hub.registry.send(
            session,
            {"type": T_STREAMING_MODE_UPDATE, "enabled": session.streaming_enabled, "interval": rate},
        )
    return {"success": True, "rate": rate}


# --- WebSocket session -------------------------------------------------------------


async def _toggle_streaming(
    hub: Hub,
    session: Session,
    enabled: bool,
    interval: float | None,
    batch_size: float | None,
) -> None:
    hub.coordinator.configure(session, enabled=enabled, interval_ms=interval, batch_size=batch_size)
    if not enabled and session.streaming_active:
        await hub.coordinator.stop(session)
        return
    await hub.registry.send(
        session,
        {"type": T_STREAMING_MODE_UPDATE, "enabled": enabled, "interval": session.streaming_interval_ms},
    )


async def dispatch(hub: Hub, session: Session, msg: InboundMsg) -> None:
    registry = hub.registry
    if isinstance(msg, CanvasUpdate):
        snapshot = registry.canvas.set(msg.canvasData, has_grid_overlay=msg.hasGridOverlay)
        await registry.broadcast(
            {"type": T_CANVAS_UPDATE, "canvasData": msg.canvasData, "timestamp": int(snapshot.ts * 1000)},
            exclude=session,
        )
        hub.coordinator.on_snapshot(session, snapshot)
    elif isinstance(msg, DrawAction):
        # peer strokes are relayed untouched; only planner output goes through the validator
        await registry.broadcast({"type": T_DRAW_ACTION, "action": msg.action}, exclude=session)
    elif isinstance(msg, AIPrompt):
        streaming = msg.streamingMode if msg.streamingMode is not None else session.streaming_enabled
        await session.ai_queue.put(PromptJob(prompt=msg.prompt.strip(), streaming=streaming))
    elif isinstance(msg, ContinueDrawing):
        await session.ai_queue.put(ContinueJob())
    elif isinstance(msg, ToggleStreamingMode):
        await _toggle_streaming(hub, session, msg.enabled, msg.interval, msg.batchSize)


def _describe(e: ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return "invalid message"
    first = errs[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"invalid message: {loc + ': ' if loc else ''}{first.get('msg', 'validation error')}"


async def _transport_error(hub: Hub, session: Session, message: str) -> bool:
    """Apply the consecutive-error policy. Returns False when the session must be dropped."""
    registry = hub.registry
    settings = hub.settings
    registry.consecutive_errors += 1
    session.consecutive_error_count += 1
    count = registry.consecutive_errors
    log.warning("session %s: message error #%d: %s", session.id, count, message)

    await registry.send(session, {"type": T_ERROR, "message": message})
    if count >= settings.error_recovery_threshold:
        await registry.send(
            session,
            {
                "type": T_ERROR,
                "message": "Connection error. Please reconnect.",
                "recoverable": count < settings.max_consecutive_errors,
            },
        )
    if count >= settings.max_consecutive_errors:
        log.error("too many consecutive errors; disconnecting session %s", session.id)
        hub.planner.clear_conversation()
        registry.consecutive_errors = 0
        await close_quietly(session, code=1011)
        return False
    return True


async def handle_frame(hub: Hub, session: Session, raw: str) -> bool:
    """Process one inbound frame. Returns False when the connection should be closed."""
    try:
        msg = parse_inbound(raw)
        if hub.settings.debug_log_msgs:
            log.debug("[ws:%s] in type=%s", session.id, msg.type)
        await dispatch(hub, session, msg)
    except ValidationError as e:
        return await _transport_error(hub, session, _describe(e))
    except Exception as e:
        log.exception("session %s: handler failed", session.id)
        return await _transport_error(hub, session, str(e) or e.__class__.__name__)
    hub.registry.consecutive_errors = 0
    session.consecutive_error_count = 0
    return True


@router.websocket("/ws")
async def ws_endpoint(ws: WebSocket):
    hub: Hub = ws.app.state.hub
    settings = hub.settings
    await ws.accept()
    session = hub.registry.register(
        Session(
            ws=ws,
            streaming_interval_ms=settings.streaming_interval_ms,
            streaming_batch_size=settings.streaming_batch_size,
        )
    )
    session.worker = hub.track_worker(asyncio.create_task(ai_loop(session, hub)))

    snapshot = hub.registry.canvas.get()
    if snapshot is not None:
        await hub.registry.send(session, {"type": T_CANVAS_UPDATE, "canvasData": snapshot.data})

    try:
        while not session.closed:
            raw = await ws.receive_text()
            if not await handle_frame(hub, session, raw):
                break
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # receive after the server closed the socket (sweep / error policy)
        log.info("session %s: socket closed: %s", session.id, e)
    finally:
        hub.registry.unregister(session)
        session.streaming_active = False
        session.pending_snapshot = None
        session.ai_queue.put_nowait(STOP_WORKER)


# --- app -------------------------------------------------------------------------------


async def heartbeat_loop(hub: Hub) -> None:
    while True:
        await asyncio.sleep(hub.settings.heartbeat_interval_s)
        await hub.registry.sweep()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.debug_log_msgs:
        logging.getLogger("canvas_relay").setLevel(logging.DEBUG)


def create_app(settings: Settings | None = None, backend: PlannerBackend | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    hub = build_hub(settings, backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        started = time.monotonic()
        task = asyncio.create_task(heartbeat_loop(hub))
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            await hub.stop_workers()
            log.info("canvas relay stopped after %.0fs", time.monotonic() - started)

    app = FastAPI(title="canvas-relay", lifespan=lifespan)
    app.state.hub = hub
    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    import argparse

    import uvicorn

    settings = get_settings()
    ap = argparse.ArgumentParser(description="Run the canvas relay server.")
    ap.add_argument("--host", default=settings.host, help="Host to bind to")
    ap.add_argument("--port", type=int, default=settings.port, help="Port to listen on")
    args = ap.parse_args()

    # protocol-level keepalive; browsers answer pings without any client code
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        ws_ping_interval=settings.ws_ping_interval_s,
        ws_ping_timeout=settings.ws_ping_timeout_s,
    )


if __name__ == "__main__":
    main()
