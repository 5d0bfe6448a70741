from __future__ import annotations

import asyncio
import logging
import time

from canvas_relay.protocol.constants import (
    MAX_STREAMING_BATCH_SIZE,
    MIN_STREAMING_BATCH_SIZE,
    T_DRAWING_FAILED,
    T_REQUEST_CANVAS_UPDATE,
    T_STREAMING_COMMAND_COMPLETE,
    T_STREAMING_COMMAND_START,
    T_STREAMING_COMPLETE,
    T_STREAMING_MODE_STARTED,
    T_STREAMING_MODE_UPDATE,
)

from .config import Settings
from .executor import CommandExecutor
from .planner import PlannerClient
from .sessions import CanvasSnapshot, Session, SessionRegistry, StreamRoundJob

log = logging.getLogger(__name__)

DEFAULT_STREAMING_PROMPT = "the current drawing"


class StreamingCoordinator:
    """
    Per-session streaming loop: Idle -> Active -> Idle.

    While Active, every snapshot from the session either schedules a planning
    round on the session worker or, if a round is already queued or running,
    replaces the single pending snapshot. After a round the freshest pending
    snapshot (if any) gets exactly one follow-up round.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        planner: PlannerClient,
        executor: CommandExecutor,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.planner = planner
        self.executor = executor
        self.settings = settings

    # --- configuration -------------------------------------------------------------

    def clamp_interval(self, interval_ms: float) -> int:
        s = self.settings
        return int(max(s.streaming_interval_min_ms, min(s.streaming_interval_max_ms, interval_ms)))

    def configure(
        self,
        session: Session,
        *,
        enabled: bool | None = None,
        interval_ms: float | None = None,
        batch_size: float | None = None,
    ) -> None:
        if enabled is not None:
            session.streaming_enabled = enabled
        if interval_ms is not None:
            session.streaming_interval_ms = self.clamp_interval(interval_ms)
        if batch_size is not None:
            session.streaming_batch_size = int(
                max(MIN_STREAMING_BATCH_SIZE, min(MAX_STREAMING_BATCH_SIZE, batch_size))
            )

    # --- state transitions -------------------------------------------------------------

    async def start(self, session: Session, prompt: str) -> None:
        session.streaming_active = True
        session.streaming_enabled = True
        session.pending_snapshot = None
        session.streaming_failures = 0
        session.last_round_started = 0.0
        log.info("session %s: streaming started for %r", session.id, prompt)
        await self.registry.send(session, {"type": T_STREAMING_MODE_STARTED, "prompt": prompt})
        await self.registry.send(session, {"type": T_REQUEST_CANVAS_UPDATE})

    async def stop(self, session: Session, *, notify: bool = True) -> None:
        """Leave Active; any pending snapshot is discarded and no further round runs."""
        was_active = session.streaming_active
        session.streaming_active = False
        session.pending_snapshot = None
        if was_active:
            log.info("session %s: streaming stopped", session.id)
        if notify:
            await self.registry.send(
                session,
                {
                    "type": T_STREAMING_MODE_UPDATE,
                    "enabled": session.streaming_enabled,
                    "interval": session.streaming_interval_ms,
                },
            )

    async def _finish(self, session: Session) -> None:
        session.streaming_active = False
        session.pending_snapshot = None
        session.drawing_complete = True
        log.info("session %s: streaming drawing complete", session.id)
        await self.registry.broadcast({"type": T_STREAMING_COMPLETE})

    async def _fail(self, session: Session, reason: str, recoverable: bool) -> None:
        session.streaming_failures += 1
        if recoverable and session.streaming_failures >= self.settings.max_streaming_failures:
            reason = f"{reason} ({session.streaming_failures} failed rounds in a row)"
            recoverable = False
        log.warning(
            "session %s: streaming round failed (%s, recoverable=%s)", session.id, reason, recoverable
        )
        await self.registry.send(
            session,
            {
                "type": T_DRAWING_FAILED,
                "reason": reason,
                "recoverable": recoverable,
                "phase": session.current_phase,
            },
        )
        if recoverable:
            await self.registry.send(session, {"type": T_STREAMING_COMMAND_COMPLETE})
        else:
            await self.stop(session, notify=False)

    # --- snapshots and rounds ----------------------------------------------------------

    def on_snapshot(self, session: Session, snapshot: CanvasSnapshot) -> bool:
        """
        Feed a snapshot from `session`. Returns True if a new round was scheduled,
        False if it was ignored (Idle) or coalesced into the pending slot.
        """
        if not session.streaming_active or session.closed:
            return False
        session.last_snapshot_ts = snapshot.ts
        session.pending_snapshot = snapshot
        if session.is_processing_command or session.round_queued:
            return False
        session.round_queued = True
        session.ai_queue.put_nowait(StreamRoundJob())
        return True

    async def run_round(self, session: Session) -> None:
        """Worker entry point for a StreamRoundJob."""
        session.round_queued = False
        if not session.streaming_active or session.closed:
            session.pending_snapshot = None
            return

        session.is_processing_command = True
        try:
            wait = session.streaming_interval_ms / 1000.0 - (time.monotonic() - session.last_round_started)
            if wait > 0:
                # newer snapshots keep landing in the pending slot meanwhile
                await asyncio.sleep(wait)
            snapshot, session.pending_snapshot = session.pending_snapshot, None
            if snapshot is None or not session.streaming_active:
                return
            session.last_round_started = time.monotonic()
            await self._round(session, snapshot)
        finally:
            session.is_processing_command = False

        if not session.streaming_active or session.closed:
            session.pending_snapshot = None
            return
        if session.pending_snapshot is not None:
            session.round_queued = True
            session.ai_queue.put_nowait(StreamRoundJob())
        else:
            await self.registry.send(session, {"type": T_REQUEST_CANVAS_UPDATE})

    async def _round(self, session: Session, snapshot: CanvasSnapshot) -> None:
        started = time.monotonic()
        await self.registry.send(session, {"type": T_STREAMING_COMMAND_START})

        batch = await self.planner.plan_streaming_step(
            snapshot,
            session.original_prompt or DEFAULT_STREAMING_PROMPT,
            session.current_phase,
            session.previous_analysis,
            session.streaming_batch_size,
        )
        if batch.analysis is not None:
            session.previous_analysis = batch.analysis
            session.completion_percentage = batch.analysis.completionPercentage

        if not session.streaming_active:
            log.info("session %s: streaming stopped while planning; dropping batch", session.id)
            return
        if batch.complete:
            await self._finish(session)
            return
        if batch.error is not None:
            await self._fail(session, batch.error, batch.recoverable)
            if session.streaming_active:
                await self._pace(session, started)
            return

        result = await self.executor.execute(batch.commands, session)
        session.streaming_failures = 0
        await self.registry.send(session, {"type": T_STREAMING_COMMAND_COMPLETE})
        if result.complete:
            await self._finish(session)
            return
        await self._pace(session, started)

    async def _pace(self, session: Session, started: float) -> None:
        """Move the session interval toward the observed round latency (scaled, bounded)."""
        latency_ms = (time.monotonic() - started) * 1000.0
        s = self.settings
        target = latency_ms * s.streaming_pacing_scale
        alpha = max(0.0, min(1.0, s.streaming_pacing_smoothing))
        new_interval = self.clamp_interval(round((1 - alpha) * session.streaming_interval_ms + alpha * target))
        if new_interval == session.streaming_interval_ms:
            return
        if s.debug_log_msgs:
            log.debug(
                "session %s: round took %.0fms, interval %d -> %d",
                session.id,
                latency_ms,
                session.streaming_interval_ms,
                new_interval,
            )
        session.streaming_interval_ms = new_interval
        await self.registry.send(
            session,
            {"type": T_STREAMING_MODE_UPDATE, "enabled": True, "interval": new_interval},
        )
