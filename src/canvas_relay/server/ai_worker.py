from __future__ import annotations

import logging

from canvas_relay.protocol.constants import T_DRAWING_COMPLETE, T_DRAWING_FAILED

from .hub import Hub
from .planner import CommandBatch
from .sessions import STOP_WORKER, ContinueJob, PromptJob, Session, StreamRoundJob
from .streaming import DEFAULT_STREAMING_PROMPT

log = logging.getLogger(__name__)


async def _complete(hub: Hub, session: Session) -> None:
    session.drawing_complete = True
    log.info("session %s: drawing complete (%d%%)", session.id, session.completion_percentage)
    await hub.registry.send(session, {"type": T_DRAWING_COMPLETE})


async def _failed(hub: Hub, session: Session, reason: str, recoverable: bool = True) -> None:
    await hub.registry.send(
        session,
        {
            "type": T_DRAWING_FAILED,
            "reason": reason,
            "recoverable": recoverable,
            "phase": session.current_phase,
        },
    )


async def run_batch(hub: Hub, session: Session, batch: CommandBatch) -> None:
    """Execute a batch-mode plan and decide what the client hears next."""
    if batch.complete:
        await _complete(hub, session)
        return
    if batch.error is not None:
        log.warning("session %s: planning failed: %s", session.id, batch.error)
        await _failed(hub, session, batch.error, batch.recoverable)
        return
    if not batch.commands:
        # planner has nothing further to draw
        await _complete(hub, session)
        return

    result = await hub.executor.execute(batch.commands, session)
    if result.complete:
        await _complete(hub, session)
    elif result.continued:
        # client answers TRIGGER_CONTINUE with CONTINUE_DRAWING
        pass
    elif result.should_continue:
        # Continue/next_phase without a trailing pause
        await hub.executor.trigger_continue(session)
    else:
        await _complete(hub, session)


async def handle_prompt(hub: Hub, session: Session, job: PromptJob) -> None:
    session.reset_for_prompt(job.prompt)
    log.info("session %s: prompt %r (streaming=%s)", session.id, job.prompt, job.streaming)
    if job.streaming:
        await hub.coordinator.start(session, job.prompt)
        return
    if session.streaming_active:
        await hub.coordinator.stop(session)

    session.is_processing_command = True
    try:
        batch = await hub.planner.plan_initial(job.prompt, hub.registry.canvas.get())
        await run_batch(hub, session, batch)
    finally:
        session.is_processing_command = False


async def handle_continue(hub: Hub, session: Session) -> None:
    if session.streaming_active:
        log.debug("session %s: continue ignored while streaming", session.id)
        return
    if session.drawing_complete:
        await _complete(hub, session)
        return
    if session.continuation_count >= hub.settings.max_continuations:
        log.info("session %s: continuation limit (%d) reached", session.id, session.continuation_count)
        await _complete(hub, session)
        return
    session.continuation_count += 1

    prompt = session.original_prompt or DEFAULT_STREAMING_PROMPT
    log.info(
        "session %s: continuing %r in phase %d (round %d)",
        session.id,
        prompt,
        session.current_phase,
        session.continuation_count,
    )
    session.is_processing_command = True
    try:
        batch = await hub.planner.plan_continuation(hub.registry.canvas.get(), prompt, session.current_phase)
        await run_batch(hub, session, batch)
    finally:
        session.is_processing_command = False


async def ai_loop(session: Session, hub: Hub) -> None:
    """One worker per session: jobs run strictly one at a time, in arrival order."""
    while True:
        job = await session.ai_queue.get()
        if job is STOP_WORKER or session.closed:
            break
        try:
            if isinstance(job, PromptJob):
                await handle_prompt(hub, session, job)
            elif isinstance(job, ContinueJob):
                await handle_continue(hub, session)
            elif isinstance(job, StreamRoundJob):
                await hub.coordinator.run_round(session)
            else:
                log.warning("session %s: unknown job %r", session.id, job)
        except Exception as e:
            log.exception("session %s: job %r failed", session.id, job)
            session.is_processing_command = False
            await _failed(hub, session, f"internal error: {e}")
    log.debug("session %s: worker stopped", session.id)
