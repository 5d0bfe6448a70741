from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from canvas_relay.protocol.commands import (
    AdvancePhase,
    Clear,
    ColorChange,
    Command,
    Continue,
    Draw,
    Pause,
    ToolChange,
    WidthChange,
    coerce_command,
)
from canvas_relay.protocol.constants import (
    T_CHANGE_COLOR,
    T_CHANGE_LINE_WIDTH,
    T_CHANGE_TOOL,
    T_CLEAR_CANVAS,
    T_COMPLETION_UPDATE,
    T_DRAW_ACTION,
    T_PAUSE,
    T_PHASE_CHANGE,
    T_TRIGGER_CONTINUE,
)

from .config import Settings
from .sessions import Session, SessionRegistry
from .validator import sanitize_color, sanitize_line_width, sanitize_tool, validate_draw_command

log = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    executed: int = 0
    draws: int = 0
    completion_percentage: int = 0
    # A Continue/AdvancePhase asked for more, but no Pause followed to consume it.
    should_continue: bool = False
    # A continuation trigger was emitted (or, in streaming mode, was due).
    continued: bool = False
    complete: bool = False


class CommandExecutor:
    """
    Runs a planner batch in order, broadcasting each operation to every session.

    Control commands (Continue / AdvancePhase) drive the session's phase and
    completion bookkeeping; a Pause is the synchronisation point after which a
    pending "should continue" turns into a continuation trigger.
    """

    def __init__(self, registry: SessionRegistry, settings: Settings) -> None:
        self.registry = registry
        self.settings = settings

    async def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    def _is_terminal(self, completion: int) -> bool:
        return completion >= self.settings.completion_threshold

    async def execute(self, commands: Iterable[Command | dict], session: Session) -> ExecutionResult:
        result = ExecutionResult(completion_percentage=session.completion_percentage)
        should_continue = False
        phase_changed = False

        for raw in commands:
            cmd = coerce_command(raw)
            if cmd is None:
                log.warning("skipping unrecognised command: %r", raw)
                continue
            result.executed += 1

            if isinstance(cmd, AdvancePhase):
                completed = cmd.completed_phase if cmd.completed_phase is not None else session.current_phase
                next_phase = completed + 1
                if session.advance_phase(next_phase):
                    session.completion_percentage = cmd.completion_percentage
                    result.completion_percentage = cmd.completion_percentage
                    log.info(
                        "session %s advancing to phase %d (%d%% complete)",
                        session.id,
                        next_phase,
                        cmd.completion_percentage,
                    )
                    await self.registry.broadcast(
                        {
                            "type": T_PHASE_CHANGE,
                            "phase": next_phase,
                            "completionPercentage": cmd.completion_percentage,
                        }
                    )
                    await self._sleep(self.settings.phase_settle_s)
                    should_continue = True
                    phase_changed = True
                else:
                    log.info(
                        "session %s ignoring phase advance to %d (current phase %d)",
                        session.id,
                        next_phase,
                        session.current_phase,
                    )
                continue

            if isinstance(cmd, Continue):
                # Phase only moves through AdvancePhase; a differing currentPhase is noted, not applied.
                if cmd.current_phase is not None and cmd.current_phase != session.current_phase:
                    log.debug(
                        "session %s: continue reports phase %s, staying in phase %d",
                        session.id,
                        cmd.current_phase,
                        session.current_phase,
                    )
                session.completion_percentage = cmd.completion_percentage
                result.completion_percentage = cmd.completion_percentage
                await self.registry.broadcast(
                    {
                        "type": T_COMPLETION_UPDATE,
                        "percentage": cmd.completion_percentage,
                        "phase": session.current_phase,
                    }
                )
                should_continue = not self._is_terminal(cmd.completion_percentage)
                continue

            if isinstance(cmd, Pause):
                cmd = Pause(duration_ms=min(cmd.duration_ms, self.settings.pause_max_ms))
            await self.registry.broadcast(self._operation(cmd))
            if isinstance(cmd, Draw):
                result.draws += 1
            await self._sleep(self.settings.command_delay_s)

            if isinstance(cmd, Pause):
                # Receivers capture a fresh snapshot during this wait.
                await self._sleep(cmd.duration_ms / 1000.0)
                if should_continue and not self._is_terminal(session.completion_percentage):
                    if phase_changed:
                        log.info("session %s starting phase %d", session.id, session.current_phase)
                        phase_changed = False
                    await self.trigger_continue(session)
                    result.continued = True
                    should_continue = False

        result.should_continue = should_continue
        result.complete = self._is_terminal(session.completion_percentage)
        return result

    def _operation(self, cmd: Command) -> dict:
        if isinstance(cmd, Draw):
            action = validate_draw_command(cmd.params)
            return {"type": T_DRAW_ACTION, "action": action.model_dump()}
        if isinstance(cmd, ToolChange):
            return {"type": T_CHANGE_TOOL, "tool": sanitize_tool(cmd.tool)}
        if isinstance(cmd, ColorChange):
            return {"type": T_CHANGE_COLOR, "color": sanitize_color(cmd.color)}
        if isinstance(cmd, WidthChange):
            return {"type": T_CHANGE_LINE_WIDTH, "width": sanitize_line_width(cmd.width)}
        if isinstance(cmd, Clear):
            return {"type": T_CLEAR_CANVAS}
        if isinstance(cmd, Pause):
            return {"type": T_PAUSE, "duration": cmd.duration_ms}
        raise TypeError(f"not a broadcastable command: {cmd!r}")

    async def trigger_continue(self, session: Session) -> None:
        if session.streaming_active:
            # The streaming coordinator paces itself off incoming snapshots.
            return
        log.info("session %s: auto-continuing in phase %d", session.id, session.current_phase)
        await self.registry.send(session, {"type": T_TRIGGER_CONTINUE, "phase": session.current_phase})
