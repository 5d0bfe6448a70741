"""Prompt text for the drawing planner."""

from __future__ import annotations

from dataclasses import dataclass

from canvas_relay.protocol.constants import CANVAS_HEIGHT, CANVAS_WIDTH


@dataclass(frozen=True)
class PhaseGuide:
    name: str
    restrictions: str
    # completion at which the planner should ask to move on
    advance_at: int


PHASES: dict[int, PhaseGuide] = {
    1: PhaseGuide(
        name="STRUCTURE & OUTLINE",
        restrictions=(
            "Use only pencil, brush, rectangle and circle. Thin lines (width 1-3), "
            "mostly black, blocking out the composition."
        ),
        advance_at=25,
    ),
    2: PhaseGuide(
        name="COLORING & FILLING",
        restrictions=(
            "Use only fill and rectangle to lay down base colors inside the shapes from "
            "phase 1, background first."
        ),
        advance_at=65,
    ),
    3: PhaseGuide(
        name="DETAILS & REFINEMENT",
        restrictions="Any tool, spray included: highlights, shadows, texture, final touches.",
        advance_at=95,
    ),
}

UNKNOWN_PHASE = PhaseGuide(name="UNKNOWN PHASE", restrictions="No specific restrictions.", advance_at=95)


def phase_guide(phase: int) -> PhaseGuide:
    return PHASES.get(phase, UNKNOWN_PHASE)


SYSTEM_PROMPT = f"""You control a shared {CANVAS_WIDTH}x{CANVAS_HEIGHT} pixel drawing canvas.
Answer with a JSON array of commands only (no prose, no markdown).

Work in three phases:
1. STRUCTURE & OUTLINE (0-30%): pencil/brush/rectangle/circle, thin black lines.
2. COLORING & FILLING (31-70%): fill/rectangle, base colors, background to foreground.
3. DETAILS & REFINEMENT (71-100%): any tool, texture, highlights, shadows.

Commands:
{{"endpoint": "/api/draw", "params": {{"tool": "pencil|brush|rectangle|circle|fill|spray|eraser",
  "color": "#RRGGBB", "lineWidth": 1-50, "startX": 0-{CANVAS_WIDTH}, "startY": 0-{CANVAS_HEIGHT},
  "x": 0-{CANVAS_WIDTH}, "y": 0-{CANVAS_HEIGHT}}}}}
{{"endpoint": "/api/tool", "params": {{"tool": "..."}}}}
{{"endpoint": "/api/color", "params": {{"color": "#RRGGBB"}}}}
{{"endpoint": "/api/linewidth", "params": {{"width": 1-50}}}}
{{"endpoint": "/api/clear"}}
{{"endpoint": "/api/pause", "params": {{"duration": 1000}}}}
{{"endpoint": "/api/continue", "params": {{"completionPercentage": 0-100, "currentPhase": 1-3}}}}
{{"endpoint": "/api/next_phase", "params": {{"completedPhase": 1-2, "completionPercentage": 0-100}}}}

Tools: rectangle spans startX,startY to x,y; circle is centered on startX,startY with
radius to x,y; fill floods from startX,startY; spray scatters around x,y.

Rules: respect the current phase's tools, pause every 5-10 drawing commands, end every
batch with a pause followed by continue (or next_phase once the phase is done).
"""

ANALYSIS_PROMPT = """Look at this canvas and assess it.
Reply as JSON only:
{"description": "what is on the canvas",
 "suggestions": ["element to add or improve", ...],
 "completionPercentage": 0-100}
"""


def analysis_prompt(original_prompt: str | None, previous_json: str | None) -> list[str]:
    parts = [ANALYSIS_PROMPT]
    if original_prompt:
        parts.append(f"The drawing is meant to show: {original_prompt}")
    if previous_json:
        parts.append(f"Previous analysis: {previous_json}")
    return parts


def continuation_prompt(
    original_prompt: str, phase: int, description: str, completion: int, suggestions: list[str]
) -> str:
    guide = phase_guide(phase)
    focus = ", ".join(suggestions) if suggestions else "more details"
    lines = [
        f"Continue drawing {original_prompt or 'the current image'}.",
        f"CURRENT PHASE: {phase} - {guide.name}",
        f"Canvas now: {description} ({completion}% complete)",
        f"PHASE RESTRICTIONS: {guide.restrictions}",
        f"Focus on: {focus}",
        f"Respond with additional drawing commands for phase {phase}.",
    ]
    if phase < 3 and completion >= guide.advance_at:
        lines.append("This phase looks done: use next_phase to advance.")
    return "\n".join(lines)


def streaming_prompt(
    original_prompt: str, phase: int, description: str, completion: int, suggestions: list[str], batch_size: int
) -> str:
    return (
        continuation_prompt(original_prompt, phase, description, completion, suggestions)
        + f"\nStreaming mode: return at most {batch_size} draw commands and no pause."
        + " The canvas is re-captured after every small batch."
    )
