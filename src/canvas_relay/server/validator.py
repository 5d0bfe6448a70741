from __future__ import annotations

import re
from typing import Any, Mapping

from canvas_relay.protocol.commands import as_int
from canvas_relay.protocol.constants import (
    CANVAS_HEIGHT,
    CANVAS_WIDTH,
    DEFAULT_COLOR,
    DEFAULT_LINE_WIDTH,
    DEFAULT_TOOL,
    MAX_LINE_WIDTH,
    MIN_LINE_WIDTH,
    TOOLS,
)
from canvas_relay.protocol.messages import DrawCommand

_HEX6 = re.compile(r"^#[0-9A-Fa-f]{6}$")
_HEX3 = re.compile(r"^#[0-9A-Fa-f]{3}$")

# Missing/non-numeric coordinates fall back to a spot near the middle of the canvas.
DEFAULT_START = (400, 300)
DEFAULT_END = (450, 350)


def _clamp(v: int, lo: int, hi: int) -> int:
    return lo if v < lo else hi if v > hi else v


def _coord(value: Any, default: int, hi: int) -> int:
    v = as_int(value)
    if v is None:
        v = default
    return _clamp(v, 0, hi)


def sanitize_tool(value: Any) -> str:
    if isinstance(value, str):
        name = value.strip().lower()
        if name in TOOLS:
            return name
    return DEFAULT_TOOL


def sanitize_color(value: Any) -> str:
    """`#RRGGBB` passes through, `#RGB` is expanded, anything else becomes black."""
    if not isinstance(value, str):
        return DEFAULT_COLOR
    s = value.strip()
    if _HEX6.match(s):
        return s
    if _HEX3.match(s):
        return "#" + "".join(ch * 2 for ch in s[1:])
    return DEFAULT_COLOR


def sanitize_line_width(value: Any) -> int:
    v = as_int(value)
    if v is None:
        return DEFAULT_LINE_WIDTH
    return _clamp(v, MIN_LINE_WIDTH, MAX_LINE_WIDTH)


def validate_draw_command(raw: Mapping[str, Any] | DrawCommand | Any) -> DrawCommand:
    """
    Repair a raw draw command into one that is safe to execute.

    Silent-repair policy: out-of-range values are clamped and unusable values
    replaced with defaults. Never raises; a non-mapping input yields the default
    command.
    """
    if isinstance(raw, DrawCommand):
        return raw
    if not isinstance(raw, Mapping):
        raw = {}
    return DrawCommand(
        tool=sanitize_tool(raw.get("tool")),
        color=sanitize_color(raw.get("color")),
        lineWidth=sanitize_line_width(raw.get("lineWidth")),
        startX=_coord(raw.get("startX"), DEFAULT_START[0], CANVAS_WIDTH),
        startY=_coord(raw.get("startY"), DEFAULT_START[1], CANVAS_HEIGHT),
        x=_coord(raw.get("x"), DEFAULT_END[0], CANVAS_WIDTH),
        y=_coord(raw.get("y"), DEFAULT_END[1], CANVAS_HEIGHT),
    )
