from __future__ import annotations

import math
from typing import Any, Literal, Optional, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, Field

# Planner wire format (one element of the JSON array the model returns):
#   {"endpoint": "/api/draw", "params": {...}}
# The "/api/" prefix is optional. Draw params stay raw here; the executor
# runs them through the validator right before broadcast.

DEFAULT_PAUSE_MS = 1000
MAX_PAUSE_MS = 10_000


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True)


class Draw(_Command):
    kind: Literal["draw"] = "draw"
    params: dict[str, Any] = Field(default_factory=dict)


class ToolChange(_Command):
    kind: Literal["tool"] = "tool"
    tool: Any = None


class ColorChange(_Command):
    kind: Literal["color"] = "color"
    color: Any = None


class WidthChange(_Command):
    kind: Literal["linewidth"] = "linewidth"
    width: Any = None


class Clear(_Command):
    kind: Literal["clear"] = "clear"


class Pause(_Command):
    kind: Literal["pause"] = "pause"
    duration_ms: int = DEFAULT_PAUSE_MS


class Continue(_Command):
    kind: Literal["continue"] = "continue"
    completion_percentage: int = 0
    current_phase: Optional[int] = None


class AdvancePhase(_Command):
    kind: Literal["next_phase"] = "next_phase"
    completed_phase: Optional[int] = None
    completion_percentage: int = 0


Command: TypeAlias = Union[
    Draw, ToolChange, ColorChange, WidthChange, Clear, Pause, Continue, AdvancePhase
]
ControlCommand: TypeAlias = Union[
    ToolChange, ColorChange, WidthChange, Clear, Pause, Continue, AdvancePhase
]

_COMMAND_TYPES = (Draw, ToolChange, ColorChange, WidthChange, Clear, Pause, Continue, AdvancePhase)


def as_int(value: Any) -> int | None:
    """
    Coerce a planner/client number to an int, or None if it is not one.

    Ints pass through at any size (callers clamp); floats round half up like
    the browser clients do.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        f = value
    elif isinstance(value, str):
        s = value.strip()
        try:
            return int(s)
        except ValueError:
            pass
        try:
            f = float(s)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(f):
        return None
    return math.floor(f + 0.5)


def _percentage(value: Any) -> int:
    v = as_int(value)
    if v is None:
        return 0
    return max(0, min(100, v))


def coerce_command(raw: Any) -> Command | None:
    """
    Turn one raw planner element into a typed command.

    Returns None for anything that is not recognisable as a command (unknown
    endpoint, not an object). Never raises.
    """
    if isinstance(raw, BaseModel):
        return raw if isinstance(raw, _COMMAND_TYPES) else None
    if not isinstance(raw, dict):
        return None
    endpoint = raw.get("endpoint")
    if not isinstance(endpoint, str):
        return None
    name = endpoint.strip().lower()
    if name.startswith("/api/"):
        name = name[len("/api/"):]
    params = raw.get("params")
    if not isinstance(params, dict):
        params = {}

    if name == "draw":
        return Draw(params=params)
    if name == "tool":
        return ToolChange(tool=params.get("tool"))
    if name == "color":
        return ColorChange(color=params.get("color"))
    if name == "linewidth":
        return WidthChange(width=params.get("width", params.get("lineWidth")))
    if name == "clear":
        return Clear()
    if name == "pause":
        duration = as_int(params.get("duration"))
        if duration is None:
            duration = DEFAULT_PAUSE_MS
        return Pause(duration_ms=max(0, min(MAX_PAUSE_MS, duration)))
    if name == "continue":
        return Continue(
            completion_percentage=_percentage(params.get("completionPercentage")),
            current_phase=as_int(params.get("currentPhase")),
        )
    if name in ("next_phase", "nextphase", "advance_phase"):
        return AdvancePhase(
            completed_phase=as_int(params.get("completedPhase")),
            completion_percentage=_percentage(params.get("completionPercentage")),
        )
    return None


def coerce_commands(raw_items: Any) -> list[Command]:
    if not isinstance(raw_items, list):
        return []
    out: list[Command] = []
    for item in raw_items:
        cmd = coerce_command(item)
        if cmd is not None:
            out.append(cmd)
    return out


def has_draw(commands: list[Command]) -> bool:
    return any(isinstance(c, Draw) for c in commands)
