from .commands import (
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
    coerce_commands,
)
from .constants import (
    T_AI_PROMPT,
    T_CANVAS_UPDATE,
    T_CONTINUE_DRAWING,
    T_DRAW_ACTION,
    T_TOGGLE_STREAMING_MODE,
)
from .messages import Analysis, DrawCommand, InboundMsg, parse_inbound

__all__ = [
    "T_AI_PROMPT",
    "T_CANVAS_UPDATE",
    "T_CONTINUE_DRAWING",
    "T_DRAW_ACTION",
    "T_TOGGLE_STREAMING_MODE",
    "AdvancePhase",
    "Analysis",
    "Clear",
    "ColorChange",
    "Command",
    "Continue",
    "Draw",
    "DrawCommand",
    "InboundMsg",
    "Pause",
    "ToolChange",
    "WidthChange",
    "coerce_command",
    "coerce_commands",
    "parse_inbound",
]
