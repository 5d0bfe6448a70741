from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, TypeAlias, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

from .constants import CANVAS_HEIGHT, CANVAS_WIDTH, MAX_LINE_WIDTH, MIN_LINE_WIDTH

# Canvas coordinates are integer pixels:
# - x in [0, CANVAS_WIDTH], y in [0, CANVAS_HEIGHT]
# - (startX, startY) is the anchor, (x, y) the end point / radius point
Tool: TypeAlias = Literal["pencil", "brush", "rectangle", "circle", "fill", "spray", "eraser"]


class DrawCommand(BaseModel):
    """A fully-populated drawing operation, safe to hand to any renderer."""

    model_config = ConfigDict(frozen=True)

    tool: Tool
    color: Annotated[str, Field(pattern=r"^#[0-9A-Fa-f]{6}$")]
    lineWidth: Annotated[int, Field(ge=MIN_LINE_WIDTH, le=MAX_LINE_WIDTH)]
    startX: Annotated[int, Field(ge=0, le=CANVAS_WIDTH)]
    startY: Annotated[int, Field(ge=0, le=CANVAS_HEIGHT)]
    x: Annotated[int, Field(ge=0, le=CANVAS_WIDTH)]
    y: Annotated[int, Field(ge=0, le=CANVAS_HEIGHT)]


class Analysis(BaseModel):
    """Planner's assessment of the current canvas."""

    # older planner prompts answer with "analysis" instead of "description"
    description: str = Field(default="", validation_alias=AliasChoices("description", "analysis"))
    suggestions: list[str] = Field(default_factory=list)
    completionPercentage: Annotated[int, Field(ge=0, le=100)] = 0

    @property
    def completion(self) -> int:
        return self.completionPercentage


# Inbound (client -> server)


class CanvasUpdate(BaseModel):
    type: Literal["CANVAS_UPDATE"]
    canvasData: str
    hasGridOverlay: bool = False


class DrawAction(BaseModel):
    type: Literal["DRAW_ACTION"]
    action: dict[str, Any]


class AIPrompt(BaseModel):
    type: Literal["AI_PROMPT"]
    prompt: Annotated[str, Field(min_length=1)]
    streamingMode: Optional[bool] = None


class ContinueDrawing(BaseModel):
    type: Literal["CONTINUE_DRAWING"]


class ToggleStreamingMode(BaseModel):
    type: Literal["TOGGLE_STREAMING_MODE"]
    enabled: bool
    interval: Optional[float] = None
    batchSize: Optional[float] = None


InboundMsg: TypeAlias = Annotated[
    Union[CanvasUpdate, DrawAction, AIPrompt, ContinueDrawing, ToggleStreamingMode],
    Field(discriminator="type"),
]

INBOUND_ADAPTER: TypeAdapter[InboundMsg] = TypeAdapter(InboundMsg)


def parse_inbound(raw: str | bytes) -> InboundMsg:
    """Decode one client frame; raises pydantic.ValidationError on anything malformed."""
    return INBOUND_ADAPTER.validate_json(raw)
