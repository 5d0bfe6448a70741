"""Inbound message parsing and planner command coercion."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from canvas_relay.protocol.commands import (
    AdvancePhase,
    Clear,
    ColorChange,
    Continue,
    Draw,
    Pause,
    ToolChange,
    WidthChange,
    as_int,
    coerce_command,
    coerce_commands,
    has_draw,
)
from canvas_relay.protocol.messages import (
    AIPrompt,
    Analysis,
    CanvasUpdate,
    ToggleStreamingMode,
    parse_inbound,
)


class TestParseInbound:
    def test_canvas_update(self):
        msg = parse_inbound('{"type": "CANVAS_UPDATE", "canvasData": "data:image/png;base64,AAAA"}')
        assert isinstance(msg, CanvasUpdate)
        assert msg.hasGridOverlay is False

    def test_prompt_with_streaming_flag(self):
        msg = parse_inbound('{"type": "AI_PROMPT", "prompt": "a tree", "streamingMode": true}')
        assert isinstance(msg, AIPrompt)
        assert msg.streamingMode is True

    def test_toggle_streaming_optional_fields(self):
        msg = parse_inbound('{"type": "TOGGLE_STREAMING_MODE", "enabled": false}')
        assert isinstance(msg, ToggleStreamingMode)
        assert msg.interval is None and msg.batchSize is None

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[]",
            '{"prompt": "no type"}',
            '{"type": "LASER_BEAM"}',
            '{"type": "AI_PROMPT", "prompt": ""}',
            '{"type": "CANVAS_UPDATE"}',
        ],
    )
    def test_malformed_frames_raise(self, raw):
        with pytest.raises(ValidationError):
            parse_inbound(raw)


class TestAnalysis:
    def test_accepts_legacy_analysis_key(self):
        a = Analysis.model_validate({"analysis": "two trees", "completionPercentage": 40})
        assert a.description == "two trees"
        assert a.completion == 40

    def test_completion_bounds(self):
        with pytest.raises(ValidationError):
            Analysis.model_validate({"description": "x", "completionPercentage": 101})


class TestCoerceCommand:
    def test_endpoint_prefix_is_optional(self):
        assert coerce_command({"endpoint": "/api/clear"}) == Clear()
        assert coerce_command({"endpoint": "clear"}) == Clear()

    def test_draw_keeps_raw_params(self):
        cmd = coerce_command({"endpoint": "/api/draw", "params": {"tool": "laser", "x": -5}})
        assert isinstance(cmd, Draw)
        assert cmd.params == {"tool": "laser", "x": -5}

    def test_simple_state_changes(self):
        assert coerce_command({"endpoint": "/api/tool", "params": {"tool": "fill"}}) == ToolChange(tool="fill")
        assert coerce_command({"endpoint": "/api/color", "params": {"color": "#fff"}}) == ColorChange(color="#fff")
        assert coerce_command({"endpoint": "/api/linewidth", "params": {"width": 4}}) == WidthChange(width=4)
        assert coerce_command({"endpoint": "/api/linewidth", "params": {"lineWidth": 6}}) == WidthChange(width=6)

    def test_pause_duration_default_and_bounds(self):
        assert coerce_command({"endpoint": "/api/pause"}) == Pause(duration_ms=1000)
        assert coerce_command({"endpoint": "/api/pause", "params": {"duration": 60000}}) == Pause(duration_ms=10000)
        assert coerce_command({"endpoint": "/api/pause", "params": {"duration": -5}}) == Pause(duration_ms=0)

    def test_continue(self):
        cmd = coerce_command({"endpoint": "/api/continue", "params": {"completionPercentage": 130, "currentPhase": 2}})
        assert cmd == Continue(completion_percentage=100, current_phase=2)

    @pytest.mark.parametrize("endpoint", ["/api/next_phase", "nextphase", "/api/advance_phase"])
    def test_next_phase_aliases(self, endpoint):
        cmd = coerce_command({"endpoint": endpoint, "params": {"completedPhase": 1, "completionPercentage": 30}})
        assert cmd == AdvancePhase(completed_phase=1, completion_percentage=30)

    @pytest.mark.parametrize("raw", [None, "draw", {"params": {}}, {"endpoint": "/api/explode"}, {"endpoint": 3}])
    def test_unrecognised_input(self, raw):
        assert coerce_command(raw) is None

    def test_coerce_commands_skips_junk(self):
        cmds = coerce_commands([{"endpoint": "/api/clear"}, "junk", {"endpoint": "/api/nope"}, {"endpoint": "draw"}])
        assert [type(c) for c in cmds] == [Clear, Draw]
        assert has_draw(cmds)
        assert coerce_commands({"commands": []}) == []


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (3, 3),
        (2.5, 3),
        (-2.5, -2),
        (2.6, 3),
        ("7", 7),
        (" 4.5 ", 5),
        (10**400, 10**400),
        ("1" * 400, int("1" * 400)),
        ("1e400", None),
        (True, None),
        ("x", None),
        (float("inf"), None),
        (None, None),
    ],
)
def test_as_int(value, expected):
    assert as_int(value) == expected
