"""Snapshot decoding and grid overlay (Pillow)."""

from __future__ import annotations

import base64
import io

import pytest
from PIL import Image

from canvas_relay.server.rendering import (
    decode_snapshot,
    draw_grid_overlay,
    prepare_snapshot_png_b64,
    strip_data_url,
)


def png_data_url(img: Image.Image) -> str:
    bio = io.BytesIO()
    img.save(bio, format="PNG")
    return "data:image/png;base64," + base64.b64encode(bio.getvalue()).decode("ascii")


def test_strip_data_url():
    assert strip_data_url("data:image/png;base64,QUJD") == "QUJD"
    assert strip_data_url("QUJD") == "QUJD"


def test_transparent_canvas_becomes_white():
    img = decode_snapshot(png_data_url(Image.new("RGBA", (40, 30), (0, 0, 0, 0))))
    assert img.mode == "RGB"
    assert img.size == (40, 30)
    assert img.getpixel((5, 5)) == (255, 255, 255)


def test_opaque_pixels_survive_flattening():
    src = Image.new("RGBA", (10, 10), (0, 0, 0, 0))
    src.putpixel((3, 3), (255, 0, 0, 255))
    img = decode_snapshot(png_data_url(src))
    assert img.getpixel((3, 3)) == (255, 0, 0)


@pytest.mark.parametrize("data", ["", "data:image/png;base64,bm90IGFuIGltYWdl", "%%%"])
def test_undecodable_snapshot_raises_value_error(data):
    with pytest.raises(ValueError):
        decode_snapshot(data)


def test_grid_lines_are_drawn_on_the_grid_spacing():
    white = Image.new("RGB", (120, 120), (255, 255, 255))
    gridded = draw_grid_overlay(white, grid_size=50)
    assert gridded.getpixel((50, 90)) != (255, 255, 255)
    assert gridded.getpixel((75, 90)) == (255, 255, 255)


def test_prepare_downscales_and_returns_bare_base64():
    data = png_data_url(Image.new("RGB", (800, 600), (255, 255, 255)))
    out = prepare_snapshot_png_b64(data, grid=True, grid_size=50, max_px=200)
    assert not out.startswith("data:")
    img = Image.open(io.BytesIO(base64.b64decode(out)))
    assert max(img.size) == 200
    assert img.format == "PNG"
