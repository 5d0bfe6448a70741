from __future__ import annotations

import base64
import binascii
import io
import re

from PIL import Image, ImageDraw, UnidentifiedImageError

_DATA_URL = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


def strip_data_url(data: str) -> str:
    """Drop a `data:image/...;base64,` prefix if present."""
    return _DATA_URL.sub("", data.strip(), count=1)


def decode_snapshot(data: str) -> Image.Image:
    """Decode a client snapshot (data URL or bare base64) into an RGB image; raises ValueError."""
    try:
        raw = base64.b64decode(strip_data_url(data), validate=False)
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (binascii.Error, UnidentifiedImageError, OSError) as e:
        raise ValueError(f"snapshot is not a decodable image: {e}") from e
    if img.mode in ("RGBA", "LA", "P"):
        # transparent canvas areas are white paper
        rgba = img.convert("RGBA")
        bg = Image.new("RGB", rgba.size, (255, 255, 255))
        bg.paste(rgba, mask=rgba.getchannel("A"))
        return bg
    return img.convert("RGB")


def draw_grid_overlay(img: Image.Image, *, grid_size: int) -> Image.Image:
    """
    Draw a faint labelled coordinate grid so the planner can read pixel positions.

    - **grid_size**: spacing in canvas pixels; labels are skipped on the 0 lines
    """
    out = img.convert("RGBA")
    layer = Image.new("RGBA", out.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    w, h = out.size
    step = max(1, grid_size)
    line_col = (200, 200, 200, 70)
    label_col = (50, 50, 200, 140)

    for x in range(0, w + 1, step):
        draw.line([(x, 0), (x, h)], fill=line_col, width=1)
        if x > 0:
            draw.text((max(0, x - 10), 1), str(x), fill=label_col)
    for y in range(0, h + 1, step):
        draw.line([(0, y), (w, y)], fill=line_col, width=1)
        if y > 0:
            draw.text((2, max(0, y - 5)), str(y), fill=label_col)

    return Image.alpha_composite(out, layer).convert("RGB")


def prepare_snapshot_png_b64(
    data: str,
    *,
    grid: bool,
    grid_size: int = 50,
    max_px: int = 800,
) -> str:
    """
    Turn a client snapshot into the PNG (base64, no data-url prefix) handed to the planner.

    - **grid**: overlay the coordinate grid (skip when the client already drew one)
    - **max_px**: longest side after downscaling; the grid is drawn first so labels
      keep canvas coordinates
    """
    img = decode_snapshot(data)
    if grid:
        img = draw_grid_overlay(img, grid_size=grid_size)
    if max(img.size) > max_px:
        img.thumbnail((max_px, max_px))

    bio = io.BytesIO()
    img.save(bio, format="PNG", optimize=True)
    return base64.b64encode(bio.getvalue()).decode("ascii")
