"""
Tile Pattern Generator
======================
Computes where copies of the watermark text are drawn.

Placements sit on a square grid with stride ``s = font_size_px * stride_factor``.
Each placement owns an ``s x s`` tile centred on it; every tile whose box
intersects the image is emitted, row-major, so the union of tiles always
covers the whole image.
"""

import math
from typing import List, Tuple

from .models import Placement

DEFAULT_ANGLE = -30.0
DEFAULT_STRIDE_RATIO = 1.8


def stride_factor_for_text(
        text_width_px: float,
        font_size_px: float,
        ratio: float = DEFAULT_STRIDE_RATIO
) -> float:
    """
    Stride factor that spaces tiles ``ratio`` text widths apart.

    Returns 0.0 for a non-positive font size, which yields no tiles.
    """
    if font_size_px <= 0:
        return 0.0
    return ratio * max(text_width_px, font_size_px) / font_size_px


def compute_tiles(
        width: int,
        height: int,
        text: str,
        font_size_px: float,
        stride_factor: float,
        angle: float = DEFAULT_ANGLE
) -> List[Placement]:
    """
    Enumerate watermark placements covering a ``width x height`` image.

    Args:
        width: Image width in pixels.
        height: Image height in pixels.
        text: Watermark text; empty text produces no placements.
        font_size_px: Font size the text is rendered at.
        stride_factor: Multiplier turning the font size into the grid stride.
        angle: Rotation applied to every placement, in degrees.

    Returns:
        Placements ordered row by row, left to right.
    """
    if width <= 0 or height <= 0 or not text or not text.strip():
        return []

    stride = font_size_px * stride_factor
    if not math.isfinite(stride) or stride <= 0:
        return []

    half = stride / 2.0
    placements = []
    row = 0
    while row * stride - half < height:
        y = row * stride
        col = 0
        while col * stride - half < width:
            placements.append(Placement(x=col * stride, y=y, rotation_degrees=angle))
            col += 1
        row += 1
    return placements


def tile_bounds(placement: Placement, stride: float) -> Tuple[float, float, float, float]:
    """Return the (left, top, right, bottom) box of the tile around a placement."""
    half = stride / 2.0
    return (
        placement.x - half,
        placement.y - half,
        placement.x + half,
        placement.y + half,
    )
