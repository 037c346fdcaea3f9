"""
Visible Watermark Blender
=========================
Rasterizes the watermark text at every placement and blends it onto a copy
of the source pixels.

Technical Notes:
- The text is rendered once per rotation into a coverage mask; rotation uses
  an expanded canvas to prevent glyph clipping
- Overlapping placements accumulate with source-over in float, so repeated
  stamps never build up 8-bit rounding bias
- The final composite is done in normalized float per channel and rounded
  to the nearest 8-bit value on store
- The source buffer is never written; output alpha equals the source alpha
"""

import math
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .errors import BlendError, BlendErrorKind
from .models import Placement, SourceImage

_FALLBACK_FONTS = (
    "msyh.ttc",  # Windows
    "/System/Library/Fonts/PingFang.ttc",  # macOS
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",  # Linux
    "DejaVuSans.ttf",
)

MAX_MASK_CACHE_SIZE = 32
MAX_FONT_CACHE_SIZE = 50


class VisibleWatermarker:
    """
    Draws tiled, rotated watermark text onto RGBA pixel buffers.

    Fonts and rendered glyph masks are cached per instance, so one
    watermarker can serve many composition runs.
    """

    def __init__(self, font_path: Optional[str] = None, color: Tuple[int, int, int] = (128, 128, 128)):
        """
        Args:
            font_path: Optional path to a TTF/OTF font. If None, a system
                       font is tried before Pillow's bundled default.
            color: RGB colour of the watermark text.
        """
        self._font_path = font_path
        self._color = tuple(color)
        self._cached_fonts: Dict[int, ImageFont.FreeTypeFont] = {}
        self._cached_masks: Dict[Tuple[str, int, float], np.ndarray] = {}
        # Serializes FreeType access across concurrent runs
        self._render_lock = threading.RLock()

    def _get_font(self, size: int) -> ImageFont.FreeTypeFont:
        """Get or create a cached font object for the given pixel size."""
        if size not in self._cached_fonts:
            font = None
            if self._font_path and Path(self._font_path).exists():
                font = ImageFont.truetype(self._font_path, size)
            else:
                for candidate in _FALLBACK_FONTS:
                    try:
                        font = ImageFont.truetype(candidate, size)
                        break
                    except OSError:
                        continue
            if font is None:
                font = ImageFont.load_default(size=size)
            if len(self._cached_fonts) >= MAX_FONT_CACHE_SIZE:
                del self._cached_fonts[next(iter(self._cached_fonts))]
            self._cached_fonts[size] = font

        return self._cached_fonts[size]

    def measure_text(self, text: str, font_size: int) -> Tuple[int, int]:
        """Return the (width, height) of the unrotated text in pixels."""
        with self._render_lock:
            font = self._get_font(font_size)
            draw = ImageDraw.Draw(Image.new("L", (1, 1), 0))
            left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
        return right - left, bottom - top

    def _glyph_mask(self, text: str, font_size: int, angle: float) -> np.ndarray:
        """
        Render the text into a rotated float coverage mask in [0, 1].

        The canvas is the text diagonal plus 10% padding so the rotated
        glyphs always fit.
        """
        key = (text, font_size, angle)
        with self._render_lock:
            if key not in self._cached_masks:
                if len(self._cached_masks) >= MAX_MASK_CACHE_SIZE:
                    oldest_key = next(iter(self._cached_masks))
                    del self._cached_masks[oldest_key]
                self._cached_masks[key] = self._render_mask(text, font_size, angle)
            return self._cached_masks[key]

    def _render_mask(self, text: str, font_size: int, angle: float) -> np.ndarray:
        font = self._get_font(font_size)
        draw = ImageDraw.Draw(Image.new("L", (1, 1), 0))
        left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
        text_width = right - left
        text_height = bottom - top

        diagonal = int(math.sqrt(text_width ** 2 + text_height ** 2))
        canvas_size = max(1, diagonal + int(diagonal * 0.1))

        tile = Image.new("L", (canvas_size, canvas_size), 0)
        draw = ImageDraw.Draw(tile)
        x = (canvas_size - text_width) // 2 - left
        y = (canvas_size - text_height) // 2 - top
        draw.text((x, y), text, font=font, fill=255)

        if angle != 0:
            tile = tile.rotate(angle, expand=True, resample=Image.Resampling.BICUBIC)

        mask = np.asarray(tile, dtype=np.float64) / 255.0
        mask.setflags(write=False)
        return mask

    def render_overlay_alpha(
            self,
            width: int,
            height: int,
            placements: Iterable[Placement],
            text: str,
            opacity: float,
            font_size: int
    ) -> np.ndarray:
        """
        Stamp the text at every placement into a float alpha overlay.

        Returns:
            (height, width) float64 array of overlay alpha in [0, 1].
        """
        alpha = np.zeros((height, width), dtype=np.float64)

        for placement in placements:
            mask = self._glyph_mask(text, font_size, placement.rotation_degrees)
            mask_h, mask_w = mask.shape
            left = int(round(placement.x - mask_w / 2.0))
            top = int(round(placement.y - mask_h / 2.0))

            x0, y0 = max(left, 0), max(top, 0)
            x1, y1 = min(left + mask_w, width), min(top + mask_h, height)
            if x0 >= x1 or y0 >= y1:
                continue

            coverage = mask[y0 - top:y1 - top, x0 - left:x1 - left] * opacity
            region = alpha[y0:y1, x0:x1]
            # Source-over between overlapping stamps
            alpha[y0:y1, x0:x1] = coverage + region * (1.0 - coverage)

        return alpha

    def blend(
            self,
            base: SourceImage,
            placements: Iterable[Placement],
            text: str,
            opacity: float,
            font_size: int = 40
    ) -> np.ndarray:
        """
        Composite the tiled watermark onto a copy of ``base``.

        Args:
            base: Decoded source image (assumed fully opaque).
            placements: Where to draw the text.
            text: Watermark text content.
            opacity: Overlay opacity; clamped to [0, 1].
            font_size: Font size in pixels.

        Returns:
            New (H, W, 4) uint8 RGBA array with the same size as ``base``.

        Raises:
            BlendError: If the base image has zero area.
        """
        if base.width <= 0 or base.height <= 0:
            raise BlendError(
                BlendErrorKind.INVALID_DIMENSIONS,
                f"Cannot watermark a {base.width}x{base.height} image"
            )

        opacity = float(opacity)
        opacity = 0.0 if math.isnan(opacity) else max(0.0, min(1.0, opacity))
        output = base.pixels.copy()

        placements = list(placements)
        if opacity == 0.0 or not placements or not text or not text.strip():
            return output

        alpha = self.render_overlay_alpha(
            base.width, base.height, placements, text.strip(), opacity, font_size
        )[..., np.newaxis]

        color = np.array(self._color, dtype=np.float64) / 255.0
        base_rgb = base.pixels[..., :3].astype(np.float64) / 255.0
        blended = color * alpha + base_rgb * (1.0 - alpha)

        output[..., :3] = np.clip(np.rint(blended * 255.0), 0, 255).astype(np.uint8)
        return output
