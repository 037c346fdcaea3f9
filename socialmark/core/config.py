"""
Compositor Configuration
========================
Dataclass settings for the watermark look and the output encoding.

All values have working defaults; out-of-range values are clamped
rather than rejected.
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .models import ImageFormat


@dataclass
class WatermarkStyle:
    """
    How the watermark text is drawn.

    The font size follows the image diagonal so the same style reads
    similarly on a 1K square post and a 2K story.
    """
    font_path: Optional[str] = None
    font_scale: float = 0.03  # Fraction of the image diagonal
    min_font_size: int = 20
    max_font_size: int = 500
    stride_ratio: float = 1.8  # Tile stride as a multiple of the text width
    angle: float = -30.0
    color: Tuple[int, int, int] = (128, 128, 128)

    def __post_init__(self):
        self.font_scale = max(0.001, min(1.0, self.font_scale))
        self.min_font_size = max(1, self.min_font_size)
        self.max_font_size = max(self.min_font_size, self.max_font_size)
        self.stride_ratio = max(1.0, min(10.0, self.stride_ratio))
        self.color = tuple(max(0, min(255, int(c))) for c in self.color)

    def font_size_for(self, width: int, height: int) -> int:
        diagonal = math.sqrt(width ** 2 + height ** 2)
        size = int(diagonal * self.font_scale)
        return max(self.min_font_size, min(self.max_font_size, size))


@dataclass
class CompositorConfig:
    style: WatermarkStyle = field(default_factory=WatermarkStyle)
    output_format: ImageFormat = ImageFormat.PNG
    jpeg_quality: int = 95
    fetch_timeout: float = 30.0

    def __post_init__(self):
        self.output_format = ImageFormat.from_value(self.output_format)
        self.jpeg_quality = max(1, min(95, int(self.jpeg_quality)))
        self.fetch_timeout = max(0.1, float(self.fetch_timeout))
