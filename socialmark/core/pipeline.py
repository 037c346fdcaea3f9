"""
Composition Pipeline
====================
Synchronous tile -> blend -> encode for one (SourceImage, WatermarkSpec) pair.

``compose`` is a pure function of its inputs: the same source, spec and
configuration always produce byte-identical output.
"""

from typing import Optional, Union

import numpy as np

from .config import CompositorConfig, WatermarkStyle
from .encoder import encode
from .models import CompositedImage, ImageFormat, SourceImage, WatermarkSpec
from .tiles import compute_tiles, stride_factor_for_text
from .visible import VisibleWatermarker


def watermarker_for(style: WatermarkStyle) -> VisibleWatermarker:
    return VisibleWatermarker(font_path=style.font_path, color=style.color)


def apply_watermark(
        source: SourceImage,
        spec: WatermarkSpec,
        style: WatermarkStyle,
        watermarker: Optional[VisibleWatermarker] = None
) -> np.ndarray:
    """
    Produce the watermarked pixel buffer for ``source``.

    A disabled spec returns an untouched copy of the source pixels.
    """
    if not spec.enabled:
        return source.pixels.copy()

    watermarker = watermarker or watermarker_for(style)
    text = spec.text.strip()
    font_size = style.font_size_for(source.width, source.height)

    placements = []
    if text:
        text_width, _ = watermarker.measure_text(text, font_size)
        placements = compute_tiles(
            source.width,
            source.height,
            text,
            font_size,
            stride_factor_for_text(text_width, font_size, style.stride_ratio),
            angle=style.angle,
        )

    return watermarker.blend(source, placements, text, spec.opacity, font_size=font_size)


def encode_result(
        pixels: np.ndarray,
        source: SourceImage,
        spec: WatermarkSpec,
        fmt: ImageFormat,
        jpeg_quality: int = 95
) -> CompositedImage:
    data = encode(pixels, source.width, source.height, fmt, jpeg_quality=jpeg_quality)
    return CompositedImage(
        encoding=fmt,
        data=data,
        source_id=source.source_id,
        spec_fingerprint=spec.fingerprint,
        width=source.width,
        height=source.height,
    )


def compose(
        source: SourceImage,
        spec: WatermarkSpec,
        fmt: Optional[Union[ImageFormat, str]] = None,
        config: Optional[CompositorConfig] = None,
        watermarker: Optional[VisibleWatermarker] = None
) -> CompositedImage:
    """
    Watermark and encode ``source`` in one call.

    Args:
        source: Decoded source image.
        spec: Watermark text, opacity and on/off switch.
        fmt: Output format; defaults to ``config.output_format``.
        config: Compositor settings; defaults to ``CompositorConfig()``.
        watermarker: Optional shared watermarker (reuses its font cache).

    Raises:
        BlendError: If the source has zero area and the watermark is enabled.
        EncodeError: If the format is unsupported.
    """
    config = config or CompositorConfig()
    fmt = ImageFormat.from_value(fmt if fmt is not None else config.output_format)
    pixels = apply_watermark(source, spec, config.style, watermarker)
    return encode_result(pixels, source, spec, fmt, config.jpeg_quality)
