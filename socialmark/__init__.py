"""
SocialMark Watermark Package
============================
Tiled text watermark compositing for generated social media images.

Modules:
    - core: Pure compositing logic (decode, tile, blend, encode)
    - workers: asyncio orchestrator and QThread workers
    - logs: logging helpers with in-memory log retention

Usage:
    from socialmark.core import WatermarkSpec, compose, decode_bytes
    from socialmark.workers import CompositingOrchestrator
"""

__version__ = "1.0.0"
__app_name__ = "SocialMark"

from .core import (
    CompositedImage,
    CompositionError,
    CompositorConfig,
    ImageDecoder,
    ImageFormat,
    SourceImage,
    WatermarkSpec,
    WatermarkStyle,
    compose,
    decode_bytes,
)

__all__ = [
    "__version__",
    "__app_name__",
    "CompositedImage",
    "CompositionError",
    "CompositorConfig",
    "ImageDecoder",
    "ImageFormat",
    "SourceImage",
    "WatermarkSpec",
    "WatermarkStyle",
    "compose",
    "decode_bytes",
]
