"""
Core Module - Pure Compositing Logic
====================================
This module contains no UI or scheduling dependencies.
Decoding, tiling, blending and encoding are implemented here.
"""

from .config import CompositorConfig, WatermarkStyle
from .decoder import ImageDecoder, decode_bytes, reference_id
from .encoder import download_filename, encode, save_composited
from .errors import (
    BlendError, BlendErrorKind, CompositionError,
    DecodeError, DecodeErrorKind, EncodeError, EncodeErrorKind
)
from .models import CompositedImage, ImageFormat, Placement, SourceImage, WatermarkSpec
from .pipeline import apply_watermark, compose
from .tiles import compute_tiles, stride_factor_for_text, tile_bounds
from .visible import VisibleWatermarker

__all__ = [
    "CompositorConfig",
    "WatermarkStyle",
    "ImageDecoder",
    "decode_bytes",
    "reference_id",
    "encode",
    "download_filename",
    "save_composited",
    "CompositionError",
    "DecodeError",
    "DecodeErrorKind",
    "EncodeError",
    "EncodeErrorKind",
    "BlendError",
    "BlendErrorKind",
    "CompositedImage",
    "ImageFormat",
    "Placement",
    "SourceImage",
    "WatermarkSpec",
    "apply_watermark",
    "compose",
    "compute_tiles",
    "stride_factor_for_text",
    "tile_bounds",
    "VisibleWatermarker",
]
