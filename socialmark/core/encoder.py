"""
Image Encoder
=============
Serializes composited RGBA pixels into PNG (lossless) or JPEG (lossy) bytes.

Both encodings are deterministic for a fixed buffer: no timestamps or
other metadata are written.
"""

import io
import logging
import time
from pathlib import Path
from typing import Optional, Union

import numpy as np
from PIL import Image

from .errors import EncodeError, EncodeErrorKind
from .models import CompositedImage, ImageFormat

logger = logging.getLogger(__name__)

DOWNLOAD_PREFIX = "social-post"


def encode(
        pixels: np.ndarray,
        width: int,
        height: int,
        fmt: Union[ImageFormat, str],
        jpeg_quality: int = 95
) -> bytes:
    """
    Encode an (H, W, 4) uint8 RGBA buffer.

    Args:
        pixels: RGBA pixel buffer.
        width: Expected buffer width.
        height: Expected buffer height.
        fmt: Target format (ImageFormat or a name like "png"/"jpg").
        jpeg_quality: JPEG quality, ignored for PNG.

    Raises:
        EncodeError: UNSUPPORTED_FORMAT for unknown formats, INVALID_BUFFER
                     if the buffer does not match the given dimensions.
    """
    fmt = ImageFormat.from_value(fmt)

    if pixels.dtype != np.uint8 or pixels.shape != (height, width, 4):
        raise EncodeError(
            EncodeErrorKind.INVALID_BUFFER,
            f"Expected a ({height}, {width}, 4) uint8 buffer, got {pixels.shape} {pixels.dtype}"
        )
    if width <= 0 or height <= 0:
        raise EncodeError(EncodeErrorKind.INVALID_BUFFER, f"Cannot encode a {width}x{height} image")

    image = Image.fromarray(np.ascontiguousarray(pixels))
    buffer = io.BytesIO()

    if fmt is ImageFormat.JPEG:
        # JPEG has no alpha: flatten onto white
        rgb = Image.new("RGB", image.size, (255, 255, 255))
        rgb.paste(image, mask=image.split()[3])
        rgb.save(buffer, format="JPEG", quality=jpeg_quality)
    else:
        image.save(buffer, format="PNG")

    return buffer.getvalue()


def download_filename(fmt: Union[ImageFormat, str], now: Optional[float] = None) -> str:
    """File name offered for a download, e.g. ``social-post-1700000000000.jpg``."""
    fmt = ImageFormat.from_value(fmt)
    millis = int((time.time() if now is None else now) * 1000)
    return f"{DOWNLOAD_PREFIX}-{millis}.{fmt.extension}"


def save_composited(result: CompositedImage, destination: Union[str, Path]) -> Path:
    """
    Write a composited image to disk.

    If ``destination`` is an existing directory, a download-style file name
    is generated inside it.
    """
    destination = Path(destination)
    if destination.is_dir():
        destination = destination / download_filename(result.encoding)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(result.data)
    logger.info("composited_image_saved", extra={"path": str(destination)})
    return destination
