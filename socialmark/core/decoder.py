"""
Image Decoder
=============
Turns an image reference into a read-only RGBA SourceImage.

Supported references:
- raw bytes
- ``data:`` URIs (base64 or percent-encoded)
- ``http://`` / ``https://`` URLs, fetched with httpx
- filesystem paths (str or Path)

Technical Notes:
- Remote bytes are fetched as plain bytes and decoded locally, so pixel
  access is never restricted by the origin of the image
- A server refusing access (401/403) fails fast with ACCESS_DENIED instead
  of producing a blank buffer
- EXIF orientation is applied before conversion to RGBA
"""

import base64
import binascii
import hashlib
import io
import logging
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote_to_bytes

import httpx
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DecodeError, DecodeErrorKind
from .models import SourceImage

logger = logging.getLogger(__name__)

ImageReference = Union[bytes, Path, str]


def reference_id(ref: ImageReference) -> str:
    """Stable identifier for a reference; equal references share an id."""
    if isinstance(ref, bytes):
        raw = ref
    else:
        raw = str(ref).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def _apply_exif_orientation(image: Image.Image) -> Image.Image:
    """Transpose pixels according to the EXIF orientation tag (all eight cases)."""
    try:
        return ImageOps.exif_transpose(image)
    except (AttributeError, KeyError, ValueError, TypeError, SyntaxError):
        return image


def decode_bytes(data: bytes, source_id: Optional[str] = None) -> SourceImage:
    """
    Decode an encoded image blob into a SourceImage.

    Args:
        data: Encoded image bytes (PNG, JPEG or any format Pillow reads).
        source_id: Identifier to attach; defaults to a digest of the bytes.

    Raises:
        DecodeError: UNREADABLE if the bytes are not a decodable image.
    """
    if not data:
        raise DecodeError(DecodeErrorKind.UNREADABLE, "Image data is empty")

    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            oriented = _apply_exif_orientation(image)
            rgba = oriented.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise DecodeError(DecodeErrorKind.UNREADABLE, f"Not a supported image: {exc}") from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(DecodeErrorKind.UNREADABLE, f"Corrupt image data: {exc}") from exc

    # np.array copies, so the SourceImage owns its buffer
    pixels = np.array(rgba, dtype=np.uint8)
    return SourceImage(source_id=source_id or reference_id(data), pixels=pixels)


def _parse_data_uri(uri: str) -> bytes:
    header, sep, payload = uri.partition(",")
    if not sep:
        raise DecodeError(DecodeErrorKind.FETCH_FAILED, "Malformed data URI: missing ','")

    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(
                DecodeErrorKind.FETCH_FAILED, f"Malformed base64 payload in data URI: {exc}"
            ) from exc
    return unquote_to_bytes(payload)


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as exc:
        raise DecodeError(DecodeErrorKind.FETCH_FAILED, f"Image not found: {path}") from exc
    except PermissionError as exc:
        raise DecodeError(DecodeErrorKind.ACCESS_DENIED, f"Permission denied: {path}") from exc
    except OSError as exc:
        raise DecodeError(DecodeErrorKind.FETCH_FAILED, f"Cannot read {path}: {exc}") from exc
    except ValueError as exc:
        # Embedded NUL bytes and similar malformed paths
        raise DecodeError(DecodeErrorKind.FETCH_FAILED, f"Invalid image path {path!r}: {exc}") from exc


class ImageDecoder:
    """
    Resolves references to bytes and decodes them.

    An ``httpx.AsyncClient`` may be injected; otherwise a short-lived client
    is opened per remote fetch.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._timeout = timeout

    async def fetch(self, ref: ImageReference) -> bytes:
        """
        Resolve a reference to its encoded bytes.

        Raises:
            DecodeError: FETCH_FAILED or ACCESS_DENIED.
        """
        if isinstance(ref, bytes):
            return ref
        if isinstance(ref, Path):
            return _read_file(ref)

        if ref.startswith("data:"):
            return _parse_data_uri(ref)
        if ref.startswith(("http://", "https://")):
            return await self._fetch_url(ref)
        return _read_file(Path(ref))

    async def decode(self, ref: ImageReference) -> SourceImage:
        data = await self.fetch(ref)
        source = decode_bytes(data, source_id=reference_id(ref))
        logger.debug(
            "image_decoded",
            extra={"source_id": source.source_id, "width": source.width, "height": source.height},
        )
        return source

    async def _fetch_url(self, url: str) -> bytes:
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                    response = await client.get(url)
        except httpx.HTTPError as exc:
            raise DecodeError(DecodeErrorKind.FETCH_FAILED, f"Request for {url} failed: {exc}") from exc
        except (httpx.InvalidURL, ValueError, UnicodeError) as exc:
            raise DecodeError(DecodeErrorKind.FETCH_FAILED, f"Invalid URL {url!r}: {exc}") from exc

        if response.status_code in (401, 403):
            raise DecodeError(
                DecodeErrorKind.ACCESS_DENIED,
                f"Server refused pixel access to {url} (HTTP {response.status_code})"
            )
        if not response.is_success:
            raise DecodeError(
                DecodeErrorKind.FETCH_FAILED,
                f"Fetching {url} returned HTTP {response.status_code}"
            )
        return response.content
