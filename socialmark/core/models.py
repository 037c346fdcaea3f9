"""
Compositing Data Model
======================
Value types flowing through decode -> tile -> blend -> encode.

Technical Notes:
- SourceImage pixels are an (H, W, 4) uint8 RGBA array flagged read-only,
  so concurrent runs may share one decoded source safely
- WatermarkSpec is compared structurally to decide whether a recomposition
  is needed
- CompositedImage is never mutated; a new instance supersedes the old one
"""

import base64
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

import numpy as np

from .errors import EncodeError, EncodeErrorKind


class ImageFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return "jpg" if self is ImageFormat.JPEG else "png"

    @classmethod
    def from_value(cls, value: Union["ImageFormat", str]) -> "ImageFormat":
        """
        Resolve a format from an enum member or a name such as "png" or "jpg".

        Raises:
            EncodeError: If the format is not supported.
        """
        if isinstance(value, ImageFormat):
            return value
        name = str(value).strip().lower().lstrip(".")
        if name == "jpg":
            name = "jpeg"
        for member in cls:
            if member.value == name:
                return member
        raise EncodeError(
            EncodeErrorKind.UNSUPPORTED_FORMAT,
            f"Unsupported output format: {value!r}"
        )


@dataclass(frozen=True, eq=False)
class SourceImage:
    """Decoded RGBA pixels of one generation result."""
    source_id: str
    pixels: np.ndarray

    def __post_init__(self):
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(f"Expected (H, W, 4) RGBA pixels, got shape {self.pixels.shape}")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {self.pixels.dtype}")
        self.pixels.setflags(write=False)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True)
class WatermarkSpec:
    """What to draw: text, overlay opacity in [0, 1] and the on/off switch."""
    text: str = "@SocialGenAI"
    opacity: float = 0.6
    enabled: bool = True

    @property
    def fingerprint(self) -> str:
        payload = f"{self.text}\x00{self.opacity!r}\x00{int(self.enabled)}"
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Placement:
    """Centre point and rotation of one drawn copy of the watermark text."""
    x: float
    y: float
    rotation_degrees: float


@dataclass(frozen=True)
class CompositedImage:
    encoding: ImageFormat
    data: bytes = field(repr=False)
    source_id: str
    spec_fingerprint: str
    width: int
    height: int

    @property
    def mime_type(self) -> str:
        return self.encoding.mime_type

    @property
    def data_uri(self) -> str:
        """Self-contained reference usable as an image source or a download."""
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"
