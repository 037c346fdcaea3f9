"""
Composition Errors
==================
Structured failures raised by the compositing stages.

Every error carries a machine-readable ``kind`` and a human-readable
``detail`` so a host application can surface it as a status message.
"""

from enum import Enum


class DecodeErrorKind(str, Enum):
    UNREADABLE = "unreadable"
    FETCH_FAILED = "fetch_failed"
    ACCESS_DENIED = "access_denied"


class EncodeErrorKind(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    INVALID_BUFFER = "invalid_buffer"


class BlendErrorKind(str, Enum):
    INVALID_DIMENSIONS = "invalid_dimensions"


class CompositionError(Exception):
    """Base class for every recoverable compositing failure."""

    stage = "composition"

    def __init__(self, kind: Enum, detail: str):
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail

    def to_dict(self) -> dict:
        return {"stage": self.stage, "kind": self.kind.value, "detail": self.detail}


class DecodeError(CompositionError):
    stage = "decode"


class EncodeError(CompositionError):
    stage = "encode"


class BlendError(CompositionError):
    stage = "blend"
