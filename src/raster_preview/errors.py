"""Error taxonomy for the decode/render pipeline.

Every exception carries a short ``code`` string that the message layer
forwards to the host as ``{"error": code, "message": str(exc)}``.
"""

from __future__ import annotations

__all__ = [
    "RasterPreviewError",
    "DecodeError",
    "InvalidFormat",
    "UnsupportedVariant",
    "NoUsableArray",
    "DecodeIntegrityError",
    "RenderPrecondition",
    "InvalidStateTransition",
    "MaskError",
    "MaskShapeError",
    "UnknownColormap",
    "SourceUnavailable",
]


class RasterPreviewError(Exception):
    """Base class for all package errors."""

    code = "RasterPreviewError"

    def to_message(self) -> dict:
        """Return the host-facing error payload."""
        return {"type": "error", "error": self.code, "message": str(self)}


class DecodeError(RasterPreviewError):
    """A source could not be turned into a canonical raster."""

    code = "DecodeError"


class InvalidFormat(DecodeError):
    """Magic number or header is missing or of an unknown version."""

    code = "InvalidFormat"


class UnsupportedVariant(DecodeError):
    """Recognized format, but a sub-case this decoder does not handle."""

    code = "UnsupportedVariant"


class NoUsableArray(DecodeError):
    """NPZ archive without an uncompressed ``.npy`` member."""

    code = "NoUsableArray"


class DecodeIntegrityError(DecodeError):
    """Truncated or inconsistent sample data."""

    code = "DecodeIntegrityError"


class RenderPrecondition(RasterPreviewError):
    """Render requested without a canonical raster (logic fault)."""

    code = "RenderPrecondition"


class InvalidStateTransition(RenderPrecondition):
    """Session asked to move along an edge its state machine lacks."""

    code = "InvalidStateTransition"


class SourceUnavailable(RasterPreviewError):
    """The host could not supply the bytes of a source."""

    code = "SourceUnavailable"


class MaskError(RasterPreviewError):
    """A mask raster could not be used for filtering."""

    code = "MaskError"


class MaskShapeError(MaskError):
    """Mask dimensions differ from the image being filtered."""

    code = "MaskShapeError"


class UnknownColormap(RasterPreviewError, ValueError):
    """Colormap name is not registered."""

    code = "UnknownColormap"
