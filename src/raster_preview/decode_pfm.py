"""Portable Float Map (PFM) decoder."""

from __future__ import annotations

import re

import numpy as np

from raster_preview.errors import DecodeIntegrityError, InvalidFormat
from raster_preview.logger import get_logger
from raster_preview.raster_models import DecodedRaster, SampleKind

__all__ = ["decode_pfm", "is_pfm"]

logger = get_logger(__name__)

# magic, width, height, scale; exactly one whitespace byte precedes the data
_HEADER = re.compile(
    rb"\A\s*(PF|Pf)\s+(?:#[^\n]*\n\s*)*(\d+)\s+(\d+)\s+([-+0-9.eE]+)\s",
)


def is_pfm(data: bytes) -> bool:
    return data[:2] in (b"PF", b"Pf") and data[2:3].isspace()


def decode_pfm(data: bytes) -> DecodedRaster:
    """Decode a PFM file.

    ``PF`` holds RGB and ``Pf`` grayscale float32 samples. A negative scale
    means little-endian data. Rows are stored bottom-to-top and kept that
    way; ``orientation_flip_y`` is set.
    """
    match = _HEADER.match(data)
    if match is None:
        raise InvalidFormat("Invalid PFM magic or header")
    magic, width, height, scale_token = match.groups()
    width, height = int(width), int(height)
    try:
        scale = float(scale_token)
    except ValueError as exc:
        raise InvalidFormat(f"Invalid PFM scale {scale_token!r}") from exc
    if width <= 0 or height <= 0 or scale == 0:
        raise InvalidFormat("Invalid PFM dimensions or scale")
    channels = 3 if magic == b"PF" else 1
    dtype = np.dtype("<f4" if scale < 0 else ">f4")
    offset = match.end()
    count = width * height * channels
    if len(data) - offset < count * 4:
        raise DecodeIntegrityError(
            f"PFM data holds {len(data) - offset} bytes, expected {count * 4}"
        )
    samples = np.frombuffer(data, dtype=dtype, count=count, offset=offset).astype(np.float32)
    logger.debug("PFM %dx%d, %d channel(s), scale %s", width, height, channels, scale)
    return DecodedRaster(
        width=width,
        height=height,
        channels=channels,
        sample_kind=SampleKind.FLOAT32,
        samples=samples.reshape(height, width, channels),
        type_max=1.0,
        orientation_flip_y=True,
        format_label="PFM",
        format_type="pfm-float",
        metadata={"scale": abs(scale), "littleEndian": scale < 0},
    )
