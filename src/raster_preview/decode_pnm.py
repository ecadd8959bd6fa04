"""Netpbm decoder: PBM (P1/P4), PGM (P2/P5) and PPM (P3/P6).

Conventions
-----------
- ``maxval`` above 255 selects 16-bit big-endian binary samples.
- PBM bits are inverted for display: 0 (white) -> 255, 1 (black) -> 0.
- ``type_max`` is the file's ``maxval`` (255 for PBM).
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from raster_preview.errors import DecodeIntegrityError, InvalidFormat
from raster_preview.logger import get_logger
from raster_preview.raster_models import DecodedRaster, SampleKind

__all__ = ["decode_pnm", "is_pnm", "PNM_LABELS"]

logger = get_logger(__name__)

PNM_LABELS = {
    b"P1": "PBM (ASCII)",
    b"P2": "PGM (ASCII)",
    b"P3": "PPM (ASCII)",
    b"P4": "PBM (Binary)",
    b"P5": "PGM (Binary)",
    b"P6": "PPM (Binary)",
}

_WHITESPACE = b" \t\n\r\v\f"


def is_pnm(data: bytes) -> bool:
    sep = data[2:3]
    return data[:2] in PNM_LABELS and (sep == b"#" or sep.isspace())


class _Tokenizer:
    """Whitespace/comment aware reader over a Netpbm buffer."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def _skip(self) -> None:
        data = self.data
        while self.pos < len(data):
            ch = data[self.pos : self.pos + 1]
            if ch == b"#":
                end = data.find(b"\n", self.pos)
                self.pos = len(data) if end < 0 else end + 1
            elif ch in _WHITESPACE:
                self.pos += 1
            else:
                break

    def token(self) -> bytes:
        self._skip()
        start = self.pos
        data = self.data
        while self.pos < len(data) and data[self.pos : self.pos + 1] not in _WHITESPACE + b"#":
            self.pos += 1
        return data[start : self.pos]

    def integer(self, what: str) -> int:
        tok = self.token()
        if not tok.isdigit():
            raise InvalidFormat(f"Invalid PPM/PGM/PBM {what}: {tok!r}")
        return int(tok)

    def pbm_bit(self) -> int:
        self._skip()
        if self.pos >= len(self.data):
            raise DecodeIntegrityError("Insufficient data in ASCII PBM file")
        ch = self.data[self.pos : self.pos + 1]
        self.pos += 1
        if ch not in (b"0", b"1"):
            raise DecodeIntegrityError(f"Invalid PBM pixel value: {ch!r} (must be 0 or 1)")
        return 1 if ch == b"1" else 0


def _read_header(tok: _Tokenizer, is_pbm: bool) -> Tuple[int, int, int]:
    width = tok.integer("width")
    height = tok.integer("height")
    maxval = 1 if is_pbm else tok.integer("maxval")
    if width <= 0 or height <= 0 or maxval <= 0 or maxval > 65535:
        raise InvalidFormat("Invalid PPM/PGM/PBM dimensions or maxval")
    return width, height, maxval


def decode_pnm(data: bytes) -> DecodedRaster:
    """Decode any of the six Netpbm variants.

    Raises
    ------
    InvalidFormat
        Unknown magic, bad dimensions or maxval.
    DecodeIntegrityError
        Truncated data or sample values outside ``[0, maxval]``.
    """
    magic = data[:2]
    label = PNM_LABELS.get(magic)
    if label is None:
        raise InvalidFormat(f"Invalid PPM/PGM/PBM magic number: {magic!r}")
    is_pbm = magic in (b"P1", b"P4")
    is_ascii = magic in (b"P1", b"P2", b"P3")
    channels = 3 if magic in (b"P3", b"P6") else 1

    tok = _Tokenizer(data)
    tok.pos = 2
    width, height, maxval = _read_header(tok, is_pbm)
    total = width * height * channels
    use16 = maxval > 255

    if is_pbm and is_ascii:
        bits = np.fromiter((tok.pbm_bit() for _ in range(total)), dtype=np.uint8, count=total)
        samples = np.where(bits == 0, 255, 0).astype(np.uint8)
    elif is_pbm:
        # Exactly one whitespace byte separates the header from packed rows.
        start = tok.pos + 1
        row_bytes = (width + 7) // 8
        needed = row_bytes * height
        if len(data) - start < needed:
            raise DecodeIntegrityError("Insufficient data in binary PBM file")
        packed = np.frombuffer(data, dtype=np.uint8, count=needed, offset=start)
        bits = np.unpackbits(packed.reshape(height, row_bytes), axis=1)[:, :width]
        samples = np.where(bits == 0, 255, 0).astype(np.uint8)
    elif is_ascii:
        values = []
        for _ in range(total):
            token = tok.token()
            if not token:
                raise DecodeIntegrityError("Insufficient data in ASCII PPM/PGM file")
            if not token.isdigit():
                raise DecodeIntegrityError(f"Invalid pixel value: {token!r}")
            values.append(int(token))
        arr = np.asarray(values, dtype=np.int64)
        if arr.size and arr.max() > maxval:
            raise DecodeIntegrityError(f"Pixel value {int(arr.max())} exceeds maxval {maxval}")
        samples = arr.astype(np.uint16 if use16 else np.uint8)
    else:
        start = tok.pos + 1
        dtype = np.dtype(">u2" if use16 else "u1")
        needed = total * dtype.itemsize
        if len(data) - start < needed:
            raise DecodeIntegrityError(
                f"Insufficient data in binary PPM/PGM file: {len(data) - start} of {needed} bytes"
            )
        samples = np.frombuffer(data, dtype=dtype, count=total, offset=start)
        samples = samples.astype(np.uint16 if use16 else np.uint8)

    kind = SampleKind.UINT16 if use16 else SampleKind.UINT8
    type_max = 255.0 if is_pbm else float(maxval)
    logger.debug("%s %dx%d maxval=%d", label, width, height, maxval)
    return DecodedRaster(
        width=width,
        height=height,
        channels=channels,
        sample_kind=kind,
        samples=samples.reshape(height, width, channels),
        type_max=type_max,
        format_label=label,
        format_type="ppm-int",
        metadata={"maxval": maxval, "magic": magic.decode("ascii")},
    )
