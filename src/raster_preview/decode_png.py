"""PNG decoder with full 16-bit support.

Images are decoded here (zlib + numpy unfiltering) so 16-bit samples survive
untouched. 16-bit Adam7 images are deinterlaced natively; interlaced images of
8 bits or less go through Pillow, which reads them losslessly.
"""

from __future__ import annotations

import io as _io
import struct
import zlib
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
from PIL import Image

from raster_preview.errors import DecodeIntegrityError, InvalidFormat, UnsupportedVariant
from raster_preview.logger import get_logger
from raster_preview.raster_models import DecodedRaster, SampleKind

__all__ = ["decode_png", "is_png", "PNG_SIGNATURE", "unfilter_scanlines"]

logger = get_logger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# colour type -> (channels, allowed bit depths)
_COLOR_TYPES: Dict[int, tuple] = {
    0: (1, (1, 2, 4, 8, 16)),
    2: (3, (8, 16)),
    3: (1, (1, 2, 4, 8)),
    4: (2, (8, 16)),
    6: (4, (8, 16)),
}

# Adam7 passes as (x0, y0, dx, dy)
_ADAM7_PASSES = (
    (0, 0, 8, 8),
    (4, 0, 8, 8),
    (0, 4, 4, 8),
    (2, 0, 4, 4),
    (0, 2, 2, 4),
    (1, 0, 2, 2),
    (0, 1, 1, 2),
)


@dataclass
class _Header:
    width: int
    height: int
    bit_depth: int
    color_type: int
    interlace: int

    @property
    def channels(self) -> int:
        return _COLOR_TYPES[self.color_type][0]

    @property
    def bytes_per_pixel(self) -> int:
        return max(1, self.channels * self.bit_depth // 8)

    @property
    def stride(self) -> int:
        return self.stride_for(self.width)

    def stride_for(self, width: int) -> int:
        return (width * self.channels * self.bit_depth + 7) // 8


def is_png(data: bytes) -> bool:
    return data[:8] == PNG_SIGNATURE


def _read_chunks(data: bytes) -> List[tuple]:
    chunks = []
    pos = 8
    while pos < len(data):
        if pos + 8 > len(data):
            raise DecodeIntegrityError("Truncated PNG chunk header")
        length, ctype = struct.unpack_from(">I4s", data, pos)
        start = pos + 8
        end = start + length
        if end + 4 > len(data):
            raise DecodeIntegrityError(f"PNG chunk {ctype!r} is truncated")
        body = data[start:end]
        (crc,) = struct.unpack_from(">I", data, end)
        if zlib.crc32(ctype + body) & 0xFFFFFFFF != crc:
            raise DecodeIntegrityError(f"PNG chunk {ctype!r} fails its CRC check")
        chunks.append((ctype, body))
        pos = end + 4
        if ctype == b"IEND":
            break
    return chunks


def _paeth(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> np.ndarray:
    p = a + b - c
    pa = np.abs(p - a)
    pb = np.abs(p - b)
    pc = np.abs(p - c)
    return np.where((pa <= pb) & (pa <= pc), a, np.where(pb <= pc, b, c))


def unfilter_scanlines(raw: bytes, height: int, stride: int, bpp: int) -> np.ndarray:
    """Reverse PNG per-row filters.

    Returns
    -------
    numpy.ndarray
        uint8 array of shape (height, stride).
    """
    needed = height * (stride + 1)
    if len(raw) < needed:
        raise DecodeIntegrityError(f"PNG image data holds {len(raw)} bytes, expected {needed}")
    rows = np.frombuffer(raw, dtype=np.uint8, count=needed).reshape(height, stride + 1)
    out = np.zeros((height, stride), dtype=np.uint8)
    prev = np.zeros(stride, dtype=np.int32)
    for y in range(height):
        ftype = int(rows[y, 0])
        line = rows[y, 1:].astype(np.int32)
        if ftype == 0:
            cur = line
        elif ftype == 1:
            cur = (np.cumsum(line.reshape(-1, bpp), axis=0) & 0xFF).reshape(-1)
        elif ftype == 2:
            cur = (line + prev) & 0xFF
        elif ftype == 3:
            cur = line.copy()
            cur[:bpp] = (cur[:bpp] + (prev[:bpp] >> 1)) & 0xFF
            for i in range(bpp, stride, bpp):
                left = cur[i - bpp : i]
                cur[i : i + bpp] = (cur[i : i + bpp] + ((left + prev[i : i + bpp]) >> 1)) & 0xFF
        elif ftype == 4:
            cur = line.copy()
            cur[:bpp] = (cur[:bpp] + prev[:bpp]) & 0xFF
            for i in range(bpp, stride, bpp):
                pred = _paeth(cur[i - bpp : i], prev[i : i + bpp], prev[i - bpp : i])
                cur[i : i + bpp] = (cur[i : i + bpp] + pred) & 0xFF
        else:
            raise DecodeIntegrityError(f"Invalid PNG filter type {ftype} on row {y}")
        out[y] = cur
        prev = cur
    return out


def _unpack_samples(rows: np.ndarray, header: _Header, width: Optional[int] = None) -> np.ndarray:
    """Turn unfiltered bytes into an integer array of shape (rows, width*C)."""
    count = (header.width if width is None else width) * header.channels
    depth = header.bit_depth
    if depth == 16:
        return rows.view(">u2")[:, :count].astype(np.uint16)
    if depth == 8:
        return rows[:, :count]
    bits = np.unpackbits(rows, axis=1)
    groups = bits[:, : count * depth].reshape(rows.shape[0], count, depth)
    weights = (1 << np.arange(depth - 1, -1, -1)).astype(np.uint8)
    return (groups * weights).sum(axis=2).astype(np.uint8)


def _deinterlace(raw: bytes, header: _Header) -> np.ndarray:
    """Scatter the seven Adam7 sub-images into one (H, W*C) sample grid.

    Each pass is a complete filtered image of its own; passes that hold no
    pixels for small images are absent from the stream.
    """
    width, height, channels = header.width, header.height, header.channels
    dtype = np.uint16 if header.bit_depth == 16 else np.uint8
    grid = np.zeros((height, width, channels), dtype=dtype)
    pos = 0
    for x0, y0, dx, dy in _ADAM7_PASSES:
        pass_w = (width - x0 + dx - 1) // dx
        pass_h = (height - y0 + dy - 1) // dy
        if pass_w <= 0 or pass_h <= 0:
            continue
        stride = header.stride_for(pass_w)
        size = pass_h * (stride + 1)
        rows = unfilter_scanlines(raw[pos : pos + size], pass_h, stride, header.bytes_per_pixel)
        pos += size
        values = _unpack_samples(rows, header, pass_w)
        grid[y0::dy, x0::dx] = values.reshape(pass_h, pass_w, channels)
    return grid.reshape(height, width * channels)


def _apply_palette(indices: np.ndarray, palette: Optional[bytes], trns: Optional[bytes]) -> np.ndarray:
    if palette is None or len(palette) % 3 or not palette:
        raise InvalidFormat("Palette PNG without a valid PLTE chunk")
    table = np.frombuffer(palette, dtype=np.uint8).reshape(-1, 3)
    if int(indices.max(initial=0)) >= len(table):
        raise DecodeIntegrityError("PNG palette index out of range")
    if trns:
        alpha = np.full(len(table), 255, dtype=np.uint8)
        alpha[: min(len(trns), len(table))] = np.frombuffer(trns, dtype=np.uint8)[: len(table)]
        table = np.concatenate([table, alpha[:, None]], axis=1)
    return table[indices]


def _decode_with_pillow(data: bytes) -> np.ndarray:
    with Image.open(_io.BytesIO(data)) as img:
        if img.mode == "P":
            img = img.convert("RGBA" if "transparency" in img.info else "RGB")
        elif img.mode == "1":
            img = img.convert("L")
        arr = np.asarray(img)
    if arr.dtype != np.uint8:
        arr = arr.astype(np.uint8)
    if arr.ndim == 2:
        arr = arr[..., np.newaxis]
    return arr


def decode_png(data: bytes) -> DecodedRaster:
    """Decode a PNG file, preserving 16-bit samples.

    Notes
    -----
    - Every chunk CRC is verified.
    - 1/2/4-bit grayscale is scaled to 0..255.
    - Palette images expand to RGB, or RGBA when a tRNS chunk is present.
    """
    if not is_png(data):
        raise InvalidFormat("Not a PNG file (bad signature)")
    chunks = _read_chunks(data)
    if not chunks or chunks[0][0] != b"IHDR" or len(chunks[0][1]) != 13:
        raise InvalidFormat("PNG does not start with a valid IHDR chunk")
    width, height, depth, ctype, _comp, _filt, interlace = struct.unpack(">IIBBBBB", chunks[0][1])
    if ctype not in _COLOR_TYPES or depth not in _COLOR_TYPES[ctype][1]:
        raise UnsupportedVariant(f"PNG colour type {ctype} with bit depth {depth} is not supported")
    if width == 0 or height == 0:
        raise InvalidFormat("PNG has zero width or height")
    header = _Header(width, height, depth, ctype, interlace)

    palette = next((body for t, body in chunks if t == b"PLTE"), None)
    trns = next((body for t, body in chunks if t == b"tRNS"), None)

    if interlace and depth < 16:
        logger.debug("Interlaced %d-bit PNG, decoding with Pillow", depth)
        samples = _decode_with_pillow(data)
        channels = samples.shape[2]
    else:
        idat = b"".join(body for t, body in chunks if t == b"IDAT")
        if not idat:
            raise DecodeIntegrityError("PNG has no IDAT data")
        try:
            raw = zlib.decompress(idat)
        except zlib.error as exc:
            raise DecodeIntegrityError(f"Corrupt PNG image data: {exc}") from exc
        if interlace:
            values = _deinterlace(raw, header)
        else:
            rows = unfilter_scanlines(raw, height, header.stride, header.bytes_per_pixel)
            values = _unpack_samples(rows, header)
        if ctype == 3:
            samples = _apply_palette(values, palette, trns)
            channels = samples.shape[-1]
        else:
            if depth < 8:
                values = values * np.uint8(255 // ((1 << depth) - 1))
            channels = header.channels
            samples = values.reshape(height, width, channels)

    if samples.dtype == np.uint16:
        kind, type_max = SampleKind.UINT16, 65535.0
    else:
        kind, type_max = SampleKind.UINT8, 255.0
    bit_depth = 16 if kind is SampleKind.UINT16 else 8
    return DecodedRaster(
        width=width,
        height=height,
        channels=int(channels),
        sample_kind=kind,
        samples=samples,
        type_max=type_max,
        format_label=f"PNG ({bit_depth}-bit)",
        format_type="png-int",
        metadata={
            "bitsPerSample": depth,
            "colorType": ctype,
            "interlaced": bool(interlace),
        },
    )
