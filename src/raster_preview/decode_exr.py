"""OpenEXR scanline decoder.

Supports single-part scanline files with NONE, RLE, ZIPS and ZIP
compression and HALF/FLOAT/UINT channels. Samples are always returned as
float32, rows bottom-up, with ``orientation_flip_y`` set.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

from raster_preview.errors import DecodeIntegrityError, InvalidFormat, UnsupportedVariant
from raster_preview.logger import get_logger
from raster_preview.raster_models import DecodedRaster, SampleKind

__all__ = ["decode_exr", "is_exr", "EXR_MAGIC"]

logger = get_logger(__name__)

EXR_MAGIC = b"\x76\x2f\x31\x01"

_FLAG_TILED = 0x200
_FLAG_DEEP = 0x800
_FLAG_MULTIPART = 0x1000

_PIXEL_DTYPES = {0: np.dtype("<u4"), 1: np.dtype("<f2"), 2: np.dtype("<f4")}

_COMPRESSION_NAMES = {
    0: "NONE",
    1: "RLE",
    2: "ZIPS",
    3: "ZIP",
    4: "PIZ",
    5: "PXR24",
    6: "B44",
    7: "B44A",
    8: "DWAA",
    9: "DWAB",
}
_LINES_PER_CHUNK = {0: 1, 1: 1, 2: 1, 3: 16}


@dataclass(frozen=True)
class _Channel:
    name: str
    pixel_type: int
    x_sampling: int
    y_sampling: int

    @property
    def dtype(self) -> np.dtype:
        return _PIXEL_DTYPES[self.pixel_type]


def is_exr(data: bytes) -> bool:
    return data[:4] == EXR_MAGIC


def _read_cstring(data: bytes, pos: int) -> Tuple[str, int]:
    end = data.find(b"\x00", pos)
    if end < 0:
        raise DecodeIntegrityError("Unterminated string in EXR header")
    return data[pos:end].decode("latin-1"), end + 1


def _parse_chlist(value: bytes) -> List[_Channel]:
    channels = []
    pos = 0
    while pos < len(value) and value[pos] != 0:
        name, pos = _read_cstring(value, pos)
        if pos + 16 > len(value):
            raise DecodeIntegrityError("Truncated EXR channel list")
        pixel_type, _linear, xs, ys = struct.unpack_from("<iB3xii", value, pos)
        pos += 16
        if pixel_type not in _PIXEL_DTYPES:
            raise UnsupportedVariant(f"EXR pixel type {pixel_type} is not supported")
        channels.append(_Channel(name, pixel_type, xs, ys))
    return channels


def _parse_header(data: bytes) -> Tuple[Dict[str, Tuple[str, bytes]], int]:
    pos = 8
    attributes: Dict[str, Tuple[str, bytes]] = {}
    while True:
        if pos >= len(data):
            raise DecodeIntegrityError("Truncated EXR header")
        if data[pos] == 0:
            return attributes, pos + 1
        name, pos = _read_cstring(data, pos)
        type_name, pos = _read_cstring(data, pos)
        if pos + 4 > len(data):
            raise DecodeIntegrityError("Truncated EXR attribute")
        (size,) = struct.unpack_from("<i", data, pos)
        pos += 4
        if size < 0 or pos + size > len(data):
            raise DecodeIntegrityError(f"EXR attribute {name!r} overruns the file")
        attributes[name] = (type_name, data[pos : pos + size])
        pos += size


def _undo_predictor_and_interleave(buf: bytes) -> bytes:
    """Reverse the byte predictor and split-halves reordering of ZIP/RLE."""
    if not buf:
        return buf
    t = np.frombuffer(buf, dtype=np.uint8).astype(np.int64)
    # t[i] = t[i-1] + d[i] - 128 (mod 256)
    t[1:] -= 128
    t = np.cumsum(t) & 0xFF
    t = t.astype(np.uint8)
    half = (len(t) + 1) // 2
    out = np.empty_like(t)
    out[0::2] = t[:half]
    out[1::2] = t[half:]
    return out.tobytes()


def _rle_decode(buf: bytes, expected: int) -> bytes:
    out = bytearray()
    i = 0
    n = len(buf)
    while i < n:
        count = buf[i]
        i += 1
        if count >= 128:
            run = 256 - count
            out += buf[i : i + run]
            i += run
        else:
            if i >= n:
                raise DecodeIntegrityError("Truncated EXR RLE run")
            out += buf[i : i + 1] * (count + 1)
            i += 1
        if len(out) > expected:
            raise DecodeIntegrityError("EXR RLE chunk expands past its block")
    return bytes(out)


def _decompress(chunk: bytes, compression: int, expected: int) -> bytes:
    if len(chunk) >= expected or compression == 0:
        return chunk
    if compression == 1:
        return _undo_predictor_and_interleave(_rle_decode(chunk, expected))
    if compression in (2, 3):
        try:
            raw = zlib.decompress(chunk)
        except zlib.error as exc:
            raise DecodeIntegrityError(f"Corrupt EXR zip chunk: {exc}") from exc
        return _undo_predictor_and_interleave(raw)
    raise UnsupportedVariant(
        f"EXR compression {_COMPRESSION_NAMES.get(compression, compression)} is not supported"
    )


def _select_channels(channels: List[_Channel]) -> List[_Channel]:
    by_name = {c.name: c for c in channels}
    if all(n in by_name for n in "RGB"):
        picked = [by_name[n] for n in "RGB"]
        if "A" in by_name:
            picked.append(by_name["A"])
        return picked
    if "Y" in by_name:
        picked = [by_name["Y"]]
        if "A" in by_name:
            picked.append(by_name["A"])
        return picked
    return [channels[0]]


def decode_exr(data: bytes) -> DecodedRaster:
    """Decode a single-part scanline OpenEXR file.

    Parameters
    ----------
    data : bytes
        Complete file contents.

    Returns
    -------
    DecodedRaster
        float32 samples, rows stored bottom-up.

    Notes
    -----
    Channel selection prefers R,G,B(,A), then Y(,A), then the first channel
    in header order. Chunks whose stored size is not below the raw size are read
    uncompressed, as OpenEXR writers store incompressible blocks raw.
    """
    if len(data) < 8 or not is_exr(data):
        raise InvalidFormat("Not an OpenEXR file (bad magic number)")
    (flags,) = struct.unpack_from("<I", data, 4)
    version = flags & 0xFF
    if version != 2:
        raise InvalidFormat(f"Unsupported EXR version {version}")
    if flags & _FLAG_MULTIPART:
        raise UnsupportedVariant("Multi-part EXR files are not supported")
    if flags & _FLAG_DEEP:
        raise UnsupportedVariant("Deep EXR files are not supported")
    if flags & _FLAG_TILED:
        raise UnsupportedVariant("Tiled EXR files are not supported")

    attributes, pos = _parse_header(data)
    for required in ("channels", "compression", "dataWindow"):
        if required not in attributes:
            raise InvalidFormat(f"EXR header lacks the {required!r} attribute")
    channels = _parse_chlist(attributes["channels"][1])
    if not channels:
        raise InvalidFormat("EXR file declares no channels")
    for channel in channels:
        if channel.x_sampling != 1 or channel.y_sampling != 1:
            raise UnsupportedVariant("Subsampled EXR channels are not supported")
    compression = attributes["compression"][1][0]
    if compression not in _LINES_PER_CHUNK:
        raise UnsupportedVariant(
            f"EXR compression {_COMPRESSION_NAMES.get(compression, compression)} is not supported"
        )
    x_min, y_min, x_max, y_max = struct.unpack("<iiii", attributes["dataWindow"][1][:16])
    width = x_max - x_min + 1
    height = y_max - y_min + 1
    if width <= 0 or height <= 0:
        raise InvalidFormat(f"Invalid EXR data window {width}x{height}")

    lines = _LINES_PER_CHUNK[compression]
    n_chunks = -(-height // lines)
    if pos + 8 * n_chunks > len(data):
        raise DecodeIntegrityError("EXR offset table is truncated")
    offsets = struct.unpack_from(f"<{n_chunks}Q", data, pos)

    line_bytes = sum(c.dtype.itemsize for c in channels) * width
    planes = {c.name: np.zeros((height, width), dtype=np.float32) for c in channels}
    for offset in offsets:
        if offset + 8 > len(data):
            raise DecodeIntegrityError("EXR chunk offset lies outside the file")
        y, size = struct.unpack_from("<ii", data, offset)
        start = offset + 8
        if size < 0 or start + size > len(data):
            raise DecodeIntegrityError("EXR chunk is truncated")
        row0 = y - y_min
        if row0 < 0 or row0 >= height:
            raise DecodeIntegrityError(f"EXR chunk starts at invalid line {y}")
        rows = min(lines, height - row0)
        expected = rows * line_bytes
        raw = _decompress(data[start : start + size], compression, expected)
        if len(raw) < expected:
            raise DecodeIntegrityError(
                f"EXR chunk at line {y} holds {len(raw)} bytes, expected {expected}"
            )
        cursor = 0
        for r in range(rows):
            for channel in channels:
                count = width * channel.dtype.itemsize
                values = np.frombuffer(raw, dtype=channel.dtype, count=width, offset=cursor)
                planes[channel.name][row0 + r] = values.astype(np.float32)
                cursor += count

    picked = _select_channels(channels)
    stacked = np.stack([planes[c.name] for c in picked], axis=-1)
    samples = np.ascontiguousarray(stacked[::-1])
    compression_name = _COMPRESSION_NAMES[compression]
    logger.debug(
        "EXR %dx%d, channels %s, compression %s",
        width,
        height,
        ",".join(c.name for c in picked),
        compression_name,
    )
    pixel_types = {c.pixel_type for c in picked}
    return DecodedRaster(
        width=width,
        height=height,
        channels=len(picked),
        sample_kind=SampleKind.FLOAT32,
        samples=samples,
        type_max=1.0,
        orientation_flip_y=True,
        format_label="EXR",
        format_type="exr-float",
        metadata={
            "compression": compression_name,
            "dataType": "float16" if pixel_types == {1} else "float32",
            "channelNames": [c.name for c in picked],
            "isHdr": True,
        },
    )
