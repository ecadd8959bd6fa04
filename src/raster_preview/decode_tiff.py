"""TIFF decoding: tifffile fast path plus a pure struct/numpy fallback.

Both paths produce an array shaped (height, width, samples) and hand it to
the same canonicalization step, so they yield identical rasters for any
input the fallback understands.

Fallback coverage
-----------------
- Classic TIFF and BigTIFF, little and big endian.
- Strips and tiles, chunky and planar configuration.
- Compression: none (1), LZW (5), Deflate (8, 32946), PackBits (32773).
- Predictor: horizontal (2) and floating point (3).
- 8/16/32/64-bit samples, unsigned, signed and IEEE float.
"""

from __future__ import annotations

import io as _io
import struct
import zlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import tifffile

from raster_preview.errors import (
    DecodeIntegrityError,
    InvalidFormat,
    UnsupportedVariant,
)
from raster_preview.logger import get_logger
from raster_preview.raster_models import TYPE_MAX, DecodedRaster, sample_kind_for_dtype

__all__ = [
    "decode_tiff",
    "decode_tiff_fast",
    "decode_tiff_fallback",
    "lzw_decode",
    "packbits_decode",
    "is_tiff",
]

logger = get_logger(__name__)

TAG_IMAGE_WIDTH = 256
TAG_IMAGE_LENGTH = 257
TAG_BITS_PER_SAMPLE = 258
TAG_COMPRESSION = 259
TAG_PHOTOMETRIC = 262
TAG_STRIP_OFFSETS = 273
TAG_SAMPLES_PER_PIXEL = 277
TAG_ROWS_PER_STRIP = 278
TAG_STRIP_BYTE_COUNTS = 279
TAG_PLANAR_CONFIG = 284
TAG_PREDICTOR = 317
TAG_TILE_WIDTH = 322
TAG_TILE_LENGTH = 323
TAG_TILE_OFFSETS = 324
TAG_TILE_BYTE_COUNTS = 325
TAG_SAMPLE_FORMAT = 339

COMPRESSION_NONE = 1
COMPRESSION_LZW = 5
COMPRESSION_DEFLATE = (8, 32946)
COMPRESSION_PACKBITS = 32773

# TIFF field type -> (struct code, size)
_FIELD_TYPES: Dict[int, Tuple[str, int]] = {
    1: ("B", 1),
    2: ("c", 1),
    3: ("H", 2),
    4: ("I", 4),
    5: ("II", 8),
    6: ("b", 1),
    7: ("B", 1),
    8: ("h", 2),
    9: ("i", 4),
    10: ("ii", 8),
    11: ("f", 4),
    12: ("d", 8),
    13: ("I", 4),
    16: ("Q", 8),
    17: ("q", 8),
    18: ("Q", 8),
}

_SAMPLE_FORMAT_KIND = {1: "u", 2: "i", 3: "f", 4: "u"}


def is_tiff(data: bytes) -> bool:
    """True when ``data`` starts with a classic or BigTIFF header."""
    return data[:4] in (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+")


# --------------------------------------------------------------------------
# Codecs
# --------------------------------------------------------------------------


def packbits_decode(data: bytes) -> bytes:
    """Decode Apple PackBits run-length encoded bytes."""
    out = bytearray()
    i = 0
    n = len(data)
    while i < n:
        header = data[i]
        i += 1
        if header < 128:
            count = header + 1
            out += data[i : i + count]
            i += count
        elif header > 128:
            out += data[i : i + 1] * (257 - header)
            i += 1
        # 128 is a no-op
    return bytes(out)


def lzw_decode(data: bytes) -> bytes:
    """Decode TIFF-flavoured LZW (MSB-first codes, early change).

    Raises
    ------
    DecodeIntegrityError
        On a code that refers past the end of the string table.
    """
    clear_code, eoi_code = 256, 257
    padded = bytes(data) + b"\x00\x00\x00"
    nbits = len(data) * 8
    table: List[bytes] = [bytes((i,)) for i in range(256)] + [b"", b""]
    out = bytearray()
    width = 9
    bitpos = 0
    prev: Optional[bytes] = None
    while bitpos + width <= nbits:
        index = bitpos >> 3
        chunk = (padded[index] << 16) | (padded[index + 1] << 8) | padded[index + 2]
        code = (chunk >> (24 - (bitpos & 7) - width)) & ((1 << width) - 1)
        bitpos += width
        if code == eoi_code:
            break
        if code == clear_code:
            del table[258:]
            width = 9
            prev = None
            continue
        if prev is None:
            if code >= len(table):
                raise DecodeIntegrityError(f"Invalid LZW code {code} after clear")
            entry = table[code]
            out += entry
            prev = entry
            continue
        if code < len(table):
            entry = table[code]
            table.append(prev + entry[:1])
        elif code == len(table):
            entry = prev + prev[:1]
            table.append(entry)
        else:
            raise DecodeIntegrityError(f"Invalid LZW code {code}")
        out += entry
        prev = entry
        if len(table) >= (1 << width) - 1 and width < 12:
            width += 1
    return bytes(out)


def _decompress(chunk: bytes, compression: int) -> bytes:
    if compression == COMPRESSION_NONE:
        return chunk
    if compression == COMPRESSION_LZW:
        return lzw_decode(chunk)
    if compression in COMPRESSION_DEFLATE:
        try:
            return zlib.decompress(chunk)
        except zlib.error as exc:
            raise DecodeIntegrityError(f"Corrupt deflate chunk: {exc}") from exc
    if compression == COMPRESSION_PACKBITS:
        return packbits_decode(chunk)
    raise UnsupportedVariant(f"TIFF compression {compression} is not supported")


def _undo_horizontal(block: np.ndarray) -> np.ndarray:
    """Undo predictor 2 on a (rows, cols, samples) integer block."""
    native = block.astype(block.dtype.newbyteorder("="))
    return np.cumsum(native, axis=1, dtype=native.dtype)


def _undo_float_predictor(raw: bytes, rows: int, values_per_row: int, itemsize: int) -> np.ndarray:
    """Undo predictor 3: byte-wise differencing over MSB-first byte planes."""
    planes = np.frombuffer(raw, dtype=np.uint8, count=rows * values_per_row * itemsize)
    planes = planes.reshape(rows, values_per_row * itemsize)
    planes = np.cumsum(planes, axis=1, dtype=np.uint8)
    planes = planes.reshape(rows, itemsize, values_per_row).transpose(0, 2, 1)
    return np.ascontiguousarray(planes).view(f">f{itemsize}").reshape(rows, values_per_row)


# --------------------------------------------------------------------------
# Fallback parser
# --------------------------------------------------------------------------


@dataclass
class _Ifd:
    byteorder: str
    tags: Dict[int, Tuple]

    def value(self, tag: int, default=None):
        values = self.tags.get(tag)
        if values is None:
            return default
        return values[0]

    def values(self, tag: int, default: Sequence = ()) -> Tuple:
        return self.tags.get(tag, tuple(default))


def _read_ifd(data: bytes) -> _Ifd:
    if len(data) < 8:
        raise InvalidFormat("File too short for a TIFF header")
    order = data[:2]
    if order == b"II":
        bo = "<"
    elif order == b"MM":
        bo = ">"
    else:
        raise InvalidFormat("Missing TIFF byte-order mark")
    (version,) = struct.unpack_from(bo + "H", data, 2)
    if version == 42:
        (offset,) = struct.unpack_from(bo + "I", data, 4)
        count_fmt, entry_size, inline = "H", 12, 4
    elif version == 43:
        if len(data) < 16:
            raise InvalidFormat("File too short for a BigTIFF header")
        bytesize, _reserved, offset = struct.unpack_from(bo + "HHQ", data, 4)
        if bytesize != 8:
            raise InvalidFormat(f"Unsupported BigTIFF offset size {bytesize}")
        count_fmt, entry_size, inline = "Q", 20, 8
    else:
        raise InvalidFormat(f"Unsupported TIFF version {version}")

    count_size = struct.calcsize(count_fmt)
    if offset + count_size > len(data):
        raise DecodeIntegrityError("First IFD lies outside the file")
    (count,) = struct.unpack_from(bo + count_fmt, data, offset)
    pos = offset + count_size
    if pos + count * entry_size > len(data):
        raise DecodeIntegrityError("IFD entries are truncated")

    tags: Dict[int, Tuple] = {}
    for _ in range(count):
        tag, ftype = struct.unpack_from(bo + "HH", data, pos)
        (n,) = struct.unpack_from(bo + ("I" if inline == 4 else "Q"), data, pos + 4)
        value_pos = pos + 4 + (4 if inline == 4 else 8)
        pos += entry_size
        spec = _FIELD_TYPES.get(ftype)
        if spec is None:
            continue
        code, size = spec
        nbytes = size * n
        if nbytes > inline:
            fmt = "I" if inline == 4 else "Q"
            (value_pos,) = struct.unpack_from(bo + fmt, data, value_pos)
        if value_pos + nbytes > len(data):
            raise DecodeIntegrityError(f"Tag {tag} values lie outside the file")
        if ftype == 2:
            tags[tag] = (data[value_pos : value_pos + n].rstrip(b"\x00").decode("latin-1"),)
            continue
        values = struct.unpack_from(bo + code * n, data, value_pos)
        if ftype in (5, 10):
            values = tuple(values[i] / values[i + 1] if values[i + 1] else 0.0
                           for i in range(0, len(values), 2))
        tags[tag] = tuple(values)
    return _Ifd(byteorder=bo, tags=tags)


def _sample_dtype(ifd: _Ifd) -> np.dtype:
    bits = ifd.values(TAG_BITS_PER_SAMPLE, (1,))
    if len(set(bits)) != 1:
        raise UnsupportedVariant(f"Mixed bits per sample {bits} are not supported")
    bits = bits[0]
    fmt = ifd.values(TAG_SAMPLE_FORMAT, (1,))
    if len(set(fmt)) != 1:
        raise UnsupportedVariant("Mixed sample formats are not supported")
    kind = _SAMPLE_FORMAT_KIND.get(fmt[0])
    if kind is None:
        raise UnsupportedVariant(f"TIFF sample format {fmt[0]} is not supported")
    if bits not in (8, 16, 32, 64) or (kind == "f" and bits == 8):
        raise UnsupportedVariant(f"{bits}-bit TIFF samples are not supported")
    return np.dtype(f"{ifd.byteorder}{kind}{bits // 8}")


def _decode_chunk(
    raw: bytes,
    compression: int,
    predictor: int,
    dtype: np.dtype,
    rows: int,
    cols: int,
    samples: int,
) -> np.ndarray:
    """Decode one strip or tile into a (rows, cols, samples) array."""
    payload = _decompress(raw, compression)
    needed = rows * cols * samples * dtype.itemsize
    if len(payload) < needed:
        raise DecodeIntegrityError(
            f"TIFF chunk holds {len(payload)} bytes, expected {needed}"
        )
    payload = payload[:needed]
    if predictor == 3:
        if dtype.kind != "f":
            raise UnsupportedVariant("Floating point predictor on integer samples")
        block = _undo_float_predictor(payload, rows, cols * samples, dtype.itemsize)
        return block.reshape(rows, cols, samples)
    block = np.frombuffer(payload, dtype=dtype).reshape(rows, cols, samples)
    if predictor == 2:
        if dtype.kind == "f":
            raise UnsupportedVariant("Horizontal predictor on float samples")
        block = _undo_horizontal(block)
    elif predictor not in (1, None):
        raise UnsupportedVariant(f"TIFF predictor {predictor} is not supported")
    return block


def _chunk_bytes(data: bytes, offset: int, count: int) -> bytes:
    if offset + count > len(data):
        raise DecodeIntegrityError("TIFF chunk lies outside the file")
    return data[offset : offset + count]


def decode_tiff_fallback(data: bytes) -> Tuple[np.ndarray, dict]:
    """Decode the first image of a TIFF with the built-in parser.

    Returns
    -------
    tuple[numpy.ndarray, dict]
        Array shaped (height, width, samples) and decoder metadata.
    """
    ifd = _read_ifd(data)
    width = ifd.value(TAG_IMAGE_WIDTH)
    height = ifd.value(TAG_IMAGE_LENGTH)
    if not width or not height:
        raise InvalidFormat("TIFF is missing image dimensions")
    width, height = int(width), int(height)
    spp = int(ifd.value(TAG_SAMPLES_PER_PIXEL, 1))
    compression = int(ifd.value(TAG_COMPRESSION, 1))
    predictor = int(ifd.value(TAG_PREDICTOR, 1))
    planar = int(ifd.value(TAG_PLANAR_CONFIG, 1))
    dtype = _sample_dtype(ifd)
    planes = spp if planar == 2 else 1
    per_chunk = 1 if planar == 2 else spp

    out = np.empty((height, width, spp), dtype=dtype.newbyteorder("="))
    if TAG_TILE_OFFSETS in ifd.tags:
        tw = int(ifd.value(TAG_TILE_WIDTH))
        th = int(ifd.value(TAG_TILE_LENGTH))
        offsets = ifd.values(TAG_TILE_OFFSETS)
        counts = ifd.values(TAG_TILE_BYTE_COUNTS)
        across = -(-width // tw)
        down = -(-height // th)
        if len(offsets) < across * down * planes or len(counts) < len(offsets):
            raise DecodeIntegrityError("TIFF tile table is incomplete")
        index = 0
        for plane in range(planes):
            for ty in range(down):
                for tx in range(across):
                    raw = _chunk_bytes(data, int(offsets[index]), int(counts[index]))
                    index += 1
                    tile = _decode_chunk(raw, compression, predictor, dtype, th, tw, per_chunk)
                    y0, x0 = ty * th, tx * tw
                    y1, x1 = min(y0 + th, height), min(x0 + tw, width)
                    target = slice(plane, plane + 1) if planar == 2 else slice(None)
                    out[y0:y1, x0:x1, target] = tile[: y1 - y0, : x1 - x0]
    elif TAG_STRIP_OFFSETS in ifd.tags:
        rps = min(int(ifd.value(TAG_ROWS_PER_STRIP, height)), height)
        offsets = ifd.values(TAG_STRIP_OFFSETS)
        counts = ifd.values(TAG_STRIP_BYTE_COUNTS)
        strips = -(-height // rps)
        if len(offsets) < strips * planes:
            raise DecodeIntegrityError("TIFF strip table is incomplete")
        if not counts:
            if compression != COMPRESSION_NONE or len(offsets) != 1:
                raise DecodeIntegrityError("TIFF strip byte counts are missing")
            counts = (height * width * spp * dtype.itemsize,)
        index = 0
        for plane in range(planes):
            for s in range(strips):
                y0 = s * rps
                rows = min(rps, height - y0)
                raw = _chunk_bytes(data, int(offsets[index]), int(counts[index]))
                index += 1
                strip = _decode_chunk(raw, compression, predictor, dtype, rows, width, per_chunk)
                target = slice(plane, plane + 1) if planar == 2 else slice(None)
                out[y0 : y0 + rows, :, target] = strip
    else:
        raise InvalidFormat("TIFF has neither strips nor tiles")

    metadata = {
        "compression": compression,
        "predictor": predictor,
        "planarConfig": planar,
        "bitsPerSample": dtype.itemsize * 8,
        "sampleFormat": int(ifd.value(TAG_SAMPLE_FORMAT, 1)),
        "photometric": int(ifd.value(TAG_PHOTOMETRIC, 1)),
    }
    return out, metadata


# --------------------------------------------------------------------------
# Fast path
# --------------------------------------------------------------------------


def decode_tiff_fast(data: bytes) -> Tuple[np.ndarray, dict]:
    """Decode the first image of a TIFF with tifffile.

    Returns
    -------
    tuple[numpy.ndarray, dict]
        Array shaped (height, width, samples) and decoder metadata.
    """
    with tifffile.TiffFile(_io.BytesIO(data)) as tif:
        page = tif.pages.first if hasattr(tif.pages, "first") else tif.pages[0]
        arr = page.asarray()
        axes = page.axes
        metadata = {
            "compression": int(page.compression),
            "predictor": int(page.predictor),
            "planarConfig": int(page.planarconfig),
            "bitsPerSample": int(page.bitspersample),
            "sampleFormat": int(page.sampleformat),
            "photometric": int(page.photometric),
        }
    if len(axes) != arr.ndim:
        raise UnsupportedVariant(f"Unexpected TIFF axes {axes!r}")
    squeeze = tuple(i for i, ax in enumerate(axes) if ax not in "YXS" and arr.shape[i] == 1)
    if squeeze:
        arr = np.squeeze(arr, axis=squeeze)
        axes = "".join(ax for i, ax in enumerate(axes) if i not in squeeze)
    if set(axes) - set("YXS"):
        raise UnsupportedVariant(f"Multi-dimensional TIFF pages ({axes}) are not supported")
    if "S" not in axes:
        arr = arr[..., np.newaxis]
        axes += "S"
    order = [axes.index(ax) for ax in "YXS"]
    return np.transpose(arr, order), metadata


# --------------------------------------------------------------------------
# Canonicalization and entry point
# --------------------------------------------------------------------------


def _canonicalize(arr: np.ndarray, metadata: dict) -> DecodedRaster:
    """Convert a (height, width, samples) array into a DecodedRaster."""
    if arr.dtype == np.bool_:
        raise UnsupportedVariant("1-bit TIFF images are not supported")
    height, width, spp = arr.shape
    if spp > 4:
        arr = arr[..., :1]
        spp = 1
    source_dtype = arr.dtype.newbyteorder("=") if arr.dtype.byteorder != "|" else arr.dtype
    if arr.dtype.kind == "u" and arr.dtype.itemsize <= 4:
        samples = arr.astype(source_dtype, copy=False)
        kind = sample_kind_for_dtype(samples.dtype)
        type_max = TYPE_MAX[kind]
        is_float_source = False
    elif arr.dtype.kind in "iu":
        samples = arr.astype(np.float32)
        kind = sample_kind_for_dtype(samples.dtype)
        type_max = float(np.iinfo(source_dtype).max)
        is_float_source = False
    elif arr.dtype.kind == "f":
        samples = arr.astype(np.float32)
        kind = sample_kind_for_dtype(samples.dtype)
        type_max = 1.0
        is_float_source = True
    else:
        raise UnsupportedVariant(f"TIFF sample type {arr.dtype} is not supported")
    meta = dict(metadata)
    meta["sourceDtype"] = np.dtype(source_dtype).name
    return DecodedRaster(
        width=int(width),
        height=int(height),
        channels=int(spp),
        sample_kind=kind,
        samples=samples,
        type_max=type_max,
        orientation_flip_y=False,
        format_label="TIFF",
        format_type="tiff-float" if is_float_source else "tiff-int",
        metadata=meta,
    )


def decode_tiff(data: bytes, prefer_fast: bool = True, rgb_as_24bit: bool = False) -> DecodedRaster:
    """Decode a TIFF file into a canonical raster.

    Parameters
    ----------
    data : bytes
        Complete file contents.
    prefer_fast : bool
        Try the tifffile decoder first.
    rgb_as_24bit : bool
        24-bit packing needs raw per-channel access; the fast path is skipped.

    Notes
    -----
    Any failure of the fast path falls back to the built-in parser; only the
    fallback's errors reach the caller.
    """
    if not is_tiff(data):
        raise InvalidFormat("Not a TIFF file (bad byte-order mark or version)")
    if prefer_fast and not rgb_as_24bit:
        try:
            arr, metadata = decode_tiff_fast(data)
            raster = _canonicalize(arr, metadata)
            logger.debug("TIFF decoded with tifffile (%dx%d)", raster.width, raster.height)
            return raster
        except Exception as exc:
            logger.debug("tifffile decode failed, using built-in parser: %s", exc)
    arr, metadata = decode_tiff_fallback(data)
    raster = _canonicalize(arr, metadata)
    logger.debug("TIFF decoded with built-in parser (%dx%d)", raster.width, raster.height)
    return raster
