"""NumPy ``.npy`` / ``.npz`` decoder.

Headers are parsed with ``numpy.lib.format``; sample data is read with
``numpy.frombuffer`` so short files are reported instead of padded.

Conventions
-----------
- 2-D arrays are grayscale; 3-D arrays are (H, W, C) or, when the first
  axis is small and the last is not, (C, H, W).
- C in {1, 3, 4} is kept; any other channel count keeps channel 0 only.
- float16/float64 and all signed or 64-bit integers become float32 with the
  source type maximum recorded; uint8/16/32 are kept unchanged.
"""

from __future__ import annotations

import io as _io
import re
import zipfile
from typing import List

import numpy as np
from numpy.lib import format as npy_format

from raster_preview.errors import (
    DecodeIntegrityError,
    InvalidFormat,
    NoUsableArray,
    UnsupportedVariant,
)
from raster_preview.logger import get_logger
from raster_preview.raster_models import TYPE_MAX, DecodedRaster, SampleKind, sample_kind_for_dtype

__all__ = ["decode_npy", "decode_npz", "read_npy_array", "is_npy", "is_npz", "NPZ_PREFERRED"]

logger = get_logger(__name__)

NPY_MAGIC = b"\x93NUMPY"
NPZ_PREFERRED = re.compile(r"depth|dispar|inv|z|range", re.IGNORECASE)


def is_npy(data: bytes) -> bool:
    return data[:6] == NPY_MAGIC


def is_npz(data: bytes) -> bool:
    return data[:4] == b"PK\x03\x04"


def read_npy_array(data: bytes) -> np.ndarray:
    """Parse an ``.npy`` payload into an array without copying the data.

    Raises
    ------
    InvalidFormat
        Missing magic string or unknown format version.
    UnsupportedVariant
        Object, structured, string or complex dtypes.
    DecodeIntegrityError
        Fewer data bytes than the header announces.
    """
    if not is_npy(data):
        raise InvalidFormat("Invalid NPY file (missing magic string)")
    fp = _io.BytesIO(data)
    try:
        major, minor = npy_format.read_magic(fp)
    except ValueError as exc:
        raise InvalidFormat(f"Invalid NPY header: {exc}") from exc
    try:
        if (major, minor) == (1, 0):
            shape, fortran_order, dtype = npy_format.read_array_header_1_0(fp)
        elif (major, minor) == (2, 0):
            shape, fortran_order, dtype = npy_format.read_array_header_2_0(fp)
        else:
            raise InvalidFormat(f"Unsupported NPY version {major}.{minor}")
    except ValueError as exc:
        raise InvalidFormat(f"Invalid NPY header: {exc}") from exc

    if dtype.hasobject or dtype.fields is not None or dtype.kind not in "biuf":
        raise UnsupportedVariant(f"NPY dtype {dtype.str} is not supported")
    offset = fp.tell()
    count = int(np.prod(shape, dtype=np.int64)) if shape else 1
    needed = count * dtype.itemsize
    if len(data) - offset < needed:
        raise DecodeIntegrityError(
            f"NPY data holds {len(data) - offset} bytes, expected {needed}"
        )
    flat = np.frombuffer(data, dtype=dtype, count=count, offset=offset)
    return flat.reshape(shape, order="F" if fortran_order else "C")


def _to_channels_last(arr: np.ndarray) -> np.ndarray:
    if arr.ndim == 2:
        return arr[..., np.newaxis]
    if arr.ndim == 3:
        if arr.shape[0] <= 4 < arr.shape[2]:
            return np.moveaxis(arr, 0, -1)
        return arr
    raise UnsupportedVariant(f"Unsupported NPY dims {arr.ndim}")


def _canonicalize(arr: np.ndarray, label: str, extra: dict) -> DecodedRaster:
    source = arr.dtype
    arr = _to_channels_last(arr)
    height, width, channels = arr.shape
    if channels not in (1, 3, 4):
        arr = arr[..., :1]
        channels = 1

    if source.kind == "b":
        samples = arr.astype(np.uint8) * np.uint8(255)
        kind, type_max, format_type = SampleKind.UINT8, 255.0, "npy-uint"
    elif source.kind == "u" and source.itemsize <= 4:
        samples = arr.astype(source.newbyteorder("="), copy=False)
        kind = sample_kind_for_dtype(samples.dtype)
        type_max, format_type = TYPE_MAX[kind], "npy-uint"
    elif source.kind in "iu":
        samples = arr.astype(np.float32)
        kind = SampleKind.FLOAT32
        type_max = float(np.iinfo(source).max)
        format_type = "npy-int" if source.kind == "i" else "npy-uint"
    else:
        samples = arr.astype(np.float32)
        kind, type_max, format_type = SampleKind.FLOAT32, 1.0, "npy-float"

    metadata = {"dtype": source.str, "shape": list(extra.pop("shape"))}
    metadata.update(extra)
    return DecodedRaster(
        width=int(width),
        height=int(height),
        channels=int(channels),
        sample_kind=kind,
        samples=samples,
        type_max=type_max,
        format_label=label,
        format_type=format_type,
        metadata=metadata,
    )


def decode_npy(data: bytes) -> DecodedRaster:
    """Decode a ``.npy`` file into a canonical raster."""
    arr = read_npy_array(data)
    logger.debug("NPY array %s %s", arr.dtype.str, arr.shape)
    return _canonicalize(arr, "NPY", {"shape": arr.shape})


def _stored_members(zf: zipfile.ZipFile) -> List[zipfile.ZipInfo]:
    return [
        info
        for info in zf.infolist()
        if info.filename.endswith(".npy") and info.compress_type == zipfile.ZIP_STORED
    ]


def _pick_member(members: List[zipfile.ZipInfo]) -> zipfile.ZipInfo:
    for info in members:
        if NPZ_PREFERRED.search(info.filename[: -len(".npy")]):
            return info
    return members[0]


def decode_npz(data: bytes) -> DecodedRaster:
    """Decode the most depth-like stored array of an ``.npz`` archive.

    Notes
    -----
    Only members written without compression (``numpy.savez``) are used.
    The first member whose name matches ``depth|dispar|inv|z|range`` wins,
    otherwise the first stored member.
    """
    try:
        with zipfile.ZipFile(_io.BytesIO(data)) as zf:
            members = _stored_members(zf)
            if not members:
                raise NoUsableArray("NPZ contains no uncompressed .npy arrays")
            pick = _pick_member(members)
            payload = zf.read(pick)
            names = [info.filename[: -len(".npy")] for info in members]
    except zipfile.BadZipFile as exc:
        raise InvalidFormat(f"Invalid NPZ archive: {exc}") from exc
    arr = read_npy_array(payload)
    key = pick.filename[: -len(".npy")]
    logger.debug("NPZ member %r selected from %s", key, names)
    return _canonicalize(arr, "NPZ", {"shape": arr.shape, "arrayName": key, "arrays": names})

