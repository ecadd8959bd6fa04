import io
import logging
import os
import struct
import zlib

import matplotlib
import numpy as np
import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests (large rasters).",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: tests that decode or render large rasters")


def pytest_collection_modifyitems(config, items):
    run_slow = config.getoption("--run-slow")
    selected_marker = config.getoption("-m")
    marker_includes_slow = selected_marker and "slow" in selected_marker

    if run_slow or marker_includes_slow:
        return

    skip_slow = pytest.mark.skip(reason="Use --run-slow or -m slow to run slow tests.")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# Headless backend for PNG export under CI
if "CI" in os.environ:
    os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use(os.environ.get("MPLBACKEND", "Agg"), force=True)


# ---------------------------------------------------------------------------
# In-memory file builders
# ---------------------------------------------------------------------------


def _png_chunk(ctype, body):
    crc = zlib.crc32(ctype + body) & 0xFFFFFFFF
    return struct.pack(">I", len(body)) + ctype + body + struct.pack(">I", crc)


_ADAM7 = ((0, 0, 8, 8), (4, 0, 8, 8), (0, 4, 4, 8), (2, 0, 4, 4), (0, 2, 2, 4), (1, 0, 2, 2), (0, 1, 1, 2))


def _paeth_predictor(a, b, c):
    p = a + b - c
    pa, pb, pc = abs(p - a), abs(p - b), abs(p - c)
    if pa <= pb and pa <= pc:
        return a
    return b if pb <= pc else c


def _filter_scanlines(raw, height, stride, bpp, filter_type):
    """Apply one PNG filter type to every row of ``raw``."""
    scan = bytearray()
    prev = bytearray(stride)
    for y in range(height):
        row = bytearray(raw[y * stride : (y + 1) * stride])
        out = bytearray(stride)
        for i in range(stride):
            left = row[i - bpp] if i >= bpp else 0
            up = prev[i]
            upleft = prev[i - bpp] if i >= bpp else 0
            predictor = {
                0: 0,
                1: left,
                2: up,
                3: (left + up) >> 1,
                4: _paeth_predictor(left, up, upleft),
            }[filter_type]
            out[i] = (row[i] - predictor) & 0xFF
        scan.append(filter_type)
        scan += out
        prev = row
    return scan


def build_png(arr, color_type=None, filter_type=0, extra_chunks=(), interlace=0):
    """Encode a uint8/uint16 (H, W[, C]) array as PNG.

    With ``interlace=1`` the image data is laid out as the seven Adam7
    sub-images, each filtered on its own.
    """
    arr = np.asarray(arr)
    if arr.ndim == 2:
        arr = arr[..., np.newaxis]
    height, width, channels = arr.shape
    if color_type is None:
        color_type = {1: 0, 2: 4, 3: 2, 4: 6}[channels]
    depth = 16 if arr.dtype == np.uint16 else 8
    bpp = max(1, channels * depth // 8)

    def encode(sub):
        sub_h, sub_w = sub.shape[:2]
        raw = sub.astype(">u2").tobytes() if depth == 16 else sub.astype(np.uint8).tobytes()
        return _filter_scanlines(raw, sub_h, sub_w * bpp, bpp, filter_type)

    if interlace:
        scan = bytearray()
        for x0, y0, dx, dy in _ADAM7:
            sub = arr[y0::dy, x0::dx]
            if sub.size:
                scan += encode(sub)
    else:
        scan = encode(arr)
    ihdr = struct.pack(">IIBBBBB", width, height, depth, color_type, 0, 0, interlace)
    body = _png_chunk(b"IHDR", ihdr)
    for ctype, payload in extra_chunks:
        body += _png_chunk(ctype, payload)
    body += _png_chunk(b"IDAT", zlib.compress(bytes(scan)))
    body += _png_chunk(b"IEND", b"")
    return b"\x89PNG\r\n\x1a\n" + body


def build_pfm(arr, little_endian=True):
    """Encode float32 (H, W) or (H, W, 3) rows as stored (bottom-up)."""
    arr = np.asarray(arr, dtype=np.float32)
    magic = b"PF" if arr.ndim == 3 else b"Pf"
    height, width = arr.shape[:2]
    scale = b"-1.0" if little_endian else b"1.0"
    header = magic + b"\n" + f"{width} {height}\n".encode() + scale + b"\n"
    return header + arr.astype("<f4" if little_endian else ">f4").tobytes()


def build_pnm(arr, magic=b"P5", maxval=255, comment=None):
    """Encode a Netpbm image in binary (P4/P5/P6) or ASCII (P1/P2/P3) form."""
    arr = np.asarray(arr)
    height, width = arr.shape[:2]
    header = magic + b"\n"
    if comment:
        header += b"# " + comment + b"\n"
    header += f"{width} {height}\n".encode()
    if magic not in (b"P1", b"P4"):
        header += f"{maxval}\n".encode()
    if magic in (b"P1", b"P2", b"P3"):
        return header + " ".join(str(int(v)) for v in arr.reshape(-1)).encode() + b"\n"
    if magic == b"P4":
        return header + np.packbits(arr.astype(np.uint8), axis=1).tobytes()
    dtype = ">u2" if maxval > 255 else np.uint8
    return header + arr.astype(dtype).tobytes()


def build_npy(arr):
    buf = io.BytesIO()
    np.save(buf, np.asarray(arr))
    return buf.getvalue()


def build_npz(**arrays):
    buf = io.BytesIO()
    np.savez(buf, **arrays)
    return buf.getvalue()


def build_tiff(arr, **kwargs):
    tifffile = pytest.importorskip("tifffile")
    buf = io.BytesIO()
    tifffile.imwrite(buf, np.asarray(arr), **kwargs)
    return buf.getvalue()


def _exr_attr(name, type_name, value):
    return name.encode() + b"\x00" + type_name.encode() + b"\x00" + struct.pack("<i", len(value)) + value


def _exr_rle(buf):
    """OpenEXR run-length coding: ``n-1, byte`` for runs, ``-n, bytes`` for literals."""
    out = bytearray()
    i, n = 0, len(buf)
    while i < n:
        run = 1
        while i + run < n and buf[i + run] == buf[i] and run < 127:
            run += 1
        if run >= 3:
            out += bytes([run - 1, buf[i]])
            i += run
            continue
        j = i
        while j < n and j - i < 127:
            if j + 2 < n and buf[j] == buf[j + 1] == buf[j + 2]:
                break
            j += 1
        out += bytes([256 - (j - i)]) + buf[i:j]
        i = j
    return bytes(out)


def _exr_compress(raw, compression):
    """Split even/odd bytes, delta-encode them, then RLE or zlib the result."""
    if compression == 0:
        return raw
    t = np.frombuffer(raw, dtype=np.uint8)
    t = np.concatenate([t[0::2], t[1::2]]).astype(np.int16)
    d = t.copy()
    d[1:] = (t[1:] - t[:-1] + 128) & 0xFF
    packed = d.astype(np.uint8).tobytes()
    out = _exr_rle(packed) if compression == 1 else zlib.compress(packed)
    # incompressible blocks are stored raw
    return out if len(out) < len(raw) else raw


_EXR_LINES_PER_CHUNK = {0: 1, 1: 1, 2: 1, 3: 16}


def build_exr(planes, pixel_type=2, y_min=0, compression=0):
    """Encode scanline EXR from ``{name: (H, W) array}`` (top-down rows).

    Channels are written in sorted name order, as OpenEXR does.
    ``compression`` is 0 (none), 1 (RLE), 2 (ZIPS) or 3 (ZIP, 16 lines per block).
    """
    names = sorted(planes)
    height, width = np.asarray(planes[names[0]]).shape
    dtype = {1: "<f2", 2: "<f4"}[pixel_type]
    chlist = b""
    for name in names:
        chlist += name.encode() + b"\x00" + struct.pack("<iB3xii", pixel_type, 0, 1, 1)
    chlist += b"\x00"
    header = b"\x76\x2f\x31\x01" + struct.pack("<I", 2)
    header += _exr_attr("channels", "chlist", chlist)
    header += _exr_attr("compression", "compression", bytes([compression]))
    window = struct.pack("<iiii", 0, y_min, width - 1, y_min + height - 1)
    header += _exr_attr("dataWindow", "box2i", window)
    header += _exr_attr("displayWindow", "box2i", window)
    header += _exr_attr("lineOrder", "lineOrder", b"\x00")
    header += _exr_attr("pixelAspectRatio", "float", struct.pack("<f", 1.0))
    header += _exr_attr("screenWindowCenter", "v2f", struct.pack("<ff", 0.0, 0.0))
    header += _exr_attr("screenWindowWidth", "float", struct.pack("<f", 1.0))
    header += b"\x00"

    lines = _EXR_LINES_PER_CHUNK[compression]
    chunks = []
    for y0 in range(0, height, lines):
        raw = b"".join(
            np.asarray(planes[n], dtype=dtype)[y].tobytes()
            for y in range(y0, min(y0 + lines, height))
            for n in names
        )
        block = _exr_compress(raw, compression)
        chunks.append(struct.pack("<ii", y_min + y0, len(block)) + block)
    table_start = len(header)
    offset = table_start + 8 * len(chunks)
    table = b""
    for chunk in chunks:
        table += struct.pack("<Q", offset)
        offset += len(chunk)
    return header + table + b"".join(chunks)


@pytest.fixture
def png_bytes():
    return build_png


@pytest.fixture
def pfm_bytes():
    return build_pfm


@pytest.fixture
def pnm_bytes():
    return build_pnm


@pytest.fixture
def npy_bytes():
    return build_npy


@pytest.fixture
def npz_bytes():
    return build_npz


@pytest.fixture
def tiff_bytes():
    return build_tiff


@pytest.fixture
def exr_bytes():
    return build_exr


class ListHandler(logging.Handler):
    """Collects formatted records; the package logger does not propagate."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def messages(self, level=None):
        return [r.getMessage() for r in self.records if level is None or r.levelno == level]


@pytest.fixture
def log_records():
    from raster_preview.logger import attach_handler, set_level

    handler = ListHandler()
    attach_handler(handler)
    set_level("DEBUG")
    yield handler
    logging.getLogger("raster_preview").removeHandler(handler)
    set_level("INFO")
