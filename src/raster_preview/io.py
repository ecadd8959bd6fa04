"""Format sniffing and decoder dispatch.

Every decoder is a plain function ``bytes -> DecodedRaster`` registered in
``DECODERS`` under a format tag. The tag is chosen by magic-number sniffing
with a file-extension fallback.

Conventions
-----------
- Magic numbers win over extensions; a ``.tif`` holding PNG data decodes as
  PNG.
- An explicit ``fmt`` bypasses sniffing; the decoder still validates magic.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Optional, Union

from raster_preview.decode_exr import decode_exr, is_exr
from raster_preview.decode_npy import decode_npy, decode_npz, is_npy, is_npz
from raster_preview.decode_pfm import decode_pfm, is_pfm
from raster_preview.decode_png import decode_png, is_png
from raster_preview.decode_pnm import decode_pnm, is_pnm
from raster_preview.decode_tiff import decode_tiff, is_tiff
from raster_preview.errors import InvalidFormat
from raster_preview.logger import get_logger
from raster_preview.raster_models import DecodedRaster

__all__ = [
    "DECODERS",
    "EXTENSIONS",
    "sniff_format",
    "format_for_name",
    "decode_bytes",
    "load_path",
]

logger = get_logger(__name__)

Decoder = Callable[[bytes], DecodedRaster]

DECODERS: Dict[str, Decoder] = {
    "tiff": decode_tiff,
    "exr": decode_exr,
    "npy": decode_npy,
    "npz": decode_npz,
    "pfm": decode_pfm,
    "pnm": decode_pnm,
    "png": decode_png,
}

EXTENSIONS: Dict[str, str] = {
    ".tif": "tiff",
    ".tiff": "tiff",
    ".exr": "exr",
    ".npy": "npy",
    ".npz": "npz",
    ".pfm": "pfm",
    ".pbm": "pnm",
    ".pgm": "pnm",
    ".ppm": "pnm",
    ".pnm": "pnm",
    ".png": "png",
}

_SNIFFERS = (
    ("tiff", is_tiff),
    ("exr", is_exr),
    ("npy", is_npy),
    ("png", is_png),
    ("npz", is_npz),
    ("pfm", is_pfm),
    ("pnm", is_pnm),
)


def format_for_name(name: Optional[str]) -> Optional[str]:
    """Return the format tag implied by a file name's extension."""
    if not name:
        return None
    return EXTENSIONS.get(Path(name).suffix.lower())


def sniff_format(data: bytes, name: Optional[str] = None) -> str:
    """Identify the format of ``data``.

    Parameters
    ----------
    data : bytes
        File contents (only the first bytes are inspected).
    name : str, optional
        File name or URI used as a fallback hint.

    Returns
    -------
    str
        A key of ``DECODERS``.
    """
    for tag, matches in _SNIFFERS:
        if matches(data):
            return tag
    tag = format_for_name(name)
    if tag is not None:
        return tag
    raise InvalidFormat(f"Unrecognized raster format{f' for {name}' if name else ''}")


def decode_bytes(
    data: bytes,
    fmt: Optional[str] = None,
    name: Optional[str] = None,
    prefer_fast_tiff: bool = True,
    rgb_as_24bit: bool = False,
) -> DecodedRaster:
    """Decode raw file contents into a canonical raster.

    Parameters
    ----------
    data : bytes
        Complete file contents.
    fmt : str, optional
        Format tag; sniffed when omitted.
    name : str, optional
        File name used for extension-based detection.
    prefer_fast_tiff : bool
        Try tifffile before the built-in TIFF parser.
    rgb_as_24bit : bool
        24-bit packing is requested; forces the built-in TIFF parser.
    """
    tag = fmt or sniff_format(data, name)
    decoder = DECODERS.get(tag)
    if decoder is None:
        raise InvalidFormat(f"No decoder registered for format {tag!r}")
    if tag == "tiff":
        raster = decode_tiff(data, prefer_fast=prefer_fast_tiff, rgb_as_24bit=rgb_as_24bit)
    else:
        raster = decoder(data)
    logger.info(
        "Decoded %s %dx%dx%d (%s)",
        raster.format_label,
        raster.width,
        raster.height,
        raster.channels,
        raster.sample_kind.value,
    )
    return raster


def load_path(path: Union[str, Path], **kwargs) -> DecodedRaster:
    """Read a file from disk and decode it."""
    path = Path(path)
    data = path.read_bytes()
    kwargs.setdefault("name", path.name)
    return decode_bytes(data, **kwargs)
