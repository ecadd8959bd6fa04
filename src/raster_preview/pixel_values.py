"""Pixel value text for hover inspection.

Formatting rules
----------------
- Colormap-converted rasters: 6 significant digits.
- 24-bit mode (3+ channels): packed value / ``scale_24bit_factor``, 3 decimals.
- Grayscale: integers as-is (or ``value / type_max`` with 4 significant
  digits in normalized-float mode); floats with 4 significant digits.
- RGB(A): integers zero-padded to 3 digits (colour channels only); floats
  with 4 significant digits per channel.
- EXR values always use 6 decimals, with an ``A:`` prefix on alpha.
- Show-modified mode reports values after gamma/exposure: floats with 6
  decimals, integers rescaled to 0..255 and zero-padded.
"""

from __future__ import annotations

import math
from typing import List, Optional

import numpy as np

from raster_preview.raster_models import DecodedRaster
from raster_preview.render_settings import RenderSettings
from raster_preview.statistics import pack_rgb24
from raster_preview.tone_mapping import tone_map

__all__ = ["to_precision", "to_fixed", "pixel_samples", "format_pixel_value"]

_FIXED_FORMATS = frozenset({"exr-float"})


def _non_finite_text(value: float) -> Optional[str]:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return None


def to_precision(value: float, digits: int) -> str:
    """Format with ``digits`` significant digits, keeping trailing zeros.

    Exponential notation is used when the exponent is below -6 or at least
    ``digits``; the exponent carries no zero padding (``1.235e+5``).
    """
    value = float(value)
    special = _non_finite_text(value)
    if special is not None:
        return special
    mantissa, exponent = f"{value:.{digits - 1}e}".split("e")
    exp = int(exponent)
    if exp < -6 or exp >= digits:
        return f"{mantissa}e{exp:+d}"
    return f"{value:.{max(0, digits - 1 - exp)}f}"


def to_fixed(value: float, decimals: int) -> str:
    value = float(value)
    special = _non_finite_text(value)
    if special is not None:
        return special
    return f"{value:.{decimals}f}"


def _padded(values) -> str:
    return " ".join(f"{int(round(float(v))):03d}" for v in values)


def pixel_samples(raster: DecodedRaster, x: int, y: int, samples: Optional[np.ndarray] = None):
    """Return the sample vector under display coordinate (x, y), or None.

    Display rows of bottom-up rasters are mirrored back to storage rows.
    """
    if not (0 <= x < raster.width and 0 <= y < raster.height):
        return None
    row = raster.height - 1 - y if raster.orientation_flip_y else y
    data = raster.samples if samples is None else samples
    return np.asarray(data).reshape(raster.height, raster.width, -1)[row, x]


def _modified_text(raster: DecodedRaster, pixel: np.ndarray, settings: RenderSettings) -> str:
    if raster.is_float:
        values = np.asarray(tone_map(pixel.astype(np.float64), settings))
        parts: List[str] = [to_fixed(v, 6) for v in values]
        if raster.format_type in _FIXED_FORMATS and len(parts) == 4:
            parts[3] = f"A:{parts[3]}"
        return " ".join(parts)
    count = min(len(pixel), 3)
    normalized = pixel[:count].astype(np.float64) / float(raster.type_max)
    mapped = np.clip(np.asarray(tone_map(normalized, settings)), 0.0, 1.0)
    return _padded(np.floor(mapped * 255.0 + 0.5))


def format_pixel_value(
    raster: DecodedRaster,
    x: int,
    y: int,
    settings: RenderSettings,
    colormap_converted: bool = False,
) -> str:
    """Return the inspector text for display pixel (x, y).

    Parameters
    ----------
    raster : DecodedRaster
        Current canonical raster (unmasked).
    x, y : int
        Display coordinates; out-of-bounds positions return ``""``.
    settings : RenderSettings
        Active settings (show-modified, 24-bit and normalized-float modes).
    colormap_converted : bool
        ``raster`` holds values recovered from a colormap image.
    """
    pixel = pixel_samples(raster, x, y)
    if pixel is None:
        return ""
    if colormap_converted:
        return to_precision(pixel[0], 6)
    if settings.color_picker_show_modified:
        return _modified_text(raster, pixel, settings)

    channels = raster.channels
    if settings.rgb_as_24bit_grayscale and channels >= 3:
        packed = pack_rgb24(pixel.reshape(1, 1, channels), 1, 1, channels, raster.sample_kind)
        return to_fixed(float(packed[0, 0]) / settings.scale_24bit_factor, 3)

    fixed = raster.format_type in _FIXED_FORMATS
    if channels <= 2:
        value = pixel[0]
        if fixed:
            parts = [to_fixed(v, 6) for v in pixel]
            if channels == 2:
                parts[1] = f"A:{parts[1]}"
            return " ".join(parts)
        if raster.is_float:
            return to_precision(value, 4)
        if settings.normalized_float_mode:
            return to_precision(float(value) / float(raster.type_max), 4)
        return str(int(value))

    if fixed:
        parts = [to_fixed(v, 6) for v in pixel]
        if channels == 4:
            parts[3] = f"A:{parts[3]}"
        return " ".join(parts)
    if raster.is_float:
        return " ".join(to_precision(v, 4) for v in pixel)
    return _padded(pixel[:3])
