"""Tone-mapping core: gamma/exposure transform, identity check and LUTs.

The transform works on normalized values ``t`` (0 at the range minimum,
1 at the range maximum)::

    linear = t ** gamma_in
    linear *= 2 ** offset_stops
    out = linear ** (1 / gamma_out)

Output is clamped to [0, 1] only when converted to display levels.
"""

from __future__ import annotations

from typing import Tuple, Union

import numpy as np

from raster_preview.normalization import normalize
from raster_preview.render_settings import RenderSettings

__all__ = [
    "IDENTITY_TOLERANCE",
    "is_identity_transform",
    "apply_tone_mapping",
    "tone_map",
    "effective_input_range",
    "to_display_levels",
    "build_integer_lut",
    "build_quantized_lut",
]

IDENTITY_TOLERANCE = 1e-3

ArrayLike = Union[float, np.ndarray]


def is_identity_transform(settings: RenderSettings) -> bool:
    """True when gamma in/out cancel and there is no exposure offset."""
    gamma = settings.gamma
    return (
        abs(gamma.gamma_in - gamma.gamma_out) < IDENTITY_TOLERANCE
        and abs(settings.brightness.offset_stops) < IDENTITY_TOLERANCE
    )


def apply_tone_mapping(
    t: ArrayLike, gamma_in: float, gamma_out: float, offset_stops: float
) -> ArrayLike:
    """Apply the gamma/exposure transform to normalized values.

    Negative inputs have no real fractional power and map to 0. Values above
    1 are passed through the transform unclamped.
    """
    values = np.maximum(np.asarray(t, dtype=np.float64), 0.0)
    with np.errstate(over="ignore", invalid="ignore"):
        linear = np.power(values, gamma_in)
        if offset_stops != 0:
            linear = linear * (2.0 ** offset_stops)
        out = np.power(linear, 1.0 / gamma_out)
    if np.ndim(t) == 0:
        return float(out)
    return out


def tone_map(t: ArrayLike, settings: RenderSettings) -> ArrayLike:
    """``apply_tone_mapping`` with parameters taken from ``settings``."""
    return apply_tone_mapping(
        t, settings.gamma.gamma_in, settings.gamma.gamma_out, settings.brightness.offset_stops
    )


def effective_input_range(settings: RenderSettings) -> Tuple[float, float]:
    """Return the normalized input interval that maps inside [0, 1].

    Inputs at or below 0 map to 0; inputs at or above ``2**(-stops/gamma_in)``
    saturate at 1, since ``(t**gin * 2**stops) ** (1/gout) >= 1`` exactly when
    ``t >= 2**(-stops/gin)``.
    """
    gamma_in = settings.gamma.gamma_in
    if gamma_in <= 0:
        return 0.0, 1.0
    return 0.0, float(2.0 ** (-settings.brightness.offset_stops / gamma_in))


def to_display_levels(values: ArrayLike) -> np.ndarray:
    """Clamp to [0, 1] and round half up to uint8 display levels."""
    values = np.asarray(values, dtype=np.float64)
    clipped = np.clip(np.nan_to_num(values, nan=0.0), 0.0, 1.0)
    return np.floor(clipped * 255.0 + 0.5).astype(np.uint8)


def build_integer_lut(settings: RenderSettings, size: int, lo: float, hi: float) -> np.ndarray:
    """LUT indexed by raw integer sample value (256 or 65536 entries).

    Each entry is normalized against ``[lo, hi]``, tone-mapped and rounded
    independently.
    """
    levels = np.arange(size, dtype=np.float64)
    return to_display_levels(tone_map(normalize(levels, lo, hi), settings))


def build_quantized_lut(settings: RenderSettings, size: int, upper: float) -> np.ndarray:
    """LUT indexed by ``round(t / upper * (size - 1))`` for ``t`` in [0, upper]."""
    if upper <= 0:
        return np.zeros(size, dtype=np.uint8)
    t = np.linspace(0.0, upper, size, dtype=np.float64)
    return to_display_levels(tone_map(t, settings))

