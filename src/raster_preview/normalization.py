"""Normalization resolver: settings + statistics -> display range."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from raster_preview.raster_models import Stats
from raster_preview.render_settings import NormalizationMode, RenderSettings

__all__ = ["resolve_range", "normalize"]


def resolve_range(
    settings: RenderSettings, stats: Optional[Stats], type_max: float, is_float: bool
) -> Tuple[float, float]:
    """Return the (min, max) sample range mapped onto the display.

    Parameters
    ----------
    settings : RenderSettings
        Current render settings.
    stats : Stats, optional
        Sample statistics; only consulted in auto mode.
    type_max : float
        Nominal maximum of the source type (or 2**24-1 in 24-bit mode).
    is_float : bool
        Whether the source holds floating-point samples.

    Notes
    -----
    - gammaPassthrough ignores statistics entirely.
    - auto falls back to 0 / ``type_max`` for any non-finite bound.
    - manual values are multiplied by ``type_max`` for integer sources when
      ``normalized_float_mode`` is on.
    """
    norm = settings.normalization
    if norm.mode is NormalizationMode.GAMMA_PASSTHROUGH:
        return 0.0, float(type_max)
    if norm.mode is NormalizationMode.AUTO:
        lo = float(stats.min) if stats is not None and np.isfinite(stats.min) else 0.0
        hi = float(stats.max) if stats is not None and np.isfinite(stats.max) else float(type_max)
        return lo, hi
    if norm.mode is NormalizationMode.MANUAL:
        lo, hi = float(norm.min), float(norm.max)
        if settings.normalized_float_mode and not is_float:
            lo *= type_max
            hi *= type_max
        return lo, hi
    return 0.0, float(type_max)


def normalize(values: np.ndarray, lo: float, hi: float) -> np.ndarray:
    """Map samples linearly so that ``lo -> 0`` and ``hi -> 1``.

    An empty or inverted range maps every finite sample to 0; non-finite
    samples stay non-finite.
    """
    values = np.asarray(values, dtype=np.float64)
    span = hi - lo
    if not span > 0:
        return np.where(np.isfinite(values), 0.0, values)
    return (values - lo) / span
