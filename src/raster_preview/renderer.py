"""Renderer: canonical samples + settings -> RGBA8 display raster.

Path selection
--------------
1. Identity tone transform: direct linear scaling of ``[min, max]`` onto
   ``[0, 255]``; no LUT is built.
2. Otherwise a per-call LUT. Raw uint8/uint16 samples index a 256/65536
   entry table by value; float, uint32, masked and 24-bit packed samples
   are quantized over the effective input range into a 65536 entry table.

gammaPassthrough and manual/auto modes share this split; they differ only
in the range returned by ``resolve_range``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from raster_preview.errors import RenderPrecondition
from raster_preview.logger import get_logger
from raster_preview.normalization import normalize, resolve_range
from raster_preview.raster_models import TYPE_MAX_24BIT, DecodedRaster, SampleKind, Stats
from raster_preview.render_settings import RenderSettings
from raster_preview.statistics import pack_rgb24
from raster_preview.tone_mapping import (
    build_integer_lut,
    build_quantized_lut,
    effective_input_range,
    is_identity_transform,
    to_display_levels,
)

__all__ = ["RenderResult", "render", "render_raster", "placeholder", "PATH_DIRECT", "PATH_LUT", "PATH_CACHED"]

logger = get_logger(__name__)

PATH_DIRECT = "direct"
PATH_LUT = "lut"
PATH_CACHED = "cached"

_INTEGER_LUT_SIZES = {np.dtype(np.uint8): 256, np.dtype(np.uint16): 65536}
_KIND_BY_DTYPE = {kind.dtype: kind for kind in SampleKind}


@dataclass(frozen=True)
class RenderResult:
    """Rendered RGBA raster plus the decisions that produced it."""

    rgba: np.ndarray
    path: str
    norm_min: float
    norm_max: float

    @property
    def height(self) -> int:
        return int(self.rgba.shape[0])

    @property
    def width(self) -> int:
        return int(self.rgba.shape[1])


def placeholder(width: int, height: int) -> np.ndarray:
    """Zero-filled RGBA raster of the right size."""
    return np.zeros((height, width, 4), dtype=np.uint8)


def _tone_levels_lut(
    color: np.ndarray, settings: RenderSettings, lo: float, hi: float, lut_size: int
) -> np.ndarray:
    size = _INTEGER_LUT_SIZES.get(color.dtype)
    if size is not None:
        lut = build_integer_lut(settings, size, lo, hi)
        return lut[color]

    t = normalize(color, lo, hi)
    _, t_sat = effective_input_range(settings)
    finite = t[np.isfinite(t)]
    data_max = float(finite.max()) if finite.size else 0.0
    upper = min(t_sat, data_max)
    lut = build_quantized_lut(settings, lut_size, upper)
    if upper <= 0:
        return np.zeros(color.shape, dtype=np.uint8)
    scaled = np.clip(np.nan_to_num(t, nan=0.0, posinf=upper, neginf=0.0), 0.0, upper)
    index = np.rint(scaled * ((lut_size - 1) / upper)).astype(np.intp)
    return lut[index]


def render(
    samples: Optional[np.ndarray],
    width: int,
    height: int,
    channels: int,
    is_float: bool,
    stats: Optional[Stats],
    settings: RenderSettings,
    type_max: float,
    flip_y: bool = False,
    sample_kind: Optional[SampleKind] = None,
    lut_size: int = 65536,
) -> RenderResult:
    """Render samples to an RGBA8 raster.

    Parameters
    ----------
    samples : numpy.ndarray
        Interleaved buffer or (height, width, channels) array.
    width, height, channels : int
        Raster geometry.
    is_float : bool
        Source holds floating-point samples.
    stats : Stats, optional
        Statistics for auto mode (packed statistics in 24-bit mode).
    settings : RenderSettings
        Transform configuration.
    type_max : float
        Nominal maximum of the source type.
    flip_y : bool
        Reverse output rows (bottom-up sources).
    sample_kind : SampleKind, optional
        Source kind when ``samples`` were converted (e.g. masked to float32).
    lut_size : int
        Size of the quantized LUT.

    Returns
    -------
    RenderResult
        (height, width, 4) uint8 raster, chosen path and range.

    Raises
    ------
    RenderPrecondition
        If no samples are supplied.

    Notes
    -----
    - Gray is replicated into R, G, B; alpha defaults to 255.
    - Alpha is scaled linearly by ``type_max`` and never tone-mapped.
    - A non-finite value in any channel paints the pixel with ``nan_color``
      at full opacity.
    """
    if samples is None:
        raise RenderPrecondition("render() called without a decoded raster")
    arr = np.asarray(samples).reshape(height, width, channels)
    if sample_kind is None:
        sample_kind = _KIND_BY_DTYPE.get(arr.dtype, SampleKind.FLOAT32)

    if arr.dtype.kind == "f":
        nan_pixels = ~np.isfinite(arr).all(axis=2)
    else:
        nan_pixels = None

    if channels == 4:
        alpha_raw = arr[..., 3]
    elif channels == 2:
        alpha_raw = arr[..., 1]
    else:
        alpha_raw = None

    if settings.rgb_as_24bit_grayscale and channels >= 3:
        color = pack_rgb24(arr, width, height, channels, sample_kind)[..., np.newaxis]
        range_max = TYPE_MAX_24BIT
        range_is_float = False
    else:
        color = arr[..., :3] if channels >= 3 else arr[..., :1]
        range_max = type_max
        range_is_float = is_float

    lo, hi = resolve_range(settings, stats, range_max, range_is_float)
    if is_identity_transform(settings):
        path = PATH_DIRECT
        levels = to_display_levels(normalize(color, lo, hi))
    else:
        path = PATH_LUT
        levels = _tone_levels_lut(color, settings, lo, hi, lut_size)

    rgba = np.empty((height, width, 4), dtype=np.uint8)
    if levels.shape[2] == 1:
        rgba[..., :3] = levels
    else:
        rgba[..., :3] = levels[..., :3]
    if alpha_raw is None:
        rgba[..., 3] = 255
    else:
        rgba[..., 3] = to_display_levels(alpha_raw.astype(np.float64) / float(type_max))

    if nan_pixels is not None and nan_pixels.any():
        rgba[nan_pixels, :3] = np.asarray(settings.nan_color, dtype=np.uint8)
        rgba[nan_pixels, 3] = 255

    if flip_y:
        rgba = np.ascontiguousarray(rgba[::-1])
    logger.debug("Rendered %dx%d via %s path, range [%g, %g]", width, height, path, lo, hi)
    return RenderResult(rgba=rgba, path=path, norm_min=lo, norm_max=hi)


def render_raster(
    raster: Optional[DecodedRaster],
    stats: Optional[Stats],
    settings: RenderSettings,
    samples: Optional[np.ndarray] = None,
    lut_size: int = 65536,
) -> RenderResult:
    """Render a DecodedRaster, optionally with substituted (masked) samples."""
    if raster is None:
        raise RenderPrecondition("No canonical raster loaded")
    return render(
        raster.samples if samples is None else samples,
        raster.width,
        raster.height,
        raster.channels,
        raster.is_float,
        stats,
        settings,
        type_max=raster.type_max,
        flip_y=raster.orientation_flip_y,
        sample_kind=raster.sample_kind,
        lut_size=lut_size,
    )
