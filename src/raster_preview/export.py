"""Export rendered rasters as PNG."""

from __future__ import annotations

import pathlib
from typing import Optional, Union

import numpy as np
from matplotlib import image as mpl_image

from raster_preview.colormaps import colorize
from raster_preview.logger import get_logger
from raster_preview.raster_models import DecodedRaster, Stats
from raster_preview.render_settings import RenderSettings
from raster_preview.renderer import render_raster
from raster_preview.statistics import compute_packed_stats, compute_stats

__all__ = ["save_rgba", "export_raster", "export_colorized"]

logger = get_logger(__name__)

PathLike = Union[str, pathlib.Path]


def save_rgba(rgba: np.ndarray, path: PathLike) -> pathlib.Path:
    """Write an (H, W, 4) uint8 raster to a PNG file."""
    rgba = np.asarray(rgba)
    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.dtype != np.uint8:
        raise ValueError(f"Expected an (H, W, 4) uint8 raster, got {rgba.shape} {rgba.dtype}")
    path = pathlib.Path(path)
    mpl_image.imsave(path, rgba, format="png")
    logger.info("Exported %dx%d PNG to %s", rgba.shape[1], rgba.shape[0], path)
    return path


def _stats_for(raster: DecodedRaster, settings: RenderSettings) -> Stats:
    args = (raster.samples, raster.width, raster.height, raster.channels, raster.sample_kind)
    if settings.rgb_as_24bit_grayscale and raster.channels >= 3:
        return compute_packed_stats(*args)
    return compute_stats(*args)


def export_raster(
    raster: DecodedRaster,
    settings: RenderSettings,
    path: PathLike,
    stats: Optional[Stats] = None,
) -> pathlib.Path:
    """Render ``raster`` with ``settings`` and save the result as PNG."""
    if stats is None:
        stats = _stats_for(raster, settings)
    result = render_raster(raster, stats, settings)
    return save_rgba(result.rgba, path)


def export_colorized(
    raster: DecodedRaster,
    colormap_name: str,
    path: PathLike,
    vmin: Optional[float] = None,
    vmax: Optional[float] = None,
) -> pathlib.Path:
    """Save the first channel of ``raster`` through a named colormap.

    The value range defaults to the finite data range. Bottom-up rasters are
    written top-down.
    """
    band = raster.samples[..., 0]
    if vmin is None or vmax is None:
        stats = compute_stats(band, raster.width, raster.height, 1, raster.sample_kind)
        vmin = stats.min if vmin is None else vmin
        vmax = stats.max if vmax is None else vmax
    rgba = colorize(band, colormap_name, vmin, vmax)
    if raster.orientation_flip_y:
        rgba = np.ascontiguousarray(rgba[::-1])
    return save_rgba(rgba, path)
