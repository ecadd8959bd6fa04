"""Recover scalar values from an image rendered with a known colormap."""

from __future__ import annotations

import numpy as np

from raster_preview.colormaps import TABLE_SIZE, colormap_table
from raster_preview.logger import get_logger

__all__ = ["nearest_indices", "indices_to_values", "convert_to_float", "LOG_FLOOR"]

logger = get_logger(__name__)

LOG_FLOOR = 1e-10


def nearest_indices(rgb: np.ndarray, table: np.ndarray, chunk_pixels: int = 65536) -> np.ndarray:
    """Return the index of the closest table entry for every pixel.

    Parameters
    ----------
    rgb : numpy.ndarray
        (N, 3) colours.
    table : numpy.ndarray
        (K, 3) colormap entries.
    chunk_pixels : int
        Pixels compared per block; bounds the (chunk, K) distance matrix.

    Notes
    -----
    Distance is Euclidean in RGB. Ties resolve to the lowest index.
    """
    pixels = np.asarray(rgb, dtype=np.int32).reshape(-1, 3)
    entries = np.asarray(table, dtype=np.int32)
    out = np.empty(len(pixels), dtype=np.intp)
    step = max(1, int(chunk_pixels))
    for start in range(0, len(pixels), step):
        block = pixels[start : start + step]
        dist = ((block[:, np.newaxis, :] - entries[np.newaxis, :, :]) ** 2).sum(axis=2)
        out[start : start + step] = np.argmin(dist, axis=1)
    return out


def indices_to_values(
    indices: np.ndarray,
    vmin: float,
    vmax: float,
    inverted: bool = False,
    logarithmic: bool = False,
) -> np.ndarray:
    """Map table indices to scalar values in ``[vmin, vmax]``.

    Notes
    -----
    Logarithmic mapping interpolates between ``log10(|vmin|)`` and
    ``log10(|vmax|)`` (magnitudes floored at ``LOG_FLOOR``). When both bounds
    are negative the result is negated. A range crossing zero has no
    logarithmic meaning and falls back to linear interpolation.
    """
    index = np.asarray(indices, dtype=np.float64)
    if inverted:
        index = (TABLE_SIZE - 1) - index
    t = index / float(TABLE_SIZE - 1)
    vmin = float(vmin)
    vmax = float(vmax)
    linear = vmin + t * (vmax - vmin)
    if not logarithmic:
        return linear.astype(np.float32)
    if vmin < 0 and vmax >= 0:
        logger.debug("Mixed-sign range [%g, %g], using linear mapping", vmin, vmax)
        return linear.astype(np.float32)
    log_min = np.log10(max(abs(vmin), LOG_FLOOR))
    log_max = np.log10(max(abs(vmax), LOG_FLOOR))
    values = np.power(10.0, log_min + t * (log_max - log_min))
    if vmin < 0 and vmax < 0:
        values = -values
    return values.astype(np.float32)


def convert_to_float(
    rgba: np.ndarray,
    colormap_name: str,
    vmin: float,
    vmax: float,
    inverted: bool = False,
    logarithmic: bool = False,
    chunk_pixels: int = 65536,
) -> np.ndarray:
    """Convert a colormap-rendered RGBA image back to scalar values.

    Parameters
    ----------
    rgba : numpy.ndarray
        (H, W, 3) or (H, W, 4) uint8 image; alpha is ignored.
    colormap_name : str
        Colormap the image was rendered with.
    vmin, vmax : float
        Values represented by the first and last colormap entries.
    inverted : bool
        The colormap was applied reversed.
    logarithmic : bool
        Values were spread logarithmically over the colormap.

    Returns
    -------
    numpy.ndarray
        float32 array of shape (H, W).

    Raises
    ------
    UnknownColormap
        If ``colormap_name`` is not registered.
    """
    table = colormap_table(colormap_name)
    image = np.asarray(rgba)
    if image.ndim != 3 or image.shape[2] < 3:
        raise ValueError(f"Expected an (H, W, 3|4) image, got shape {image.shape}")
    height, width = image.shape[:2]
    indices = nearest_indices(image[..., :3], table, chunk_pixels)
    values = indices_to_values(indices, vmin, vmax, inverted, logarithmic)
    logger.info(
        "Converted %dx%d image through colormap %s to [%g, %g]%s",
        width,
        height,
        colormap_name,
        vmin,
        vmax,
        " (log)" if logarithmic else "",
    )
    return values.reshape(height, width)
