"""Mask filter: hide pixels where a secondary raster crosses a threshold."""

from __future__ import annotations

from typing import Callable, Iterable, Optional

import numpy as np

from raster_preview.errors import MaskError, MaskShapeError
from raster_preview.raster_models import DecodedRaster
from raster_preview.render_settings import MaskFilter

__all__ = ["mask_band", "apply_mask", "apply_mask_filters"]


def mask_band(mask: DecodedRaster, target: DecodedRaster) -> np.ndarray:
    """Return the mask's first channel as float32, row-aligned with ``target``.

    Raises
    ------
    MaskShapeError
        When the mask and target dimensions differ.
    """
    if (mask.width, mask.height) != (target.width, target.height):
        raise MaskShapeError(
            f"Mask is {mask.width}x{mask.height}, image is {target.width}x{target.height}"
        )
    band = mask.samples[..., 0].astype(np.float32)
    if mask.orientation_flip_y != target.orientation_flip_y:
        band = band[::-1]
    return band


def apply_mask(
    samples: np.ndarray, mask_samples: np.ndarray, threshold: float, filter_higher: bool
) -> np.ndarray:
    """Set every channel of filtered pixels to NaN.

    Parameters
    ----------
    samples : numpy.ndarray
        (height, width, channels) image samples.
    mask_samples : numpy.ndarray
        (height, width) mask values.
    threshold : float
        Comparison threshold.
    filter_higher : bool
        Hide ``mask > threshold`` when true, ``mask < threshold`` otherwise.

    Returns
    -------
    numpy.ndarray
        float32 copy of ``samples`` with NaN where filtered.

    Notes
    -----
    NaN mask values never compare true, so they never hide a pixel.
    """
    samples = np.asarray(samples)
    mask_samples = np.asarray(mask_samples)
    if mask_samples.shape != samples.shape[:2]:
        raise MaskShapeError(f"Mask shape {mask_samples.shape} != image shape {samples.shape[:2]}")
    out = samples.astype(np.float32, copy=True)
    hidden = mask_samples > threshold if filter_higher else mask_samples < threshold
    out[hidden] = np.nan
    return out


def apply_mask_filters(
    samples: np.ndarray,
    filters: Iterable[MaskFilter],
    mask_lookup: Callable[[str], np.ndarray],
    on_error: Optional[Callable[[MaskFilter, MaskError], None]] = None,
) -> np.ndarray:
    """Apply enabled filters in order; later filters see earlier output.

    ``mask_lookup`` returns the mask band for a URI or raises ``MaskError``.
    Without ``on_error`` the error propagates; with it, the failing filter
    is reported and skipped.
    """
    out = samples
    for mask_filter in filters:
        if not mask_filter.enabled:
            continue
        try:
            band = mask_lookup(mask_filter.mask_uri)
            out = apply_mask(out, band, mask_filter.threshold, mask_filter.filter_higher)
        except MaskError as exc:
            if on_error is None:
                raise
            on_error(mask_filter, exc)
    return out
