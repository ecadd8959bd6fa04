"""Statistics engine: sample ranges, histograms and 24-bit packing helpers."""

from __future__ import annotations

import numpy as np

from raster_preview.raster_models import HISTOGRAM_BINS, Histogram, SampleKind, Stats

__all__ = [
    "compute_stats",
    "compute_packed_stats",
    "to_8bit_equivalent",
    "pack_rgb24",
    "colour_view",
    "compute_histogram",
]

_EMPTY = Stats(min=float("inf"), max=float("-inf"))

_LUMA_WEIGHTS = (0.299, 0.587, 0.114)

# Divisors that map the full integer range onto 0..255.
_EIGHT_BIT_DIVISOR = {
    SampleKind.UINT8: 1.0,
    SampleKind.UINT16: 257.0,
    SampleKind.UINT32: 16843009.0,
}


def colour_view(samples: np.ndarray, width: int, height: int, channels: int) -> np.ndarray:
    """Return a (pixels, n) view over the colour channels.

    Gray and gray+alpha give one column, RGB and RGBA give three.
    """
    flat = np.asarray(samples).reshape(height * width, channels)
    return flat[:, : 1 if channels < 3 else 3]


def _range(values: np.ndarray) -> Stats:
    if values.size == 0:
        return _EMPTY
    if values.dtype.kind == "f":
        finite = values[np.isfinite(values)]
        if finite.size == 0:
            return _EMPTY
        return Stats(min=float(finite.min()), max=float(finite.max()))
    return Stats(min=float(values.min()), max=float(values.max()))


def compute_stats(
    samples: np.ndarray, width: int, height: int, channels: int, sample_kind: SampleKind
) -> Stats:
    """Return {min, max} over the colour channels of a sample buffer.

    Parameters
    ----------
    samples : numpy.ndarray
        Interleaved buffer or (height, width, channels) array.
    width, height, channels : int
        Raster geometry.
    sample_kind : SampleKind
        Element type; masked integer rasters arrive as float32.

    Returns
    -------
    Stats
        ``(+inf, -inf)`` when no finite sample exists.

    Notes
    -----
    Alpha is excluded, including the second channel of gray+alpha.
    Non-finite values are skipped.
    """
    return _range(colour_view(samples, width, height, channels))


def to_8bit_equivalent(values: np.ndarray, sample_kind: SampleKind) -> np.ndarray:
    """Convert channel values to integers in 0..255.

    Integer kinds are rescaled by their full range. Float values are taken as
    already being in 0..255 units, clamped and rounded. Non-finite values
    become 0.
    """
    values = np.asarray(values)
    if sample_kind is SampleKind.UINT8 and values.dtype == np.uint8:
        return values.astype(np.uint32)
    data = values.astype(np.float64)
    data = np.where(np.isfinite(data), data, 0.0)
    divisor = _EIGHT_BIT_DIVISOR.get(sample_kind)
    if divisor is not None:
        data = data / divisor
    data = np.clip(data, 0.0, 255.0)
    return np.floor(data + 0.5).astype(np.uint32)


def pack_rgb24(
    samples: np.ndarray, width: int, height: int, channels: int, sample_kind: SampleKind
) -> np.ndarray:
    """Pack the first three channels into ``(r << 16) | (g << 8) | b``.

    Returns a float64 array of shape (height, width) so it flows through the
    same normalization code as any other scalar field.
    """
    if channels < 3:
        raise ValueError("24-bit packing needs at least three channels")
    rgb = colour_view(samples, width, height, channels)
    eight = to_8bit_equivalent(rgb, sample_kind)
    packed = (eight[:, 0] << 16) | (eight[:, 1] << 8) | eight[:, 2]
    return packed.reshape(height, width).astype(np.float64)


def compute_packed_stats(
    samples: np.ndarray, width: int, height: int, channels: int, sample_kind: SampleKind
) -> Stats:
    """Statistics over packed 24-bit values rather than raw channels.

    Pixels with a non-finite colour channel (e.g. masked out) are skipped.
    """
    packed = pack_rgb24(samples, width, height, channels, sample_kind)
    rgb = colour_view(samples, width, height, channels)
    if rgb.dtype.kind == "f":
        packed = packed.reshape(-1)[np.isfinite(rgb).all(axis=1)]
    return _range(packed)


def compute_histogram(
    samples: np.ndarray,
    width: int,
    height: int,
    channels: int,
    lo: float,
    hi: float,
) -> Histogram:
    """Bin the colour channels of a raster into 256-bin histograms.

    Parameters
    ----------
    samples : numpy.ndarray
        Interleaved buffer or (height, width, channels) array; masked pixels
        arrive as NaN.
    width, height, channels : int
        Raster geometry.
    lo, hi : float
        Normalization range mapped onto bins 0..255.

    Returns
    -------
    Histogram
        R, G, B and luminance counts. Gray is replicated into R, G and B.

    Notes
    -----
    Values are scaled by ``255 / (hi - lo)``, floored and clamped to the bin
    range, so out-of-range samples pile up in the end bins. Luminance uses
    the Rec. 601 weights on the scaled values. Pixels with a NaN colour
    channel are counted in ``nan_count`` and binned nowhere. An empty range
    puts every pixel in bin 0.
    """
    rgb = colour_view(samples, width, height, channels).astype(np.float64)
    if rgb.shape[1] < 3:
        rgb = np.repeat(rgb[:, :1], 3, axis=1)
    nan_pixels = np.isnan(rgb).any(axis=1)
    rgb = rgb[~nan_pixels]
    span = float(hi) - float(lo)
    scale = 255.0 / span if span > 0 else 0.0
    with np.errstate(invalid="ignore", over="ignore"):
        scaled = np.nan_to_num((rgb - float(lo)) * scale, nan=0.0, posinf=255.0, neginf=0.0)
    luma = scaled @ np.array(_LUMA_WEIGHTS)

    def _bins(values: np.ndarray) -> np.ndarray:
        index = np.clip(np.floor(values), 0, HISTOGRAM_BINS - 1).astype(np.intp)
        return np.bincount(index, minlength=HISTOGRAM_BINS).astype(np.int64)

    return Histogram(
        red=_bins(scaled[:, 0]),
        green=_bins(scaled[:, 1]),
        blue=_bins(scaled[:, 2]),
        luminance=_bins(luma),
        nan_count=int(nan_pixels.sum()),
        lo=float(lo),
        hi=float(hi),
    )
