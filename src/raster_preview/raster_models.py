"""Canonical raster containers shared by every decoder and the renderer.

Conventions
-----------
- ``samples`` is always shaped (height, width, channels) and C-contiguous,
  so ``samples.ravel()`` is the channel-interleaved buffer.
- ``type_max`` is the nominal ceiling used when no better range is known.
- ``orientation_flip_y`` marks bottom-up sources; only the rendered output
  is flipped, never the samples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

import numpy as np

from raster_preview.errors import DecodeIntegrityError

__all__ = [
    "SampleKind",
    "DecodedRaster",
    "Stats",
    "BinSummary",
    "Histogram",
    "HISTOGRAM_BINS",
    "FormatInfo",
    "TYPE_MAX",
    "TYPE_MAX_24BIT",
    "sample_kind_for_dtype",
]


class SampleKind(Enum):
    """Element type of a canonical sample buffer."""

    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    FLOAT32 = "float32"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @property
    def is_float(self) -> bool:
        return self is SampleKind.FLOAT32


TYPE_MAX: Dict[SampleKind, float] = {
    SampleKind.UINT8: 255.0,
    SampleKind.UINT16: 65535.0,
    SampleKind.UINT32: 4294967295.0,
    SampleKind.FLOAT32: 1.0,
}

TYPE_MAX_24BIT = 16777215.0


def sample_kind_for_dtype(dtype: np.dtype) -> SampleKind:
    """Return the sample kind matching a canonical numpy dtype."""
    dtype = np.dtype(dtype)
    for kind in SampleKind:
        if kind.dtype == dtype.newbyteorder("=") or kind.dtype == dtype:
            return kind
    raise ValueError(f"No canonical sample kind for dtype {dtype}")


@dataclass(frozen=True)
class Stats:
    """Sample range over the colour channels of a raster.

    An empty scan yields ``min=+inf, max=-inf``; callers check ``is_valid``.
    """

    min: float
    max: float

    @property
    def is_valid(self) -> bool:
        return bool(np.isfinite(self.min) and np.isfinite(self.max))

    def to_message(self) -> dict:
        return {"type": "stats", "min": float(self.min), "max": float(self.max)}


HISTOGRAM_BINS = 256


@dataclass(frozen=True)
class BinSummary:
    """Occupied-bin summary of one histogram.

    An empty histogram reports ``min=0, max=255, mean=0, total=0``.
    """

    min: int
    max: int
    mean: float
    total: int

    @classmethod
    def of(cls, counts: np.ndarray) -> "BinSummary":
        occupied = np.flatnonzero(counts)
        total = int(counts.sum())
        if total == 0:
            return cls(min=0, max=HISTOGRAM_BINS - 1, mean=0.0, total=0)
        mean = float(np.dot(np.arange(len(counts)), counts) / total)
        return cls(min=int(occupied[0]), max=int(occupied[-1]), mean=mean, total=total)

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "mean": self.mean, "total": self.total}


@dataclass(frozen=True)
class Histogram:
    """256-bin R/G/B/luminance histograms over the normalized range ``[lo, hi]``."""

    red: np.ndarray
    green: np.ndarray
    blue: np.ndarray
    luminance: np.ndarray
    nan_count: int
    lo: float
    hi: float

    def summaries(self) -> Dict[str, BinSummary]:
        return {
            "r": BinSummary.of(self.red),
            "g": BinSummary.of(self.green),
            "b": BinSummary.of(self.blue),
            "luminance": BinSummary.of(self.luminance),
        }

    def to_message(self) -> dict:
        return {
            "type": "histogram",
            "r": self.red.tolist(),
            "g": self.green.tolist(),
            "b": self.blue.tolist(),
            "luminance": self.luminance.tolist(),
            "nanCount": int(self.nan_count),
            "range": [float(self.lo), float(self.hi)],
            "stats": {name: s.to_dict() for name, s in self.summaries().items()},
        }


@dataclass(frozen=True)
class FormatInfo:
    """Format metadata reported to the host after a decode."""

    width: int
    height: int
    channels: int
    sample_kind: SampleKind
    format_label: str
    format_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_message(self, is_initial_load: bool = False) -> dict:
        payload = {
            "type": "formatInfo",
            "width": self.width,
            "height": self.height,
            "channels": self.channels,
            "sampleKind": self.sample_kind.value,
            "formatLabel": self.format_label,
            "formatType": self.format_type,
            "isInitialLoad": bool(is_initial_load),
        }
        for key, value in self.metadata.items():
            payload.setdefault(key, value)
        return payload


@dataclass(frozen=True)
class DecodedRaster:
    """Format-independent decoded image.

    Parameters
    ----------
    width, height : int
        Raster dimensions in pixels.
    channels : int
        1 (gray), 2 (gray+alpha), 3 (RGB) or 4 (RGBA).
    sample_kind : SampleKind
        Element type of ``samples``.
    samples : numpy.ndarray
        Array of shape (height, width, channels).
    type_max : float
        Nominal maximum value used as the default normalization ceiling.
    orientation_flip_y : bool
        True when rows are stored bottom-up.
    format_label, format_type : str
        Human label ("TIFF", "PGM (Binary)") and settings key ("tiff-int").
    metadata : dict
        Decoder-specific details (compression, predictor, source dtype...).
    """

    width: int
    height: int
    channels: int
    sample_kind: SampleKind
    samples: np.ndarray
    type_max: float
    orientation_flip_y: bool = False
    format_label: str = ""
    format_type: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise DecodeIntegrityError(f"Invalid raster size {self.width}x{self.height}")
        if self.channels not in (1, 2, 3, 4):
            raise DecodeIntegrityError(f"Unsupported channel count {self.channels}")
        samples = np.asarray(self.samples)
        expected = self.width * self.height * self.channels
        if samples.size != expected:
            raise DecodeIntegrityError(
                f"Sample buffer holds {samples.size} values, expected {expected}"
            )
        samples = np.ascontiguousarray(
            samples.reshape(self.height, self.width, self.channels),
            dtype=self.sample_kind.dtype,
        )
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    @property
    def is_float(self) -> bool:
        return self.sample_kind.is_float

    @property
    def shape(self):
        return self.samples.shape

    def format_info(self) -> FormatInfo:
        return FormatInfo(
            width=self.width,
            height=self.height,
            channels=self.channels,
            sample_kind=self.sample_kind,
            format_label=self.format_label,
            format_type=self.format_type,
            metadata=dict(self.metadata),
        )
