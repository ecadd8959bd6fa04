"""Colormap registry for colorizing scalar rasters and inverting colormap images.

Each colormap is defined by control points and expanded to a 256 entry RGB
table with ``LinearSegmentedColormap.from_list``. Entry ``i`` corresponds to
the normalized value ``i / 255``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Tuple

import numpy as np
from matplotlib.colors import LinearSegmentedColormap

from raster_preview.errors import UnknownColormap

__all__ = [
    "ColormapSpec",
    "COLORMAPS",
    "TABLE_SIZE",
    "colormap_names",
    "get_spec",
    "cmap_for",
    "colormap_table",
    "colorize",
]

TABLE_SIZE = 256


@dataclass(frozen=True)
class ColormapSpec:
    """Named colormap built from control points.

    ``points`` is either a list of colours spread evenly over [0, 1] or a
    list of ``(position, colour)`` pairs.
    """

    name: str
    points: Tuple


_VIRIDIS = (
    (0.267004, 0.004874, 0.329415),
    (0.282623, 0.140926, 0.457517),
    (0.253935, 0.265254, 0.529983),
    (0.206756, 0.371758, 0.553117),
    (0.163625, 0.471133, 0.558148),
    (0.127568, 0.566949, 0.550556),
    (0.134692, 0.658636, 0.517649),
    (0.266941, 0.748751, 0.440573),
    (0.477504, 0.821444, 0.318195),
    (0.741388, 0.873449, 0.149561),
    (0.993248, 0.906157, 0.143936),
)

_PLASMA = (
    (0.050383, 0.029803, 0.527975),
    (0.287076, 0.010384, 0.627010),
    (0.476230, 0.011158, 0.657865),
    (0.647257, 0.125289, 0.593542),
    (0.785914, 0.274290, 0.472908),
    (0.877850, 0.439704, 0.345067),
    (0.936213, 0.605205, 0.231465),
    (0.972355, 0.771125, 0.155626),
    (0.994617, 0.938336, 0.165141),
    (0.987053, 0.991438, 0.749504),
)

_INFERNO = (
    (0.001462, 0.000466, 0.013866),
    (0.094329, 0.042852, 0.225802),
    (0.239903, 0.067979, 0.343397),
    (0.412470, 0.102815, 0.380271),
    (0.591217, 0.155410, 0.347824),
    (0.758643, 0.237267, 0.275196),
    (0.889650, 0.360829, 0.210001),
    (0.969788, 0.514135, 0.186861),
    (0.994738, 0.683489, 0.240902),
    (0.988362, 0.998364, 0.644924),
)

_MAGMA = (
    (0.001462, 0.000466, 0.013866),
    (0.091904, 0.051667, 0.200303),
    (0.234547, 0.090739, 0.348341),
    (0.408198, 0.131574, 0.416555),
    (0.595732, 0.180653, 0.421399),
    (0.776405, 0.266630, 0.373397),
    (0.924010, 0.406370, 0.330720),
    (0.987622, 0.583041, 0.382914),
    (0.996212, 0.771453, 0.543135),
    (0.987053, 0.991438, 0.749504),
)

_TURBO = (
    (0.18995, 0.07176, 0.23217),
    (0.25107, 0.25237, 0.63374),
    (0.19659, 0.47276, 0.82300),
    (0.12756, 0.66813, 0.82565),
    (0.13094, 0.82030, 0.65899),
    (0.37408, 0.92478, 0.41642),
    (0.66987, 0.95987, 0.19659),
    (0.90842, 0.87640, 0.10899),
    (0.98999, 0.64450, 0.03932),
    (0.93702, 0.25023, 0.01583),
)

_JET = (
    (0.0, (0.0, 0.0, 0.5)),
    (0.125, (0.0, 0.0, 1.0)),
    (0.375, (0.0, 1.0, 1.0)),
    (0.625, (1.0, 1.0, 0.0)),
    (0.875, (1.0, 0.0, 0.0)),
    (1.0, (0.5, 0.0, 0.0)),
)

_HOT = (
    (0.0, (0.0, 0.0, 0.0)),
    (0.33, (1.0, 0.0, 0.0)),
    (0.66, (1.0, 1.0, 0.0)),
    (1.0, (1.0, 1.0, 1.0)),
)

COLORMAPS: List[ColormapSpec] = [
    ColormapSpec("viridis", _VIRIDIS),
    ColormapSpec("plasma", _PLASMA),
    ColormapSpec("inferno", _INFERNO),
    ColormapSpec("magma", _MAGMA),
    ColormapSpec("jet", _JET),
    ColormapSpec("hot", _HOT),
    ColormapSpec("cool", ((0.0, 1.0, 1.0), (1.0, 0.0, 1.0))),
    ColormapSpec("turbo", _TURBO),
    ColormapSpec("gray", ((0.0, 0.0, 0.0), (1.0, 1.0, 1.0))),
]

_BY_NAME: Dict[str, ColormapSpec] = {spec.name: spec for spec in COLORMAPS}


def colormap_names() -> List[str]:
    """Return names of all registered colormaps."""
    return [spec.name for spec in COLORMAPS]


def get_spec(name: str) -> ColormapSpec:
    try:
        return _BY_NAME[name]
    except KeyError:
        raise UnknownColormap(f"Unknown colormap: {name}") from None


def cmap_for(name: str, invert: bool = False) -> LinearSegmentedColormap:
    """Return a matplotlib colormap for a registered name."""
    spec = get_spec(name)
    cmap = LinearSegmentedColormap.from_list(spec.name, list(spec.points), N=TABLE_SIZE)
    if invert:
        return cmap.reversed()
    return cmap


@lru_cache(maxsize=None)
def _table(name: str) -> np.ndarray:
    rgba = cmap_for(name)(np.arange(TABLE_SIZE))
    table = np.floor(rgba[:, :3] * 255.0 + 0.5).astype(np.uint8)
    table.setflags(write=False)
    return table


def colormap_table(name: str) -> np.ndarray:
    """Return the read-only (256, 3) uint8 table of a colormap.

    Raises
    ------
    UnknownColormap
        If ``name`` is not registered.
    """
    get_spec(name)
    return _table(name)


def colorize(values: np.ndarray, name: str, vmin: float, vmax: float) -> np.ndarray:
    """Map scalar values through a colormap.

    Parameters
    ----------
    values : numpy.ndarray
        Scalar array of any shape.
    name : str
        Registered colormap name.
    vmin, vmax : float
        Values mapped to the first and last table entries.

    Returns
    -------
    numpy.ndarray
        uint8 RGBA array with shape ``values.shape + (4,)``. Non-finite
        values are transparent black.
    """
    table = colormap_table(name)
    arr = np.asarray(values, dtype=np.float64)
    span = float(vmax) - float(vmin)
    if span > 0:
        t = (arr - float(vmin)) / span
    else:
        t = np.zeros_like(arr)
    finite = np.isfinite(arr) & np.isfinite(t)
    index = np.rint(np.clip(np.where(finite, t, 0.0), 0.0, 1.0) * (TABLE_SIZE - 1)).astype(np.intp)
    out = np.zeros(arr.shape + (4,), dtype=np.uint8)
    out[..., :3] = table[index]
    out[..., 3] = 255
    out[~finite] = 0
    return out
