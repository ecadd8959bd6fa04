"""Caches for decoded rasters, mask rasters and statistics.

``RasterCache`` is a bounded LRU of decoded images keyed by source identity.
Entries also remember the settings they were last rendered with and the
resulting RGBA so reopening an unchanged image skips both decode and render.
Capacity is counted in entries; byte usage is tracked for diagnostics only.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Hashable, Optional, Tuple

import numpy as np

from raster_preview.logger import get_logger
from raster_preview.raster_models import DecodedRaster, Stats
from raster_preview.render_settings import MaskFilter, RenderSettings

__all__ = [
    "CachedRaster",
    "CacheTelemetry",
    "RasterCache",
    "MaskCache",
    "StatsKey",
    "StatsCache",
]

logger = get_logger(__name__)


@dataclass
class CachedRaster:
    """Decoded raster plus the last render made from it."""

    raster: DecodedRaster
    settings: Optional[RenderSettings] = None
    rgba: Optional[np.ndarray] = None

    @property
    def nbytes(self) -> int:
        total = int(self.raster.samples.nbytes)
        if self.rgba is not None:
            total += int(self.rgba.nbytes)
        return total


@dataclass
class CacheTelemetry:
    """Telemetry tracking for cache performance."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    bytes_evicted: int = 0

    def hit_ratio(self) -> float:
        """Return cache hit ratio (0.0 to 1.0)."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.bytes_evicted = 0


class RasterCache:
    """LRU cache of decoded rasters keyed by source identity.

    Notes
    -----
    - Inserting into a full cache evicts the least-recently-used entry.
    - ``get`` refreshes recency; ``rendered_with`` does not.
    """

    def __init__(self, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError("Raster cache capacity must be at least 1")
        self._items: "OrderedDict[Hashable, CachedRaster]" = OrderedDict()
        self._capacity = int(capacity)
        self._telemetry = CacheTelemetry()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._items

    def keys(self):
        """Keys from least to most recently used."""
        return list(self._items.keys())

    def get(self, key: Hashable) -> Optional[CachedRaster]:
        """Return an entry and mark it as most-recently-used."""
        item = self._items.get(key)
        if item is None:
            self._telemetry.misses += 1
            return None
        self._telemetry.hits += 1
        self._items.move_to_end(key)
        return item

    def put(self, key: Hashable, raster: DecodedRaster) -> CachedRaster:
        """Insert a freshly decoded raster, replacing any previous entry."""
        self._items.pop(key, None)
        entry = CachedRaster(raster=raster)
        self._items[key] = entry
        self._evict_if_needed()
        return entry

    def record_render(self, key: Hashable, settings: RenderSettings, rgba: np.ndarray) -> None:
        """Remember the last render of a cached raster."""
        entry = self._items.get(key)
        if entry is not None:
            entry.settings = settings
            entry.rgba = rgba

    def rendered_with(self, key: Hashable, settings: RenderSettings) -> Optional[np.ndarray]:
        """Return the cached RGBA when it was produced with ``settings``."""
        entry = self._items.get(key)
        if entry is None or entry.rgba is None or entry.settings != settings:
            return None
        return entry.rgba

    def invalidate(self, key: Hashable) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def stats(self) -> Tuple[int, int]:
        """Return (item_count, bytes_used) for status display."""
        return len(self._items), sum(item.nbytes for item in self._items.values())

    def telemetry(self) -> CacheTelemetry:
        return self._telemetry

    def _evict_if_needed(self) -> None:
        while len(self._items) > self._capacity:
            key, item = self._items.popitem(last=False)
            self._telemetry.evictions += 1
            self._telemetry.bytes_evicted += item.nbytes
            logger.info(
                "Raster cache evicted %r (%d bytes, %d evictions)",
                key,
                item.nbytes,
                self._telemetry.evictions,
            )


class MaskCache:
    """Decoded mask rasters keyed by URI."""

    def __init__(self) -> None:
        self._items: Dict[str, DecodedRaster] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, uri: str) -> bool:
        return uri in self._items

    def get(self, uri: str) -> Optional[DecodedRaster]:
        return self._items.get(uri)

    def put(self, uri: str, raster: DecodedRaster) -> None:
        self._items[uri] = raster

    def clear(self) -> None:
        if self._items:
            logger.debug("Mask cache cleared (%d entries)", len(self._items))
        self._items.clear()


StatsKey = Tuple[int, bool, Tuple[MaskFilter, ...], bool]


class StatsCache:
    """Statistics keyed by (raster token, auto toggle, active masks, 24-bit mode)."""

    def __init__(self) -> None:
        self._items: Dict[StatsKey, Stats] = {}

    @staticmethod
    def key_for(
        raster_token: int, settings: RenderSettings, auto: bool
    ) -> StatsKey:
        return (
            raster_token,
            bool(auto),
            settings.active_mask_filters,
            bool(settings.rgb_as_24bit_grayscale),
        )

    def get(self, key: StatsKey) -> Optional[Stats]:
        return self._items.get(key)

    def put(self, key: StatsKey, stats: Stats) -> None:
        self._items[key] = stats

    def invalidate_raster(self, raster_token: int) -> None:
        """Drop all statistics computed for one raster."""
        for key in [k for k in self._items if k[0] == raster_token]:
            del self._items[key]

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
