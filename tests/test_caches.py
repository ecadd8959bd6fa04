"""Tests for the raster/mask/stats caches and the stale-load guard."""

import threading

import numpy as np
import pytest

from raster_preview.load_guard import LoadGuard
from raster_preview.raster_cache import MaskCache, RasterCache, StatsCache
from raster_preview.raster_models import DecodedRaster, SampleKind, Stats
from raster_preview.render_settings import MaskFilter, RenderSettings


def _raster(value=0, format_type="tiff-int"):
    samples = np.full((2, 2, 1), value, dtype=np.uint8)
    return DecodedRaster(2, 2, 1, SampleKind.UINT8, samples, 255.0, format_type=format_type)


class TestRasterCache:
    """Test LRU behaviour of the decoded-raster cache."""

    def test_evicts_oldest_beyond_capacity(self):
        cache = RasterCache(capacity=10)
        for i in range(11):
            cache.put(f"img{i}", _raster(i))
        assert len(cache) == 10
        assert "img0" not in cache
        assert "img10" in cache
        assert cache.telemetry().evictions == 1
        assert cache.telemetry().bytes_evicted == 4

    def test_get_refreshes_recency(self):
        cache = RasterCache(capacity=2)
        cache.put("a", _raster())
        cache.put("b", _raster())
        assert cache.get("a") is not None
        cache.put("c", _raster())
        assert cache.keys() == ["a", "c"]

    def test_rendered_with_does_not_refresh(self):
        cache = RasterCache(capacity=2)
        cache.put("a", _raster())
        cache.put("b", _raster())
        cache.rendered_with("a", RenderSettings())
        cache.put("c", _raster())
        assert "a" not in cache

    def test_hit_ratio(self):
        cache = RasterCache()
        cache.put("a", _raster())
        cache.get("a")
        cache.get("missing")
        telemetry = cache.telemetry()
        assert (telemetry.hits, telemetry.misses) == (1, 1)
        assert telemetry.hit_ratio() == 0.5
        telemetry.reset()
        assert telemetry.hit_ratio() == 0.0

    def test_rendered_with_matches_settings(self):
        cache = RasterCache()
        cache.put("a", _raster())
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        settings = RenderSettings()
        cache.record_render("a", settings, rgba)
        assert cache.rendered_with("a", settings) is rgba
        assert cache.rendered_with("a", settings.with_changes(nan_color=(1, 1, 1))) is None
        assert cache.stats() == (1, 4 + rgba.nbytes)

    def test_put_replaces_previous_render(self):
        cache = RasterCache()
        cache.put("a", _raster())
        cache.record_render("a", RenderSettings(), np.zeros((2, 2, 4), dtype=np.uint8))
        cache.put("a", _raster(9))
        assert cache.rendered_with("a", RenderSettings()) is None

    def test_invalidate(self):
        cache = RasterCache()
        cache.put("a", _raster(format_type="exr-float"))
        cache.put("b", _raster(format_type="tiff-int"))
        cache.invalidate("a")
        assert cache.keys() == ["b"]
        cache.invalidate("missing")
        cache.clear()
        assert len(cache) == 0

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            RasterCache(capacity=0)


class TestMaskAndStatsCaches:
    """Test the per-session mask and statistics caches."""

    def test_mask_cache(self):
        masks = MaskCache()
        masks.put("mask.tif", _raster(1))
        assert "mask.tif" in masks and len(masks) == 1
        assert masks.get("other") is None
        masks.clear()
        assert len(masks) == 0

    def test_stats_key_tracks_masks_and_packing(self):
        base = RenderSettings()
        masked = base.with_changes(mask_filters=[MaskFilter("m")])
        packed = base.with_changes(rgb_as_24bit_grayscale=True)
        keys = {
            StatsCache.key_for(1, base, False),
            StatsCache.key_for(1, masked, False),
            StatsCache.key_for(1, packed, False),
            StatsCache.key_for(1, base, True),
            StatsCache.key_for(2, base, False),
        }
        assert len(keys) == 5
        # Gamma changes do not affect statistics
        tuned = base.with_changes(nan_color=(9, 9, 9))
        assert StatsCache.key_for(1, tuned, False) == StatsCache.key_for(1, base, False)

    def test_invalidate_raster(self):
        cache = StatsCache()
        cache.put(StatsCache.key_for(1, RenderSettings(), False), Stats(0, 1))
        cache.put(StatsCache.key_for(2, RenderSettings(), False), Stats(0, 2))
        cache.invalidate_raster(1)
        assert len(cache) == 1
        assert cache.get(StatsCache.key_for(2, RenderSettings(), False)) == Stats(0, 2)


class TestLoadGuard:
    """Test stale-load protection for overlapping loads."""

    def test_tickets_are_unique(self):
        guard = LoadGuard()
        assert guard.begin("a") != guard.begin("a")

    def test_newer_load_supersedes_older(self):
        guard = LoadGuard()
        old = guard.begin("img")
        new = guard.begin("img")
        assert not guard.is_current("img", old)
        assert guard.is_current("img", new)

    def test_finish_only_clears_current_ticket(self):
        guard = LoadGuard()
        old = guard.begin("img")
        new = guard.begin("img")
        guard.finish("img", old)
        assert guard.is_current("img", new)
        guard.finish("img", new)
        assert guard.pending() == 0

    def test_sources_are_independent(self):
        guard = LoadGuard()
        a = guard.begin("a")
        b = guard.begin("b")
        guard.cancel("a")
        assert not guard.is_current("a", a)
        assert guard.is_current("b", b)

    def test_callback_pattern(self):
        """Results of superseded loads are discarded."""
        guard = LoadGuard()
        applied = []

        def on_decoded(ticket, value):
            if guard.is_current("img", ticket):
                applied.append(value)
                guard.finish("img", ticket)

        first = guard.begin("img")
        second = guard.begin("img")
        on_decoded(second, "fresh")
        on_decoded(first, "stale")
        assert applied == ["fresh"]

    def test_concurrent_begin(self):
        guard = LoadGuard()
        tickets = []

        def worker():
            tickets.append(guard.begin("img"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(guard.is_current("img", t) for t in tickets) == 1
