"""Tests for the async host message router."""

import asyncio

import numpy as np
import pytest

from conftest import build_npy
from raster_preview.messages import MessageRouter
from raster_preview.session import SessionState

IMAGE = np.array([[0.25, 0.5], [0.75, 1.0]], dtype=np.float32)


class Host:
    """In-memory host: records posts and serves bytes by URI."""

    def __init__(self, files=None):
        self.files = dict(files or {})
        self.messages = []
        self.fetched = []

    def post(self, message):
        self.messages.append(message)

    async def fetch(self, uri):
        self.fetched.append(uri)
        try:
            return self.files[uri]
        except KeyError:
            raise FileNotFoundError(uri) from None

    def types(self):
        return [m["type"] for m in self.messages]

    def of_type(self, kind):
        return [m for m in self.messages if m["type"] == kind]


@pytest.fixture
def host():
    return Host({"a.npy": build_npy(IMAGE), "mask.npy": build_npy(np.eye(2, dtype=np.float32))})


@pytest.fixture
def router(host):
    return MessageRouter(host.post, host.fetch)


def send(router, **message):
    asyncio.run(router.handle(message))


SETTINGS = {
    "normalization": {"mode": "manual", "min": 0.0, "max": 1.0},
    "gamma": {"in": 1.0, "out": 1.0},
}


class TestLoadMessages:
    """Test source loading through the router."""

    def test_load_bytes(self, router, host):
        send(router, type="load", sourceId="a", sourceBytes=build_npy(IMAGE))
        assert host.types() == ["formatInfo", "render"]
        assert all(m["sourceId"] == "a" for m in host.messages)
        assert router.active_source == "a"
        assert host.fetched == []

    def test_load_uri(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        assert host.fetched == ["a.npy"]
        assert host.messages[0]["formatType"] == "npy-float"

    def test_missing_source(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="nope.npy")
        (error,) = host.messages
        assert error["error"] == "SourceUnavailable"
        assert error["sourceId"] == "a"
        assert router.controller.session("a").state is SessionState.UNLOADED

    def test_decode_error_is_posted_once(self, router, host):
        send(router, type="load", sourceId="a", sourceBytes=b"garbage", format="npy")
        errors = host.of_type("error")
        assert len(errors) == 1
        assert errors[0]["error"] == "InvalidFormat"

    def test_load_needs_a_source(self, router, host):
        send(router, type="load", sourceId="a")
        assert host.messages[-1]["error"] == "InvalidMessage"

    def test_cached_reload_skips_fetch(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="updateSettings", settings=SETTINGS)
        send(router, type="load", sourceId="b", sourceBytes=build_npy(IMAGE))
        host.messages.clear()
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        assert host.fetched == ["a.npy"]
        assert host.messages[-1]["path"] == "cached"

    def test_superseded_load_is_discarded(self, host):
        async def scenario():
            opened = asyncio.Event()

            async def slow_fetch(uri):
                await opened.wait()
                return build_npy(IMAGE)

            router = MessageRouter(host.post, slow_fetch)
            slow = asyncio.create_task(
                router.handle({"type": "load", "sourceId": "a", "sourceUri": "slow.npy"})
            )
            await asyncio.sleep(0)
            fresh = np.full((2, 2), 7.0, dtype=np.float32)
            await router.handle({"type": "load", "sourceId": "a", "sourceBytes": build_npy(fresh)})
            opened.set()
            await slow
            return router

        router = asyncio.run(scenario())
        assert len(host.of_type("formatInfo")) == 1
        raster = router.controller.session("a").raster
        assert float(raster.samples[0, 0, 0]) == 7.0


class TestSettingsMessages:
    """Test settings, masks and inspection messages."""

    def test_update_settings_renders_active_source(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        host.messages.clear()
        send(router, type="updateSettings", settings=SETTINGS)
        assert host.types() == ["stats", "render"]
        assert host.messages[-1]["sourceId"] == "a"

    def test_update_without_source(self, router, host):
        send(router, type="updateSettings", settings=SETTINGS)
        assert host.messages[-1]["error"] == "InvalidMessage"

    def test_invalid_settings_payload(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="updateSettings", settings={"nanColor": "teal"})
        assert host.messages[-1]["error"] == "InvalidMessage"

    def test_mask_fetched_with_settings(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        settings = dict(SETTINGS, nanColor="fuchsia", maskFilters=[{"maskUri": "mask.npy", "threshold": 0.5}])
        send(router, type="updateSettings", settings=settings)
        assert "mask.npy" in host.fetched
        rgba = host.messages[-1]["rgba"]
        np.testing.assert_array_equal(rgba[0, 0], [255, 0, 255, 255])
        np.testing.assert_array_equal(rgba[1, 1], [255, 0, 255, 255])
        assert not host.of_type("warning")

    def test_unreadable_mask_degrades_to_warning(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        settings = dict(SETTINGS, maskFilters=[{"maskUri": "gone.npy"}])
        send(router, type="updateSettings", settings=settings)
        warnings = host.of_type("warning")
        assert warnings
        assert all(w["sourceId"] == "a" for w in warnings)
        assert host.messages[-1]["type"] == "render"
        assert not host.of_type("error")

    def test_load_mask_message(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        settings = dict(SETTINGS, nanColor="fuchsia", maskFilters=[{"maskUri": "late.npy", "threshold": 0.5}])
        send(router, type="updateSettings", settings=settings)
        host.messages.clear()
        send(router, type="loadMask", maskUri="late.npy", maskBytes=build_npy(np.eye(2, dtype=np.float32)))
        np.testing.assert_array_equal(host.messages[-1]["rgba"][0, 0], [255, 0, 255, 255])

    def test_load_mask_fetch_failure(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="loadMask", maskUri="gone.npy")
        assert host.messages[-1]["type"] == "warning"

    def test_get_value_at_pixel(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="getValueAtPixel", x=1, y=0)
        assert host.messages[-1] == {
            "type": "pixelValue",
            "x": 1,
            "y": 0,
            "value": "0.5000",
            "sourceId": "a",
        }


class TestColormapMessages:
    """Test colormap conversion through the router."""

    def test_convert(self, router, host):
        send(router, type="load", sourceId="a", sourceBytes=build_npy(np.array([[0, 255]], np.uint8)))
        send(router, type="convertColormap", colormapName="gray", min=0, max=10)
        info = host.of_type("formatInfo")[-1]
        assert info["formatType"] == "colormap-float"
        assert info["isInitialLoad"] is True

    def test_convert_twice_is_rejected(self, router, host):
        send(router, type="load", sourceId="a", sourceBytes=build_npy(np.array([[0, 255]], np.uint8)))
        send(router, type="convertColormap", colormapName="gray", min=0, max=10)
        send(router, type="convertColormap", colormapName="gray", min=0, max=10)
        assert host.messages[-1]["error"] == "InvalidStateTransition"

    def test_unknown_colormap(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="convertColormap", colormapName="nope", min=0, max=1)
        assert host.messages[-1]["error"] == "UnknownColormap"

    def test_bad_range(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="convertColormap", colormapName="gray", min=1, max=0)
        assert host.messages[-1]["error"] == "InvalidMessage"


class TestHistogramMessages:
    """Test histogram requests through the router."""

    def test_histogram_of_active_source(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="updateSettings", settings=SETTINGS)
        send(router, type="getHistogram")
        message = host.messages[-1]
        assert message["type"] == "histogram"
        assert message["sourceId"] == "a"
        assert message["range"] == [0.0, 1.0]
        assert message["nanCount"] == 0
        # 0.25, 0.5, 0.75, 1.0 scaled to 0..255
        assert [i for i, n in enumerate(message["r"]) if n] == [63, 127, 191, 255]
        assert message["stats"]["r"] == {"min": 63, "max": 255, "mean": 159.0, "total": 4}

    def test_histogram_without_raster(self, router, host):
        send(router, type="getHistogram", sourceId="empty")
        assert host.messages[-1]["error"] == "RenderPrecondition"
        assert host.messages[-1]["sourceId"] == "empty"


class TestRouting:
    """Test unknown and malformed messages."""

    def test_unknown_type(self, router, host):
        send(router, type="selectTool", sourceId="a")
        assert host.messages == [
            {
                "type": "error",
                "error": "UnknownMessage",
                "message": "Unknown message type: 'selectTool'",
                "sourceId": "a",
            }
        ]

    def test_missing_fields(self, router, host):
        send(router, type="load", sourceId="a", sourceUri="a.npy")
        send(router, type="getValueAtPixel", x=1)
        assert host.messages[-1]["error"] == "InvalidMessage"
