"""Async message router between a host and the preview controller.

Inbound messages are dicts with a ``type`` key:

- ``load`` ``{sourceId, format?, sourceBytes? | sourceUri?}``
- ``updateSettings`` ``{sourceId?, settings}``
- ``loadMask`` ``{sourceId?, maskUri, maskBytes?}``
- ``convertColormap`` ``{sourceId?, colormapName, min, max, inverted?, logarithmic?}``
- ``getValueAtPixel`` ``{sourceId?, x, y}``
- ``getHistogram`` ``{sourceId?}``

Messages without ``sourceId`` address the most recently loaded source.
Outbound messages go to ``post``; every one carries ``sourceId``.

Fetching source bytes through the host's ``fetch_bytes`` coroutine is the
only suspension point. A load superseded while its bytes were in flight is
discarded when they arrive.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Mapping, Optional

from raster_preview.config import DEFAULT_CONFIG, AppConfig
from raster_preview.errors import DecodeError, RasterPreviewError, SourceUnavailable
from raster_preview.logger import get_logger
from raster_preview.render_settings import (
    MaskFilter,
    RenderSettings,
    diff_settings,
    settings_from_dict,
)
from raster_preview.session import PreviewController

__all__ = ["MessageRouter", "FetchBytes", "Post"]

logger = get_logger(__name__)

Post = Callable[[dict], None]
FetchBytes = Callable[[str], Awaitable[bytes]]


class MessageRouter:
    """Dispatch host messages to a ``PreviewController``.

    Parameters
    ----------
    post : callable
        Receives outbound message dicts.
    fetch_bytes : coroutine function
        Resolves a URI to file contents; may raise ``OSError``.
    config : AppConfig
        Pipeline tunables for a new controller.
    controller : PreviewController, optional
        Existing controller; one is created when omitted.
    """

    def __init__(
        self,
        post: Post,
        fetch_bytes: FetchBytes,
        config: AppConfig = DEFAULT_CONFIG,
        controller: Optional[PreviewController] = None,
    ) -> None:
        self._post = post
        self._fetch = fetch_bytes
        self.controller = controller or PreviewController(config, post)
        self.active_source: Optional[Hashable] = None
        self._handlers: Dict[str, Callable[[Mapping[str, Any]], Awaitable[None]]] = {
            "load": self._on_load,
            "updateSettings": self._on_update_settings,
            "loadMask": self._on_load_mask,
            "convertColormap": self._on_convert_colormap,
            "getValueAtPixel": self._on_get_value_at_pixel,
            "getHistogram": self._on_get_histogram,
        }

    async def handle(self, message: Mapping[str, Any]) -> None:
        """Process one inbound message.

        Package errors and malformed messages are reported as ``error``
        messages. Decode errors were already reported by the session.
        """
        kind = message.get("type")
        handler = self._handlers.get(kind)
        source_id = message.get("sourceId", self.active_source)
        if handler is None:
            self._error(source_id, "UnknownMessage", f"Unknown message type: {kind!r}")
            return
        try:
            await handler(message)
        except DecodeError as exc:
            logger.debug("Load of %s failed: %s", source_id, exc)
        except RasterPreviewError as exc:
            logger.error("%s failed: %s", kind, exc)
            self._post({**exc.to_message(), "sourceId": source_id})
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Malformed %s message: %s", kind, exc)
            self._error(source_id, "InvalidMessage", f"Malformed {kind} message: {exc}")

    def _error(self, source_id: Optional[Hashable], code: str, text: str) -> None:
        self._post({"type": "error", "error": code, "message": text, "sourceId": source_id})

    def _source(self, message: Mapping[str, Any]) -> Hashable:
        source_id = message.get("sourceId", self.active_source)
        if source_id is None:
            raise KeyError("sourceId")
        return source_id

    async def _on_load(self, message: Mapping[str, Any]) -> None:
        source_id = message["sourceId"]
        self.active_source = source_id
        fmt = message.get("format")
        uri = message.get("sourceUri")
        data = message.get("sourceBytes")
        if data is None and uri is None:
            raise ValueError("load needs sourceBytes or sourceUri")
        controller = self.controller
        if data is None and controller.show_cached(source_id) is not None:
            return

        ticket = controller.begin_load(source_id)
        if data is None:
            try:
                data = await self._fetch(uri)
            except OSError as exc:
                controller.fail_load(source_id, ticket, SourceUnavailable(f"{uri}: {exc}"))
                return
        controller.complete_load(source_id, ticket, bytes(data), fmt=fmt, name=uri)

    async def _fetch_masks(
        self, source_id: Hashable, filters: Iterable[MaskFilter]
    ) -> Dict[str, bytes]:
        session = self.controller.session(source_id)
        masks: Dict[str, bytes] = {}
        for mask_filter in filters:
            uri = mask_filter.mask_uri
            if uri in masks:
                continue
            try:
                masks[uri] = bytes(await self._fetch(uri))
            except OSError as exc:
                session.warn(f"Mask {uri} could not be read ({exc}); filter not applied")
        return masks

    async def _on_update_settings(self, message: Mapping[str, Any]) -> None:
        source_id = self._source(message)
        controller = self.controller
        session = controller.session(source_id)
        base = session.settings
        if base is None:
            if session.raster is not None:
                base = controller.default_settings(session.raster.format_type)
            else:
                base = RenderSettings()
        settings = settings_from_dict(message["settings"], base=base)
        masks = None
        if diff_settings(session.settings, settings).changed_masks:
            masks = await self._fetch_masks(source_id, settings.active_mask_filters)
        controller.apply_settings(source_id, settings, masks)

    async def _on_load_mask(self, message: Mapping[str, Any]) -> None:
        source_id = self._source(message)
        uri = message["maskUri"]
        session = self.controller.session(source_id)
        data = message.get("maskBytes")
        if data is None:
            try:
                data = await self._fetch(uri)
            except OSError as exc:
                session.warn(f"Mask {uri} could not be read ({exc}); filter not applied")
                return
        session.load_mask(uri, bytes(data))

    async def _on_convert_colormap(self, message: Mapping[str, Any]) -> None:
        source_id = self._source(message)
        self.controller.session(source_id).convert_colormap(
            str(message["colormapName"]),
            float(message["min"]),
            float(message["max"]),
            inverted=bool(message.get("inverted", False)),
            logarithmic=bool(message.get("logarithmic", False)),
        )

    async def _on_get_value_at_pixel(self, message: Mapping[str, Any]) -> None:
        source_id = self._source(message)
        x = int(message["x"])
        y = int(message["y"])
        value = self.controller.session(source_id).get_value_at_pixel(x, y)
        self._post({"type": "pixelValue", "x": x, "y": y, "value": value, "sourceId": source_id})

    async def _on_get_histogram(self, message: Mapping[str, Any]) -> None:
        self.controller.session(self._source(message)).histogram()
