"""Per-image sessions and the controller that owns them.

An ``ImageSession`` walks a small state machine::

    UNLOADED -> DECODING -> PLACEHOLDER_SHOWN -> AWAITING_FORMAT_SETTINGS -> RENDERED
                   |                                                       |
                   +--> UNLOADED (decode failed)          DECODING <-------+ (reload)

On the first load the session has no settings: it reports format info with
``isInitialLoad`` and shows a zero placeholder until the host answers with
per-format settings. Later loads render as soon as the raster is decoded.

All outbound traffic goes through the ``post`` callback as plain dicts.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Callable, Dict, Hashable, Mapping, Optional, Tuple

import numpy as np

from raster_preview.colormap_inverse import convert_to_float
from raster_preview.config import DEFAULT_CONFIG, AppConfig
from raster_preview.errors import (
    DecodeError,
    InvalidStateTransition,
    MaskError,
    RasterPreviewError,
    RenderPrecondition,
)
from raster_preview.io import decode_bytes
from raster_preview.load_guard import LoadGuard
from raster_preview.logger import get_logger
from raster_preview.mask_filter import apply_mask_filters, mask_band
from raster_preview.normalization import resolve_range
from raster_preview.pixel_values import format_pixel_value
from raster_preview.raster_cache import MaskCache, RasterCache, StatsCache
from raster_preview.raster_models import DecodedRaster, Histogram, SampleKind, Stats
from raster_preview.render_settings import (
    MaskFilter,
    NormalizationMode,
    NormalizationSettings,
    RenderSettings,
    default_settings_for,
    diff_settings,
)
from raster_preview.renderer import PATH_CACHED, RenderResult, placeholder, render_raster
from raster_preview.statistics import (
    colour_view,
    compute_histogram,
    compute_packed_stats,
    compute_stats,
    to_8bit_equivalent,
)

__all__ = [
    "SessionState",
    "RasterRepresentation",
    "ImageSession",
    "PreviewController",
    "render_message",
]

logger = get_logger(__name__)

Post = Callable[[dict], None]


class SessionState(Enum):
    UNLOADED = "unloaded"
    DECODING = "decoding"
    PLACEHOLDER_SHOWN = "placeholderShown"
    AWAITING_FORMAT_SETTINGS = "awaitingFormatSettings"
    RENDERED = "rendered"


class RasterRepresentation(Enum):
    """What the session's canonical raster currently holds."""

    DECODED = "decoded"
    COLORMAP_CONVERTED = "colormapConverted"


_TRANSITIONS = {
    SessionState.UNLOADED: {SessionState.DECODING},
    SessionState.DECODING: {SessionState.PLACEHOLDER_SHOWN, SessionState.UNLOADED},
    SessionState.PLACEHOLDER_SHOWN: {
        SessionState.AWAITING_FORMAT_SETTINGS,
        SessionState.RENDERED,
        SessionState.DECODING,
        SessionState.UNLOADED,
    },
    SessionState.AWAITING_FORMAT_SETTINGS: {
        SessionState.RENDERED,
        SessionState.DECODING,
        SessionState.UNLOADED,
    },
    SessionState.RENDERED: {
        SessionState.RENDERED,
        SessionState.DECODING,
        SessionState.UNLOADED,
    },
}


def render_message(rgba: np.ndarray, path: str, is_placeholder: bool = False) -> dict:
    """Build the outbound ``render`` message for an RGBA raster."""
    return {
        "type": "render",
        "width": int(rgba.shape[1]),
        "height": int(rgba.shape[0]),
        "rgba": rgba,
        "placeholder": bool(is_placeholder),
        "path": path,
    }


class ImageSession:
    """Decode/render state for one image.

    Parameters
    ----------
    source_id : str
        Host identifier of the image; log records carry it together with
        the name or URI of the last loaded source.
    config : AppConfig
        Pipeline tunables.
    post : callable, optional
        Receives every outbound message dict.
    """

    def __init__(
        self, source_id: str, config: AppConfig = DEFAULT_CONFIG, post: Optional[Post] = None
    ) -> None:
        self.source_id = source_id
        self.source_name: Optional[str] = None
        self.config = config
        self._post = post or (lambda message: None)
        self.state = SessionState.UNLOADED
        self.representation = RasterRepresentation.DECODED
        self.raster: Optional[DecodedRaster] = None
        self.settings: Optional[RenderSettings] = None
        self.last_result: Optional[RenderResult] = None
        self.mask_cache = MaskCache()
        self.stats_cache = StatsCache()
        self._raster_token = 0
        self._filtered: Optional[Tuple[Tuple[MaskFilter, ...], np.ndarray]] = None

    @property
    def _log(self) -> dict:
        if self.source_name:
            return {"source": f"{self.source_id}:{self.source_name}"}
        return {"source": self.source_id}

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Cannot move from {self.state.value} to {target.value}"
            )
        if target is not self.state:
            logger.debug("State %s -> %s", self.state.value, target.value, extra=self._log)
        self.state = target

    def begin_load(self) -> None:
        """Enter DECODING; called before the source bytes are fetched."""
        if self.state is not SessionState.DECODING:
            self._transition(SessionState.DECODING)

    def fail_load(self, exc: RasterPreviewError) -> None:
        """Abandon the current load and report ``exc`` to the host."""
        logger.error("Load failed: %s", exc, extra=self._log)
        self.raster = None
        self.last_result = None
        self._filtered = None
        if self.state is not SessionState.UNLOADED:
            self._transition(SessionState.UNLOADED)
        self._post(exc.to_message())

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load(
        self, data: bytes, fmt: Optional[str] = None, name: Optional[str] = None
    ) -> DecodedRaster:
        """Decode ``data`` and show it.

        Raises
        ------
        DecodeError
            After the session has fallen back to UNLOADED and posted an
            ``error`` message.
        """
        self.begin_load()
        if name:
            self.source_name = name
        rgb_as_24bit = bool(self.settings and self.settings.rgb_as_24bit_grayscale)
        try:
            raster = decode_bytes(
                data,
                fmt=fmt,
                name=name,
                prefer_fast_tiff=self.config.prefer_fast_tiff,
                rgb_as_24bit=rgb_as_24bit,
            )
        except DecodeError as exc:
            self.fail_load(exc)
            raise
        self.show_raster(raster)
        return raster

    def show_raster(
        self,
        raster: DecodedRaster,
        representation: RasterRepresentation = RasterRepresentation.DECODED,
        prerendered: Optional[np.ndarray] = None,
        is_initial_load: Optional[bool] = None,
    ) -> Optional[RenderResult]:
        """Install a decoded raster and render it if settings are known.

        Parameters
        ----------
        raster : DecodedRaster
            New canonical raster.
        representation : RasterRepresentation
            Whether ``raster`` came from a decoder or a colormap conversion.
        prerendered : numpy.ndarray, optional
            RGBA previously rendered from ``raster`` with the current
            settings; posted as-is instead of rendering again.
        is_initial_load : bool, optional
            Overrides the ``isInitialLoad`` flag of the format info message
            (defaults to "no settings received yet").
        """
        self.begin_load()
        if is_initial_load is None:
            is_initial_load = self.settings is None
        self.raster = raster
        self.representation = representation
        self.stats_cache.invalidate_raster(self._raster_token)
        self._raster_token += 1
        self._filtered = None
        self.last_result = None
        self._post(raster.format_info().to_message(is_initial_load=is_initial_load))
        self._transition(SessionState.PLACEHOLDER_SHOWN)

        if prerendered is not None and self.settings is not None:
            logger.debug("Reusing cached render", extra=self._log)
            self.last_result = RenderResult(
                rgba=prerendered, path=PATH_CACHED, norm_min=math.nan, norm_max=math.nan
            )
            self._transition(SessionState.RENDERED)
            self._post(render_message(prerendered, PATH_CACHED))
            return self.last_result

        self._post(render_message(placeholder(raster.width, raster.height), "placeholder", True))
        if self.settings is None:
            self._transition(SessionState.AWAITING_FORMAT_SETTINGS)
            logger.info("Awaiting format settings for %s", raster.format_type, extra=self._log)
            return None
        return self.perform_deferred_render()

    def perform_deferred_render(self) -> RenderResult:
        """Render the raster held since load, now that settings exist."""
        if self.state not in (
            SessionState.PLACEHOLDER_SHOWN,
            SessionState.AWAITING_FORMAT_SETTINGS,
        ):
            raise InvalidStateTransition(f"No deferred render pending in state {self.state.value}")
        if self.settings is None:
            raise RenderPrecondition("Deferred render requested before any settings arrived")
        return self._render()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def apply_settings(
        self, settings: RenderSettings, masks: Optional[Mapping[str, bytes]] = None
    ) -> Optional[RenderResult]:
        """Adopt new settings and re-render along the cheapest path.

        Parameters
        ----------
        settings : RenderSettings
            Complete new settings.
        masks : mapping, optional
            Mask URI to file contents, loaded after a mask configuration
            change has cleared the mask cache.

        Returns
        -------
        RenderResult or None
            None while no raster is available; settings are kept for the
            next render.
        """
        old = self.settings
        diff = diff_settings(old, settings)
        self.settings = settings
        if diff.changed_masks:
            self.mask_cache.clear()
            self._filtered = None
        for uri, data in (masks or {}).items():
            self._store_mask(uri, data)

        if self.state in (SessionState.UNLOADED, SessionState.DECODING):
            return None
        if self.state in (
            SessionState.PLACEHOLDER_SHOWN,
            SessionState.AWAITING_FORMAT_SETTINGS,
        ):
            return self.perform_deferred_render()

        if old == settings and self.last_result is not None:
            return self.last_result
        if diff.changed_structure:
            self.stats_cache.invalidate_raster(self._raster_token)
        return self._render()

    # ------------------------------------------------------------------
    # Masks
    # ------------------------------------------------------------------
    def warn(self, message: str) -> None:
        """Log a degraded-operation warning and forward it to the host."""
        logger.warning(message, extra=self._log)
        self._post({"type": "warning", "message": message})

    def _store_mask(self, uri: str, data: bytes) -> bool:
        try:
            mask = decode_bytes(data, name=uri, prefer_fast_tiff=self.config.prefer_fast_tiff)
        except DecodeError as exc:
            self.warn(f"Mask {uri} could not be decoded ({exc}); filter not applied")
            return False
        self.mask_cache.put(uri, mask)
        return True

    def load_mask(self, uri: str, data: bytes) -> bool:
        """Decode and cache a mask raster, re-rendering if it is in use."""
        if not self._store_mask(uri, data):
            return False
        settings = self.settings
        in_use = settings is not None and any(
            f.mask_uri == uri for f in settings.active_mask_filters
        )
        if in_use:
            self._filtered = None
            self.stats_cache.invalidate_raster(self._raster_token)
            if self.state is SessionState.RENDERED:
                self._render()
        return True

    def _mask_lookup(self, uri: str) -> np.ndarray:
        mask = self.mask_cache.get(uri)
        if mask is None:
            raise MaskError(f"Mask {uri} is not loaded")
        return mask_band(mask, self.raster)

    def _on_mask_error(self, mask_filter: MaskFilter, exc: MaskError) -> None:
        self.warn(f"Mask {mask_filter.mask_uri} ignored: {exc}")

    def _filtered_samples(self, settings: RenderSettings) -> np.ndarray:
        active = settings.active_mask_filters
        if not active:
            return self.raster.samples
        if self._filtered is not None and self._filtered[0] == active:
            return self._filtered[1]
        samples = apply_mask_filters(
            self.raster.samples, active, self._mask_lookup, on_error=self._on_mask_error
        )
        self._filtered = (active, samples)
        return samples

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _stats(self, samples: np.ndarray, settings: RenderSettings) -> Stats:
        raster = self.raster
        auto = settings.normalization.mode is NormalizationMode.AUTO
        key = StatsCache.key_for(self._raster_token, settings, auto)
        stats = self.stats_cache.get(key)
        if stats is not None:
            return stats
        args = (samples, raster.width, raster.height, raster.channels, raster.sample_kind)
        if settings.rgb_as_24bit_grayscale and raster.channels >= 3:
            stats = compute_packed_stats(*args)
        else:
            stats = compute_stats(*args)
        self.stats_cache.put(key, stats)
        self._post(stats.to_message())
        return stats

    def _render(self) -> RenderResult:
        raster = self.raster
        if raster is None:
            raise RenderPrecondition("No canonical raster loaded")
        settings = self.settings
        samples = self._filtered_samples(settings)
        stats = self._stats(samples, settings)
        result = render_raster(
            raster,
            stats,
            settings,
            samples=samples,
            lut_size=self.config.quantized_lut_size,
        )
        self.last_result = result
        self._transition(SessionState.RENDERED)
        self._post(render_message(result.rgba, result.path))
        return result

    # ------------------------------------------------------------------
    # Colormap conversion and inspection
    # ------------------------------------------------------------------
    def convert_colormap(
        self,
        colormap_name: str,
        vmin: float,
        vmax: float,
        inverted: bool = False,
        logarithmic: bool = False,
    ) -> DecodedRaster:
        """Replace the raster with values recovered through a colormap.

        The colours come from the canvas the host is looking at: the last
        rendered RGBA, so gamma, exposure and range settings shape the result.
        Before the first render the 8-bit equivalents of the first three
        channels are used instead (gray is replicated). The converted raster
        is float, so the session continues in manual normalization over
        ``[vmin, vmax]``. The change is one-way: only a new ``load`` restores
        decoded data.

        Raises
        ------
        InvalidStateTransition
            If the raster was already converted.
        RenderPrecondition
            If nothing is loaded.
        ValueError
            If ``vmax <= vmin``.
        """
        raster = self.raster
        if raster is None:
            raise RenderPrecondition("No raster to convert")
        if self.representation is RasterRepresentation.COLORMAP_CONVERTED:
            raise InvalidStateTransition("Raster is already colormap-converted; reload to convert again")
        if not vmax > vmin:
            raise ValueError("Maximum must be greater than minimum")

        if self.last_result is not None:
            # rendered canvas rows are already top-down
            rgb = self.last_result.rgba[..., :3]
            flip_y = False
        else:
            colour = colour_view(raster.samples, raster.width, raster.height, raster.channels)
            rgb = to_8bit_equivalent(colour, raster.sample_kind)
            if rgb.shape[1] < 3:
                rgb = np.repeat(rgb[:, :1], 3, axis=1)
            rgb = rgb.reshape(raster.height, raster.width, 3)
            flip_y = raster.orientation_flip_y
        values = convert_to_float(
            rgb,
            colormap_name,
            vmin,
            vmax,
            inverted=inverted,
            logarithmic=logarithmic,
            chunk_pixels=self.config.colormap_chunk_pixels,
        )
        metadata = dict(raster.metadata)
        metadata.update(
            {
                "colormap": colormap_name,
                "valueRange": [float(vmin), float(vmax)],
                "inverted": bool(inverted),
                "logarithmic": bool(logarithmic),
                "fromRender": self.last_result is not None,
            }
        )
        converted = DecodedRaster(
            width=raster.width,
            height=raster.height,
            channels=1,
            sample_kind=SampleKind.FLOAT32,
            samples=values,
            type_max=1.0,
            orientation_flip_y=flip_y,
            format_label=f"{raster.format_label} [{colormap_name}]",
            format_type="colormap-float",
            metadata=metadata,
        )
        if self.settings is not None:
            self.settings = self.settings.with_changes(
                normalization=NormalizationSettings(
                    mode=NormalizationMode.MANUAL, min=float(vmin), max=float(vmax)
                )
            )
        logger.info("Converted through colormap %s", colormap_name, extra=self._log)
        self.show_raster(
            converted,
            representation=RasterRepresentation.COLORMAP_CONVERTED,
            is_initial_load=True,
        )
        return converted

    def histogram(self) -> Histogram:
        """Compute and post the histogram of the current raster.

        Bins cover the range the renderer maps onto the display, over the
        mask-filtered samples. Before settings arrive, and in 24-bit packed
        mode, the range is ``[0, type_max]``.

        Raises
        ------
        RenderPrecondition
            If nothing is loaded.
        """
        raster = self.raster
        if raster is None:
            raise RenderPrecondition("No raster to compute a histogram for")
        settings = self.settings
        if settings is None or settings.rgb_as_24bit_grayscale:
            samples = raster.samples if settings is None else self._filtered_samples(settings)
            lo, hi = 0.0, float(raster.type_max)
        else:
            samples = self._filtered_samples(settings)
            stats = self._stats(samples, settings)
            lo, hi = resolve_range(settings, stats, raster.type_max, raster.is_float)
        result = compute_histogram(samples, raster.width, raster.height, raster.channels, lo, hi)
        logger.debug(
            "Histogram over [%g, %g], %d NaN pixels", lo, hi, result.nan_count, extra=self._log
        )
        self._post(result.to_message())
        return result

    def get_value_at_pixel(self, x: int, y: int) -> str:
        """Inspector text for display pixel (x, y); empty when nothing is loaded."""
        if self.raster is None:
            return ""
        return format_pixel_value(
            self.raster,
            int(x),
            int(y),
            self.settings or RenderSettings(),
            colormap_converted=self.representation is RasterRepresentation.COLORMAP_CONVERTED,
        )


class PreviewController:
    """Owns sessions per source id and the shared decoded-raster cache.

    Notes
    -----
    - Loads take a ``LoadGuard`` ticket; a load that is no longer current
      when its bytes arrive is discarded without touching the session.
    - Cache entries remember their last render so switching back to an
      unchanged image posts the cached RGBA immediately.
    """

    def __init__(self, config: AppConfig = DEFAULT_CONFIG, post: Optional[Post] = None) -> None:
        self.config = config
        self._post = post or (lambda message: None)
        self.cache = RasterCache(config.raster_cache_capacity)
        self.guard = LoadGuard()
        self._sessions: Dict[Hashable, ImageSession] = {}

    def session(self, source_id: Hashable) -> ImageSession:
        """Return the session for ``source_id``, creating it on first use."""
        session = self._sessions.get(source_id)
        if session is None:
            def post(message: dict, _source=source_id) -> None:
                self._post({**message, "sourceId": _source})

            session = ImageSession(str(source_id), self.config, post)
            self._sessions[source_id] = session
        return session

    def sessions(self):
        return dict(self._sessions)

    def close(self, source_id: Hashable) -> None:
        """Forget a session; in-flight loads for it are discarded."""
        self.guard.cancel(source_id)
        self._sessions.pop(source_id, None)

    def default_settings(self, format_type: str) -> RenderSettings:
        """Per-format first-load settings with configured defaults applied."""
        return default_settings_for(format_type).with_changes(
            scale_24bit_factor=self.config.default_scale_24bit
        )

    def begin_load(self, source_id: Hashable) -> str:
        """Start a load and return its ticket."""
        self.session(source_id).begin_load()
        return self.guard.begin(source_id)

    def is_current(self, source_id: Hashable, ticket: str) -> bool:
        return self.guard.is_current(source_id, ticket)

    def complete_load(
        self,
        source_id: Hashable,
        ticket: str,
        data: bytes,
        fmt: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[DecodedRaster]:
        """Decode fetched bytes unless the load was superseded.

        Returns None for a stale load. Decode errors propagate after the
        session has posted them.
        """
        if not self.guard.is_current(source_id, ticket):
            logger.info("Discarding stale load of %s", source_id)
            return None
        session = self.session(source_id)
        try:
            raster = session.load(data, fmt=fmt, name=name)
        finally:
            self.guard.finish(source_id, ticket)
        self.cache.put(source_id, raster)
        self._record(source_id, session)
        return raster

    def fail_load(self, source_id: Hashable, ticket: str, exc: RasterPreviewError) -> None:
        """Report a fetch failure for a load that is still current."""
        if self.guard.is_current(source_id, ticket):
            self.guard.finish(source_id, ticket)
            self.session(source_id).fail_load(exc)

    def load(
        self,
        source_id: Hashable,
        data: bytes,
        fmt: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[DecodedRaster]:
        """Synchronous load: begin and complete in one call."""
        ticket = self.begin_load(source_id)
        return self.complete_load(source_id, ticket, data, fmt=fmt, name=name)

    def show_cached(self, source_id: Hashable) -> Optional[DecodedRaster]:
        """Show a cached raster without decoding; None on a cache miss."""
        entry = self.cache.get(source_id)
        if entry is None:
            return None
        telemetry = self.cache.telemetry()
        logger.info(
            "Raster cache hit for %s (hit ratio %.2f)", source_id, telemetry.hit_ratio()
        )
        session = self.session(source_id)
        self.guard.cancel(source_id)
        prerendered = None
        if session.settings is not None:
            prerendered = self.cache.rendered_with(source_id, session.settings)
        session.show_raster(entry.raster, prerendered=prerendered)
        self._record(source_id, session)
        return entry.raster

    def invalidate(self, source_id: Hashable) -> None:
        """Drop the cached raster so the next load decodes again."""
        self.cache.invalidate(source_id)

    def apply_settings(
        self,
        source_id: Hashable,
        settings: RenderSettings,
        masks: Optional[Mapping[str, bytes]] = None,
    ) -> Optional[RenderResult]:
        session = self.session(source_id)
        result = session.apply_settings(settings, masks)
        self._record(source_id, session)
        return result

    def _record(self, source_id: Hashable, session: ImageSession) -> None:
        result = session.last_result
        if (
            result is None
            or session.settings is None
            or session.representation is not RasterRepresentation.DECODED
            or session.settings.active_mask_filters
        ):
            return
        self.cache.record_render(source_id, session.settings, result.rgba)
