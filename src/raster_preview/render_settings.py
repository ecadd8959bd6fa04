"""Immutable render settings, their diff, and host (de)serialization.

Settings are value objects: every change produces a new ``RenderSettings``
and ``diff_settings`` classifies the change so the session can pick the
cheapest re-render path.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

__all__ = [
    "NormalizationMode",
    "NormalizationSettings",
    "GammaSettings",
    "BrightnessSettings",
    "MaskFilter",
    "RenderSettings",
    "SettingsDiff",
    "NAN_COLORS",
    "FLOAT_FORMAT_TYPES",
    "diff_settings",
    "settings_to_dict",
    "settings_from_dict",
    "default_settings_for",
]

RGB = Tuple[int, int, int]

NAN_COLORS: Dict[str, RGB] = {
    "black": (0, 0, 0),
    "fuchsia": (255, 0, 255),
}

FLOAT_FORMAT_TYPES = frozenset(
    {"tiff-float", "exr-float", "npy-float", "pfm-float", "colormap-float"}
)


class NormalizationMode(Enum):
    """How the display range is resolved."""

    MANUAL = "manual"
    AUTO = "auto"
    GAMMA_PASSTHROUGH = "gammaPassthrough"


@dataclass(frozen=True)
class NormalizationSettings:
    mode: NormalizationMode = NormalizationMode.MANUAL
    min: float = 0.0
    max: float = 1.0


@dataclass(frozen=True)
class GammaSettings:
    gamma_in: float = 2.2
    gamma_out: float = 2.2


@dataclass(frozen=True)
class BrightnessSettings:
    offset_stops: float = 0.0


@dataclass(frozen=True)
class MaskFilter:
    """Threshold a secondary raster and hide matching pixels.

    Parameters
    ----------
    mask_uri : str
        Host identifier of the mask source.
    threshold : float
        Comparison threshold in mask units.
    filter_higher : bool
        Hide pixels whose mask value is above the threshold (else below).
    enabled : bool
        Disabled filters are kept in the list but skipped.
    """

    mask_uri: str
    threshold: float = 0.0
    filter_higher: bool = True
    enabled: bool = True


@dataclass(frozen=True)
class RenderSettings:
    """Complete transform configuration for one image.

    Notes
    -----
    ``normalized_float_mode`` means the manual range of an integer image is
    entered in [0, 1] and scaled by the type maximum. ``scale_24bit_factor``
    divides packed 24-bit values for display in the pixel inspector.
    """

    normalization: NormalizationSettings = field(default_factory=NormalizationSettings)
    gamma: GammaSettings = field(default_factory=GammaSettings)
    brightness: BrightnessSettings = field(default_factory=BrightnessSettings)
    nan_color: RGB = NAN_COLORS["black"]
    rgb_as_24bit_grayscale: bool = False
    scale_24bit_factor: float = 1000.0
    normalized_float_mode: bool = False
    color_picker_show_modified: bool = False
    mask_filters: Tuple[MaskFilter, ...] = ()

    @property
    def active_mask_filters(self) -> Tuple[MaskFilter, ...]:
        return tuple(f for f in self.mask_filters if f.enabled)

    def with_changes(self, **changes: Any) -> "RenderSettings":
        """Return a copy with top-level fields replaced."""
        if "mask_filters" in changes:
            changes["mask_filters"] = tuple(changes["mask_filters"])
        return replace(self, **changes)


@dataclass(frozen=True)
class SettingsDiff:
    """Classification of a settings change.

    Mask changes drop the filtered samples; structural changes drop the
    statistics of the current raster. Anything else reuses both.
    """

    changed_masks: bool
    changed_structure: bool


def diff_settings(old: Optional[RenderSettings], new: RenderSettings) -> SettingsDiff:
    """Classify the change from ``old`` to ``new``."""
    if old is None:
        return SettingsDiff(changed_masks=bool(new.mask_filters), changed_structure=True)
    changed_masks = old.mask_filters != new.mask_filters
    changed_structure = (
        old.rgb_as_24bit_grayscale != new.rgb_as_24bit_grayscale
        or old.scale_24bit_factor != new.scale_24bit_factor
        or old.normalized_float_mode != new.normalized_float_mode
    )
    return SettingsDiff(
        changed_masks=changed_masks,
        changed_structure=changed_structure,
    )


def _nan_color_from(value: Any) -> RGB:
    if isinstance(value, str):
        try:
            return NAN_COLORS[value.lower()]
        except KeyError as exc:
            raise ValueError(f"Unknown NaN color: {value}") from exc
    if isinstance(value, Mapping):
        value = (value.get("r", 0), value.get("g", 0), value.get("b", 0))
    r, g, b = (int(v) for v in value)
    for channel in (r, g, b):
        if not 0 <= channel <= 255:
            raise ValueError(f"NaN color component out of range: {channel}")
    return (r, g, b)


def _nan_color_to(color: RGB) -> Any:
    for name, rgb in NAN_COLORS.items():
        if rgb == tuple(color):
            return name
    return list(color)


def settings_to_dict(settings: RenderSettings) -> dict:
    """Serialize settings to the host's camelCase JSON shape."""
    norm = settings.normalization
    return {
        "normalization": {
            "mode": norm.mode.value,
            "min": float(norm.min),
            "max": float(norm.max),
            "autoNormalize": norm.mode is NormalizationMode.AUTO,
            "gammaMode": norm.mode is NormalizationMode.GAMMA_PASSTHROUGH,
        },
        "gamma": {"in": float(settings.gamma.gamma_in), "out": float(settings.gamma.gamma_out)},
        "brightness": {"offset": float(settings.brightness.offset_stops)},
        "nanColor": _nan_color_to(settings.nan_color),
        "rgbAs24BitGrayscale": bool(settings.rgb_as_24bit_grayscale),
        "scale24BitFactor": float(settings.scale_24bit_factor),
        "normalizedFloatMode": bool(settings.normalized_float_mode),
        "colorPickerShowModified": bool(settings.color_picker_show_modified),
        "maskFilters": [
            {
                "maskUri": f.mask_uri,
                "threshold": float(f.threshold),
                "filterHigher": bool(f.filter_higher),
                "enabled": bool(f.enabled),
            }
            for f in settings.mask_filters
        ],
    }


def _mode_from(norm: Mapping[str, Any]) -> NormalizationMode:
    if "mode" in norm:
        return NormalizationMode(norm["mode"])
    # Legacy boolean pair; auto wins when both are set.
    if norm.get("autoNormalize"):
        return NormalizationMode.AUTO
    if norm.get("gammaMode"):
        return NormalizationMode.GAMMA_PASSTHROUGH
    return NormalizationMode.MANUAL


def settings_from_dict(
    data: Mapping[str, Any], base: Optional[RenderSettings] = None
) -> RenderSettings:
    """Build settings from a host payload.

    Missing keys keep the value from ``base`` (or the defaults), so partial
    updates such as ``{"gamma": {"in": 1.0}}`` are accepted.
    """
    base = base or RenderSettings()
    changes: Dict[str, Any] = {}

    norm = data.get("normalization")
    if norm is not None:
        has_mode = any(k in norm for k in ("mode", "autoNormalize", "gammaMode"))
        changes["normalization"] = NormalizationSettings(
            mode=_mode_from(norm) if has_mode else base.normalization.mode,
            min=float(norm.get("min", base.normalization.min)),
            max=float(norm.get("max", base.normalization.max)),
        )
    gamma = data.get("gamma")
    if gamma is not None:
        changes["gamma"] = GammaSettings(
            gamma_in=float(gamma.get("in", base.gamma.gamma_in)),
            gamma_out=float(gamma.get("out", base.gamma.gamma_out)),
        )
    brightness = data.get("brightness")
    if brightness is not None:
        offset = brightness.get("offsetStops", brightness.get("offset", base.brightness.offset_stops))
        changes["brightness"] = BrightnessSettings(offset_stops=float(offset))
    if "nanColor" in data:
        changes["nan_color"] = _nan_color_from(data["nanColor"])
    if "rgbAs24BitGrayscale" in data:
        changes["rgb_as_24bit_grayscale"] = bool(data["rgbAs24BitGrayscale"])
    if "scale24BitFactor" in data:
        factor = float(data["scale24BitFactor"])
        if factor <= 0:
            raise ValueError("scale24BitFactor must be positive")
        changes["scale_24bit_factor"] = factor
    if "normalizedFloatMode" in data:
        changes["normalized_float_mode"] = bool(data["normalizedFloatMode"])
    if "colorPickerShowModified" in data:
        changes["color_picker_show_modified"] = bool(data["colorPickerShowModified"])
    if "maskFilters" in data:
        changes["mask_filters"] = tuple(
            MaskFilter(
                mask_uri=str(item["maskUri"]),
                threshold=float(item.get("threshold", 0.0)),
                filter_higher=bool(item.get("filterHigher", True)),
                enabled=bool(item.get("enabled", True)),
            )
            for item in data["maskFilters"]
        )
    return base.with_changes(**changes) if changes else base


def default_settings_for(format_type: str) -> RenderSettings:
    """Return the settings a host applies on the first load of a format.

    Float sources start in manual mode over [0, 1]; integer sources start in
    gamma passthrough so the full type range is visible.
    """
    if format_type in FLOAT_FORMAT_TYPES:
        return RenderSettings()
    return RenderSettings(
        normalization=NormalizationSettings(mode=NormalizationMode.GAMMA_PASSTHROUGH)
    )
