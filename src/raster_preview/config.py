"""Runtime configuration for the preview pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class AppConfig:
    """Tunables shared by the controller, renderer and decoders.

    Notes
    -----
    ``raster_cache_capacity`` bounds the number of decoded+rendered images
    kept for instant switching. ``quantized_lut_size`` is the table size used for
    float, uint32 and 24-bit packed samples. ``colormap_chunk_pixels`` bounds the size of
    the temporary distance matrix used by the colormap inverse mapper.
    """

    raster_cache_capacity: int = 10
    prefer_fast_tiff: bool = True
    quantized_lut_size: int = 65536
    default_scale_24bit: float = 1000.0
    colormap_chunk_pixels: int = 65536
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "AppConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        defaults = {f.name: f.default for f in fields(cls)}
        kwargs = {}
        for key, value in values.items():
            if key in defaults:
                kwargs[key] = _coerce(defaults[key], value)
        return cls(**kwargs)

    @classmethod
    def from_env(
        cls, prefix: str = "RASTER_PREVIEW_", environ: Optional[Mapping[str, str]] = None
    ) -> "AppConfig":
        """Build a config from ``<prefix><FIELD>`` environment variables."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(prefix + f.name.upper())
            if raw is not None:
                values[f.name] = raw
        return cls.from_mapping(values)

    def with_overrides(self, **overrides: Any) -> "AppConfig":
        """Return a copy with selected fields replaced."""
        return replace(self, **overrides)


def _coerce(default: Any, value: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


DEFAULT_CONFIG = AppConfig()
