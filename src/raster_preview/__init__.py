"""Raster Preview package."""

from raster_preview.config import AppConfig, DEFAULT_CONFIG
from raster_preview.errors import (
    DecodeError,
    RasterPreviewError,
)
from raster_preview.io import decode_bytes, load_path, sniff_format
from raster_preview.messages import MessageRouter
from raster_preview.raster_models import DecodedRaster, SampleKind, Stats
from raster_preview.render_settings import (
    NormalizationMode,
    RenderSettings,
    settings_from_dict,
    settings_to_dict,
)
from raster_preview.renderer import render, render_raster
from raster_preview.session import ImageSession, PreviewController

__all__ = [
    "__version__",
    "AppConfig",
    "DEFAULT_CONFIG",
    "DecodeError",
    "RasterPreviewError",
    "decode_bytes",
    "load_path",
    "sniff_format",
    "MessageRouter",
    "DecodedRaster",
    "SampleKind",
    "Stats",
    "NormalizationMode",
    "RenderSettings",
    "settings_from_dict",
    "settings_to_dict",
    "render",
    "render_raster",
    "ImageSession",
    "PreviewController",
]

__version__ = "1.0.0"
