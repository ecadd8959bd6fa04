"""Command line entry point: inspect and render raster files.

Usage::

    raster-preview info image.exr
    raster-preview render image.tif out.png --mode auto --gamma-in 1.0 --gamma-out 2.2
    raster-preview render depth.npy out.png --colormap viridis
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from raster_preview import __version__
from raster_preview.colormaps import colormap_names
from raster_preview.config import AppConfig
from raster_preview.errors import RasterPreviewError
from raster_preview.export import export_colorized, export_raster
from raster_preview.io import load_path
from raster_preview.logger import get_logger, set_level
from raster_preview.render_settings import (
    NAN_COLORS,
    BrightnessSettings,
    GammaSettings,
    NormalizationMode,
    NormalizationSettings,
    default_settings_for,
)
from raster_preview.statistics import compute_packed_stats, compute_stats

logger = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="raster-preview",
        description="Decode scientific rasters and render them for display.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Logging level (default from config)")
    parser.add_argument(
        "--slow-tiff",
        action="store_true",
        help="Use the built-in TIFF parser instead of tifffile",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    info = sub.add_parser("info", help="Print format information and statistics as JSON")
    info.add_argument("path")
    info.add_argument("--format", dest="fmt", default=None, help="Force a decoder")

    render = sub.add_parser("render", help="Render a raster to PNG")
    render.add_argument("path")
    render.add_argument("output")
    render.add_argument("--format", dest="fmt", default=None, help="Force a decoder")
    render.add_argument(
        "--mode",
        choices=[m.value for m in NormalizationMode],
        default=None,
        help="Normalization mode (default depends on the format)",
    )
    render.add_argument("--min", type=float, default=None)
    render.add_argument("--max", type=float, default=None)
    render.add_argument("--gamma-in", type=float, default=None)
    render.add_argument("--gamma-out", type=float, default=None)
    render.add_argument("--stops", type=float, default=0.0, help="Exposure offset in stops")
    render.add_argument("--nan-color", choices=sorted(NAN_COLORS), default="black")
    render.add_argument("--rgb24", action="store_true", help="Render RGB as packed 24-bit gray")
    render.add_argument(
        "--colormap",
        choices=colormap_names(),
        default=None,
        help="Colorize the first channel instead of tone mapping",
    )
    return parser


def _cmd_info(args: argparse.Namespace, config: AppConfig) -> int:
    raster = load_path(args.path, fmt=args.fmt, prefer_fast_tiff=config.prefer_fast_tiff)
    payload = raster.format_info().to_message()
    payload.pop("type", None)
    payload.pop("isInitialLoad", None)
    geometry = (raster.samples, raster.width, raster.height, raster.channels, raster.sample_kind)
    stats = compute_stats(*geometry)
    payload["stats"] = {"min": stats.min, "max": stats.max}
    if raster.channels >= 3:
        packed = compute_packed_stats(*geometry)
        payload["packedStats"] = {"min": packed.min, "max": packed.max}
    payload["flipY"] = raster.orientation_flip_y
    print(json.dumps(payload, indent=2, default=str))
    return 0


def _cmd_render(args: argparse.Namespace, config: AppConfig) -> int:
    raster = load_path(
        args.path,
        fmt=args.fmt,
        prefer_fast_tiff=config.prefer_fast_tiff,
        rgb_as_24bit=args.rgb24,
    )
    if args.colormap:
        export_colorized(raster, args.colormap, args.output, vmin=args.min, vmax=args.max)
        return 0

    settings = default_settings_for(raster.format_type).with_changes(
        scale_24bit_factor=config.default_scale_24bit
    )
    norm = settings.normalization
    settings = settings.with_changes(
        normalization=NormalizationSettings(
            mode=NormalizationMode(args.mode) if args.mode else norm.mode,
            min=norm.min if args.min is None else args.min,
            max=norm.max if args.max is None else args.max,
        ),
        gamma=GammaSettings(
            gamma_in=settings.gamma.gamma_in if args.gamma_in is None else args.gamma_in,
            gamma_out=settings.gamma.gamma_out if args.gamma_out is None else args.gamma_out,
        ),
        brightness=BrightnessSettings(offset_stops=args.stops),
        nan_color=NAN_COLORS[args.nan_color],
        rgb_as_24bit_grayscale=args.rgb24,
    )
    export_raster(raster, settings, args.output)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line interface and return the exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()
    if args.slow_tiff:
        config = config.with_overrides(prefer_fast_tiff=False)
    set_level(args.log_level or config.log_level)
    try:
        if args.command == "info":
            return _cmd_info(args, config)
        return _cmd_render(args, config)
    except (OSError, RasterPreviewError) as exc:
        logger.error("%s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
