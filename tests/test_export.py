"""
PNG export tests.

Tests cover:
  - RGBA validation before writing
  - Rendered export of decoded rasters
  - Colormap export, including bottom-up rasters
"""

import numpy as np
import pytest
from PIL import Image


def _read(path):
    with Image.open(path) as img:
        return np.asarray(img.convert("RGBA"))


@pytest.mark.parametrize("shape,dtype", [
    ((2, 2, 3), np.uint8),   # no alpha
    ((2, 2), np.uint8),      # gray
    ((2, 2, 4), np.float32), # float RGBA
])
def test_save_rgba_rejects_bad_rasters(tmp_path, shape, dtype):
    """Only (H, W, 4) uint8 rasters are written."""
    from raster_preview.export import save_rgba

    with pytest.raises(ValueError):
        save_rgba(np.zeros(shape, dtype=dtype), tmp_path / "bad.png")
    assert not (tmp_path / "bad.png").exists()


def test_save_rgba_writes_png(tmp_path):
    from raster_preview.export import save_rgba

    rgba = np.zeros((3, 2, 4), dtype=np.uint8)
    rgba[0, 1] = [10, 20, 30, 255]
    path = save_rgba(rgba, tmp_path / "out.png")
    assert path.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"
    np.testing.assert_array_equal(_read(path), rgba)


def test_export_raster_renders_with_settings(tmp_path):
    """Gamma passthrough of 8-bit data writes the values unchanged."""
    from raster_preview.export import export_raster
    from raster_preview.raster_models import DecodedRaster, SampleKind
    from raster_preview.render_settings import default_settings_for

    samples = np.array([[[0], [128], [255]]], dtype=np.uint8)
    raster = DecodedRaster(3, 1, 1, SampleKind.UINT8, samples, 255.0, format_type="png-int")
    path = export_raster(raster, default_settings_for("png-int"), tmp_path / "gray.png")
    pixels = _read(path)
    assert pixels.shape == (1, 3, 4)
    np.testing.assert_array_equal(pixels[0, :, 0], [0, 128, 255])
    assert (pixels[..., 3] == 255).all()


def test_export_colorized_flips_bottom_up_rows(tmp_path):
    from raster_preview.colormaps import colormap_table
    from raster_preview.export import export_colorized
    from raster_preview.raster_models import DecodedRaster, SampleKind

    samples = np.array([[[0.0]], [[1.0]]], dtype=np.float32)
    raster = DecodedRaster(1, 2, 1, SampleKind.FLOAT32, samples, 1.0, orientation_flip_y=True)
    pixels = _read(export_colorized(raster, "viridis", tmp_path / "cmap.png"))
    table = colormap_table("viridis")
    np.testing.assert_array_equal(pixels[0, 0, :3], table[-1])
    np.testing.assert_array_equal(pixels[1, 0, :3], table[0])


def test_export_colorized_explicit_range(tmp_path):
    from raster_preview.export import export_colorized
    from raster_preview.raster_models import DecodedRaster, SampleKind

    samples = np.array([[[5.0], [np.nan]]], dtype=np.float32)
    raster = DecodedRaster(2, 1, 1, SampleKind.FLOAT32, samples, 1.0)
    pixels = _read(export_colorized(raster, "gray", tmp_path / "g.png", vmin=0.0, vmax=10.0))
    assert pixels[0, 0, 0] in (127, 128)
    assert pixels[0, 1, 3] == 0
