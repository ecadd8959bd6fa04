"""Tests for the colormap registry and the colormap inverse mapper."""

import numpy as np
import pytest

from raster_preview.colormap_inverse import (
    LOG_FLOOR,
    convert_to_float,
    indices_to_values,
    nearest_indices,
)
from raster_preview.colormaps import (
    TABLE_SIZE,
    cmap_for,
    colorize,
    colormap_names,
    colormap_table,
)
from raster_preview.errors import UnknownColormap


class TestColormapRegistry:
    """Test table construction and colorization."""

    def test_registered_names(self):
        names = colormap_names()
        for name in ("viridis", "plasma", "inferno", "magma", "jet", "hot", "cool", "turbo", "gray"):
            assert name in names

    @pytest.mark.parametrize("name", ["viridis", "jet", "gray", "turbo"])
    def test_table_shape(self, name):
        table = colormap_table(name)
        assert table.shape == (TABLE_SIZE, 3)
        assert table.dtype == np.uint8
        assert not table.flags.writeable

    def test_gray_table_is_identity(self):
        table = colormap_table("gray")
        np.testing.assert_array_equal(table[:, 0], np.arange(256))

    def test_viridis_endpoints(self):
        table = colormap_table("viridis")
        np.testing.assert_array_equal(table[0], [68, 1, 84])
        np.testing.assert_array_equal(table[-1], [253, 231, 37])

    def test_unknown_name(self):
        with pytest.raises(UnknownColormap):
            colormap_table("rainbow-unicorn")
        with pytest.raises(ValueError):
            colorize(np.zeros(2), "nope", 0.0, 1.0)

    def test_reversed_matplotlib_colormap(self):
        forward = cmap_for("hot")
        backward = cmap_for("hot", invert=True)
        np.testing.assert_allclose(forward(0.0), backward(1.0), atol=1e-6)

    def test_colorize(self):
        rgba = colorize(np.array([0.0, 10.0, np.nan, 50.0]), "gray", 0.0, 10.0)
        np.testing.assert_array_equal(rgba[0], [0, 0, 0, 255])
        np.testing.assert_array_equal(rgba[1], [255, 255, 255, 255])
        np.testing.assert_array_equal(rgba[2], [0, 0, 0, 0])
        # Out-of-range values clamp to the ends of the table
        np.testing.assert_array_equal(rgba[3], [255, 255, 255, 255])

    def test_colorize_empty_range(self):
        rgba = colorize(np.array([[3.0, np.nan]]), "gray", 3.0, 3.0)
        assert rgba.shape == (1, 2, 4)
        np.testing.assert_array_equal(rgba[0, 0], [0, 0, 0, 255])
        assert rgba[0, 1, 3] == 0


class TestNearestIndices:
    """Test the brute-force nearest colour search."""

    def test_ties_resolve_to_lowest_index(self):
        table = np.array([[0, 0, 0], [2, 0, 0]], dtype=np.uint8)
        assert nearest_indices(np.array([[1, 0, 0]]), table)[0] == 0

    def test_chunking_does_not_change_result(self):
        rng = np.random.default_rng(0)
        pixels = rng.integers(0, 256, size=(50, 3))
        table = colormap_table("turbo")
        np.testing.assert_array_equal(
            nearest_indices(pixels, table, chunk_pixels=7),
            nearest_indices(pixels, table, chunk_pixels=65536),
        )


class TestIndicesToValues:
    """Test index to value mapping."""

    def test_linear(self):
        values = indices_to_values(np.array([0, 255]), -2.0, 6.0)
        assert values.dtype == np.float32
        np.testing.assert_allclose(values, [-2.0, 6.0])

    def test_inverted(self):
        np.testing.assert_allclose(indices_to_values(np.array([0, 255]), 0.0, 1.0, inverted=True), [1.0, 0.0])

    def test_logarithmic(self):
        values = indices_to_values(np.array([0, 85, 170, 255]), 1.0, 1000.0, logarithmic=True)
        np.testing.assert_allclose(values, [1.0, 10.0, 100.0, 1000.0], rtol=1e-5)

    def test_logarithmic_negative_range(self):
        values = indices_to_values(np.array([0, 255]), -1000.0, -1.0, logarithmic=True)
        np.testing.assert_allclose(values, [-1000.0, -1.0], rtol=1e-5)

    def test_logarithmic_mixed_sign_falls_back_to_linear(self):
        values = indices_to_values(np.array([0, 255]), -1.0, 1.0, logarithmic=True)
        np.testing.assert_allclose(values, [-1.0, 1.0])

    def test_logarithmic_zero_bound_is_floored(self):
        values = indices_to_values(np.array([0]), 0.0, 100.0, logarithmic=True)
        assert values[0] == pytest.approx(LOG_FLOOR, rel=1e-5)


class TestConvertToFloat:
    """Test whole-image inverse mapping."""

    def test_gray_round_trip_is_exact_to_half_step(self):
        vmin, vmax = -2.0, 6.0
        field = np.linspace(vmin, vmax, 64).reshape(8, 8)
        recovered = convert_to_float(colorize(field, "gray", vmin, vmax), "gray", vmin, vmax)
        assert recovered.shape == (8, 8)
        step = (vmax - vmin) / 255
        assert np.abs(recovered - field).max() <= step / 2 + 1e-6

    @pytest.mark.parametrize("name", ["viridis", "plasma", "jet", "turbo"])
    def test_round_trip_within_quantization(self, name):
        vmin, vmax = 0.0, 255.0
        field = np.linspace(vmin, vmax, 256).reshape(16, 16)
        recovered = convert_to_float(colorize(field, name, vmin, vmax), name, vmin, vmax)
        step = (vmax - vmin) / 255
        # Neighbouring table entries may round to the same 8-bit colour
        assert np.abs(recovered - field).max() <= 2 * step
        assert np.median(np.abs(recovered - field)) <= step / 2 + 1e-6

    def test_alpha_is_ignored(self):
        rgba = colorize(np.array([[0.0, 1.0]]), "gray", 0.0, 1.0)
        rgba[..., 3] = 0
        np.testing.assert_allclose(convert_to_float(rgba, "gray", 0.0, 1.0), [[0.0, 1.0]])

    def test_rgb_input_and_bad_shape(self):
        rgb = np.zeros((2, 2, 3), dtype=np.uint8)
        assert convert_to_float(rgb, "gray", 0.0, 1.0).shape == (2, 2)
        with pytest.raises(ValueError):
            convert_to_float(np.zeros((2, 2)), "gray", 0.0, 1.0)

    def test_unknown_colormap(self):
        with pytest.raises(UnknownColormap):
            convert_to_float(np.zeros((1, 1, 3), np.uint8), "nope", 0.0, 1.0)
