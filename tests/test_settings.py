"""Tests for render settings, their diff and host serialization."""

import pytest

from raster_preview.render_settings import (
    NAN_COLORS,
    GammaSettings,
    MaskFilter,
    NormalizationMode,
    NormalizationSettings,
    RenderSettings,
    default_settings_for,
    diff_settings,
    settings_from_dict,
    settings_to_dict,
)


class TestSettingsDiff:
    """Test change classification."""

    def test_first_settings_are_structural(self):
        diff = diff_settings(None, RenderSettings())
        assert diff.changed_structure
        assert not diff.changed_masks

    def test_tone_change_reuses_masks_and_stats(self):
        old = RenderSettings()
        new = old.with_changes(
            gamma=GammaSettings(gamma_in=1.0, gamma_out=2.2),
            normalization=NormalizationSettings(NormalizationMode.AUTO),
        )
        diff = diff_settings(old, new)
        assert not diff.changed_masks and not diff.changed_structure

    def test_nan_color_sets_no_flag(self):
        old = RenderSettings()
        diff = diff_settings(old, old.with_changes(nan_color=NAN_COLORS["fuchsia"]))
        assert not diff.changed_masks and not diff.changed_structure

    def test_mask_change(self):
        old = RenderSettings()
        diff = diff_settings(old, old.with_changes(mask_filters=[MaskFilter("m.tif", 0.5)]))
        assert diff.changed_masks
        assert not diff.changed_structure

    @pytest.mark.parametrize(
        "change",
        [
            {"rgb_as_24bit_grayscale": True},
            {"scale_24bit_factor": 10.0},
            {"normalized_float_mode": True},
        ],
    )
    def test_structure_change(self, change):
        old = RenderSettings()
        assert diff_settings(old, old.with_changes(**change)).changed_structure

    def test_active_mask_filters(self):
        settings = RenderSettings(
            mask_filters=(MaskFilter("a"), MaskFilter("b", enabled=False))
        )
        assert [f.mask_uri for f in settings.active_mask_filters] == ["a"]


class TestSerialization:
    """Test the host payload shape."""

    def test_round_trip(self):
        settings = RenderSettings(
            normalization=NormalizationSettings(NormalizationMode.GAMMA_PASSTHROUGH, -1.0, 4.0),
            gamma=GammaSettings(1.0, 2.4),
            nan_color=(10, 20, 30),
            rgb_as_24bit_grayscale=True,
            scale_24bit_factor=256.0,
            mask_filters=(MaskFilter("mask.npy", 0.2, filter_higher=False),),
        )
        payload = settings_to_dict(settings)
        assert payload["normalization"]["gammaMode"] is True
        assert payload["nanColor"] == [10, 20, 30]
        assert settings_from_dict(payload) == settings

    def test_named_nan_color(self):
        payload = settings_to_dict(RenderSettings(nan_color=NAN_COLORS["fuchsia"]))
        assert payload["nanColor"] == "fuchsia"

    def test_legacy_mode_flags(self):
        auto = settings_from_dict({"normalization": {"autoNormalize": True, "gammaMode": True}})
        assert auto.normalization.mode is NormalizationMode.AUTO
        gamma = settings_from_dict({"normalization": {"gammaMode": True}})
        assert gamma.normalization.mode is NormalizationMode.GAMMA_PASSTHROUGH

    def test_partial_update_keeps_base(self):
        base = default_settings_for("tiff-int")
        updated = settings_from_dict({"gamma": {"in": 1.0}, "brightness": {"offsetStops": 1.5}}, base)
        assert updated.gamma == GammaSettings(1.0, base.gamma.gamma_out)
        assert updated.brightness.offset_stops == 1.5
        assert updated.normalization == base.normalization
        assert settings_from_dict({}, base) is base

    def test_range_update_keeps_mode(self):
        base = RenderSettings(normalization=NormalizationSettings(NormalizationMode.AUTO))
        updated = settings_from_dict({"normalization": {"min": 2.0}}, base)
        assert updated.normalization.mode is NormalizationMode.AUTO
        assert updated.normalization.min == 2.0

    @pytest.mark.parametrize("color", [{"r": 255, "g": 0, "b": 255}, [255, 0, 255], "Fuchsia"])
    def test_nan_color_forms(self, color):
        assert settings_from_dict({"nanColor": color}).nan_color == (255, 0, 255)

    @pytest.mark.parametrize(
        "payload",
        [
            {"nanColor": "teal"},
            {"nanColor": [0, 0, 256]},
            {"scale24BitFactor": 0},
            {"normalization": {"mode": "sideways"}},
        ],
    )
    def test_invalid_payloads(self, payload):
        with pytest.raises(ValueError):
            settings_from_dict(payload)


class TestDefaults:
    """Test per-format first-load settings."""

    @pytest.mark.parametrize("fmt", ["tiff-float", "exr-float", "npy-float", "pfm-float"])
    def test_float_formats_start_manual(self, fmt):
        settings = default_settings_for(fmt)
        assert settings.normalization == NormalizationSettings(NormalizationMode.MANUAL, 0.0, 1.0)

    @pytest.mark.parametrize("fmt", ["tiff-int", "png-int", "ppm-int", "npy-uint"])
    def test_integer_formats_start_in_gamma_passthrough(self, fmt):
        settings = default_settings_for(fmt)
        assert settings.normalization.mode is NormalizationMode.GAMMA_PASSTHROUGH
        assert settings.gamma == GammaSettings(2.2, 2.2)
