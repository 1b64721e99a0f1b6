"""
Tests for PipelineConfig and YAML loading.
Run with:  pytest tests/
"""

from __future__ import annotations

import pytest

from ppg_vitals.config import (
    FILTER_PROFILES,
    FilterProfile,
    PipelineConfig,
    SensitivitySettings,
    config_from_dict,
    get_profile,
    load_config,
)


class TestPipelineConfig:

    def test_defaults(self):
        cfg = PipelineConfig()
        assert cfg.filter_profile is FILTER_PROFILES["mobile"]
        assert cfg.window_samples == 300
        assert cfg.min_samples == 60
        assert cfg.spo2_calibration is None
        assert cfg.bp_model is None

    def test_response_time_scales_window(self):
        cfg = PipelineConfig(sensitivity=SensitivitySettings(response_time=0.5))
        assert cfg.window_samples == 150

    def test_tiny_window_floor(self):
        cfg = PipelineConfig(window_seconds=0.01)
        assert cfg.window_samples == 3
        assert cfg.min_samples == 3

    def test_noise_reduction_divides_alpha(self):
        cfg = PipelineConfig(sensitivity=SensitivitySettings(noise_reduction=2.0))
        assert cfg.effective_profile().alpha == pytest.approx(0.25)
        assert cfg.effective_profile().detrend is True

    def test_alpha_kept_inside_open_interval(self):
        cfg = PipelineConfig(sensitivity=SensitivitySettings(noise_reduction=0.1))
        assert 0.0 < cfg.effective_profile().alpha < 1.0

    def test_multipliers_scale_thresholds(self):
        cfg = PipelineConfig(
            peak_threshold=0.2,
            sensitivity=SensitivitySettings(
                peak_detection=2.0, heartbeat_threshold=3.0, signal_stability=0.5),
        )
        assert cfg.effective_peak_threshold == pytest.approx(0.4)
        assert cfg.effective_min_amplitude == pytest.approx(0.15)
        assert cfg.effective_interval_tolerance == pytest.approx(0.15)

    @pytest.mark.parametrize("field", ["brightness", "response_time"])
    def test_non_positive_multiplier_rejected(self, field):
        with pytest.raises(ValueError):
            SensitivitySettings(**{field: 0.0})

    def test_invalid_rate_rejected(self):
        with pytest.raises(ValueError):
            PipelineConfig(sample_rate_hz=0)

    def test_unknown_profile(self):
        with pytest.raises(ValueError):
            get_profile("thermal")

    def test_summary_mentions_profile(self):
        assert "webcam" in PipelineConfig(filter_profile=get_profile("webcam")).summary()


class TestConfigFromDict:

    def test_nested_sections(self):
        cfg = config_from_dict({
            "sample_rate_hz": 25,
            "filter_profile": "webcam",
            "sensitivity": {"brightness": 1.5},
            "spo2_calibration": {"intercept": 110, "slope": 25},
            "bp_model": {
                "systolic": {"intercept": 180, "ptt": -0.3},
                "diastolic": {"intercept": 110, "ptt": -0.2},
            },
            "bounds": {"bpm": [45, 180]},
            "interval_range_ms": [350, 1400],
        })
        assert cfg.sample_rate_hz == 25
        assert cfg.filter_profile.name == "webcam"
        assert cfg.sensitivity.brightness == 1.5
        assert cfg.spo2_calibration.slope == 25
        assert cfg.bp_model.systolic.ptt == -0.3
        assert cfg.bp_model.min_ptt_samples == 2
        assert cfg.bounds.bpm == (45.0, 180.0)
        assert cfg.bounds.systolic == (80.0, 200.0)
        assert cfg.interval_range_ms == (350.0, 1400.0)

    def test_quality_section(self):
        cfg = config_from_dict({"quality": {"min_snr_db": 8, "history_size": 30}})
        assert cfg.quality.min_snr_db == 8
        assert cfg.quality.history_size == 30

    def test_custom_filter_profile(self):
        cfg = config_from_dict({"filter_profile": {"alpha": 0.4, "detrend": True}})
        assert cfg.filter_profile == FilterProfile(alpha=0.4, detrend=True)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError):
            config_from_dict({"frame_rate": 30})

    def test_unknown_nested_key(self):
        with pytest.raises(ValueError):
            config_from_dict({"sensitivity": {"contrast": 2.0}})

    def test_round_trip_through_dict(self):
        cfg = config_from_dict({"filter_profile": "webcam", "window_seconds": 8})
        data = cfg.to_dict()
        data.pop("filter_profile")
        data["filter_profile"] = "webcam"
        assert config_from_dict(data) == cfg


class TestLoadConfig:

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "ppg.yaml"
        path.write_text(
            "sample_rate_hz: 60\n"
            "window_seconds: 6\n"
            "filter_profile: mobile\n"
            "hrv:\n"
            "  min_intervals: 8\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.sample_rate_hz == 60
        assert cfg.window_samples == 360
        assert cfg.hrv.min_intervals == 8

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == PipelineConfig()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(path)
