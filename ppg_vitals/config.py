"""
Pipeline configuration.

Every tunable of the pipeline lives in a plain dataclass so callers can
select a capture profile, retune sensitivity at runtime, or load the whole
thing from a YAML file.  The algorithms never branch on device names; they
only see the numbers held here.

Calibration coefficients (SpO2 curve, blood-pressure regression) have no
built-in values.  They depend on the camera, the light source and the
population, and must be supplied from calibration data.  Without them the
corresponding estimates are simply not produced.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Filter profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilterProfile:
    """EMA smoothing factor and detrend switch for one capture-device class."""
    alpha:   float
    detrend: bool
    name:    str = "custom"

    def __post_init__(self) -> None:
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must lie in (0, 1), got {self.alpha}")


# Phone cameras with the torch on: strong signal, but auto-exposure drifts,
# so the baseline is removed.  Webcams under ambient light are noisier and
# need heavier smoothing; their exposure is usually locked.
FILTER_PROFILES: dict[str, FilterProfile] = {
    "mobile": FilterProfile(alpha=0.5, detrend=True, name="mobile"),
    "webcam": FilterProfile(alpha=0.3, detrend=False, name="webcam"),
}


def get_profile(name: str) -> FilterProfile:
    """Return the built-in profile called *name*."""
    try:
        return FILTER_PROFILES[name]
    except KeyError:
        raise ValueError(
            f"Unknown filter profile {name!r}; known: {sorted(FILTER_PROFILES)}"
        ) from None


# ---------------------------------------------------------------------------
# Sensitivity multipliers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SensitivitySettings:
    """
    User-facing multipliers, each scaling one stage parameter.

    brightness            – all raw channels
    red_intensity         – red channel only
    signal_amplification  – gain on the filtered waveform
    noise_reduction       – divides the filter alpha (more smoothing)
    peak_detection        – peak threshold
    heartbeat_threshold   – minimum pulse amplitude gate
    response_time         – analysis window length
    signal_stability      – tolerance of the interval outlier filter
    """
    brightness:           float = 1.0
    red_intensity:        float = 1.0
    signal_amplification: float = 1.0
    noise_reduction:      float = 1.0
    peak_detection:       float = 1.0
    heartbeat_threshold:  float = 1.0
    response_time:        float = 1.0
    signal_stability:     float = 1.0

    def __post_init__(self) -> None:
        for f in fields(self):
            if getattr(self, f.name) <= 0:
                raise ValueError(f"sensitivity.{f.name} must be positive")


# ---------------------------------------------------------------------------
# Morphology, calibration, HRV and validation settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureRanges:
    """Physiologically normal intervals used to score pulse morphology."""
    augmentation_index: Tuple[float, float] = (0.1, 0.4)
    reflection_index:   Tuple[float, float] = (0.2, 0.7)
    stiffness_index:    Tuple[float, float] = (5.0, 15.0)


@dataclass(frozen=True)
class SpO2Calibration:
    """Linear calibration curve ``SpO2 = intercept - slope * R``."""
    intercept: float
    slope:     float
    min_spo2:  float = 70.0
    max_spo2:  float = 100.0


@dataclass(frozen=True)
class PressureCoefficients:
    """``value = intercept + ptt*PTT_ms + augmentation*AIx + stiffness*SI``."""
    intercept:    float
    ptt:          float = 0.0
    augmentation: float = 0.0
    stiffness:    float = 0.0


@dataclass(frozen=True)
class BloodPressureModel:
    systolic:        PressureCoefficients
    diastolic:       PressureCoefficients
    min_ptt_samples: int = 2


@dataclass(frozen=True)
class HrvThresholds:
    min_intervals: int   = 5
    sdnn_ms:       float = 100.0
    rmssd_ms:      float = 50.0
    cv_max:        float = 0.1
    history_size:  int   = 64


@dataclass(frozen=True)
class QualitySettings:
    """SNR saturation point and score history length of the quality stage."""
    min_snr_db:   float = 5.0
    history_size: int   = 90


@dataclass(frozen=True)
class ValidationBounds:
    bpm:       Tuple[float, float] = (40.0, 200.0)
    systolic:  Tuple[float, float] = (80.0, 200.0)
    diastolic: Tuple[float, float] = (40.0, 130.0)


# ---------------------------------------------------------------------------
# Pipeline configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    """
    Complete configuration of one measurement session.

    Parameters
    ----------
    sample_rate_hz:
        Frame rate of the incoming sample stream.
    filter_profile:
        EMA / detrend profile; see :data:`FILTER_PROFILES`.
    peak_window_radius:
        Half-width of the local-maximum window, in samples.  Two beats can
        never be closer than this, so 8 samples at 30 Hz caps the rate near
        200 BPM.
    peak_threshold:
        Minimum height of a peak in the mean-centred filtered window.
    window_seconds:
        Length of the rolling analysis window before ``response_time``.
    min_pulse_amplitude:
        Peak-to-peak amplitude below which the window is treated as
        containing no pulse at all.
    interval_tolerance:
        Maximum relative deviation of a beat interval from the window median
        before it is dropped from the BPM average.
    """
    sample_rate_hz:      float               = 30.0
    filter_profile:      FilterProfile       = FILTER_PROFILES["mobile"]
    peak_window_radius:  int                 = 8
    peak_threshold:      float               = 0.0
    window_seconds:      float               = 10.0
    min_pulse_amplitude: float               = 0.05
    interval_tolerance:  float               = 0.3
    interval_range_ms:   Tuple[float, float] = (300.0, 1500.0)
    ptt_range_ms:        Tuple[float, float] = (50.0, 500.0)
    export_seconds:      float               = 120.0
    sensitivity:         SensitivitySettings = field(default_factory=SensitivitySettings)
    feature_ranges:      FeatureRanges       = field(default_factory=FeatureRanges)
    spo2_calibration:    Optional[SpO2Calibration]    = None
    bp_model:            Optional[BloodPressureModel] = None
    hrv:                 HrvThresholds       = field(default_factory=HrvThresholds)
    quality:             QualitySettings     = field(default_factory=QualitySettings)
    bounds:              ValidationBounds    = field(default_factory=ValidationBounds)

    def __post_init__(self) -> None:
        if self.sample_rate_hz <= 0:
            raise ValueError("sample_rate_hz must be positive")
        if self.peak_window_radius < 0:
            raise ValueError("peak_window_radius must be >= 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    # ------------------------------------------------------------------
    # Effective stage parameters (base value x sensitivity multiplier)
    # ------------------------------------------------------------------

    def effective_profile(self) -> FilterProfile:
        alpha = self.filter_profile.alpha / self.sensitivity.noise_reduction
        alpha = min(max(alpha, 1e-3), 1.0 - 1e-3)
        return replace(self.filter_profile, alpha=alpha)

    @property
    def effective_peak_threshold(self) -> float:
        return self.peak_threshold * self.sensitivity.peak_detection

    @property
    def effective_min_amplitude(self) -> float:
        return self.min_pulse_amplitude * self.sensitivity.heartbeat_threshold

    @property
    def effective_interval_tolerance(self) -> float:
        return self.interval_tolerance * self.sensitivity.signal_stability

    @property
    def window_samples(self) -> int:
        seconds = self.window_seconds * self.sensitivity.response_time
        return max(int(round(seconds * self.sample_rate_hz)), 3)

    @property
    def min_samples(self) -> int:
        """Samples needed before the first estimate (about two seconds)."""
        return min(int(2 * self.sample_rate_hz), self.window_samples)

    def summary(self) -> str:
        profile = self.effective_profile()
        lines = [
            f"Rate       : {self.sample_rate_hz:g} Hz",
            f"Profile    : {profile.name} (alpha={profile.alpha:.3f}, detrend={profile.detrend})",
            f"Window     : {self.window_samples} samples",
            f"Peaks      : radius={self.peak_window_radius} threshold={self.effective_peak_threshold:g}",
            f"SpO2 cal   : {'yes' if self.spo2_calibration else 'none'}",
            f"BP model   : {'yes' if self.bp_model else 'none'}",
        ]
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _pair(value: Any) -> Tuple[float, float]:
    low, high = value
    return float(low), float(high)


def _build(cls, data: Mapping[str, Any] | None, pairs: tuple[str, ...] = ()):
    if data is None:
        return None
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    kwargs = {k: (_pair(v) if k in pairs else v) for k, v in data.items()}
    return cls(**kwargs)


def config_from_dict(data: Mapping[str, Any]) -> PipelineConfig:
    """
    Build a :class:`PipelineConfig` from plain nested mappings.

    ``filter_profile`` may be the name of a built-in profile or a mapping
    with ``alpha`` and ``detrend``.
    """
    data = dict(data)
    kwargs: dict[str, Any] = {}

    profile = data.pop("filter_profile", None)
    if isinstance(profile, str):
        kwargs["filter_profile"] = get_profile(profile)
    elif profile is not None:
        kwargs["filter_profile"] = FilterProfile(**profile)

    if "sensitivity" in data:
        kwargs["sensitivity"] = _build(SensitivitySettings, data.pop("sensitivity"))
    if "feature_ranges" in data:
        kwargs["feature_ranges"] = _build(
            FeatureRanges, data.pop("feature_ranges"),
            pairs=("augmentation_index", "reflection_index", "stiffness_index"),
        )
    if "spo2_calibration" in data:
        kwargs["spo2_calibration"] = _build(SpO2Calibration, data.pop("spo2_calibration"))
    if "bp_model" in data:
        bp = data.pop("bp_model")
        if bp is not None:
            bp = dict(bp)
            bp["systolic"] = _build(PressureCoefficients, bp.get("systolic"))
            bp["diastolic"] = _build(PressureCoefficients, bp.get("diastolic"))
        kwargs["bp_model"] = _build(BloodPressureModel, bp)
    if "hrv" in data:
        kwargs["hrv"] = _build(HrvThresholds, data.pop("hrv"))
    if "quality" in data:
        kwargs["quality"] = _build(QualitySettings, data.pop("quality"))
    if "bounds" in data:
        kwargs["bounds"] = _build(
            ValidationBounds, data.pop("bounds"),
            pairs=("bpm", "systolic", "diastolic"),
        )

    for key in ("interval_range_ms", "ptt_range_ms"):
        if key in data:
            kwargs[key] = _pair(data.pop(key))

    known = {f.name for f in fields(PipelineConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
    kwargs.update(data)
    return PipelineConfig(**kwargs)


def load_config(path: str | Path) -> PipelineConfig:
    """Read a YAML (or JSON) configuration file."""
    path = Path(path)
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{path}: top-level configuration must be a mapping")
    config = config_from_dict(data)
    logger.info("Configuration loaded from %s", path)
    return config
