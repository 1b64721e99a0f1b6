"""
Raw vital-sign estimation.

Combines beat intervals, channel amplitudes, pulse transit times, the pulse
morphology and the window spectrum into one :class:`RawVitalsEstimate`.
Each quantity degrades on its own: with too little input it is ``None``
("no estimate") instead of an extrapolated value.

SpO2
----
Ratio of ratios ``R = (AC_red / DC_red) / (AC_ir / DC_ir)`` mapped through
the linear calibration curve ``SpO2 = intercept - slope * R``.  The curve is
device specific and must come from configuration.

Blood pressure
--------------
Linear regression on the mean pulse transit time, optionally augmented
with the augmentation and stiffness indices of the latest pulse.  The
coefficients must come from a calibration against a cuff.

HRV
---
SDNN, RMSSD and pNN50 over the accumulated interval history, LF/HF from the
resampled interval series.  An arrhythmia is flagged when SDNN or RMSSD is
elevated and the intervals are irregular beyond the configured coefficient
of variation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from ppg_vitals.config import (
    BloodPressureModel,
    HrvThresholds,
    PressureCoefficients,
    SpO2Calibration,
)
from ppg_vitals.errors import DegenerateInterval, InsufficientSamples, PipelineError
from ppg_vitals.feature_extractor import PPGFeatureSet, range_score
from ppg_vitals.frequency_analyzer import HEART_BAND_HZ, FrequencyAnalyzer, Spectrum

logger = logging.getLogger(__name__)

# Mean intervals outside this range name the rhythm, in ms.
_TACHY_INTERVAL_MS = 600.0
_BRADY_INTERVAL_MS = 1000.0
# Atrial-fibrillation pattern: very high variability on every axis.
_AF_SDNN_MS = 150.0
_AF_RMSSD_MS = 70.0
_AF_CV = 0.2
_NN50_MS = 50.0


@dataclass(frozen=True)
class ChannelAmplitude:
    """Pulsatile (AC) and baseline (DC) level of one colour channel."""
    ac: float
    dc: float


@dataclass(frozen=True)
class HrvMetrics:
    has_arrhythmia: bool
    type:           str
    sdnn:           float
    rmssd:          float
    pnn50:          float
    lfhf:           Optional[float]


@dataclass(frozen=True)
class RawVitalsEstimate:
    bpm:        Optional[float]
    spo2:       Optional[float]
    systolic:   Optional[float]
    diastolic:  Optional[float]
    hrv:        Optional[HrvMetrics]
    confidence: float


def coefficient_of_variation(intervals: np.ndarray) -> float:
    mean = float(intervals.mean())
    return float(intervals.std()) / mean if mean > 0 else 0.0


class VitalsEstimator:
    """
    Parameters
    ----------
    spo2_calibration:
        Calibration curve for SpO2; ``None`` disables the estimate.
    bp_model:
        Regression coefficients for blood pressure; ``None`` disables it.
    hrv:
        HRV history size and arrhythmia thresholds.
    bpm_tolerance:
        Disagreement (BPM) between peak and spectral rate at which the
        spectral-agreement score starts falling.
    """

    def __init__(
        self,
        spo2_calibration: Optional[SpO2Calibration] = None,
        bp_model: Optional[BloodPressureModel] = None,
        hrv: Optional[HrvThresholds] = None,
        bpm_tolerance: float = 6.0,
    ) -> None:
        self.spo2_calibration = spo2_calibration
        self.bp_model = bp_model
        self.hrv = hrv or HrvThresholds()
        self.bpm_tolerance = bpm_tolerance

    def estimate(
        self,
        peak_intervals_ms: Sequence[float],
        red_amplitude: Optional[ChannelAmplitude],
        ir_amplitude: Optional[ChannelAmplitude],
        pulse_transit_times: Sequence[float],
        feature_set: Optional[PPGFeatureSet],
        spectrum: Optional[Spectrum],
        interval_history: Optional[Sequence[float]] = None,
    ) -> RawVitalsEstimate:
        """
        Produce the raw estimate for one frame.

        ``interval_history`` is the accumulated session interval series used
        for HRV; it defaults to ``peak_intervals_ms``.
        """
        intervals = np.asarray(peak_intervals_ms, dtype=np.float64)
        history = intervals if interval_history is None else np.asarray(
            interval_history, dtype=np.float64)

        bpm = self._guard(self.bpm, intervals)
        spo2 = self._guard(self.spo2, red_amplitude, ir_amplitude)
        pressure = self._guard(self.blood_pressure, pulse_transit_times, feature_set)
        systolic, diastolic = pressure if pressure is not None else (None, None)
        hrv = self._guard(self.hrv_metrics, history)

        confidence = self.confidence(bpm, intervals, feature_set, spectrum)
        return RawVitalsEstimate(
            bpm=bpm,
            spo2=spo2,
            systolic=systolic,
            diastolic=diastolic,
            hrv=hrv,
            confidence=confidence,
        )

    # ------------------------------------------------------------------
    # Sub-estimates (raise PipelineError on missing input)
    # ------------------------------------------------------------------

    def bpm(self, intervals: np.ndarray) -> float:
        if intervals.size < 2:
            raise InsufficientSamples(f"{intervals.size} intervals, need 2")
        mean = float(intervals.mean())
        if mean <= 0:
            raise DegenerateInterval("non-positive mean interval")
        return 60000.0 / mean

    def spo2(
        self,
        red: Optional[ChannelAmplitude],
        ir: Optional[ChannelAmplitude],
    ) -> float:
        cal = self.spo2_calibration
        if cal is None:
            raise InsufficientSamples("no SpO2 calibration configured")
        if red is None or ir is None:
            raise InsufficientSamples("red and infrared amplitudes required")
        if red.dc == 0 or ir.dc == 0 or ir.ac == 0:
            raise DegenerateInterval("zero DC level or infrared pulsatility")

        ratio = (red.ac / red.dc) / (ir.ac / ir.dc)
        spo2 = cal.intercept - cal.slope * ratio
        return float(min(max(spo2, cal.min_spo2), cal.max_spo2))

    def blood_pressure(
        self,
        transit_times: Sequence[float],
        features: Optional[PPGFeatureSet],
    ) -> Tuple[float, float]:
        model = self.bp_model
        if model is None:
            raise InsufficientSamples("no blood-pressure model configured")
        ptt = np.asarray(transit_times, dtype=np.float64)
        if ptt.size < max(model.min_ptt_samples, 1):
            raise InsufficientSamples(
                f"{ptt.size} transit times, need {model.min_ptt_samples}")
        mean_ptt = float(ptt.mean())
        return (
            self._regress(model.systolic, mean_ptt, features),
            self._regress(model.diastolic, mean_ptt, features),
        )

    def hrv_metrics(self, history: np.ndarray) -> HrvMetrics:
        limits = self.hrv
        if history.size < max(limits.min_intervals, 3):
            raise InsufficientSamples(
                f"{history.size} intervals, need {limits.min_intervals}")

        diffs = np.diff(history)
        sdnn = float(history.std(ddof=1))
        rmssd = float(np.sqrt(np.mean(diffs ** 2)))
        pnn50 = float(np.mean(np.abs(diffs) > _NN50_MS) * 100.0)
        cv = coefficient_of_variation(history)

        powers = FrequencyAnalyzer.hrv_band_powers(history)
        lfhf = None
        if powers is not None and powers[1] > 0:
            lfhf = powers[0] / powers[1]

        elevated = sdnn > limits.sdnn_ms or rmssd > limits.rmssd_ms
        has_arrhythmia = elevated and cv > limits.cv_max
        kind = "normal"
        if has_arrhythmia:
            mean = float(history.mean())
            if mean < _TACHY_INTERVAL_MS:
                kind = "tachycardia"
            elif mean > _BRADY_INTERVAL_MS:
                kind = "bradycardia"
            elif sdnn > _AF_SDNN_MS and rmssd > _AF_RMSSD_MS and cv > _AF_CV:
                kind = "atrial_fibrillation"
            else:
                kind = "irregular"

        return HrvMetrics(
            has_arrhythmia=has_arrhythmia,
            type=kind,
            sdnn=sdnn,
            rmssd=rmssd,
            pnn50=pnn50,
            lfhf=lfhf,
        )

    def confidence(
        self,
        bpm: Optional[float],
        intervals: np.ndarray,
        features: Optional[PPGFeatureSet],
        spectrum: Optional[Spectrum],
    ) -> float:
        """Mean of the available quality scores, 0 without a heart rate."""
        if bpm is None:
            return 0.0
        scores = [max(0.0, 1.0 - coefficient_of_variation(intervals))]
        if spectrum is not None:
            peak = spectrum.dominant(HEART_BAND_HZ)
            if peak is not None:
                spectral_bpm = peak.frequency * 60.0
                scores.append(range_score(
                    spectral_bpm, bpm - self.bpm_tolerance, bpm + self.bpm_tolerance))
        if features is not None:
            scores.append(features.confidence)
        return float(min(max(np.mean(scores), 0.0), 1.0))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _regress(
        coeffs: PressureCoefficients,
        mean_ptt: float,
        features: Optional[PPGFeatureSet],
    ) -> float:
        value = coeffs.intercept + coeffs.ptt * mean_ptt
        if features is not None:
            value += coeffs.augmentation * features.augmentation_index
            value += coeffs.stiffness * features.stiffness_index
        return float(value)

    @staticmethod
    def _guard(func, *args):
        try:
            return func(*args)
        except PipelineError as exc:
            logger.debug("%s: no estimate (%s: %s)",
                         func.__name__, type(exc).__name__, exc)
            return None
