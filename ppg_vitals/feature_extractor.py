"""
Pulse-wave morphology.

Works on one pulse cycle of the filtered waveform (foot to foot) and
derives the classic contour indices:

=======================  ==============================================
augmentation index       ``(peak - notch) / peak``
reflection index         ``time_to_notch_ms / peak``
stiffness index          ``pulse_interval_ms / time_to_notch_ms``
elasticity coefficient   ``sum(cycle[peak..notch]) / time_to_notch_ms``
=======================  ==============================================

The dicrotic notch is the first local minimum after the systolic peak.
Cycles without one produce no feature set; that is an expected outcome for
damped or noisy pulses, not an error.

References
----------
- Millasseau S.C. et al., "Contour analysis of the photoplethysmographic
  pulse measured at the finger." J Hypertens, 2006.
- Elgendi M., "On the analysis of fingertip photoplethysmogram signals."
  Curr Cardiol Rev, 2012.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from ppg_vitals.config import FeatureRanges
from ppg_vitals.errors import (
    DegenerateInterval,
    InsufficientSamples,
    NoNotchFound,
    PipelineError,
)

logger = logging.getLogger(__name__)

_WEIGHTS = (0.4, 0.3, 0.3)   # augmentation, reflection, stiffness


def range_score(value: float, low: float, high: float) -> float:
    """
    1 inside ``[low, high]``; outside, falls off linearly with the relative
    overshoot past the nearer bound, floored at 0.
    """
    if value < low:
        return max(0.0, 1.0 - (low - value) / abs(low)) if low != 0 else 0.0
    if value > high:
        return max(0.0, 1.0 - (value - high) / abs(high)) if high != 0 else 0.0
    return 1.0


@dataclass(frozen=True)
class DicroticNotch:
    index:     int
    amplitude: float


@dataclass(frozen=True)
class PPGFeatureSet:
    augmentation_index:     float
    reflection_index:       float
    stiffness_index:        float
    elasticity_coefficient: float
    confidence:             float


def find_dicrotic_notch(cycle: Sequence[float] | np.ndarray, peak_index: int) -> DicroticNotch:
    """
    First sample after *peak_index* lower than both of its neighbours.

    Raises :class:`NoNotchFound` when the cycle ends first.
    """
    x = np.asarray(cycle, dtype=np.float64)
    for i in range(peak_index + 1, x.size - 1):
        if x[i] < x[i - 1] and x[i] < x[i + 1]:
            return DicroticNotch(i, float(x[i]))
    raise NoNotchFound(f"no local minimum after index {peak_index}")


class FeatureExtractor:
    """
    Parameters
    ----------
    sampling_rate_hz:
        Rate of the filtered waveform.
    ranges:
        Normal intervals used by the confidence score.
    """

    def __init__(
        self,
        sampling_rate_hz: float,
        ranges: FeatureRanges | None = None,
    ) -> None:
        if sampling_rate_hz <= 0:
            raise ValueError("sampling_rate_hz must be positive")
        self.sampling_rate_hz = float(sampling_rate_hz)
        self.ranges = ranges or FeatureRanges()

    def extract(self, cycle: Sequence[float] | np.ndarray) -> Optional[PPGFeatureSet]:
        """
        Return the feature set of one pulse cycle, or ``None`` when the cycle
        is too short, has no notch, or its intervals/amplitude are degenerate.
        """
        try:
            return self._extract(np.asarray(cycle, dtype=np.float64))
        except PipelineError as exc:
            logger.debug("No features for cycle: %s: %s", type(exc).__name__, exc)
            return None

    def confidence(self, augmentation: float, reflection: float, stiffness: float) -> float:
        r = self.ranges
        scores = (
            range_score(augmentation, *r.augmentation_index),
            range_score(reflection, *r.reflection_index),
            range_score(stiffness, *r.stiffness_index),
        )
        return float(sum(w * s for w, s in zip(_WEIGHTS, scores)))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _ms(self, samples: int | float) -> float:
        return samples * 1000.0 / self.sampling_rate_hz

    def _extract(self, x: np.ndarray) -> PPGFeatureSet:
        if x.size < 3:
            raise InsufficientSamples(f"cycle has {x.size} samples, need 3")

        peak_index = int(np.argmax(x))
        peak = float(x[peak_index])
        notch = find_dicrotic_notch(x, peak_index)

        time_to_notch = self._ms(notch.index - peak_index)
        if peak == 0 or time_to_notch == 0:
            raise DegenerateInterval("zero peak amplitude or peak-to-notch time")

        augmentation = (peak - notch.amplitude) / peak
        reflection = time_to_notch / peak
        stiffness = self._ms(x.size) / time_to_notch
        elasticity = float(x[peak_index:notch.index + 1].sum()) / time_to_notch

        values: Tuple[float, ...] = (augmentation, reflection, stiffness, elasticity)
        if not np.all(np.isfinite(values)):
            raise DegenerateInterval("non-finite feature value")

        return PPGFeatureSet(
            augmentation_index=augmentation,
            reflection_index=reflection,
            stiffness_index=stiffness,
            elasticity_coefficient=elasticity,
            confidence=self.confidence(augmentation, reflection, stiffness),
        )
