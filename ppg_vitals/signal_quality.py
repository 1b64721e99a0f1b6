"""
Signal quality assessment.

Each analysed window is scored on three axes:

=============  ==========================================================
snr            heart-band power over out-of-band power, in dB (non-DC)
regularity     ``1 - cv`` of the window's beat intervals, floored at 0
consistency    ``exp(-5 * mean |Δscore|)`` over the last ten scores
=============  ==========================================================

The weighted score maps onto a level: ``excellent`` (>= 0.85), ``good``
(>= 0.70), ``fair`` (>= 0.50), ``poor`` (>= 0.30), otherwise ``invalid``.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Sequence, Tuple

import numpy as np

from ppg_vitals.frequency_analyzer import HEART_BAND_HZ, Spectrum
from ppg_vitals.vitals_estimator import coefficient_of_variation

logger = logging.getLogger(__name__)

LEVELS: Tuple[Tuple[str, float], ...] = (
    ("excellent", 0.85),
    ("good",      0.70),
    ("fair",      0.50),
    ("poor",      0.30),
)
INVALID = "invalid"

_WEIGHTS = (0.45, 0.35, 0.20)   # snr, regularity, consistency
_SNR_LIMIT_DB = 60.0
_CONSISTENCY_SPAN = 10


@dataclass(frozen=True)
class SignalQuality:
    snr_db:      float
    regularity:  float
    consistency: float
    score:       float
    level:       str


def classify(score: float) -> str:
    """Quality level for a score in [0, 1]."""
    for name, floor in LEVELS:
        if score >= floor:
            return name
    return INVALID


def band_snr_db(spectrum: Spectrum, band: Tuple[float, float] = HEART_BAND_HZ) -> float:
    """
    Power inside *band* relative to the power outside it, DC excluded.

    Clipped to +/-60 dB so a noiseless or empty band stays finite.
    """
    if len(spectrum) < 2:
        return -_SNR_LIMIT_DB
    freqs = spectrum.frequencies[1:]
    power = spectrum.magnitudes[1:] ** 2
    inside = (freqs >= band[0]) & (freqs <= band[1])

    signal = float(power[inside].sum())
    noise = float(power[~inside].sum())
    if signal <= 0:
        return -_SNR_LIMIT_DB
    if noise <= 0:
        return _SNR_LIMIT_DB
    return float(np.clip(10.0 * np.log10(signal / noise), -_SNR_LIMIT_DB, _SNR_LIMIT_DB))


class SignalQualityAnalyzer:
    """
    Parameters
    ----------
    min_snr_db:
        SNR at which the SNR score saturates at 1.
    history_size:
        Number of past scores kept for the consistency term.
    """

    def __init__(self, min_snr_db: float = 5.0, history_size: int = 90) -> None:
        if min_snr_db <= 0:
            raise ValueError("min_snr_db must be positive")
        self.min_snr_db = float(min_snr_db)
        self._history: Deque[float] = deque(maxlen=max(int(history_size), 2))

    def assess(self, spectrum: Spectrum, intervals_ms: Sequence[float] | np.ndarray) -> SignalQuality:
        snr = band_snr_db(spectrum)
        intervals = np.asarray(intervals_ms, dtype=np.float64)
        regularity = 0.0
        if intervals.size >= 2:
            regularity = max(0.0, 1.0 - coefficient_of_variation(intervals))
        consistency = self._consistency()

        snr_score = min(max(snr / self.min_snr_db, 0.0), 1.0)
        score = float(sum(w * s for w, s in zip(_WEIGHTS, (snr_score, regularity, consistency))))
        self._history.append(score)

        quality = SignalQuality(snr, regularity, consistency, score, classify(score))
        logger.debug("Signal quality %s (score=%.2f, snr=%.1f dB)", quality.level, score, snr)
        return quality

    def reset(self) -> None:
        self._history.clear()

    def _consistency(self) -> float:
        if len(self._history) < 2:
            return 1.0
        recent = np.array(self._history, dtype=np.float64)[-_CONSISTENCY_SPAN:]
        return float(np.exp(-5.0 * np.abs(np.diff(recent)).mean()))
