"""
Frequency-domain analysis of the filtered PPG window.

The window is zero-padded to the next power of two ``N`` and transformed
with a real FFT.  The first ``N/2`` bins are kept; bin ``k`` sits at
``k * fs / N`` Hz.  Magnitudes are single-sided amplitudes, normalised by
the window's coherent gain so a unit sinusoid reads close to 1.

The dominant non-DC bin inside the heart band gives an independent rate
estimate used to cross-check the peak-interval BPM.  The same transform on
the resampled beat-interval series yields the LF and HF powers used by the
HRV metrics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

HEART_BAND_HZ: Tuple[float, float] = (0.5, 4.0)
LF_BAND_HZ: Tuple[float, float] = (0.04, 0.15)
HF_BAND_HZ: Tuple[float, float] = (0.15, 0.4)

# Uniform resampling rate of the beat-interval series for LF/HF.
HRV_RESAMPLE_HZ = 4.0


@dataclass(frozen=True)
class SpectrumBin:
    frequency: float
    magnitude: float


@dataclass(frozen=True)
class Spectrum:
    """Magnitude spectrum, ascending in frequency."""
    frequencies: np.ndarray = field(default_factory=lambda: np.empty(0))
    magnitudes:  np.ndarray = field(default_factory=lambda: np.empty(0))

    def __len__(self) -> int:
        return int(self.frequencies.size)

    def bins(self) -> Iterator[SpectrumBin]:
        for f, m in zip(self.frequencies, self.magnitudes):
            yield SpectrumBin(float(f), float(m))

    def dominant(self, band: Optional[Tuple[float, float]] = None) -> Optional[SpectrumBin]:
        """
        Largest non-DC bin, optionally restricted to ``band`` (Hz, inclusive).

        Returns ``None`` for an empty or flat spectrum.
        """
        if len(self) < 2:
            return None
        mask = np.zeros(len(self), dtype=bool)
        mask[1:] = True
        if band is not None:
            low, high = band
            mask &= (self.frequencies >= low) & (self.frequencies <= high)
        if not mask.any():
            return None

        candidates = np.flatnonzero(mask)
        best = int(candidates[np.argmax(self.magnitudes[candidates])])
        if self.magnitudes[best] <= 0:
            return None
        return SpectrumBin(float(self.frequencies[best]), float(self.magnitudes[best]))


def next_pow2(n: int) -> int:
    return 1 << max(int(n) - 1, 0).bit_length()


class FrequencyAnalyzer:
    """
    Parameters
    ----------
    sampling_rate_hz:
        Rate of the analysed signal.
    hann_window:
        Taper the samples with a Hann window before transforming, which
        reduces leakage from the window edges.
    """

    def __init__(self, sampling_rate_hz: float, hann_window: bool = True) -> None:
        if sampling_rate_hz <= 0:
            raise ValueError("sampling_rate_hz must be positive")
        self.sampling_rate_hz = float(sampling_rate_hz)
        self.hann_window = hann_window

    def transform(self, signal: Sequence[float] | np.ndarray) -> Spectrum:
        """Return the ``N/2``-bin magnitude spectrum of *signal*."""
        x = np.asarray(signal, dtype=np.float64)
        n = x.size
        if n < 2:
            return Spectrum()

        window = np.hanning(n) if self.hann_window and n > 2 else np.ones(n)
        gain = float(window.sum())
        size = next_pow2(n)

        coeffs = np.fft.rfft(x * window, n=size)[: size // 2]
        magnitudes = 2.0 * np.abs(coeffs) / gain if gain > 0 else np.zeros(size // 2)
        frequencies = np.arange(size // 2) * self.sampling_rate_hz / size
        return Spectrum(frequencies, magnitudes)

    def dominant_bpm(self, signal: Sequence[float] | np.ndarray) -> Optional[float]:
        """Heart rate implied by the strongest bin in the heart band."""
        peak = self.transform(signal).dominant(HEART_BAND_HZ)
        return None if peak is None else peak.frequency * 60.0

    # ------------------------------------------------------------------
    # HRV frequency domain
    # ------------------------------------------------------------------

    @staticmethod
    def hrv_band_powers(
        intervals: Sequence[float] | np.ndarray,
        resample_hz: float = HRV_RESAMPLE_HZ,
    ) -> Optional[Tuple[float, float]]:
        """
        Return ``(lf, hf)`` power of the beat-interval series.

        The intervals (ms) are placed at their beat times, linearly
        resampled at ``resample_hz`` and mean-removed before the FFT.
        Returns ``None`` when the series is too short to transform.
        """
        rr = np.asarray(intervals, dtype=np.float64)
        if rr.size < 4 or np.any(rr <= 0):
            return None

        beat_times = np.cumsum(rr) / 1000.0
        grid = np.arange(beat_times[0], beat_times[-1], 1.0 / resample_hz)
        if grid.size < 8:
            return None

        tachogram = np.interp(grid, beat_times, rr)
        tachogram -= tachogram.mean()

        size = next_pow2(grid.size)
        power = np.abs(np.fft.rfft(tachogram, n=size)) ** 2 / size
        freqs = np.fft.rfftfreq(size, d=1.0 / resample_hz)

        lf_mask = (freqs >= LF_BAND_HZ[0]) & (freqs < LF_BAND_HZ[1])
        hf_mask = (freqs >= HF_BAND_HZ[0]) & (freqs < HF_BAND_HZ[1])
        return float(power[lf_mask].sum()), float(power[hf_mask].sum())
