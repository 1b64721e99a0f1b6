"""
Heartbeat (systolic peak) detection.

A sample is a beat when it is the maximum of the closed window
``[i - r, i + r]`` around it and rises above a threshold.  Samples closer
than ``r`` to either end of the signal are never evaluated, because their
window is incomplete.

Tie-break
---------
On a plateau (several samples equal to the window maximum) only the first
occurrence is reported: ``signal[i]`` must be strictly greater than every
sample in ``[i - r, i)``.  This keeps any two reported peaks more than ``r``
samples apart.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Peak:
    index:     int
    timestamp: float
    amplitude: float


def detect_peaks(
    signal: Sequence[float] | np.ndarray,
    window_radius: int,
    threshold: float,
) -> np.ndarray:
    """
    Return the ascending indices of local maxima in *signal*.

    An all-below-threshold signal, or one shorter than a full window,
    yields an empty array.
    """
    x = np.asarray(signal, dtype=np.float64)
    r = int(window_radius)
    if r < 0:
        raise ValueError("window_radius must be >= 0")
    width = 2 * r + 1
    if x.size < width:
        return np.empty(0, dtype=np.intp)

    windows = sliding_window_view(x, width)       # one row per evaluated index
    centre = x[r:x.size - r]

    is_peak = (centre >= windows.max(axis=1)) & (centre > threshold)
    if r > 0:
        is_peak &= centre > windows[:, :r].max(axis=1)

    return np.flatnonzero(is_peak) + r


def intervals_ms(peaks: Sequence[Peak]) -> np.ndarray:
    """Successive beat-to-beat intervals in milliseconds."""
    if len(peaks) < 2:
        return np.empty(0)
    stamps = np.array([p.timestamp for p in peaks], dtype=np.float64)
    return np.diff(stamps) * 1000.0


class PeakDetector:
    """
    Stateless local-maximum beat detector.

    Parameters
    ----------
    window_radius:
        Half-width of the comparison window in samples.
    threshold:
        Peaks must be strictly above this value.
    """

    def __init__(self, window_radius: int, threshold: float = 0.0) -> None:
        if window_radius < 0:
            raise ValueError("window_radius must be >= 0")
        self.window_radius = int(window_radius)
        self.threshold = float(threshold)

    def detect(self, signal: Sequence[float] | np.ndarray) -> np.ndarray:
        """Indices of the peaks in *signal*, ascending."""
        return detect_peaks(signal, self.window_radius, self.threshold)

    def locate(
        self,
        signal: Sequence[float] | np.ndarray,
        timestamps: Sequence[float] | np.ndarray,
    ) -> List[Peak]:
        """Detect peaks and attach their timestamps and amplitudes."""
        x = np.asarray(signal, dtype=np.float64)
        ts = np.asarray(timestamps, dtype=np.float64)
        if ts.size != x.size:
            raise ValueError(
                f"signal and timestamps differ in length ({x.size} != {ts.size})"
            )
        indices = self.detect(x)
        logger.debug("Detected %d peaks in %d samples", indices.size, x.size)
        return [Peak(int(i), float(ts[i]), float(x[i])) for i in indices]
