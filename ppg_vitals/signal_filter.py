"""
PPG waveform smoothing.

Algorithm
---------
1. Exponential moving average (first-order IIR low-pass)::

       out[0] = in[0]
       out[i] = alpha * in[i] + (1 - alpha) * out[i-1]

   Small ``alpha`` smooths harder.  The recursion runs through
   :func:`scipy.signal.lfilter` with its state primed on the first sample so
   that ``out[0] == in[0]`` exactly.
2. Optional detrend: remove the straight-line drift between the first and
   last filtered values.  The line is anchored at ``out[0]``, so the first
   sample keeps its value and the last sample is pulled back to it.

The filter is stateless between calls; the caller owns the sample window.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
from scipy.signal import lfilter

from ppg_vitals.config import FilterProfile

logger = logging.getLogger(__name__)


def ema(samples: Sequence[float] | np.ndarray, alpha: float) -> np.ndarray:
    """Exponential moving average with ``out[0] == in[0]``."""
    x = np.asarray(samples, dtype=np.float64)
    if x.size == 0:
        return x.copy()
    b = np.array([alpha])
    a = np.array([1.0, -(1.0 - alpha)])
    # Prime the delay line so the first output equals the first input.
    zi = np.array([(1.0 - alpha) * x[0]])
    out, _ = lfilter(b, a, x, zi=zi)
    return out


def linear_trend(values: np.ndarray) -> np.ndarray:
    """Line through the first and last element of *values*."""
    n = values.size
    if n < 2:
        return values.copy()
    ramp = np.arange(n, dtype=np.float64) / (n - 1)
    return values[0] + ramp * (values[-1] - values[0])


def detrend(values: np.ndarray) -> np.ndarray:
    """Remove the first-to-last linear drift, keeping ``values[0]``."""
    if values.size < 2:
        return values.copy()
    return values - (linear_trend(values) - values[0])


class SignalFilter:
    """
    Profile-driven low-pass + detrend filter.

    Parameters
    ----------
    profile:
        Smoothing factor and detrend switch.  See
        :data:`ppg_vitals.config.FILTER_PROFILES` for the built-ins.
    """

    def __init__(self, profile: FilterProfile) -> None:
        self.profile = profile

    def filter(self, samples: Sequence[float] | np.ndarray) -> np.ndarray:
        """
        Return the filtered copy of *samples* (same length).

        A single sample comes back unchanged; an empty input gives an empty
        array.
        """
        x = np.asarray(samples, dtype=np.float64)
        if x.size <= 1:
            return x.copy()

        out = ema(x, self.profile.alpha)
        if self.profile.detrend:
            out = detrend(out)
        return out

    def __repr__(self) -> str:
        return (
            f"SignalFilter(profile={self.profile.name!r}, "
            f"alpha={self.profile.alpha:.3f}, detrend={self.profile.detrend})"
        )
