"""
Finger-on-lens detection.

A fingertip pressed on the lens (torch on or off) turns the ROI into a
nearly uniform, red-dominated patch.  Three cues are checked on each frame:

- mean brightness below ``brightness_threshold`` (an open scene is brighter
  or saturated in every channel),
- spatial standard deviation of the green channel below
  ``texture_threshold`` (no edges),
- ``mean_red / mean_green`` at least ``red_dominance`` (blood-perfused
  tissue).

Once a finger is present the brightness and texture limits are relaxed by
``hysteresis`` so small exposure changes do not toggle the decision, and a
change of state is reported only after ``settle_frames`` consecutive frames
agree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FingerReading:
    present:    bool
    brightness: float
    texture:    float
    red_ratio:  float


class FingerDetector:
    """
    Parameters
    ----------
    brightness_threshold:
        Maximum mean pixel brightness (0 - 255) of a covered lens.
    texture_threshold:
        Maximum spatial standard deviation of the green channel.
    red_dominance:
        Minimum red/green ratio confirming skin tone.
    hysteresis:
        Relative relaxation of the limits while a finger is present.
    settle_frames:
        Consecutive agreeing frames needed to change state.
    """

    def __init__(
        self,
        brightness_threshold: float = 100.0,
        texture_threshold: float = 28.0,
        red_dominance: float = 1.05,
        hysteresis: float = 0.05,
        settle_frames: int = 3,
    ) -> None:
        if settle_frames < 1:
            raise ValueError("settle_frames must be >= 1")
        self.brightness_threshold = brightness_threshold
        self.texture_threshold = texture_threshold
        self.red_dominance = red_dominance
        self.hysteresis = hysteresis
        self.settle_frames = settle_frames
        self._present = False
        self._streak = 0

    @property
    def present(self) -> bool:
        return self._present

    def check(self, patch: np.ndarray) -> FingerReading:
        """Classify one BGR *patch* and update the debounced state."""
        mean, std = cv2.meanStdDev(patch)
        b, g, r = (float(v) for v in mean.ravel()[:3])
        brightness = (b + g + r) / 3.0
        texture = float(std.ravel()[1])
        red_ratio = r / (g + 1e-6)

        relax = 1.0 + self.hysteresis if self._present else 1.0
        covered = (
            brightness < self.brightness_threshold * relax
            and texture < self.texture_threshold * relax
            and red_ratio >= self.red_dominance
        )
        self._update(covered)
        return FingerReading(self._present, brightness, texture, red_ratio)

    def reset(self) -> None:
        self._present = False
        self._streak = 0

    def _update(self, covered: bool) -> None:
        if covered == self._present:
            self._streak = 0
            return
        self._streak += 1
        if self._streak >= self.settle_frames:
            self._present = covered
            self._streak = 0
            logger.info("Finger %s.", "detected" if covered else "removed")
