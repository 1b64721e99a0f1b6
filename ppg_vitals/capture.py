"""
Capture boundary.

Turns OpenCV BGR frames into :class:`~ppg_vitals.session.RawSample` values
and wraps :class:`cv2.VideoCapture` (camera index or video file) as an
iterable sample source for :class:`~ppg_vitals.frame_loop.FrameLoop`.

Ordinary cameras have no infrared channel.  ``reference="green"`` fills the
``ir`` slot with the green channel so the ratio-of-ratios SpO2 estimate has
a second wavelength to work with; it is an approximation and needs its own
calibration curve.
"""

from __future__ import annotations

import logging
import time
from typing import Iterator, Optional, Tuple

import cv2
import numpy as np

from ppg_vitals.errors import UpstreamAcquisitionFailure
from ppg_vitals.finger_detector import FingerDetector
from ppg_vitals.session import RawSample

logger = logging.getLogger(__name__)

_CHANNEL = {"blue": 0, "green": 1, "red": 2}


class FrameSampler:
    """
    Reduce a BGR frame to channel means over a centred square ROI.

    Parameters
    ----------
    roi_fraction:
        Side of the ROI square as a fraction of the shorter frame side.
    reference:
        Channel name stored as ``ir`` (``"green"``, ``"blue"``) or ``None``.
    ambient_border:
        Width (pixels) of the frame border whose brightness is reported as
        ``ambient``; 0 disables it.
    finger_detector:
        When given, every ROI patch is checked and the result stored as
        ``finger_present``.
    """

    def __init__(
        self,
        roi_fraction: float = 0.35,
        reference: Optional[str] = None,
        ambient_border: int = 0,
        finger_detector: Optional[FingerDetector] = None,
    ) -> None:
        if not 0.0 < roi_fraction <= 1.0:
            raise ValueError("roi_fraction must lie in (0, 1]")
        if reference is not None and reference not in _CHANNEL:
            raise ValueError(f"unknown reference channel {reference!r}")
        self.roi_fraction = roi_fraction
        self.reference = reference
        self.ambient_border = ambient_border
        self.finger_detector = finger_detector

    def roi(self, shape: Tuple[int, ...]) -> Tuple[int, int, int, int]:
        """(x, y, w, h) of the centred ROI for a frame of *shape*."""
        h, w = shape[:2]
        side = max(int(min(w, h) * self.roi_fraction), 1)
        return (w - side) // 2, (h - side) // 2, side, side

    def sample(self, frame: np.ndarray, timestamp: float) -> RawSample:
        x, y, w, h = self.roi(frame.shape)
        patch = frame[y:y + h, x:x + w]
        means = cv2.mean(patch)        # (B, G, R, A)
        ir = float(means[_CHANNEL[self.reference]]) if self.reference else None

        ambient = None
        b = self.ambient_border
        if b > 0 and frame.shape[0] > 2 * b and frame.shape[1] > 2 * b:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
            mask = np.ones(gray.shape, dtype=np.uint8)
            mask[b:-b, b:-b] = 0
            ambient = float(cv2.mean(gray, mask=mask)[0])

        present = None
        if self.finger_detector is not None:
            present = self.finger_detector.check(patch).present

        return RawSample(
            timestamp=timestamp, red=float(means[2]), ir=ir,
            ambient=ambient, finger_present=present,
        )


class VideoSource:
    """
    Iterable of samples from a camera index or a video file.

    Live cameras are timestamped with :func:`time.monotonic`; files use their
    frame position so offline runs are deterministic.
    """

    def __init__(
        self,
        source: int | str = 0,
        sampler: FrameSampler | None = None,
        fps: Optional[float] = None,
        max_null_frames: int = 10,
    ) -> None:
        self.source = source
        self.sampler = sampler or FrameSampler()
        self.fps = fps
        self.max_null_frames = max_null_frames
        self._cap: Optional[cv2.VideoCapture] = None

    @property
    def is_file(self) -> bool:
        return isinstance(self.source, str)

    def open(self) -> None:
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            raise UpstreamAcquisitionFailure(f"cannot open video source {self.source!r}")
        if self.fps and not self.is_file:
            cap.set(cv2.CAP_PROP_FPS, self.fps)
        if not self.fps:
            self.fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
        self._cap = cap
        logger.info("Video source opened – %r at %.1f fps", self.source, self.fps)

    def close(self) -> None:
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Video source closed.")

    def __enter__(self) -> "VideoSource":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    def __iter__(self) -> Iterator[RawSample]:
        if self._cap is None:
            self.open()
        null_streak = 0
        index = 0
        while self._cap is not None:
            ok, frame = self._cap.read()
            if not ok or frame is None:
                if self.is_file:
                    return
                null_streak += 1
                if null_streak >= self.max_null_frames:
                    raise UpstreamAcquisitionFailure(
                        f"camera returned {null_streak} consecutive empty frames")
                continue
            null_streak = 0
            stamp = index / self.fps if self.is_file else time.monotonic()
            index += 1
            yield self.sampler.sample(frame, stamp)
