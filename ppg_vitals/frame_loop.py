"""
Frame-driven scheduler.

Runs one :class:`~ppg_vitals.session.MeasurementSession` over a sample
source at the capture cadence.  Each iteration pulls one sample, processes
it synchronously, then waits for the next frame slot; that wait is the
only suspension point.  When processing overruns one or more slots the
samples belonging to those slots are skipped, so latency and memory stay
bounded instead of a backlog building up.

:meth:`FrameLoop.stop` cancels scheduling: the frame in flight completes,
no further frame is started, and the session is closed (its buffers are
discarded and the export record is kept on :attr:`FrameLoop.record`).
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Iterator, Optional

from ppg_vitals.errors import UpstreamAcquisitionFailure
from ppg_vitals.export import ExportRecord
from ppg_vitals.session import MeasurementSession, RawSample

logger = logging.getLogger(__name__)


class FrameLoop:
    """
    Parameters
    ----------
    session:
        The session that receives every scheduled sample.
    source:
        Iterable of :class:`RawSample`.  It may raise
        :class:`UpstreamAcquisitionFailure` to signal a lost capture.
    fps:
        Target cadence.  ``None`` processes samples back to back without
        pacing or shedding (offline files).
    max_frames:
        Stop after this many processed frames.
    close_on_exit:
        Close the session when the loop ends.
    clock, sleep:
        Injectable time functions.
    """

    def __init__(
        self,
        session: MeasurementSession,
        source: Iterable[RawSample],
        fps: Optional[float] = None,
        max_frames: Optional[int] = None,
        close_on_exit: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if fps is not None and fps <= 0:
            raise ValueError("fps must be positive")
        self.session = session
        self.source = source
        self.fps = fps
        self.max_frames = max_frames
        self.close_on_exit = close_on_exit
        self._clock = clock
        self._sleep = sleep

        self._stopped = False
        self._running = False
        self.frames_processed = 0
        self.frames_dropped = 0
        self.record: Optional[ExportRecord] = None

    def stop(self) -> None:
        """Halt scheduling after the frame currently being processed."""
        if not self._stopped:
            logger.info("Frame loop stop requested.")
        self._stopped = True

    @property
    def running(self) -> bool:
        return self._running

    def run(self) -> int:
        """Drive the session until the source ends or :meth:`stop` is called."""
        self._running = True
        frames = iter(self.source)
        period = 1.0 / self.fps if self.fps else 0.0
        deadline = self._clock()

        try:
            while not self._stopped:
                sample = self._next(frames)
                if sample is None:
                    break

                self.session.push(sample)
                self.frames_processed += 1
                if self.max_frames is not None and self.frames_processed >= self.max_frames:
                    break
                if not period:
                    continue

                deadline += period
                lag = self._clock() - deadline
                if lag > 0:
                    missed = int(lag // period)
                    if missed and not self._skip(frames, missed):
                        break
                    deadline += missed * period
                else:
                    self._sleep(-lag)
        finally:
            self._running = False
            if self.close_on_exit:
                self.record = self.session.close()
            logger.info("Frame loop ended – %d processed, %d dropped.",
                        self.frames_processed, self.frames_dropped)
        return self.frames_processed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _next(self, frames: Iterator[RawSample]) -> Optional[RawSample]:
        try:
            return next(frames)
        except StopIteration:
            return None
        except UpstreamAcquisitionFailure as exc:
            self.session.acquisition_failed(str(exc))
            return None

    def _skip(self, frames: Iterator[RawSample], count: int) -> bool:
        """Discard *count* late frames; False when the source ran out."""
        for _ in range(count):
            if self._next(frames) is None:
                return False
            self.frames_dropped += 1
            self.session.record_dropped()
        return True
