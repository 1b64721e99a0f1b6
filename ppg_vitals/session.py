"""
One measurement session.

Per-frame flow
--------------

.. code-block:: text

    push(RawSample)
       │
       ├─ finger_present is False ─ clear the window, hold last valid vitals
       ▼
    append to rolling buffers (last ``window_seconds`` of samples)
       │
       ▼ (once the buffer holds ~2 s)
    SignalFilter ── EMA + detrend, sensitivity gains, mean-centred
       │
       ├─ PeakDetector ───── beats → intervals (window + session history)
       │                      beats → feet → pulse cycles, transit times
       ├─ FeatureExtractor ─ morphology of the latest complete cycle
       ├─ FrequencyAnalyzer ─ spectrum of the window
       ├─ SignalQualityAnalyzer ─ SNR, regularity, consistency → level
       │
       ▼
    VitalsEstimator ── raw BPM / SpO2 / BP / HRV
       │
       ▼
    VitalsValidator ── accept or keep last valid → listeners, ``latest``

The session exclusively owns its buffers, its interval history and its
validator state; nothing survives :meth:`MeasurementSession.close`.

Thread safety
-------------
Not thread-safe.  Frames are processed synchronously; a frame pushed while
the previous one is still being processed (for example from a listener)
is dropped, not queued.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Tuple

import numpy as np

from ppg_vitals.config import PipelineConfig
from ppg_vitals.errors import SampleOrderError
from ppg_vitals.export import ExportRecord
from ppg_vitals.feature_extractor import FeatureExtractor, PPGFeatureSet
from ppg_vitals.frequency_analyzer import FrequencyAnalyzer, Spectrum
from ppg_vitals.peak_detector import Peak, PeakDetector, intervals_ms
from ppg_vitals.signal_quality import SignalQuality, SignalQualityAnalyzer, classify
from ppg_vitals.signal_filter import SignalFilter
from ppg_vitals.vitals_estimator import (
    ChannelAmplitude,
    RawVitalsEstimate,
    VitalsEstimator,
)
from ppg_vitals.vitals_validator import (
    ValidatedVitals,
    ValidatorState,
    VitalsValidator,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawSample:
    """
    One frame's channel intensities; ``timestamp`` in monotonic seconds.

    ``finger_present`` is ``False`` when the capture side saw an uncovered
    lens, ``None`` when it did not check.
    """
    timestamp:      float
    red:            float
    ir:             Optional[float] = None
    ambient:        Optional[float] = None
    finger_present: Optional[bool]  = None


@dataclass(frozen=True)
class FrameResult:
    """Outcome of one processed frame, as delivered to listeners."""
    timestamp: float
    vitals:    ValidatedVitals
    accepted:  bool
    estimate:  Optional[RawVitalsEstimate] = None
    peaks:     Tuple[Peak, ...] = ()
    features:  Optional[PPGFeatureSet] = None
    reason:    Optional[str] = None
    quality:   Optional[SignalQuality] = None


Listener = Callable[[FrameResult], None]


def pulse_feet(signal: np.ndarray, peak_indices: np.ndarray) -> np.ndarray:
    """Foot (minimum) between each pair of consecutive peaks."""
    feet = [
        int(prev + np.argmin(signal[prev:nxt]))
        for prev, nxt in zip(peak_indices[:-1], peak_indices[1:])
    ]
    return np.asarray(feet, dtype=np.intp)


def filter_intervals(
    intervals: np.ndarray,
    valid_range: Tuple[float, float],
    tolerance: Optional[float] = None,
) -> np.ndarray:
    """Drop implausible intervals, then outliers around the median."""
    low, high = valid_range
    kept = intervals[(intervals >= low) & (intervals <= high)]
    if tolerance is not None and kept.size >= 3:
        median = float(np.median(kept))
        kept = kept[np.abs(kept - median) <= tolerance * median]
    return kept


class MeasurementSession:
    """
    Owns the buffers and validator state of one measurement.

    Parameters
    ----------
    config:
        Pipeline configuration; may be replaced later with
        :meth:`configure`.
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()
        self.diagnostics: Counter[str] = Counter()

        self._listeners: List[Listener] = []
        self._closed = False
        self._busy = False

        self._state = ValidatorState()
        self._latest: Optional[FrameResult] = None
        self._last_timestamp: Optional[float] = None
        self._sample_count = 0
        self._last_beat_time: Optional[float] = None
        self._last_peak_abs: Optional[int] = None
        self._confidence_sum = 0.0
        self._ambient_sum = 0.0
        self._ambient_count = 0
        self._perfusion_index: Optional[float] = None
        self._quality_count = 0
        self._snr_sum = 0.0
        self._regularity_sum = 0.0
        self._score_sum = 0.0
        self._acquisition_failure: Optional[str] = None

        self._build_stages()
        self._allocate_buffers()
        logger.info("Measurement session started.\n%s", self.config.summary())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, sample: RawSample) -> Optional[FrameResult]:
        """
        Process one sample and return the frame result.

        Returns ``None`` when the session is closed or the frame was
        dropped because a previous frame is still being processed.
        Raises :class:`SampleOrderError` when timestamps do not increase.
        """
        if self._closed:
            logger.debug("push() on a closed session ignored.")
            return None
        if self._busy:
            self.diagnostics["dropped"] += 1
            return None
        if self._last_timestamp is not None and sample.timestamp <= self._last_timestamp:
            raise SampleOrderError(
                f"timestamp {sample.timestamp} does not follow {self._last_timestamp}"
            )

        self._busy = True
        try:
            result = self._process(sample)
            self._latest = result
            for listener in list(self._listeners):
                listener(result)
        finally:
            self._busy = False
        return result

    def subscribe(self, listener: Listener) -> Listener:
        """Call *listener* with every :class:`FrameResult`."""
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def configure(self, config: PipelineConfig) -> None:
        """Retune the running session; buffered samples are kept."""
        self.config = config
        self._build_stages()
        self._allocate_buffers(keep=True)
        logger.info("Session reconfigured.\n%s", config.summary())

    def record_dropped(self, count: int = 1) -> None:
        """Account for frames shed upstream (see :class:`FrameLoop`)."""
        self.diagnostics["dropped"] += count

    def acquisition_failed(self, reason: str) -> None:
        """The capture side stopped; vitals stay frozen at the last valid values."""
        self._acquisition_failure = reason
        self.diagnostics["UpstreamAcquisitionFailure"] += 1
        logger.warning("Acquisition failed: %s – holding last valid vitals.", reason)

    @property
    def latest(self) -> ValidatedVitals:
        """Most recent validated vitals (defaults until the first frame)."""
        if self._latest is None:
            return self._state.vitals
        return self._latest.vitals

    @property
    def latest_result(self) -> Optional[FrameResult]:
        return self._latest

    @property
    def state(self) -> ValidatorState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffer_fill_ratio(self) -> float:
        """How full the rolling window is (0 – 1)."""
        return len(self._red) / self._red.maxlen

    @property
    def interval_history(self) -> Tuple[float, ...]:
        """Beat-to-beat intervals (ms) collected over the session for HRV."""
        return tuple(self._intervals)

    def filtered_signal(self) -> np.ndarray:
        """Current filtered window (empty before enough samples arrive)."""
        if len(self._red) < self.config.min_samples:
            return np.array([])
        return self._filtered_window()

    def export_record(self) -> ExportRecord:
        """Snapshot of the session for the persistence collaborator."""
        raw = np.array(self._export_raw, dtype=np.float64)
        # one pass over the whole export span, not the tails of each window
        filtered = self._filter_red(raw) if raw.size else raw
        first = self._export_index[0] if self._export_index else 0
        peaks = [i - first for i in self._peak_history if i >= first]

        frames = self.diagnostics["accepted"] + self.diagnostics["rejected"]
        metrics = {
            "frames": float(self._sample_count),
            "accepted_frames": float(self.diagnostics["accepted"]),
            "rejected_frames": float(self.diagnostics["rejected"]),
            "dropped_frames": float(self.diagnostics["dropped"]),
            "acceptance_ratio": self.diagnostics["accepted"] / frames if frames else 0.0,
            "mean_confidence": self._confidence_sum / frames if frames else 0.0,
            "peak_count": float(len(peaks)),
        }
        if self._perfusion_index is not None:
            metrics["perfusion_index"] = self._perfusion_index
        if self._quality_count:
            mean_score = self._score_sum / self._quality_count
            metrics["snr_db"] = self._snr_sum / self._quality_count
            metrics["signal_stability"] = self._regularity_sum / self._quality_count
            metrics["quality_score"] = mean_score
            metrics["quality_level"] = classify(mean_score)

        conditions: dict = {"filter_profile": self.config.filter_profile.name}
        if self._ambient_count:
            conditions["mean_ambient"] = self._ambient_sum / self._ambient_count
        if self._acquisition_failure is not None:
            conditions["acquisition_failure"] = self._acquisition_failure

        return ExportRecord(
            raw_signal=raw.tolist(),
            filtered_signal=filtered.tolist(),
            peak_locations=peaks,
            sampling_rate=self.config.sample_rate_hz,
            signal_quality_metrics=metrics,
            environmental_conditions=conditions,
        )

    def close(self) -> Optional[ExportRecord]:
        """
        End the measurement: build the export record, then discard every
        buffer and the validator state.  Returns ``None`` if already closed.
        """
        if self._closed:
            return None
        record = self.export_record()
        self._closed = True
        self._listeners.clear()
        for buf in self._all_buffers():
            buf.clear()
        self._peak_history.clear()
        self._intervals.clear()
        self._state = ValidatorState()
        self._latest = None
        logger.info(
            "Measurement session closed – %d samples, %d accepted, %d rejected, %d dropped.",
            self._sample_count, self.diagnostics["accepted"],
            self.diagnostics["rejected"], self.diagnostics["dropped"],
        )
        return record

    # Context-manager support
    def __enter__(self) -> "MeasurementSession":
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def _process(self, sample: RawSample) -> FrameResult:
        cfg = self.config
        self._last_timestamp = sample.timestamp
        if sample.finger_present is False:
            return self._finger_lost(sample.timestamp)
        self._append(sample)

        filtered = self._filtered_window()

        if len(self._red) < cfg.min_samples:
            self.diagnostics["InsufficientSamples"] += 1
            return self._hold(sample.timestamp, "insufficient samples")

        centred = filtered - filtered.mean()

        if np.ptp(centred) < cfg.effective_min_amplitude:
            self.diagnostics["no_pulse"] += 1
            return self._hold(sample.timestamp, "pulse amplitude below threshold")

        timestamps = np.array(self._timestamps, dtype=np.float64)
        peaks = self._detector.locate(centred, timestamps)
        self._record_beats(peaks)

        window_intervals = filter_intervals(
            intervals_ms(peaks), cfg.interval_range_ms, cfg.effective_interval_tolerance)

        indices = np.array([p.index for p in peaks], dtype=np.intp)
        features, transit_times = self._morphology(centred, indices)
        spectrum = self._analyzer.transform(centred)
        quality = self._assess_quality(spectrum, window_intervals)
        red_amp, ir_amp = self._amplitudes(filtered)

        estimate = self._estimator.estimate(
            window_intervals,
            red_amp,
            ir_amp,
            transit_times,
            features,
            spectrum,
            interval_history=list(self._intervals),
        )
        return self._validate(sample.timestamp, estimate, tuple(peaks), features, quality)

    def _validate(
        self,
        timestamp: float,
        estimate: RawVitalsEstimate,
        peaks: Tuple[Peak, ...],
        features: Optional[PPGFeatureSet],
        quality: Optional[SignalQuality] = None,
    ) -> FrameResult:
        outcome = self._validator.validate(estimate, self._state)
        self._state = outcome.state
        self._confidence_sum += estimate.confidence
        if outcome.accepted:
            self.diagnostics["accepted"] += 1
        else:
            self.diagnostics["rejected"] += 1
            self.diagnostics["OutOfRangeEstimate"] += 1
        return FrameResult(
            timestamp=timestamp,
            vitals=outcome.vitals,
            accepted=outcome.accepted,
            estimate=estimate,
            peaks=peaks,
            features=features,
            reason=outcome.reason,
            quality=quality,
        )

    def _hold(self, timestamp: float, reason: str) -> FrameResult:
        return FrameResult(timestamp, self._state.vitals, accepted=False, reason=reason)

    def _finger_lost(self, timestamp: float) -> FrameResult:
        """Uncovered lens: drop the rolling window, keep validated vitals."""
        self.diagnostics["no_finger"] += 1
        if self._red:
            logger.info("Finger removed – clearing the analysis window.")
            for buf in (self._timestamps, self._red, self._ir, self._index):
                buf.clear()
            self._quality.reset()
        return self._hold(timestamp, "no finger detected")

    def _filter_red(self, values: np.ndarray) -> np.ndarray:
        s = self.config.sensitivity
        return self._filter.filter(values * (s.brightness * s.red_intensity)) * s.signal_amplification

    def _filtered_window(self) -> np.ndarray:
        return self._filter_red(np.array(self._red, dtype=np.float64))

    def _record_beats(self, peaks: List[Peak]) -> None:
        """
        Add beats not seen before to the peak and interval history.

        The window is re-filtered every frame, so a beat can shift by a
        sample between frames.  A peak counts as new only when it lies more
        than the window radius past the last stored beat, and an interval is
        recorded only when the peak preceding it in this window is that
        stored beat.
        """
        cfg = self.config
        gap = cfg.peak_window_radius
        low, high = cfg.interval_range_ms
        previous: Optional[int] = None
        for p in peaks:
            absolute = self._index[p.index]
            last = self._last_peak_abs
            if last is None or absolute > last + gap:
                if previous is not None and last is not None and abs(previous - last) <= gap:
                    interval = (p.timestamp - self._last_beat_time) * 1000.0
                    if low <= interval <= high:
                        self._intervals.append(interval)
                self._peak_history.append(absolute)
                self._last_peak_abs = absolute
                self._last_beat_time = p.timestamp
            previous = absolute

    def _assess_quality(self, spectrum: Spectrum, intervals: np.ndarray) -> SignalQuality:
        quality = self._quality.assess(spectrum, intervals)
        self._quality_count += 1
        self._snr_sum += quality.snr_db
        self._regularity_sum += quality.regularity
        self._score_sum += quality.score
        return quality

    def _morphology(
        self,
        signal: np.ndarray,
        peak_indices: np.ndarray,
    ) -> Tuple[Optional[PPGFeatureSet], List[float]]:
        """Features of the latest complete cycle and foot-to-peak times."""
        if peak_indices.size < 2:
            self.diagnostics["InsufficientSamples"] += 1
            return None, []

        feet = pulse_feet(signal, peak_indices)
        ms_per_sample = 1000.0 / self.config.sample_rate_hz
        low, high = self.config.ptt_range_ms
        transit = [
            float((peak - foot) * ms_per_sample)
            for foot, peak in zip(feet, peak_indices[1:])
        ]
        transit = [t for t in transit if low <= t <= high]

        features = None
        if feet.size >= 2:
            cycle = signal[feet[-2]:feet[-1] + 1]
            features = self._extractor.extract(cycle - cycle.min())
            if features is None:
                self.diagnostics["NoFeatures"] += 1
        return features, transit

    def _amplitudes(
        self, filtered: np.ndarray,
    ) -> Tuple[Optional[ChannelAmplitude], Optional[ChannelAmplitude]]:
        s = self.config.sensitivity
        red_dc = float(np.mean(self._red)) * s.brightness * s.red_intensity
        red = ChannelAmplitude(ac=float(np.ptp(filtered)), dc=red_dc)
        if red_dc:
            self._perfusion_index = red.ac / red_dc * 100.0

        ir_values = np.array(self._ir, dtype=np.float64)
        if np.isnan(ir_values).any():
            return red, None
        ir_values *= s.brightness
        ir_filtered = self._filter.filter(ir_values) * s.signal_amplification
        ir = ChannelAmplitude(ac=float(np.ptp(ir_filtered)), dc=float(ir_values.mean()))
        return red, ir

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _build_stages(self) -> None:
        cfg = self.config
        self._filter = SignalFilter(cfg.effective_profile())
        self._detector = PeakDetector(cfg.peak_window_radius, cfg.effective_peak_threshold)
        self._analyzer = FrequencyAnalyzer(cfg.sample_rate_hz)
        self._extractor = FeatureExtractor(cfg.sample_rate_hz, cfg.feature_ranges)
        self._estimator = VitalsEstimator(
            spo2_calibration=cfg.spo2_calibration,
            bp_model=cfg.bp_model,
            hrv=cfg.hrv,
        )
        self._validator = VitalsValidator(cfg.bounds)
        self._quality = SignalQualityAnalyzer(cfg.quality.min_snr_db, cfg.quality.history_size)

    def _allocate_buffers(self, keep: bool = False) -> None:
        cfg = self.config
        window = cfg.window_samples
        export = max(int(cfg.export_seconds * cfg.sample_rate_hz), window)

        def ring(name: str, maxlen: int) -> Deque:
            old = getattr(self, name, ()) if keep else ()
            return deque(old, maxlen=maxlen)

        self._timestamps: Deque[float] = ring("_timestamps", window)
        self._red: Deque[float] = ring("_red", window)
        self._ir: Deque[float] = ring("_ir", window)
        self._index: Deque[int] = ring("_index", window)
        self._export_raw: Deque[float] = ring("_export_raw", export)
        self._export_index: Deque[int] = ring("_export_index", export)
        self._peak_history: Deque[int] = ring("_peak_history", export)
        self._intervals: Deque[float] = ring("_intervals", cfg.hrv.history_size)

    def _all_buffers(self) -> Tuple[Deque, ...]:
        return (
            self._timestamps, self._red, self._ir, self._index,
            self._export_raw, self._export_index,
        )

    def _append(self, sample: RawSample) -> None:
        self._timestamps.append(float(sample.timestamp))
        self._red.append(float(sample.red))
        self._ir.append(float("nan") if sample.ir is None else float(sample.ir))
        self._index.append(self._sample_count)
        self._export_raw.append(float(sample.red))
        self._export_index.append(self._sample_count)
        self._sample_count += 1
        if sample.ambient is not None:
            self._ambient_sum += float(sample.ambient)
            self._ambient_count += 1
