"""
Tests for MeasurementSession, FrameLoop and the export record.
Run with:  pytest tests/
"""

from __future__ import annotations

import json
from dataclasses import replace

import numpy as np
import pytest

from ppg_vitals.config import (
    BloodPressureModel,
    PipelineConfig,
    PressureCoefficients,
    SensitivitySettings,
    SpO2Calibration,
)
from ppg_vitals.errors import SampleOrderError, UpstreamAcquisitionFailure
from ppg_vitals.frame_loop import FrameLoop
from ppg_vitals.session import (
    MeasurementSession,
    RawSample,
    filter_intervals,
    pulse_feet,
)
from ppg_vitals.vitals_validator import DEFAULT_BPM, DEFAULT_SYSTOLIC

FS = 30.0


def _config(**overrides) -> PipelineConfig:
    base = PipelineConfig(
        sample_rate_hz=FS,
        spo2_calibration=SpO2Calibration(intercept=110.0, slope=25.0),
        bp_model=BloodPressureModel(
            systolic=PressureCoefficients(intercept=160.0, ptt=-0.1),
            diastolic=PressureCoefficients(intercept=100.0, ptt=-0.05),
        ),
    )
    return replace(base, **overrides)


def _pulse(n: int = 300, hz: float = 1.2, start: float = 0.0) -> list[RawSample]:
    """Finger-on-camera stand-in: red and reference channels pulsing in phase."""
    t = start + np.arange(n) / FS
    wave = np.sin(2 * np.pi * hz * t)
    return [
        RawSample(timestamp=float(ts), red=150.0 + 2.0 * w, ir=120.0 + 3.0 * w)
        for ts, w in zip(t, wave)
    ]


def _flat(n: int) -> list[RawSample]:
    return [RawSample(timestamp=i / FS, red=100.0) for i in range(n)]


def _drifting_pulse(n: int = 900, hz: float = 1.0, drift: float = 3.0) -> list[RawSample]:
    """Pulse on a baseline rising *drift* units per second (pressure creep)."""
    t = np.arange(n) / FS
    red = 150.0 + drift * t + 2.0 * np.sin(2 * np.pi * hz * t)
    return [RawSample(timestamp=float(ts), red=float(r)) for ts, r in zip(t, red)]


def _push_all(session: MeasurementSession, samples):
    result = None
    for s in samples:
        result = session.push(s)
    return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    def test_pulse_feet_between_peaks(self):
        signal = np.array([0, 3, 1, 0, 2, 4, 2, -1, 3], dtype=float)
        feet = pulse_feet(signal, np.array([1, 5, 8]))
        assert feet.tolist() == [3, 7]

    def test_filter_intervals_range_then_median(self):
        intervals = np.array([100.0, 800.0, 810.0, 790.0, 1400.0, 2000.0])
        kept = filter_intervals(intervals, (300.0, 1500.0), tolerance=0.3)
        assert kept.tolist() == [800.0, 810.0, 790.0]

    def test_filter_intervals_short_series_skips_median(self):
        kept = filter_intervals(np.array([500.0, 1400.0]), (300.0, 1500.0), 0.1)
        assert kept.tolist() == [500.0, 1400.0]


# ---------------------------------------------------------------------------
# MeasurementSession
# ---------------------------------------------------------------------------

class TestMeasurementSession:

    def test_first_frames_hold_defaults(self):
        session = MeasurementSession(_config())
        result = session.push(_pulse(1)[0])
        assert not result.accepted
        assert result.reason == "insufficient samples"
        assert result.vitals.bpm == DEFAULT_BPM
        assert result.vitals.systolic == DEFAULT_SYSTOLIC

    def test_steady_pulse_is_measured(self):
        session = MeasurementSession(_config())
        result = _push_all(session, _pulse(300))

        assert result.accepted
        assert result.vitals.bpm == pytest.approx(72.0, abs=2.0)
        assert session.latest == result.vitals
        assert result.estimate.spo2 == pytest.approx(96.67, abs=0.5)
        assert result.vitals.systolic > result.vitals.diastolic
        assert len(result.peaks) >= 8
        assert session.diagnostics["accepted"] > 0

    def test_without_calibration_nothing_is_accepted(self):
        session = MeasurementSession(PipelineConfig(sample_rate_hz=FS))
        result = _push_all(session, _pulse(300))
        assert result.estimate.bpm == pytest.approx(72.0, abs=2.0)
        assert result.estimate.systolic is None
        assert not result.accepted
        assert session.latest.bpm == DEFAULT_BPM

    def test_flat_signal_reports_no_pulse(self):
        session = MeasurementSession(_config())
        result = _push_all(session, _flat(120))
        assert not result.accepted
        assert result.reason == "pulse amplitude below threshold"

    def test_heartbeat_threshold_multiplier_gates_pulse(self):
        cfg = _config(sensitivity=SensitivitySettings(heartbeat_threshold=1000.0))
        result = _push_all(MeasurementSession(cfg), _pulse(300))
        assert result.reason == "pulse amplitude below threshold"

    def test_rejected_frame_keeps_last_valid(self):
        session = MeasurementSession(_config())
        good = _push_all(session, _pulse(300))
        assert good.accepted

        # same stream with an impossible pressure model
        bad_bp = BloodPressureModel(
            systolic=PressureCoefficients(intercept=400.0),
            diastolic=PressureCoefficients(intercept=80.0),
        )
        session.configure(replace(session.config, bp_model=bad_bp))
        result = session.push(_pulse(1, start=10.0)[0])
        assert not result.accepted
        assert result.vitals == good.vitals
        assert session.state.has_valid

    def test_timestamps_must_increase(self):
        session = MeasurementSession(_config())
        session.push(RawSample(1.0, 100.0))
        with pytest.raises(SampleOrderError):
            session.push(RawSample(1.0, 100.0))
        with pytest.raises(SampleOrderError):
            session.push(RawSample(0.5, 100.0))

    def test_frame_pushed_during_processing_is_dropped(self):
        session = MeasurementSession(_config())
        nested = []
        session.subscribe(lambda r: nested.append(session.push(RawSample(r.timestamp + 0.01, 1.0))))

        result = session.push(RawSample(0.0, 100.0))
        assert result is not None
        assert nested == [None]
        assert session.diagnostics["dropped"] == 1

    def test_listeners_receive_results(self):
        session = MeasurementSession(_config())
        seen = []
        listener = session.subscribe(seen.append)
        _push_all(session, _flat(3))
        session.unsubscribe(listener)
        session.push(RawSample(1.0, 100.0))
        assert len(seen) == 3
        assert [r.timestamp for r in seen] == pytest.approx([0.0, 1 / FS, 2 / FS])

    def test_sessions_are_isolated(self):
        a = MeasurementSession(_config())
        b = MeasurementSession(_config())
        _push_all(a, _pulse(300))
        _push_all(b, _flat(10))
        assert a.latest.bpm > 0
        assert b.latest.bpm == DEFAULT_BPM

    def test_configure_keeps_buffers(self):
        session = MeasurementSession(_config())
        _push_all(session, _pulse(100))
        assert session.buffer_fill_ratio == pytest.approx(100 / 300)
        session.configure(replace(session.config, peak_threshold=0.1))
        assert session.buffer_fill_ratio == pytest.approx(100 / 300)
        assert session.filtered_signal().size == 100

    def test_shorter_window_truncates_on_configure(self):
        session = MeasurementSession(_config())
        _push_all(session, _pulse(200))
        session.configure(replace(session.config, window_seconds=5.0))
        assert session.buffer_fill_ratio == pytest.approx(1.0)
        assert session.filtered_signal().size == 150

    def test_beats_recorded_once_under_drift(self):
        cfg = _config()
        session = MeasurementSession(cfg)
        _push_all(session, _drifting_pulse(900))
        peaks = session.export_record().peak_locations

        assert 27 <= len(peaks) <= 30
        assert np.all(np.diff(peaks) > cfg.peak_window_radius)
        intervals = session.interval_history
        assert 0 < len(intervals) <= len(peaks) - 1
        assert np.allclose(intervals, 1000.0, atol=70.0)

    def test_interval_history_while_window_fills(self):
        session = MeasurementSession(_config())
        samples = _drifting_pulse(300)
        start = 0
        for stop in (90, 150, 240, 300):
            _push_all(session, samples[start:stop])
            start = stop
            peaks = session.export_record().peak_locations
            assert len(session.interval_history) <= max(len(peaks) - 1, 0)
            assert np.all(np.diff(peaks) > session.config.peak_window_radius)

    def test_uncovered_lens_clears_window(self):
        session = MeasurementSession(_config())
        good = _push_all(session, _pulse(300))
        assert good.accepted

        result = session.push(RawSample(10.0, 250.0, finger_present=False))
        assert not result.accepted
        assert result.reason == "no finger detected"
        assert result.vitals == good.vitals
        assert session.buffer_fill_ratio == 0.0
        assert session.diagnostics["no_finger"] == 1

        result = session.push(RawSample(10.1, 150.0, finger_present=True))
        assert result.reason == "insufficient samples"
        assert session.latest == good.vitals

    def test_uncovered_samples_not_exported(self):
        session = MeasurementSession(_config())
        _push_all(session, _pulse(30))
        session.push(RawSample(5.0, 250.0, finger_present=False))
        assert len(session.export_record().raw_signal) == 30

    def test_closed_session_ignores_frames(self):
        session = MeasurementSession(_config())
        _push_all(session, _pulse(90))
        record = session.close()
        assert record is not None
        assert session.closed
        assert session.push(RawSample(100.0, 1.0)) is None
        assert session.close() is None
        assert session.buffer_fill_ratio == 0.0
        assert not session.state.has_valid

    def test_context_manager_closes(self):
        with MeasurementSession(_config()) as session:
            session.push(RawSample(0.0, 100.0))
        assert session.closed


# ---------------------------------------------------------------------------
# Export record
# ---------------------------------------------------------------------------

class TestExportRecord:

    def test_record_contents(self):
        session = MeasurementSession(_config())
        _push_all(session, [replace(s, ambient=40.0) for s in _pulse(300)])
        record = session.close()

        assert record.sampling_rate == FS
        assert len(record.raw_signal) == 300
        assert len(record.filtered_signal) == 300
        assert record.raw_signal[0] == pytest.approx(150.0)
        assert record.peak_locations == sorted(record.peak_locations)
        assert all(0 <= i < 300 for i in record.peak_locations)
        assert len(record.peak_locations) >= 10
        assert np.all(np.diff(record.peak_locations) > session.config.peak_window_radius)

        m = record.signal_quality_metrics
        assert m["frames"] == 300
        assert m["accepted_frames"] > 0
        assert 0.0 < m["acceptance_ratio"] <= 1.0
        assert 0.0 <= m["mean_confidence"] <= 1.0
        assert m["perfusion_index"] > 0

        env = record.environmental_conditions
        assert env["filter_profile"] == "mobile"
        assert env["mean_ambient"] == pytest.approx(40.0)

    def test_json_serialisable(self):
        session = MeasurementSession(_config())
        _push_all(session, _pulse(90))
        data = json.loads(session.close().to_json())
        assert data["sampling_rate"] == FS
        assert isinstance(data["created_at"], str)
        assert len(data["raw_signal"]) == 90

    def test_filtered_export_follows_raw(self):
        session = MeasurementSession(_config())
        _push_all(session, _pulse(300))
        record = session.export_record()

        raw = np.array(record.raw_signal)
        filtered = np.array(record.filtered_signal)
        assert filtered.shape == raw.shape
        # +/-2 pulse survives the low-pass
        assert np.ptp(filtered[60:]) > 3.0
        assert np.corrcoef(raw, filtered)[0, 1] > 0.9

    def test_quality_metrics_exported(self):
        session = MeasurementSession(_config())
        _push_all(session, _pulse(300))
        m = session.close().signal_quality_metrics
        assert m["snr_db"] > 5.0
        assert 0.0 < m["signal_stability"] <= 1.0
        assert m["quality_level"] in ("excellent", "good")

    def test_no_quality_metrics_before_analysis(self):
        session = MeasurementSession(_config())
        _push_all(session, _flat(10))
        assert "quality_level" not in session.export_record().signal_quality_metrics

    def test_export_buffer_bounded(self):
        session = MeasurementSession(_config(export_seconds=5.0, window_seconds=2.0))
        _push_all(session, _flat(400))
        record = session.export_record()
        assert len(record.raw_signal) == 150
        assert len(record.filtered_signal) == 150


# ---------------------------------------------------------------------------
# FrameLoop
# ---------------------------------------------------------------------------

class FakeTime:
    """Clock/sleep pair; ``work`` seconds pass for every processed frame."""

    def __init__(self, work: float = 0.0):
        self.now = 0.0
        self.work = work
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def attach(self, session: MeasurementSession) -> None:
        def on_frame(_result):
            self.now += self.work
        session.subscribe(on_frame)


class TestFrameLoop:

    def test_unpaced_run_processes_everything(self):
        session = MeasurementSession(_config())
        loop = FrameLoop(session, _flat(50))
        assert loop.run() == 50
        assert loop.frames_dropped == 0
        assert session.closed
        assert len(loop.record.raw_signal) == 50
        assert not loop.running

    def test_max_frames(self):
        loop = FrameLoop(MeasurementSession(_config()), _flat(50), max_frames=4)
        assert loop.run() == 4

    def test_stop_from_listener(self):
        session = MeasurementSession(_config())
        loop = FrameLoop(session, _flat(50))
        session.subscribe(lambda r: loop.stop() if loop.frames_processed >= 4 else None)
        assert loop.run() == 5
        assert session.closed

    def test_paced_loop_sleeps_one_period(self):
        fake = FakeTime()
        loop = FrameLoop(MeasurementSession(_config()), _flat(3), fps=10.0,
                         clock=fake.clock, sleep=fake.sleep)
        loop.run()
        assert fake.sleeps == pytest.approx([0.1, 0.1, 0.1])
        assert loop.frames_dropped == 0

    def test_overrun_sheds_frames(self):
        fake = FakeTime(work=0.25)
        session = MeasurementSession(_config())
        fake.attach(session)
        total = 40
        loop = FrameLoop(session, _flat(total), fps=10.0,
                         clock=fake.clock, sleep=fake.sleep)
        processed = loop.run()

        assert loop.frames_dropped > 0
        assert processed + loop.frames_dropped == total
        assert loop.record.signal_quality_metrics["dropped_frames"] == loop.frames_dropped

    def test_acquisition_failure_ends_loop(self):
        def source():
            yield from _flat(3)
            raise UpstreamAcquisitionFailure("camera unplugged")

        session = MeasurementSession(_config())
        loop = FrameLoop(session, source())
        assert loop.run() == 3
        assert loop.record.environmental_conditions["acquisition_failure"] == "camera unplugged"
        assert session.diagnostics["UpstreamAcquisitionFailure"] == 1

    def test_invalid_fps(self):
        with pytest.raises(ValueError):
            FrameLoop(MeasurementSession(_config()), [], fps=0)
