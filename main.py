#!/usr/bin/env python3
"""
PPG Vitals – command-line runner.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --source SRC         Camera index or video file (default: 0)
    --fps FLOAT          Capture frame rate (default: 30)
    --window FLOAT       Analysis window in seconds (default: 10)
    --profile NAME       Filter profile: mobile | webcam (default: mobile)
    --config PATH        YAML configuration file (overrides the options above)
    --reference CH       Channel used as second wavelength for SpO2 (green/blue)
    --no-finger-gate     Process frames even when no finger covers the lens
    --export PATH        Write the session export record as JSON
    --max-frames INT     Stop after this many frames
    --log-level LEVEL    Logging level (default: INFO)

Press Ctrl+C to stop; the export record is still written.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from dataclasses import replace
from pathlib import Path

from ppg_vitals.capture import FrameSampler, VideoSource
from ppg_vitals.config import FILTER_PROFILES, PipelineConfig, get_profile, load_config
from ppg_vitals.errors import UpstreamAcquisitionFailure
from ppg_vitals.finger_detector import FingerDetector
from ppg_vitals.frame_loop import FrameLoop
from ppg_vitals.session import FrameResult, MeasurementSession

logger = logging.getLogger("ppg_vitals")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Camera PPG vital-signs monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--source", default="0",
                        help="Camera index or path to a video file")
    parser.add_argument("--fps", type=float, default=30.0,
                        help="Capture frame rate")
    parser.add_argument("--window", type=float, default=10.0,
                        help="Analysis window in seconds")
    parser.add_argument("--profile", default="mobile", choices=sorted(FILTER_PROFILES),
                        help="Filter profile")
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML configuration file")
    parser.add_argument("--reference", default=None, choices=["green", "blue"],
                        help="Channel stored as the second SpO2 wavelength")
    parser.add_argument("--no-finger-gate", action="store_true",
                        help="Do not hold the measurement while the lens is uncovered")
    parser.add_argument("--export", type=Path, default=None,
                        help="Write the export record to this JSON file")
    parser.add_argument("--max-frames", type=int, default=None,
                        help="Stop after this many frames")
    parser.add_argument("--log-level", default="INFO",
                        help="Logging level")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    if args.config is not None:
        return load_config(args.config)
    return replace(
        PipelineConfig(),
        sample_rate_hz=args.fps,
        window_seconds=args.window,
        filter_profile=get_profile(args.profile),
    )


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = build_config(args)
    except (OSError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    source_arg = int(args.source) if str(args.source).isdigit() else args.source
    source = VideoSource(
        source_arg,
        sampler=FrameSampler(
            reference=args.reference,
            finger_detector=None if args.no_finger_gate else FingerDetector(),
        ),
        fps=config.sample_rate_hz,
    )
    session = MeasurementSession(config)

    last_print = 0.0

    def report(result: FrameResult) -> None:
        nonlocal last_print
        now = time.monotonic()
        if now - last_print < 1.0:
            return
        last_print = now
        ts = time.strftime("%H:%M:%S")
        v = result.vitals
        if v.bpm > 0:
            spo2 = result.estimate.spo2 if result.estimate else None
            spo2_txt = f"{spo2:.0f}%" if spo2 is not None else "--"
            level = result.quality.level if result.quality else "--"
            print(f"[{ts}] BPM={v.bpm:.1f}  BP={v.systolic:.0f}/{v.diastolic:.0f}  "
                  f"SpO2={spo2_txt}  quality={level}  accepted={result.accepted}")
        elif result.reason == "no finger detected":
            print(f"[{ts}] Place a finger over the camera lens…")
        else:
            print(f"[{ts}] Waiting for signal…  fill={session.buffer_fill_ratio:.0%}")

    session.subscribe(report)
    loop = FrameLoop(
        session,
        source,
        fps=None if source.is_file else config.sample_rate_hz,
        max_frames=args.max_frames,
    )
    signal.signal(signal.SIGINT, lambda *_: loop.stop())

    logger.info("Starting measurement.  Press Ctrl+C to stop.")
    try:
        with source:
            loop.run()
    except UpstreamAcquisitionFailure as exc:
        logger.error("Capture failed: %s", exc)
        session.acquisition_failed(str(exc))
        loop.record = session.close()

    if args.export is not None and loop.record is not None:
        args.export.write_text(loop.record.to_json(indent=2), encoding="utf-8")
        logger.info("Export record written to %s", args.export)
    return 0


def main(argv: list[str] | None = None) -> int:
    return run(parse_args(argv))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
