"""
Hysteresis gate for displayed vitals.

States
------
``Empty``  no estimate has been accepted yet (``state.has_valid`` False)
``Valid``  the state holds the last accepted values

A raw estimate is accepted only when heart rate, systolic and diastolic
pressure are all present, inside their bounds, and systolic exceeds
diastolic.  Accepting replaces the stored values; rejecting re-emits them
(or the defaults while ``Empty``) and leaves the state untouched, so one
noisy frame can never produce an impossible or jumping reading.

The state is an immutable value owned by the measurement session and passed
in and out of :meth:`VitalsValidator.validate`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional

from ppg_vitals.config import ValidationBounds
from ppg_vitals.errors import OutOfRangeEstimate
from ppg_vitals.vitals_estimator import RawVitalsEstimate

logger = logging.getLogger(__name__)

DEFAULT_BPM = 0.0
DEFAULT_SYSTOLIC = 120.0
DEFAULT_DIASTOLIC = 80.0


@dataclass(frozen=True)
class ValidatedVitals:
    bpm:       float
    systolic:  float
    diastolic: float


@dataclass(frozen=True)
class ValidatorState:
    last_valid_bpm:       float = DEFAULT_BPM
    last_valid_systolic:  float = DEFAULT_SYSTOLIC
    last_valid_diastolic: float = DEFAULT_DIASTOLIC
    has_valid:            bool  = False

    @property
    def vitals(self) -> ValidatedVitals:
        return ValidatedVitals(
            self.last_valid_bpm, self.last_valid_systolic, self.last_valid_diastolic)


@dataclass(frozen=True)
class ValidationResult:
    vitals:   ValidatedVitals
    state:    ValidatorState
    accepted: bool
    reason:   Optional[str] = None


def _within(value: Optional[float], bounds: tuple[float, float]) -> bool:
    return value is not None and bounds[0] <= value <= bounds[1]


class VitalsValidator:
    """
    Parameters
    ----------
    bounds:
        Accepted ranges for BPM, systolic and diastolic pressure.  The
        defaults are bpm 40–200, systolic 80–200, diastolic 40–130.
    """

    def __init__(self, bounds: ValidationBounds | None = None) -> None:
        self.bounds = bounds or ValidationBounds()

    def check(self, bpm: Optional[float], systolic: Optional[float],
              diastolic: Optional[float]) -> None:
        """Raise :class:`OutOfRangeEstimate` unless the candidate is acceptable."""
        b = self.bounds
        if not _within(bpm, b.bpm):
            raise OutOfRangeEstimate(f"bpm {bpm} outside {b.bpm}")
        if not _within(systolic, b.systolic):
            raise OutOfRangeEstimate(f"systolic {systolic} outside {b.systolic}")
        if not _within(diastolic, b.diastolic):
            raise OutOfRangeEstimate(f"diastolic {diastolic} outside {b.diastolic}")
        if systolic <= diastolic:
            raise OutOfRangeEstimate(
                f"systolic {systolic} not above diastolic {diastolic}")

    def validate(self, estimate: RawVitalsEstimate, state: ValidatorState) -> ValidationResult:
        """Accept or reject *estimate* against *state*; never raises."""
        try:
            self.check(estimate.bpm, estimate.systolic, estimate.diastolic)
        except OutOfRangeEstimate as exc:
            logger.debug("Estimate rejected: %s", exc)
            return ValidationResult(state.vitals, state, accepted=False, reason=str(exc))

        new_state = replace(
            state,
            last_valid_bpm=float(estimate.bpm),
            last_valid_systolic=float(estimate.systolic),
            last_valid_diastolic=float(estimate.diastolic),
            has_valid=True,
        )
        return ValidationResult(new_state.vitals, new_state, accepted=True)
