"""
Error taxonomy for the PPG pipeline.

None of the :class:`PipelineError` kinds is fatal.  Stages raise them
internally and absorb them at their public boundary, turning the failure
into "no output for this frame".  Only :class:`SampleOrderError` reaches the
caller, because it signals misuse rather than a noisy signal.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for recoverable, stage-local failures."""


class InsufficientSamples(PipelineError):
    """Fewer data points than the stage's minimum window."""


class NoNotchFound(PipelineError):
    """No dicrotic notch after the systolic peak within the pulse cycle."""


class DegenerateInterval(PipelineError):
    """Zero-duration interval or zero amplitude in the feature math."""


class OutOfRangeEstimate(PipelineError):
    """A raw estimate was rejected by the hysteresis validator."""


class UpstreamAcquisitionFailure(PipelineError):
    """The capture side stopped delivering samples (camera lost, denied...)."""


class SampleOrderError(ValueError):
    """A sample's timestamp did not strictly increase."""
