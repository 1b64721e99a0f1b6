"""
PPG Vitals: camera photoplethysmography signal pipeline.
Feed per-frame colour intensities from a finger on the lens; the pipeline
filters the waveform, finds heartbeats and pulse morphology, and emits
validated heart rate, SpO2, blood pressure and HRV estimates.
"""

__version__ = "0.1.0"
__author__ = "ppg_vitals"
