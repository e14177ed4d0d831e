"""Capture engine, trace reconstruction and the background capture service."""
from __future__ import annotations

from .engine import AcquisitionEngine, EngineState, ProgressCallback
from .reconstruct import CaptureResult, decode_plain, decode_rle, reconstruct
from .service import CaptureCallback, CaptureService, CaptureStats

__all__ = [
    "AcquisitionEngine",
    "CaptureCallback",
    "CaptureResult",
    "CaptureService",
    "CaptureStats",
    "EngineState",
    "ProgressCallback",
    "decode_plain",
    "decode_rle",
    "reconstruct",
]
