"""Device session and capture register configuration."""
from __future__ import annotations

from .configurator import (
    CaptureWindow,
    DeviceConfiguration,
    compute_flags,
    compute_size_word,
    configure_device,
    plan_capture,
)
from .session import DeviceSession, SessionState

__all__ = [
    "CaptureWindow",
    "DeviceConfiguration",
    "DeviceSession",
    "SessionState",
    "compute_flags",
    "compute_size_word",
    "configure_device",
    "plan_capture",
]
