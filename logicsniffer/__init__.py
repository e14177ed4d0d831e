"""Capture core for SUMP compatible logic analyzers (Open Bench Logic Sniffer)."""
from __future__ import annotations

from .config import AcquisitionConfig, AppConfig, DeviceConfig, load_config

__all__ = ["AcquisitionConfig", "AppConfig", "DeviceConfig", "load_config"]
