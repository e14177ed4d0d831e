"""Exception hierarchy for the logic analyzer capture core."""
from __future__ import annotations


class LogicSnifferError(Exception):
    """Base exception for all capture core errors."""


class DeviceConnectionError(LogicSnifferError):
    """Opening or using the byte transport failed."""


class NotAttachedError(LogicSnifferError, RuntimeError):
    """An operation needed an attached transport but none was open."""


class ProtocolError(LogicSnifferError):
    """The device did not answer the way the SUMP protocol requires."""


class DeviceNotFoundError(ProtocolError):
    """No supported device answered the identify command."""


class ObsoleteFirmwareError(ProtocolError):
    """A device answered with the legacy SLA0 signature."""


class CaptureInProgressError(LogicSnifferError, RuntimeError):
    """A second capture was started while one is still running."""


class CaptureAbortedError(LogicSnifferError):
    """Sample readout failed after the device started sending data."""


class CaptureCancelledError(LogicSnifferError):
    """The caller stopped the capture before it completed."""
