"""Run/read state machine for a single capture."""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import List, Optional, Protocol, Sequence

from ..config import AcquisitionConfig
from ..device.configurator import CaptureWindow, configure_device, plan_capture
from ..device.session import DeviceSession
from ..errors import (
    CaptureAbortedError,
    CaptureCancelledError,
    CaptureInProgressError,
    DeviceConnectionError,
    NotAttachedError,
)
from ..protocol.codec import CMD_RUN, TIMEOUT, Command
from .reconstruct import CaptureResult, reconstruct

logger = logging.getLogger(__name__)


class ProgressCallback(Protocol):
    def __call__(self, percent: int) -> None:  # pragma: no cover - protocol signature
        ...


class EngineState(Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    CONFIGURING = "configuring"
    ARMED = "armed"
    WAITING = "waiting_for_first_sample"
    DRAINING = "draining"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AcquisitionEngine:
    """Capture one trace from an attached session.

    The engine works on a snapshot of *config* taken at construction time
    and runs once. :meth:`stop` may be called from any thread; the worker
    notices it at the next read boundary, at most one read timeout later.
    """

    def __init__(self, session: DeviceSession, config: AcquisitionConfig) -> None:
        self._session = session
        self._config = config.snapshot()
        self._running = threading.Event()
        self._running.set()
        self._state = EngineState.IDLE
        self._window: Optional[CaptureWindow] = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def config(self) -> AcquisitionConfig:
        return self._config

    @property
    def window(self) -> Optional[CaptureWindow]:
        return self._window

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def stop(self) -> None:
        self._running.clear()
        if self._session.attached:
            self._session.transport.cancel_read()

    def run(self, progress: Optional[ProgressCallback] = None) -> CaptureResult:
        if not self._session.attached:
            raise NotAttachedError("Cannot run capture from device: not attached!")
        lock = self._session.capture_lock
        if not lock.acquire(blocking=False):
            raise CaptureInProgressError("A capture is already running on this device")
        try:
            return self._run(progress)
        except CaptureCancelledError:
            self._state = EngineState.CANCELLED
            raise
        except Exception:
            self._state = EngineState.FAILED
            raise
        finally:
            self._running.clear()
            lock.release()

    def _run(self, progress: Optional[ProgressCallback]) -> CaptureResult:
        session = self._session
        config = self._config

        self._state = EngineState.DETECTING
        session.detect()
        metadata = session.fetch_metadata()
        window = plan_capture(config, metadata)
        self._window = window
        logger.info(
            "Capturing %d samples (%d after trigger) on %d channels",
            window.samples,
            window.read_counter - window.stop_counter,
            window.channels,
        )

        self._state = EngineState.CONFIGURING
        configuration = configure_device(config, window.stop_counter, window.read_counter)
        session.send_commands(configuration.commands)
        session.send_command(Command(CMD_RUN))
        self._state = EngineState.ARMED

        buffer = self._read_buffer(window, progress)
        self._state = EngineState.DONE
        return reconstruct(buffer, config, window.read_counter, window.stop_counter, window.channels)

    def _read_buffer(self, window: CaptureWindow, progress: Optional[ProgressCallback]) -> List[int]:
        samples = window.samples
        if samples <= 0:
            raise CaptureAbortedError("Device reported no sample memory")
        buffer = [0] * samples
        groups = self._config.enabled_groups[: window.group_count]

        self._state = EngineState.WAITING
        while True:
            if not self._running.is_set():
                raise CaptureCancelledError("Capture cancelled while waiting for trigger")
            first = self._read_sample(groups, waiting=True)
            if first is not None:
                buffer[samples - 1] = first
                break

        self._state = EngineState.DRAINING
        try:
            for index in range(samples - 2, -1, -1):
                if not self._running.is_set():
                    raise CaptureCancelledError("Capture cancelled during readout")
                buffer[index] = self._read_sample(groups, waiting=False)
                if progress is not None:
                    progress(100 - (100 * index) // samples)
        finally:
            if progress is not None:
                progress(100)
        return buffer

    def _read_sample(self, groups: Sequence[bool], waiting: bool) -> Optional[int]:
        """Assemble one sample word, ``None`` if the very first read timed out.

        Only the first byte of the first sample may time out; any later gap
        aborts the run.
        """

        transport = self._session.transport
        value = 0
        first_read = True
        for index, enabled in enumerate(groups):
            if not enabled:
                continue
            try:
                byte = transport.read_byte()
            except DeviceConnectionError as exc:
                raise CaptureAbortedError(f"Data readout interrupted: {exc}") from exc
            if byte is TIMEOUT:
                if not self._running.is_set():
                    raise CaptureCancelledError("Capture cancelled")
                if waiting and first_read:
                    return None
                raise CaptureAbortedError("Data readout interrupted: read timed out")
            first_read = False
            value |= byte << (8 * index)
        return value
