from __future__ import annotations

import threading
import time
from typing import List, Optional, Tuple

import pytest

from logicsniffer.acquisition import AcquisitionEngine, EngineState
from logicsniffer.acquisition.reconstruct import plain_trigger_index
from logicsniffer.config import AcquisitionConfig, DeviceConfig
from logicsniffer.device import DeviceSession
from logicsniffer.errors import (
    CaptureAbortedError,
    CaptureCancelledError,
    CaptureInProgressError,
    DeviceConnectionError,
    DeviceNotFoundError,
    NotAttachedError,
)
from logicsniffer.hardware import SimulatedTransport
from logicsniffer.hardware.simulator import PATTERNS
from logicsniffer.protocol.codec import CMD_RUN, SET_FLAGS, TIMEOUT


class TruncatingSimulator(SimulatedTransport):
    """Simulator that stops sending after *limit* bytes of sample data."""

    def __init__(self, config: DeviceConfig, limit: int, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self.limit = limit

    def render_capture(self) -> bytes:
        return super().render_capture()[: self.limit]


class CountingSimulator(SimulatedTransport):
    """Simulator recording how many reads timed out."""

    def __init__(self, config: DeviceConfig, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self.timeouts = 0

    def read_byte(self, timeout_s=None):
        byte = super().read_byte(timeout_s)
        if byte is TIMEOUT:
            self.timeouts += 1
        return byte


class UnpluggedSimulator(SimulatedTransport):
    """Simulator whose port fails after *limit* sample bytes were read."""

    def __init__(self, config: DeviceConfig, limit: int, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self.limit = limit
        self.armed = False
        self.sample_bytes = 0

    def render_capture(self) -> bytes:
        self.armed = True
        return super().render_capture()

    def read_byte(self, timeout_s=None):
        if self.armed:
            if self.sample_bytes >= self.limit:
                raise DeviceConnectionError("Failed to open/use /dev/ttyACM0! Possible reason: device unplugged")
            self.sample_bytes += 1
        return super().read_byte(timeout_s)


def _session(sim: Optional[SimulatedTransport] = None, **device_overrides) -> Tuple[DeviceSession, SimulatedTransport]:
    config = DeviceConfig(transport="sim", **device_overrides)
    transport = sim or SimulatedTransport(config)
    session = DeviceSession(config, transport_factory=lambda _: transport)
    session.attach()
    return session, transport


def test_capture_returns_chronological_samples() -> None:
    session, sim = _session(sim_pattern="sawtooth")
    progress: List[int] = []

    result = AcquisitionEngine(session, AcquisitionConfig(size=64)).run(progress.append)

    assert result.samples == [PATTERNS["sawtooth"](index, 64) for index in range(64)]
    assert result.timestamps == list(range(64))
    assert result.absolute_length == 64
    assert result.trigger_index is None
    assert result.sample_rate == 100_000_000
    assert result.channel_count == 32
    assert progress[-1] == 100
    assert progress == sorted(progress)
    assert sim.commands[-1].opcode == CMD_RUN
    assert sim.commands[-2].opcode == SET_FLAGS


def test_disabled_groups_are_zero_and_not_read() -> None:
    session, sim = _session(sim_pattern="sawtooth")
    config = AcquisitionConfig(size=32, enabled_channels=0x00FF0000)

    result = AcquisitionEngine(session, config).run()

    assert result.samples == [PATTERNS["sawtooth"](index, 32) & 0x00FF0000 for index in range(32)]
    assert sim.available() == 0


def test_rle_capture_expands_timestamps() -> None:
    session, _ = _session(sim_pattern="zeros")
    config = AcquisitionConfig(size=16, rle_enabled=True)

    result = AcquisitionEngine(session, config).run()

    assert result.samples == [0] * 8
    assert result.timestamps == [16 * index for index in range(8)]
    assert result.absolute_length == 128
    assert result.has_timing_data


def test_trigger_enabled_reports_plain_trigger_index() -> None:
    session, _ = _session()
    config = AcquisitionConfig(size=64, ratio=0.5, trigger_enabled=True)
    config.set_rate(50_000_000)
    config.set_parallel_trigger(0, mask=0x1, value=0x1)

    result = AcquisitionEngine(session, config).run()

    assert result.trigger_index == plain_trigger_index(64, 32, 1, False)
    assert len(result) == 64


def test_engine_uses_configuration_snapshot() -> None:
    session, _ = _session()
    config = AcquisitionConfig(size=16)
    engine = AcquisitionEngine(session, config)
    config.set_size(4096)

    result = engine.run()

    assert len(result) == 16


def test_cancel_while_waiting_for_trigger() -> None:
    session, _ = _session(sim_trigger_delay_s=30.0)
    engine = AcquisitionEngine(session, AcquisitionConfig(size=16))
    errors: List[BaseException] = []

    def _worker() -> None:
        try:
            engine.run()
        except BaseException as exc:  # noqa: BLE001 - collected for the assertion below
            errors.append(exc)

    worker = threading.Thread(target=_worker, daemon=True)
    worker.start()
    deadline = time.monotonic() + 2.0
    while engine.state is not EngineState.WAITING and time.monotonic() < deadline:
        time.sleep(0.01)
    stopped_at = time.monotonic()
    engine.stop()
    worker.join(timeout=2.0)

    assert not worker.is_alive()
    assert time.monotonic() - stopped_at < 1.0
    assert len(errors) == 1 and isinstance(errors[0], CaptureCancelledError)
    assert engine.state is EngineState.CANCELLED
    assert session.attached
    session.detach()


def test_timeout_during_readout_aborts_capture() -> None:
    config = DeviceConfig(transport="sim", read_timeout_ms=20)
    sim = TruncatingSimulator(config, limit=40)
    session, _ = _session(sim, read_timeout_ms=20)
    progress: List[int] = []

    with pytest.raises(CaptureAbortedError):
        AcquisitionEngine(session, AcquisitionConfig(size=64)).run(progress.append)

    assert progress[-1] == 100
    assert session.attached


def test_waiting_for_trigger_retries_after_timeouts() -> None:
    config = DeviceConfig(transport="sim", read_timeout_ms=20, sim_trigger_delay_s=0.15)
    sim = CountingSimulator(config)
    session, _ = _session(sim, read_timeout_ms=20, sim_trigger_delay_s=0.15)

    result = AcquisitionEngine(session, AcquisitionConfig(size=32)).run()

    assert sim.timeouts >= 2
    assert result.samples == [PATTERNS["sawtooth"](index, 32) for index in range(32)]
    assert result.timestamps == list(range(32))


def test_port_failure_during_readout_aborts_capture() -> None:
    config = DeviceConfig(transport="sim")
    sim = UnpluggedSimulator(config, limit=40)
    session, _ = _session(sim)
    engine = AcquisitionEngine(session, AcquisitionConfig(size=64))

    with pytest.raises(CaptureAbortedError, match="device unplugged") as excinfo:
        engine.run()

    assert isinstance(excinfo.value.__cause__, DeviceConnectionError)
    assert engine.state is EngineState.FAILED


def test_timeout_inside_first_sample_aborts_capture() -> None:
    config = DeviceConfig(transport="sim", read_timeout_ms=20)
    sim = TruncatingSimulator(config, limit=2)
    session, _ = _session(sim, read_timeout_ms=20)

    engine = AcquisitionEngine(session, AcquisitionConfig(size=16))
    with pytest.raises(CaptureAbortedError):
        engine.run()
    assert engine.state is EngineState.FAILED


def test_second_capture_on_same_session_is_rejected() -> None:
    session, _ = _session()
    with session.capture_lock:
        with pytest.raises(CaptureInProgressError):
            AcquisitionEngine(session, AcquisitionConfig(size=16)).run()


def test_run_requires_attached_session() -> None:
    session = DeviceSession(DeviceConfig(transport="sim"))
    with pytest.raises(NotAttachedError):
        AcquisitionEngine(session, AcquisitionConfig()).run()


def test_missing_device_fails_before_arming() -> None:
    config = DeviceConfig(transport="sim", integer_timeout_ms=10)
    session, sim = _session(SimulatedTransport(config, device_id=None), integer_timeout_ms=10)
    engine = AcquisitionEngine(session, AcquisitionConfig(size=16))

    with pytest.raises(DeviceNotFoundError):
        engine.run()

    assert engine.state is EngineState.FAILED
    assert all(command.opcode != CMD_RUN for command in sim.commands)
