from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional

import pytest

from logicsniffer.config import DeviceConfig
from logicsniffer.device import DeviceSession, SessionState
from logicsniffer.errors import (
    DeviceConnectionError,
    DeviceNotFoundError,
    NotAttachedError,
    ObsoleteFirmwareError,
)
from logicsniffer.hardware import SimulatedTransport
from logicsniffer.protocol.codec import CMD_ID, CMD_METADATA, CMD_RESET, SLA_V0, TIMEOUT


class ScriptedTransport:
    """Transport replaying one scripted reply per identify command."""

    def __init__(self, id_replies: Optional[List[bytes]] = None, metadata: bytes = b"\x00") -> None:
        self.id_replies: Deque[bytes] = deque(id_replies or [])
        self.metadata = metadata
        self.rx: Deque[int] = deque()
        self.written = bytearray()
        self.flushes = 0
        self.opened = False
        self.closed = False
        self.fail_reads = False

    @property
    def is_open(self) -> bool:
        return self.opened

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.closed = True
        self.opened = False

    def write(self, data: bytes) -> int:
        self.written += data
        if data == bytes([CMD_ID]):
            reply = self.id_replies.popleft() if self.id_replies else b""
            self.rx.extend(reply)
        elif data == bytes([CMD_METADATA]):
            self.rx.extend(self.metadata)
        return len(data)

    def read_byte(self, timeout_s=None):
        if self.fail_reads:
            raise DeviceConnectionError("cable pulled")
        if not self.rx:
            return TIMEOUT
        return self.rx.popleft()

    def read_exact(self, count: int, timeout_s=None):
        if len(self.rx) < count:
            return TIMEOUT
        return bytes(self.rx.popleft() for _ in range(count))

    def available(self) -> int:
        return len(self.rx)

    def flush_input(self) -> None:
        self.flushes += 1
        self.rx.clear()

    def cancel_read(self) -> None:
        pass

    def id_commands(self) -> int:
        return self.written.count(bytes([CMD_ID]))


def _session(transport: ScriptedTransport, **overrides) -> DeviceSession:
    session = DeviceSession(DeviceConfig(port="/dev/ttyACM0", **overrides), transport_factory=lambda _: transport)
    session.attach()
    return session


def test_detect_accepts_sla1_reply() -> None:
    transport = ScriptedTransport([bytes([0x31, 0x41, 0x4C, 0x53])])
    session = _session(transport)

    assert session.detect() == 0x534C4131
    assert session.state is SessionState.IDENTIFIED
    assert transport.id_commands() == 1
    assert transport.written.startswith(bytes([CMD_RESET]) * 5 + bytes([CMD_ID]))


def test_detect_retries_until_sla1() -> None:
    transport = ScriptedTransport([b"", b"\x00\x00\x00\x00", b"1ALS"])
    session = _session(transport)

    session.detect()

    assert transport.id_commands() == 3
    assert transport.flushes == 3


def test_detect_all_zero_reply_is_not_found_after_three_attempts() -> None:
    transport = ScriptedTransport([b"\x00\x00\x00\x00"] * 5)
    session = _session(transport)

    with pytest.raises(DeviceNotFoundError, match=r"\(0x00000000\)"):
        session.detect()

    assert transport.id_commands() == 3
    assert session.state is SessionState.FAILED
    assert session.attached


def test_detect_silence_is_not_found() -> None:
    transport = ScriptedTransport()
    session = _session(transport, detect_attempts=2)

    with pytest.raises(DeviceNotFoundError, match="no answer"):
        session.detect()
    assert transport.id_commands() == 2


def test_detect_sla0_is_obsolete_firmware() -> None:
    transport = ScriptedTransport([SLA_V0.to_bytes(4, "little")])
    session = _session(transport)

    with pytest.raises(ObsoleteFirmwareError):
        session.detect()
    assert transport.id_commands() == 1


def test_operations_require_attach() -> None:
    session = DeviceSession(DeviceConfig(port="/dev/ttyACM0"), transport_factory=lambda _: ScriptedTransport())
    with pytest.raises(NotAttachedError):
        session.fetch_metadata()
    with pytest.raises(NotAttachedError):
        session.detect()


def test_attach_failure_leaves_session_detached() -> None:
    class BrokenTransport(ScriptedTransport):
        def open(self) -> None:
            raise DeviceConnectionError("Failed to open/use /dev/ttyACM0! Possible reason: busy")

    session = DeviceSession(DeviceConfig(port="/dev/ttyACM0"), transport_factory=lambda _: BrokenTransport())
    with pytest.raises(DeviceConnectionError, match="/dev/ttyACM0"):
        session.attach()
    assert not session.attached
    assert session.state is SessionState.DETACHED


def test_attach_overrides_port_and_baud() -> None:
    seen: List[DeviceConfig] = []

    def factory(config: DeviceConfig) -> ScriptedTransport:
        seen.append(config)
        return ScriptedTransport()

    session = DeviceSession(DeviceConfig(), transport_factory=factory)
    session.attach("/dev/ttyUSB1", 921600)
    assert seen[0].port == "/dev/ttyUSB1"
    assert seen[0].baud == 921600


def test_fetch_metadata_flushes_and_decodes() -> None:
    transport = ScriptedTransport(metadata=b"\x01OLS\x00\x21\x00\x00\x18\x00\x00")
    session = _session(transport)
    transport.rx.extend(b"junk")

    metadata = session.fetch_metadata()

    assert metadata.get_name() == "OLS"
    assert metadata.get_sample_memory_depth(0) == 6144
    assert transport.flushes == 1


def test_fetch_metadata_read_failure_ends_stream() -> None:
    transport = ScriptedTransport(metadata=b"\x01OLS\x00")
    transport.fail_reads = True
    session = _session(transport)

    metadata = session.fetch_metadata()

    assert len(metadata) == 0


def test_detach_closes_transport_once() -> None:
    transport = ScriptedTransport()
    session = _session(transport)

    session.detach()
    session.detach()

    assert transport.closed
    assert not session.attached


def test_session_against_simulator() -> None:
    config = DeviceConfig(transport="sim")
    with DeviceSession(config, transport_factory=lambda cfg: SimulatedTransport(cfg, sample_memory=1024)) as session:
        assert session.detect() == 0x534C4131
        metadata = session.fetch_metadata()
    assert metadata.get_sample_memory_depth(0) == 1024
    assert metadata.get_probe_count(0) == 32
