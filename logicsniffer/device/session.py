"""Attach, identify and query a SUMP compatible analyzer."""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Iterable, Optional

from ..config import DeviceConfig
from ..errors import (
    DeviceConnectionError,
    DeviceNotFoundError,
    NotAttachedError,
    ObsoleteFirmwareError,
)
from ..hardware import Transport, create_transport
from ..protocol.codec import (
    CMD_ID,
    CMD_METADATA,
    SLA_V0,
    SLA_V1,
    TIMEOUT,
    Command,
    ReadResult,
    decode_int_le,
    describe_device_id,
    format_bits,
    reset_sequence,
)
from ..protocol.metadata import DeviceMetadata, read_metadata

logger = logging.getLogger(__name__)

TransportFactory = Callable[[DeviceConfig], Transport]


class SessionState(Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETECTING = "detecting"
    IDENTIFIED = "identified"
    FAILED = "failed"


class DeviceSession:
    """Owns the transport to one analyzer.

    Errors raised by detection or capture leave the session attached;
    only :meth:`detach` releases the transport.
    """

    def __init__(
        self,
        config: Optional[DeviceConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self._config = config or DeviceConfig()
        self._transport_factory = transport_factory or create_transport
        self._transport: Optional[Transport] = None
        self._state = SessionState.DETACHED
        self._device_id: Optional[int] = None
        self._capture_lock = threading.Lock()

    @property
    def config(self) -> DeviceConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def attached(self) -> bool:
        return self._transport is not None

    @property
    def device_id(self) -> Optional[int]:
        return self._device_id

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            raise NotAttachedError("Device is not attached")
        return self._transport

    @property
    def capture_lock(self) -> threading.Lock:
        """Held by the engine for the duration of a capture."""

        return self._capture_lock

    def attach(self, port: Optional[str] = None, baud: Optional[int] = None) -> None:
        """Open the transport; *port* and *baud* override the configured ones."""

        if self._transport is not None:
            return
        if port is not None:
            self._config.port = port
        if baud is not None:
            self._config.baud = int(baud)
        self._state = SessionState.ATTACHING
        transport = self._transport_factory(self._config)
        try:
            transport.open()
        except DeviceConnectionError:
            self._state = SessionState.DETACHED
            raise
        self._transport = transport
        self._state = SessionState.ATTACHED

    def detach(self) -> None:
        transport = self._transport
        if transport is None:
            return
        self._transport = None
        self._device_id = None
        self._state = SessionState.DETACHED
        transport.close()

    def __enter__(self) -> "DeviceSession":
        self.attach()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.detach()

    def send_command(self, command: Command) -> None:
        payload = command.encode()
        logger.debug("Sending %s", format_bits(payload))
        self.transport.write(payload)

    def send_commands(self, commands: Iterable[Command]) -> None:
        for command in commands:
            self.send_command(command)

    def detect(self) -> int:
        """Identify the device, retrying the reset/ID handshake.

        Returns the device ID. Raises :class:`ObsoleteFirmwareError` for an
        SLA0 answer and :class:`DeviceNotFoundError` when no attempt
        produced a supported ID.
        """

        transport = self.transport
        self._state = SessionState.DETECTING
        device_id: Optional[int] = None
        for attempt in range(1, self._config.detect_attempts + 1):
            transport.flush_input()
            logger.debug("Sending %s", format_bits(reset_sequence()))
            transport.write(reset_sequence())
            self.send_command(Command(CMD_ID))
            raw = transport.read_exact(4, self._config.integer_timeout_s)
            if raw is TIMEOUT:
                logger.debug("No identify reply (attempt %d)", attempt)
                continue
            device_id = decode_int_le(raw)
            if device_id == SLA_V0:
                logger.info("Found Sump Logic Analyzer (0x%08x) ...", device_id)
                break
            if device_id == SLA_V1:
                logger.info("Found Sump Logic Analyzer/LogicSniffer (0x%08x) ...", device_id)
                break
            logger.info("Found unknown device (0x%08x) ...", device_id)

        if device_id == SLA_V1:
            self._device_id = device_id
            self._state = SessionState.IDENTIFIED
            return device_id
        self._state = SessionState.FAILED
        if device_id == SLA_V0:
            raise ObsoleteFirmwareError(
                "Device answered with SLA0; it needs newer firmware"
            )
        detail = "no answer" if device_id is None else describe_device_id(device_id)
        raise DeviceNotFoundError(f"Device not found ({detail})")

    def fetch_metadata(self) -> DeviceMetadata:
        """Query the metadata records; truncated or failed reads end the list."""

        transport = self.transport
        transport.flush_input()
        self.send_command(Command(CMD_METADATA))

        def _read_byte() -> ReadResult:
            try:
                return transport.read_byte()
            except DeviceConnectionError as exc:
                logger.debug("I/O exception", exc_info=exc)
                return TIMEOUT

        metadata = read_metadata(_read_byte)
        logger.debug("Metadata = %r", metadata)
        return metadata
