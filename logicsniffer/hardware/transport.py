"""Byte transports for SUMP compatible analyzers."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import serial
import serial.tools.list_ports

from ..config import DeviceConfig
from ..errors import DeviceConnectionError
from ..protocol.codec import TIMEOUT, ChunkResult, ReadResult, reset_sequence
from .simulator import SimulatedTransport

logger = logging.getLogger(__name__)

# Sleep between checks of the receive queue while waiting for a multi-byte reply.
_POLL_INTERVAL_S = 0.0005


class Transport(Protocol):
    """Byte-oriented connection to an analyzer."""

    @property
    def is_open(self) -> bool:  # pragma: no cover - protocol signature
        ...

    def open(self) -> None:  # pragma: no cover - protocol signature
        ...

    def close(self) -> None:  # pragma: no cover - protocol signature
        ...

    def write(self, data: bytes) -> int:  # pragma: no cover - protocol signature
        ...

    def read_byte(self, timeout_s: Optional[float] = None) -> ReadResult:  # pragma: no cover - protocol signature
        ...

    def read_exact(self, count: int, timeout_s: Optional[float] = None) -> ChunkResult:  # pragma: no cover
        ...

    def available(self) -> int:  # pragma: no cover - protocol signature
        ...

    def flush_input(self) -> None:  # pragma: no cover - protocol signature
        ...

    def cancel_read(self) -> None:  # pragma: no cover - protocol signature
        ...


@dataclass(slots=True)
class ListedPort:
    """A serial port visible to the host."""

    device: str
    description: Optional[str] = None
    hwid: Optional[str] = None
    serial_number: Optional[str] = None
    manufacturer: Optional[str] = None


def list_ports() -> list[ListedPort]:
    """Enumerate serial ports an analyzer could be attached to."""

    ports: list[ListedPort] = []
    for info in sorted(serial.tools.list_ports.comports(), key=lambda entry: entry.device):
        ports.append(
            ListedPort(
                device=info.device,
                description=info.description or None,
                hwid=info.hwid or None,
                serial_number=getattr(info, "serial_number", None),
                manufacturer=getattr(info, "manufacturer", None),
            )
        )
    return ports


class SerialTransport:
    """Serial port transport backed by pyserial."""

    def __init__(
        self,
        config: DeviceConfig,
        serial_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._config = config
        self._serial_factory = serial_factory or serial.Serial
        self._serial: Optional[Any] = None
        self._cancelled = threading.Event()

    @property
    def port(self) -> Optional[str]:
        return self._config.port

    @property
    def is_open(self) -> bool:
        return self._serial is not None and bool(self._serial.is_open)

    def open(self) -> None:
        if self._serial is not None:
            return
        port = self._config.port
        if not port:
            raise DeviceConnectionError("No serial port configured")
        logger.info("Attaching to %s @ %dbps ...", port, self._config.baud)
        stop_bits = float(self._config.stop_bits)
        try:
            handle = self._serial_factory()
            handle.port = port
            handle.baudrate = self._config.baud
            handle.bytesize = self._config.data_bits
            handle.parity = self._config.parity
            handle.stopbits = int(stop_bits) if stop_bits.is_integer() else stop_bits
            handle.xonxoff = self._config.xonxoff
            handle.rtscts = False
            handle.timeout = self._config.read_timeout_s
            handle.write_timeout = self._config.write_timeout_s
            handle.open()
        except (serial.SerialException, ValueError, OSError) as exc:
            logger.warning("Failed to open/use %s! Possible reason: %s", port, exc)
            raise DeviceConnectionError(f"Failed to open/use {port}! Possible reason: {exc}") from exc
        self._serial = handle

    def close(self) -> None:
        """Reset the device, then release the port. Teardown I/O errors are logged only."""

        handle = self._serial
        if handle is None:
            return
        try:
            if handle.is_open:
                handle.write(reset_sequence())
                handle.flush()
        except (serial.SerialException, OSError) as exc:
            logger.debug("Detaching failed!", exc_info=exc)
        finally:
            try:
                handle.close()
            except (serial.SerialException, OSError) as exc:
                logger.debug("Closing %s failed!", self._config.port, exc_info=exc)
            self._serial = None

    def write(self, data: bytes) -> int:
        handle = self._require()
        try:
            written = handle.write(data)
            handle.flush()
        except (serial.SerialException, OSError) as exc:
            raise DeviceConnectionError(f"Write to {self._config.port} failed: {exc}") from exc
        return written if written is not None else len(data)

    def read_byte(self, timeout_s: Optional[float] = None) -> ReadResult:
        handle = self._require()
        self._cancelled.clear()
        self._apply_timeout(handle, timeout_s)
        try:
            data = handle.read(1)
        except (serial.SerialException, OSError) as exc:
            raise DeviceConnectionError(f"Read from {self._config.port} failed: {exc}") from exc
        if not data:
            return TIMEOUT
        return data[0]

    def read_exact(self, count: int, timeout_s: Optional[float] = None) -> ChunkResult:
        """Wait until *count* bytes are buffered, then read them in one go."""

        handle = self._require()
        self._cancelled.clear()
        wait = self._config.integer_timeout_s if timeout_s is None else timeout_s
        deadline = time.monotonic() + wait
        try:
            while handle.in_waiting < count:
                if self._cancelled.is_set() or time.monotonic() > deadline:
                    return TIMEOUT
                time.sleep(_POLL_INTERVAL_S)
            data = handle.read(count)
        except (serial.SerialException, OSError) as exc:
            raise DeviceConnectionError(f"Read from {self._config.port} failed: {exc}") from exc
        if len(data) != count:
            return TIMEOUT
        return bytes(data)

    def available(self) -> int:
        handle = self._require()
        try:
            return int(handle.in_waiting)
        except (serial.SerialException, OSError) as exc:
            raise DeviceConnectionError(f"Querying {self._config.port} failed: {exc}") from exc

    def flush_input(self) -> None:
        handle = self._require()
        try:
            handle.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            raise DeviceConnectionError(f"Flushing {self._config.port} failed: {exc}") from exc

    def cancel_read(self) -> None:
        """Wake up a reader blocked in :meth:`read_byte` or :meth:`read_exact`."""

        self._cancelled.set()
        handle = self._serial
        cancel = getattr(handle, "cancel_read", None)
        if callable(cancel):
            try:
                cancel()
            except (serial.SerialException, OSError) as exc:  # pragma: no cover - platform specific
                logger.debug("cancel_read failed", exc_info=exc)

    def __enter__(self) -> "SerialTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require(self) -> Any:
        if self._serial is None:
            raise DeviceConnectionError("Serial port is not open")
        return self._serial

    def _apply_timeout(self, handle: Any, timeout_s: Optional[float]) -> None:
        target = self._config.read_timeout_s if timeout_s is None else timeout_s
        if handle.timeout != target:
            handle.timeout = target


def create_transport(config: DeviceConfig) -> Transport:
    """Create a transport instance based on *config.transport*."""

    transport = (config.transport or "serial").lower()
    if transport == "serial":
        return SerialTransport(config)
    if transport == "sim":
        return SimulatedTransport(config)
    raise ValueError(f"Unsupported transport '{config.transport}'")
