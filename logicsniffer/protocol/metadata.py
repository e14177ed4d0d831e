"""Device metadata records returned for the METADATA command."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Callable, Dict, Iterator, Optional, Union

from .codec import TIMEOUT, MetadataType, ReadResult, decode_int_be, metadata_type

logger = logging.getLogger(__name__)

KEY_DEVICE_NAME = 0x01
KEY_FPGA_VERSION = 0x02
KEY_ANCILLARY_VERSION = 0x03
KEY_PROBE_COUNT = 0x20
KEY_SAMPLE_MEMORY = 0x21
KEY_DYNAMIC_MEMORY = 0x22
KEY_MAX_SAMPLE_RATE = 0x23
KEY_PROTOCOL_VERSION = 0x24
KEY_PROBE_COUNT_SHORT = 0x40
KEY_PROTOCOL_VERSION_SHORT = 0x41

KEY_NAMES = {
    KEY_DEVICE_NAME: "device_name",
    KEY_FPGA_VERSION: "fpga_version",
    KEY_ANCILLARY_VERSION: "ancillary_version",
    KEY_PROBE_COUNT: "probe_count",
    KEY_SAMPLE_MEMORY: "sample_memory",
    KEY_DYNAMIC_MEMORY: "dynamic_memory",
    KEY_MAX_SAMPLE_RATE: "max_sample_rate",
    KEY_PROTOCOL_VERSION: "protocol_version",
    KEY_PROBE_COUNT_SHORT: "probe_count",
    KEY_PROTOCOL_VERSION_SHORT: "protocol_version",
}

MetadataValue = Union[int, str]


class DeviceMetadata(Mapping):
    """Read-only key to value mapping reported by the device.

    Capability lookups take the value the caller falls back to when the
    device does not report a key, e.g. ``get_sample_memory_depth(size)``.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[int, MetadataValue]] = None) -> None:
        self._values = MappingProxyType(dict(values or {}))

    def __getitem__(self, key: int) -> MetadataValue:
        return self._values[key]

    def __iter__(self) -> Iterator[int]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"DeviceMetadata({dict(self._values)!r})"

    def _int(self, *keys: int, default: Optional[int] = None) -> Optional[int]:
        for key in keys:
            value = self._values.get(key)
            if isinstance(value, int):
                return value
        return default

    def _str(self, key: int, default: Optional[str] = None) -> Optional[str]:
        value = self._values.get(key)
        return value if isinstance(value, str) else default

    def get_name(self, default: Optional[str] = None) -> Optional[str]:
        return self._str(KEY_DEVICE_NAME, default)

    def get_fpga_version(self, default: Optional[str] = None) -> Optional[str]:
        return self._str(KEY_FPGA_VERSION, default)

    def get_ancillary_version(self, default: Optional[str] = None) -> Optional[str]:
        return self._str(KEY_ANCILLARY_VERSION, default)

    def get_probe_count(self, default: int) -> int:
        return self._int(KEY_PROBE_COUNT, KEY_PROBE_COUNT_SHORT, default=default)

    def get_sample_memory_depth(self, default: int) -> int:
        return self._int(KEY_SAMPLE_MEMORY, default=default)

    def get_dynamic_memory_depth(self, default: Optional[int] = None) -> Optional[int]:
        return self._int(KEY_DYNAMIC_MEMORY, default=default)

    def get_max_sample_rate(self, default: Optional[int] = None) -> Optional[int]:
        return self._int(KEY_MAX_SAMPLE_RATE, default=default)

    def get_protocol_version(self, default: Optional[int] = None) -> Optional[int]:
        return self._int(KEY_PROTOCOL_VERSION, KEY_PROTOCOL_VERSION_SHORT, default=default)

    def to_dict(self) -> Dict[str, MetadataValue]:
        """Named view of the known keys; unknown keys keep their hex form."""

        payload: Dict[str, MetadataValue] = {}
        for key, value in self._values.items():
            payload[KEY_NAMES.get(key, f"0x{key:02x}")] = value
        return payload


def _read_string(read_byte: Callable[[], ReadResult]) -> Optional[str]:
    chars = bytearray()
    while True:
        value = read_byte()
        if value is TIMEOUT:
            return None
        if value == 0:
            return chars.decode("ascii", errors="replace")
        chars.append(value)


def _read_int32(read_byte: Callable[[], ReadResult]) -> Optional[int]:
    raw = bytearray()
    for _ in range(4):
        value = read_byte()
        if value is TIMEOUT:
            return None
        raw.append(value)
    return decode_int_be(bytes(raw))


def read_metadata(read_byte: Callable[[], ReadResult]) -> DeviceMetadata:
    """Decode records from *read_byte* until the zero key or a timeout.

    A record cut short by a timeout is dropped and ends the stream.
    """

    values: Dict[int, MetadataValue] = {}
    while True:
        key = read_byte()
        if key is TIMEOUT or key == 0:
            break
        kind = metadata_type(key)
        value: Optional[MetadataValue]
        if kind == MetadataType.STRING:
            value = _read_string(read_byte)
            if value is None:
                break
            logger.debug("Read 0x%02x -> %r", key, value)
        elif kind == MetadataType.INT32:
            value = _read_int32(read_byte)
            if value is None:
                break
            logger.debug("Read 0x%02x -> %d (32-bit)", key, value)
        elif kind == MetadataType.INT8:
            raw = read_byte()
            if raw is TIMEOUT:
                break
            value = raw
            logger.debug("Read 0x%02x -> %d (8-bit)", key, value)
        else:
            logger.info("Ignoring unknown metadata type: %d", kind)
            continue
        values[key] = value
    return DeviceMetadata(values)


def parse_metadata(data: bytes) -> DeviceMetadata:
    """Decode a complete metadata reply held in memory."""

    stream = iter(data)

    def _next() -> ReadResult:
        return next(stream, TIMEOUT)

    return read_metadata(_next)


def encode_metadata(values: Mapping[int, MetadataValue]) -> bytes:
    """Serialise *values* the way a device answers METADATA, terminator included."""

    out = bytearray()
    for key, value in values.items():
        kind = metadata_type(key)
        if kind == MetadataType.STRING:
            out.append(key)
            out += str(value).encode("ascii") + b"\x00"
        elif kind == MetadataType.INT32:
            out.append(key)
            out += (int(value) & 0xFFFFFFFF).to_bytes(4, "big")
        elif kind == MetadataType.INT8:
            out.append(key)
            out.append(int(value) & 0xFF)
        else:
            raise ValueError(f"metadata key 0x{key:02x} has no encodable type")
    out.append(0)
    return bytes(out)
