"""Encoding and decoding of the SUMP binary command set."""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Optional, Union

# Short commands (a single opcode byte).
CMD_RESET = 0x00
CMD_RUN = 0x01
CMD_ID = 0x02
CMD_SELFTEST = 0x03
CMD_METADATA = 0x04

# Long commands (opcode followed by a 32-bit little-endian payload).
SET_DIVIDER = 0x80
SET_SIZE = 0x81
SET_FLAGS = 0x82
SET_TRIGGER_MASK = 0xC0
SET_TRIGGER_VALUE = 0xC1
SET_TRIGGER_CONFIG = 0xC2

LONG_COMMAND_BIT = 0x80

# Identify replies, "SLA0" / "SLA1" read as little-endian integers.
SLA_V0 = 0x534C4130
SLA_V1 = 0x534C4131

# Flags register.
FLAG_DEMUX = 0x00000001
FLAG_FILTER = 0x00000002
FLAG_GROUPS_DISABLED = 0x0000003C
FLAG_EXTERNAL = 0x00000040
FLAG_INVERTED = 0x00000080
FLAG_RLE = 0x00000100
FLAG_NUMBER_SCHEME = 0x00000200
FLAG_TEST_MODE = 0x00000400

# Trigger configuration register.
TRIGGER_DELAYMASK = 0x0000FFFF
TRIGGER_LEVELMASK = 0x00030000
TRIGGER_CHANNELMASK = 0x01F00000
TRIGGER_SERIAL = 0x04000000
TRIGGER_CAPTURE = 0x08000000

RLE_COUNT_FLAG = 0x80000000
RLE_COUNT_MASK = 0x7FFFFFFF

# A pending long command swallows up to four bytes, so the fifth reset always lands.
RESET_REPEAT = 5

_LONG_STRUCT = struct.Struct("<BI")


class _Timeout:
    """Result of a read that saw no data before its deadline."""

    __slots__ = ()
    _instance: Optional["_Timeout"] = None

    def __new__(cls) -> "_Timeout":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "TIMEOUT"

    def __bool__(self) -> bool:
        return False


TIMEOUT = _Timeout()

ReadResult = Union[int, _Timeout]
ChunkResult = Union[bytes, _Timeout]


class MetadataType(IntEnum):
    """Value type selected by the top three bits of a metadata key."""

    STRING = 0
    INT32 = 1
    INT8 = 2


@dataclass(frozen=True, slots=True)
class Command:
    """A single command as written to the device."""

    opcode: int
    data: Optional[int] = None

    @property
    def is_long(self) -> bool:
        return self.data is not None

    def encode(self) -> bytes:
        if self.data is None:
            return encode_short(self.opcode)
        return encode_long(self.opcode, self.data)

    def __str__(self) -> str:
        return format_bits(self.encode())


def encode_short(opcode: int) -> bytes:
    return bytes([opcode & 0xFF])


def encode_long(opcode: int, data: int) -> bytes:
    """Opcode byte followed by *data*, least significant byte first."""

    return _LONG_STRUCT.pack(opcode & 0xFF, data & 0xFFFFFFFF)


def reset_sequence() -> bytes:
    return encode_short(CMD_RESET) * RESET_REPEAT


def encode_commands(commands: Iterable[Command]) -> bytes:
    return b"".join(command.encode() for command in commands)


def decode_int_le(raw: bytes) -> int:
    """Unsigned 32-bit integer, least significant byte first (device ID, payloads)."""

    if len(raw) != 4:
        raise ValueError(f"expected 4 bytes, got {len(raw)}")
    return int.from_bytes(raw, "little")


def decode_int_be(raw: bytes) -> int:
    """Unsigned 32-bit integer, most significant byte first (metadata values)."""

    if len(raw) != 4:
        raise ValueError(f"expected 4 bytes, got {len(raw)}")
    return int.from_bytes(raw, "big")


def metadata_type(key: int) -> int:
    return (key & 0xE0) >> 5


def format_bits(raw: bytes) -> str:
    """Render *raw* as space separated binary octets for debug logs."""

    return " ".join(f"{byte:08b}" for byte in raw)


def describe_device_id(device_id: int) -> str:
    """ASCII form of a four byte device id, hex when it is not printable."""

    text = (device_id & 0xFFFFFFFF).to_bytes(4, "big").decode("latin-1")
    if text.isascii() and text.isprintable():
        return text
    return f"0x{device_id:08x}"
