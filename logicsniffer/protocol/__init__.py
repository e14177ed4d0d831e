"""SUMP command codec and metadata records."""
from __future__ import annotations

from .codec import TIMEOUT, Command, MetadataType, decode_int_be, decode_int_le, encode_long, encode_short
from .metadata import DeviceMetadata, encode_metadata, parse_metadata, read_metadata

__all__ = [
    "TIMEOUT",
    "Command",
    "DeviceMetadata",
    "MetadataType",
    "decode_int_be",
    "decode_int_le",
    "encode_long",
    "encode_metadata",
    "encode_short",
    "parse_metadata",
    "read_metadata",
]
