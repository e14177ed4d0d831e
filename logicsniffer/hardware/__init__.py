"""Byte transports for SUMP compatible analyzers."""
from __future__ import annotations

from .simulator import SimulatedTransport
from .transport import (
    TIMEOUT,
    ListedPort,
    SerialTransport,
    Transport,
    create_transport,
    list_ports,
)

__all__ = [
    "TIMEOUT",
    "ListedPort",
    "SerialTransport",
    "SimulatedTransport",
    "Transport",
    "create_transport",
    "list_ports",
]
