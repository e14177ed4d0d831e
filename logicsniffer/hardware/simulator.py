"""In-memory emulation of an Open Bench Logic Sniffer."""
from __future__ import annotations

import logging
import math
import random
import threading
from collections import deque
from typing import Callable, Dict, List, Mapping, Optional

from ..config import CHANNEL_GROUPS, DeviceConfig
from ..errors import DeviceConnectionError
from ..protocol.codec import (
    CMD_ID,
    CMD_METADATA,
    CMD_RESET,
    CMD_RUN,
    FLAG_DEMUX,
    FLAG_GROUPS_DISABLED,
    FLAG_RLE,
    LONG_COMMAND_BIT,
    RLE_COUNT_FLAG,
    RLE_COUNT_MASK,
    SET_FLAGS,
    SET_SIZE,
    SLA_V1,
    TIMEOUT,
    ChunkResult,
    Command,
    ReadResult,
    decode_int_le,
    reset_sequence,
)
from ..protocol.metadata import (
    KEY_DEVICE_NAME,
    KEY_FPGA_VERSION,
    KEY_MAX_SAMPLE_RATE,
    KEY_PROBE_COUNT,
    KEY_PROTOCOL_VERSION_SHORT,
    KEY_SAMPLE_MEMORY,
    MetadataValue,
    encode_metadata,
)

logger = logging.getLogger(__name__)

DEFAULT_SIM_METADATA: Dict[int, MetadataValue] = {
    KEY_DEVICE_NAME: "Simulated OLS",
    KEY_FPGA_VERSION: "3.07",
    KEY_PROBE_COUNT: 32,
    KEY_MAX_SAMPLE_RATE: 200_000_000,
    KEY_PROTOCOL_VERSION_SHORT: 2,
}


def _sawtooth(index: int, count: int) -> int:
    v = (index // 8) & 0xFF
    return (255 - v) | (v << 8) | ((255 - v) << 16) | (v << 24)


def _sine(index: int, count: int) -> int:
    period = max(count / 8.0, 1.0)
    return int(128 + 128 * math.sin(index / period)) & 0xFF


PATTERNS: Dict[str, Callable[[int, int], int]] = {
    "sawtooth": _sawtooth,
    "zeros": lambda index, count: 0,
    "sine": _sine,
    "odd-even": lambda index, count: 0x55 if index % 2 == 0 else 0xAA,
    "odd-quarter": lambda index, count: 0x55 if index % 4 == 0 else 0xAA,
}


class SimulatedTransport:
    """Transport that parses SUMP commands and answers like real hardware.

    Written commands are decoded and kept in :attr:`commands`. ID and METADATA
    are answered immediately; RUN renders a capture from the SIZE and FLAGS
    registers and queues it newest sample first, after
    ``config.sim_trigger_delay_s`` seconds.
    """

    def __init__(
        self,
        config: DeviceConfig,
        *,
        device_id: Optional[int] = SLA_V1,
        metadata: Optional[Mapping[int, MetadataValue]] = None,
        sample_memory: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> None:
        self._config = config
        self._device_id = device_id
        self._metadata: Dict[int, MetadataValue] = dict(DEFAULT_SIM_METADATA if metadata is None else metadata)
        if sample_memory is not None:
            self._metadata[KEY_SAMPLE_MEMORY] = int(sample_memory)
        self._random = random.Random(seed)
        self._rx: deque[int] = deque()
        self._cond = threading.Condition()
        self._pending = bytearray()
        self._registers: Dict[int, int] = {}
        self._timer: Optional[threading.Timer] = None
        self._opened = False
        self._cancelled = False
        self.commands: List[Command] = []

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def registers(self) -> Dict[int, int]:
        return dict(self._registers)

    def open(self) -> None:
        logger.info("Attaching to simulated analyzer (%s pattern)", self._config.sim_pattern)
        self._opened = True

    def close(self) -> None:
        if not self._opened:
            return
        self.write(reset_sequence())
        with self._cond:
            self._opened = False
            self._cond.notify_all()

    def write(self, data: bytes) -> int:
        if not self._opened:
            raise DeviceConnectionError("Simulated analyzer is not open")
        self._pending.extend(data)
        while self._pending:
            opcode = self._pending[0]
            if opcode & LONG_COMMAND_BIT:
                if len(self._pending) < 5:
                    break
                command = Command(opcode, decode_int_le(bytes(self._pending[1:5])))
                del self._pending[:5]
            else:
                command = Command(opcode)
                del self._pending[:1]
            self.commands.append(command)
            self._handle(command)
        return len(data)

    def read_byte(self, timeout_s: Optional[float] = None) -> ReadResult:
        wait = self._config.read_timeout_s if timeout_s is None else timeout_s
        with self._cond:
            self._require_open()
            self._cancelled = False
            self._cond.wait_for(lambda: self._rx or self._cancelled or not self._opened, timeout=wait)
            if not self._rx:
                return TIMEOUT
            return self._rx.popleft()

    def read_exact(self, count: int, timeout_s: Optional[float] = None) -> ChunkResult:
        wait = self._config.integer_timeout_s if timeout_s is None else timeout_s
        with self._cond:
            self._require_open()
            self._cancelled = False
            self._cond.wait_for(
                lambda: len(self._rx) >= count or self._cancelled or not self._opened,
                timeout=wait,
            )
            if len(self._rx) < count:
                return TIMEOUT
            return bytes(self._rx.popleft() for _ in range(count))

    def available(self) -> int:
        with self._cond:
            return len(self._rx)

    def flush_input(self) -> None:
        with self._cond:
            self._rx.clear()

    def cancel_read(self) -> None:
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def __enter__(self) -> "SimulatedTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- device side -------------------------------------------------------

    def _require_open(self) -> None:
        if not self._opened:
            raise DeviceConnectionError("Simulated analyzer is not open")

    def _handle(self, command: Command) -> None:
        if command.is_long:
            self._registers[command.opcode] = command.data
        elif command.opcode == CMD_RESET:
            self._stop_timer()
        elif command.opcode == CMD_ID:
            if self._device_id is not None:
                self._push(self._device_id.to_bytes(4, "little"))
        elif command.opcode == CMD_METADATA:
            self._push(encode_metadata(self._metadata))
        elif command.opcode == CMD_RUN:
            self._run()
        else:
            logger.debug("Simulated analyzer ignores opcode 0x%02x", command.opcode)

    def _run(self) -> None:
        payload = self.render_capture()
        delay = self._config.sim_trigger_delay_s
        self._stop_timer()
        if delay <= 0:
            self._push(payload)
            return
        timer = threading.Timer(delay, self._push, args=(payload,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _push(self, data: bytes) -> None:
        with self._cond:
            self._rx.extend(data)
            self._cond.notify_all()

    def render_capture(self) -> bytes:
        """Bytes the device sends after RUN for the current registers."""

        flags = self._registers.get(SET_FLAGS, 0)
        size = self._registers.get(SET_SIZE, 0)
        unit = 8 if flags & FLAG_DEMUX else 4
        count = ((size & 0xFFFF) + 1) * unit
        disabled = (flags & FLAG_GROUPS_DISABLED) >> 2
        groups = [group for group in range(CHANNEL_GROUPS) if not disabled & (1 << group)]
        if flags & FLAG_RLE:
            words = self._rle_words(count)
        else:
            words = [self._sample(index, count) for index in range(count)]
        out = bytearray()
        for word in reversed(words):
            for group in groups:
                out.append((word >> (8 * group)) & 0xFF)
        return bytes(out)

    def _sample(self, index: int, count: int) -> int:
        pattern = self._config.sim_pattern
        if pattern == "random":
            return self._random.getrandbits(32)
        return PATTERNS[pattern](index, count) & 0xFFFFFFFF

    def _rle_words(self, count: int) -> List[int]:
        words: List[int] = []
        index = 0
        while len(words) < count:
            value = self._sample(index, count) & RLE_COUNT_MASK
            run = 1
            while run < count and (self._sample(index + run, count) & RLE_COUNT_MASK) == value:
                run += 1
            words.append(value)
            if run > 1 and len(words) < count:
                words.append(RLE_COUNT_FLAG | (run - 1))
            index += run
        return words
