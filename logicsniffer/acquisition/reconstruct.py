"""Turn a raw sample buffer into a time-ordered trace."""
from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..config import AcquisitionConfig
from ..protocol.codec import RLE_COUNT_FLAG, RLE_COUNT_MASK

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CaptureResult:
    """Samples of one successful run, oldest first.

    ``trigger_index`` and ``sample_rate`` are ``None`` when not available
    (trigger disabled or not found, external clock).
    """

    samples: List[int]
    timestamps: List[int]
    trigger_index: Optional[int]
    sample_rate: Optional[int]
    channel_count: int
    enabled_channels: int
    absolute_length: int
    rle: bool = False
    raw_length: int = field(default=0)

    def __post_init__(self) -> None:
        if len(self.samples) != len(self.timestamps):
            raise ValueError("samples and timestamps must have the same length")

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def has_trigger_data(self) -> bool:
        return self.trigger_index is not None

    @property
    def has_timing_data(self) -> bool:
        """True when timestamps are not simply the sample positions."""

        return self.rle

    def sample_index(self, absolute_time: int) -> int:
        """Index of the sample that is valid at *absolute_time*."""

        position = bisect.bisect_right(self.timestamps, absolute_time) - 1
        return max(position, 0)

    def channel_values(self, channel: int) -> List[int]:
        if not 0 <= channel < 32:
            raise ValueError("channel must be between 0 and 31")
        return [(sample >> channel) & 1 for sample in self.samples]

    def to_dict(self) -> dict:
        return {
            'sample_count': len(self.samples),
            'absolute_length': self.absolute_length,
            'trigger_index': self.trigger_index,
            'sample_rate': self.sample_rate,
            'channel_count': self.channel_count,
            'enabled_channels': self.enabled_channels,
            'rle': self.rle,
        }


def plain_trigger_index(read_counter: int, stop_counter: int, divider: int, demux: bool) -> int:
    """Trigger position of an uncompressed capture.

    The constants compensate for pipeline delays in the FPGA and have not
    been validated against hardware.
    """

    return read_counter - stop_counter - 3 - (4 // (divider + 1)) - (5 if demux else 0)


def decode_plain(buffer: Sequence[int]) -> tuple[List[int], List[int], int]:
    """Samples as-is, stamped with their position."""

    if not buffer:
        raise ValueError("sample buffer is empty")
    samples = list(buffer)
    return samples, list(range(len(samples))), len(samples)


def decode_rle(buffer: Sequence[int], stop_counter: int) -> tuple[List[int], List[int], int, Optional[int]]:
    """Expand run-length counts into timestamps.

    Returns samples, timestamps, absolute length and the decoded position of
    the first data word at or after ``stop_counter - 2`` (``None`` if the
    stream has none).
    """

    if not buffer:
        raise ValueError("sample buffer is empty")
    samples: List[int] = []
    timestamps: List[int] = []
    trigger_position: Optional[int] = None
    time = 0
    previous: Optional[int] = None
    for index, word in enumerate(buffer):
        if word & RLE_COUNT_FLAG:
            if previous is not None and previous == word:
                logger.warning("Duplicate RLE count seen of %d at %d!", word & RLE_COUNT_MASK, index)
                previous = word
                continue
            count = word & RLE_COUNT_MASK
            logger.debug("RLE count seen of %d times %s.", count, previous)
            time += count
        else:
            if trigger_position is None and index >= stop_counter - 2:
                trigger_position = len(samples)
            samples.append(word)
            timestamps.append(time)
            time += 1
        previous = word
    return samples, timestamps, time, trigger_position


def reconstruct(
    buffer: Sequence[int],
    config: AcquisitionConfig,
    read_counter: int,
    stop_counter: int,
    channel_count: int,
) -> CaptureResult:
    """Build the :class:`CaptureResult` for a filled sample buffer."""

    trigger_index: Optional[int] = None
    if config.rle_enabled:
        logger.debug("Decoding Run Length Encoded data, sample count: %d", len(buffer))
        samples, timestamps, absolute_length, position = decode_rle(buffer, stop_counter)
        if config.trigger_enabled and position is not None:
            trigger_index = position - 1
    else:
        logger.debug("Decoding unencoded data, sample count: %d", len(buffer))
        samples, timestamps, absolute_length = decode_plain(buffer)
        if config.trigger_enabled:
            trigger_index = plain_trigger_index(read_counter, stop_counter, config.divider, config.demux)

    return CaptureResult(
        samples=samples,
        timestamps=timestamps,
        trigger_index=trigger_index,
        sample_rate=config.sample_rate,
        channel_count=channel_count,
        enabled_channels=config.enabled_channels,
        absolute_length=absolute_length,
        rle=config.rle_enabled,
        raw_length=len(buffer),
    )
