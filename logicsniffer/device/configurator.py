"""Translate an acquisition configuration into device register writes.

Everything here is a pure function of :class:`AcquisitionConfig` (plus the
device metadata used to size the capture window); the session is the only
place that actually writes the resulting commands.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Tuple

from ..config import TRIGGER_STAGES, AcquisitionConfig, ClockSource, TriggerStage, replicate_demux
from ..protocol.codec import (
    FLAG_DEMUX,
    FLAG_EXTERNAL,
    FLAG_FILTER,
    FLAG_GROUPS_DISABLED,
    FLAG_INVERTED,
    FLAG_NUMBER_SCHEME,
    FLAG_RLE,
    FLAG_TEST_MODE,
    SET_DIVIDER,
    SET_FLAGS,
    SET_SIZE,
    SET_TRIGGER_CONFIG,
    SET_TRIGGER_MASK,
    SET_TRIGGER_VALUE,
    TRIGGER_CAPTURE,
    TRIGGER_CHANNELMASK,
    TRIGGER_DELAYMASK,
    TRIGGER_LEVELMASK,
    TRIGGER_SERIAL,
    Command,
)
from ..protocol.metadata import DeviceMetadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CaptureWindow:
    """Buffer geometry of one run."""

    read_counter: int
    stop_counter: int
    samples: int
    channels: int

    @property
    def group_count(self) -> int:
        return min((self.channels + 7) // 8, 4)


@dataclass(frozen=True, slots=True)
class DeviceConfiguration:
    """Ordered register writes together with the words they carry."""

    commands: Tuple[Command, ...]
    flags: int
    size: int
    effective_stop_counter: int


def plan_capture(config: AcquisitionConfig, metadata: DeviceMetadata) -> CaptureWindow:
    """Size the capture against what the device reports it can hold."""

    read_counter = metadata.get_sample_memory_depth(config.size)
    stop_counter = int(read_counter * config.ratio)
    if config.demux_active:
        channels = metadata.get_probe_count(16)
        samples = read_counter & 0xFFFF8
    else:
        channels = metadata.get_probe_count(32)
        samples = read_counter & 0xFFFFC
    return CaptureWindow(
        read_counter=read_counter,
        stop_counter=stop_counter,
        samples=samples,
        channels=channels,
    )


def pack_trigger_config(stage: TriggerStage) -> int:
    word = stage.delay & TRIGGER_DELAYMASK
    word |= (stage.level << 16) & TRIGGER_LEVELMASK
    if stage.serial:
        word |= (stage.channel << 20) & TRIGGER_CHANNELMASK
        word |= TRIGGER_SERIAL
    if stage.start_capture:
        word |= TRIGGER_CAPTURE
    return word


def build_trigger_commands(config: AcquisitionConfig) -> List[Command]:
    """Mask, value and config writes for all stages.

    With triggering disabled every stage captures immediately, whatever
    was stored for it. In demux mode the low 16 bits of mask and value are
    mirrored into the high half.
    """

    commands: List[Command] = []
    for index in range(TRIGGER_STAGES):
        offset = 4 * index
        if config.trigger_enabled:
            stage = config.trigger_stages[index]
            mask, value, trigger_config = stage.mask, stage.value, pack_trigger_config(stage)
            if config.demux_active:
                mask, value = replicate_demux(mask), replicate_demux(value)
        else:
            mask, value, trigger_config = 0, 0, TRIGGER_CAPTURE
        commands.append(Command(SET_TRIGGER_MASK | offset, mask))
        commands.append(Command(SET_TRIGGER_VALUE | offset, value))
        commands.append(Command(SET_TRIGGER_CONFIG | offset, trigger_config))
    return commands


def compute_flags(config: AcquisitionConfig) -> int:
    flags = 0
    if config.clock_source.is_external:
        flags |= FLAG_EXTERNAL
        if config.clock_source is ClockSource.EXTERNAL_FALLING:
            flags |= FLAG_INVERTED

    enabled = 0
    for index, group in enumerate(config.enabled_groups):
        if group:
            enabled |= 1 << index
    flags |= ~(enabled << 2) & FLAG_GROUPS_DISABLED

    if config.demux_active:
        flags |= FLAG_DEMUX
        flags &= ~FLAG_FILTER
    elif config.filter_enabled and config.filter_available:
        flags |= FLAG_FILTER
        flags &= ~FLAG_DEMUX

    if config.rle_enabled:
        flags |= FLAG_RLE
    if config.alt_number_scheme:
        flags |= FLAG_NUMBER_SCHEME
    if config.test_mode:
        flags |= FLAG_TEST_MODE
    return flags


def compute_size_word(stop_counter: int, read_counter: int, demux: bool) -> int:
    """Pack stop and read counters into the SET_SIZE register."""

    if demux:
        word = (((stop_counter - 8) & 0x7FFF8) << 13) | (((read_counter & 0x7FFF8) >> 3) - 1)
    else:
        word = (((stop_counter - 4) & 0x3FFFC) << 14) | (((read_counter & 0x3FFFC) >> 2) - 1)
    return word & 0xFFFFFFFF


def configure_device(config: AcquisitionConfig, stop_counter: int, read_counter: int) -> DeviceConfiguration:
    """Build the writes for one run: triggers, divider, size, then flags."""

    commands = build_trigger_commands(config)
    effective_stop = stop_counter if config.trigger_enabled else read_counter
    flags = compute_flags(config)
    size = compute_size_word(effective_stop, read_counter, config.demux_active)
    logger.debug("Flags: 0b%s", format(flags, "b"))
    commands.append(Command(SET_DIVIDER, config.divider))
    commands.append(Command(SET_SIZE, size))
    commands.append(Command(SET_FLAGS, flags))
    return DeviceConfiguration(
        commands=tuple(commands),
        flags=flags,
        size=size,
        effective_stop_counter=effective_stop,
    )
