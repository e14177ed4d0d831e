from __future__ import annotations

import logging

import pytest

from logicsniffer.acquisition.reconstruct import (
    CaptureResult,
    decode_plain,
    decode_rle,
    plain_trigger_index,
    reconstruct,
)
from logicsniffer.config import AcquisitionConfig, ClockSource


def count(value: int) -> int:
    return 0x80000000 | value


def test_rle_count_advances_time_before_next_sample() -> None:
    samples, timestamps, length, _ = decode_rle([5, count(3), 7], stop_counter=0)
    assert samples == [5, 7]
    assert timestamps == [0, 4]
    assert length == 5


def test_rle_duplicate_count_is_skipped(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="logicsniffer.acquisition.reconstruct"):
        samples, timestamps, length, _ = decode_rle([count(5), count(5), 9], stop_counter=0)
    assert samples == [9]
    assert timestamps == [5]
    assert length == 6
    assert "Duplicate RLE count" in caplog.text


def test_rle_different_consecutive_counts_both_apply() -> None:
    samples, timestamps, _, _ = decode_rle([1, count(2), count(3), 4], stop_counter=0)
    assert samples == [1, 4]
    assert timestamps == [0, 6]


def test_rle_timestamps_never_decrease() -> None:
    buffer = [3, count(10), 3, 4, count(1), 4, count(1), 5]
    _, timestamps, _, _ = decode_rle(buffer, stop_counter=0)
    assert timestamps == sorted(timestamps)


def test_rle_trigger_position_counts_decoded_samples() -> None:
    buffer = [1, count(4), 2, 3, count(2), 4, 5]
    _, _, _, position = decode_rle(buffer, stop_counter=6)
    # first data word at raw index >= 4 is raw index 5, the fourth decoded sample
    assert position == 3


def test_rle_trigger_not_found() -> None:
    _, _, _, position = decode_rle([1, 2, count(8)], stop_counter=10)
    assert position is None


def test_plain_decode_is_passthrough() -> None:
    samples, timestamps, length = decode_plain([9, 8, 7])
    assert samples == [9, 8, 7]
    assert timestamps == [0, 1, 2]
    assert length == 3


def test_empty_buffer_is_rejected() -> None:
    with pytest.raises(ValueError):
        decode_plain([])
    with pytest.raises(ValueError):
        decode_rle([], stop_counter=0)


@pytest.mark.parametrize(
    ("divider", "demux", "expected"),
    [
        (0, False, 1024 - 512 - 3 - 4),
        (1, False, 1024 - 512 - 3 - 2),
        (4, False, 1024 - 512 - 3),
        (0, True, 1024 - 512 - 3 - 4 - 5),
    ],
)
def test_plain_trigger_index_formula(divider: int, demux: bool, expected: int) -> None:
    assert plain_trigger_index(1024, 512, divider, demux) == expected


def test_reconstruct_plain_with_trigger() -> None:
    config = AcquisitionConfig(trigger_enabled=True, divider=9, enabled_channels=0xFF)
    result = reconstruct(list(range(16)), config, read_counter=16, stop_counter=8, channel_count=32)

    assert result.trigger_index == 16 - 8 - 3 - 0
    assert result.sample_rate == 10_000_000
    assert result.absolute_length == 16
    assert result.enabled_channels == 0xFF
    assert not result.has_timing_data


def test_reconstruct_rle_trigger_is_one_before_position() -> None:
    config = AcquisitionConfig(trigger_enabled=True, rle_enabled=True)
    buffer = [1, count(4), 2, 3, count(2), 4, 5]
    result = reconstruct(buffer, config, read_counter=7, stop_counter=6, channel_count=32)

    assert result.samples == [1, 2, 3, 4, 5]
    assert result.trigger_index == 2
    assert result.has_timing_data
    assert result.raw_length == 7


def test_reconstruct_without_trigger_reports_none() -> None:
    config = AcquisitionConfig(clock_source=ClockSource.EXTERNAL_RISING)
    result = reconstruct([1, 2, 3, 4], config, read_counter=4, stop_counter=4, channel_count=32)
    assert result.trigger_index is None
    assert not result.has_trigger_data
    assert result.sample_rate is None


def test_capture_result_helpers() -> None:
    result = CaptureResult(
        samples=[0b01, 0b10, 0b11],
        timestamps=[0, 5, 9],
        trigger_index=None,
        sample_rate=None,
        channel_count=32,
        enabled_channels=0xFFFFFFFF,
        absolute_length=10,
        rle=True,
    )

    assert result.sample_index(0) == 0
    assert result.sample_index(4) == 0
    assert result.sample_index(5) == 1
    assert result.sample_index(100) == 2
    assert result.channel_values(0) == [1, 0, 1]
    assert result.channel_values(1) == [0, 1, 1]
    with pytest.raises(ValueError):
        result.channel_values(32)


def test_capture_result_requires_parallel_sequences() -> None:
    with pytest.raises(ValueError):
        CaptureResult(
            samples=[1, 2],
            timestamps=[0],
            trigger_index=None,
            sample_rate=None,
            channel_count=32,
            enabled_channels=0,
            absolute_length=2,
        )
