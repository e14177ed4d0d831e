"""Configuration management for the logic analyzer capture core."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

CLOCK = 100_000_000  # device base clock in Hz
TRIGGER_STAGES = 4
CHANNEL_GROUPS = 4
MIN_SAMPLE_COUNT = 4
MAX_SAMPLE_COUNT = 256 * 1024

SUPPORTED_TRANSPORTS = {"serial", "sim"}
SUPPORTED_PARITIES = {"N", "E", "O", "M", "S"}
SIM_PATTERNS = ("sawtooth", "zeros", "sine", "odd-even", "odd-quarter", "random")

# Maximum sample counts the OLS selects on its own for 1, 2 and 3-4 enabled groups.
_GROUP_SAMPLE_LIMITS = {1: 24576, 2: 12288, 3: 6144, 4: 6144}


class ClockSource(Enum):
    """Where the sample clock comes from."""

    INTERNAL = "internal"
    EXTERNAL_RISING = "external_rising"
    EXTERNAL_FALLING = "external_falling"

    @property
    def is_external(self) -> bool:
        return self is not ClockSource.INTERNAL


def _coerce_clock_source(value: Any) -> ClockSource:
    if isinstance(value, ClockSource):
        return value
    candidate = str(value or "internal").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return ClockSource(candidate)
    except ValueError as exc:
        allowed = ", ".join(source.value for source in ClockSource)
        raise ValueError(f"clock_source must be one of {allowed}") from exc


def replicate_demux(word: int) -> int:
    """Mirror a 16-bit pattern into both halves of a 32-bit register."""

    low = word & 0xFFFF
    return low | (low << 16)


@dataclass(slots=True)
class TriggerStage:
    """A single trigger stage as stored for the next capture."""

    mask: int = 0
    value: int = 0
    delay: int = 0
    level: int = 0
    channel: int = 0
    serial: bool = False
    start_capture: bool = False

    def __post_init__(self) -> None:
        self.mask = int(self.mask) & 0xFFFFFFFF
        self.value = int(self.value) & 0xFFFFFFFF
        self.delay = int(self.delay) & 0xFFFF
        if not 0 <= int(self.level) <= 3:
            raise ValueError("trigger level must be between 0 and 3")
        self.level = int(self.level)
        if not 0 <= int(self.channel) <= 31:
            raise ValueError("serial trigger channel must be between 0 and 31")
        self.channel = int(self.channel)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': 'serial' if self.serial else 'parallel',
            'mask': self.mask,
            'value': self.value,
            'delay': self.delay,
            'level': self.level,
            'channel': self.channel,
            'start_capture': self.start_capture,
        }


@dataclass(slots=True)
class DeviceConfig:
    """Low-level transport parameters for SUMP compatible analyzers."""

    port: Optional[str] = None
    transport: str = "serial"
    baud: int = 115200
    data_bits: int = 8
    stop_bits: float = 1.0
    parity: str = "N"
    xonxoff: bool = True
    read_timeout_ms: int = 250
    integer_timeout_ms: int = 100
    write_timeout_ms: int = 500
    detect_attempts: int = 3
    sim_pattern: str = "sawtooth"
    sim_trigger_delay_s: float = 0.0

    def __post_init__(self) -> None:
        self.transport = (self.transport or "serial").strip().lower()
        if self.transport not in SUPPORTED_TRANSPORTS:
            allowed = ", ".join(sorted(SUPPORTED_TRANSPORTS))
            raise ValueError(f"transport must be one of {allowed}")
        self.parity = (self.parity or "N").strip().upper()
        if self.parity not in SUPPORTED_PARITIES:
            allowed = ", ".join(sorted(SUPPORTED_PARITIES))
            raise ValueError(f"parity must be one of {allowed}")
        self.read_timeout_ms = self._positive_int(self.read_timeout_ms, 250)
        self.integer_timeout_ms = self._positive_int(self.integer_timeout_ms, 100)
        self.write_timeout_ms = self._positive_int(self.write_timeout_ms, 500)
        self.detect_attempts = self._positive_int(self.detect_attempts, 3)
        self.sim_pattern = (self.sim_pattern or "sawtooth").strip().lower()
        if self.sim_pattern not in SIM_PATTERNS:
            raise ValueError(f"sim_pattern must be one of {', '.join(SIM_PATTERNS)}")
        try:
            delay = float(self.sim_trigger_delay_s)
        except (TypeError, ValueError):
            delay = 0.0
        self.sim_trigger_delay_s = max(delay, 0.0)

    @staticmethod
    def _positive_int(value: Any, default: int) -> int:
        try:
            candidate = int(value)
        except (TypeError, ValueError):
            return default
        return candidate if candidate > 0 else default

    @property
    def read_timeout_s(self) -> float:
        return self.read_timeout_ms / 1000.0

    @property
    def integer_timeout_s(self) -> float:
        return self.integer_timeout_ms / 1000.0

    @property
    def write_timeout_s(self) -> float:
        return self.write_timeout_ms / 1000.0

    def with_overrides(self, **changes: Any) -> "DeviceConfig":
        """Return a validated copy with *changes* applied."""

        return replace(self, **changes)


@dataclass(slots=True)
class AcquisitionConfig:
    '''Clock, channel, trigger and buffer settings for the next capture.

    Setters mirror the knobs of the device. The object is mutated between
    captures only; a run works on a ``snapshot()``.
    '''

    clock_source: ClockSource = ClockSource.INTERNAL
    enabled_channels: int = 0xFFFFFFFF
    demux: bool = False
    divider: int = 0
    ratio: float = 0.5
    size: int = 512
    filter_enabled: bool = False
    rle_enabled: bool = False
    alt_number_scheme: bool = False
    test_mode: bool = False
    trigger_enabled: bool = False
    trigger_stages: List[TriggerStage] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.clock_source = _coerce_clock_source(self.clock_source)
        self.enabled_channels = int(self.enabled_channels) & 0xFFFFFFFF
        try:
            divider = int(self.divider)
        except (TypeError, ValueError):
            divider = 0
        self.divider = max(divider, 0)
        try:
            ratio = float(self.ratio)
        except (TypeError, ValueError):
            ratio = 0.5
        self.ratio = min(max(ratio, 0.0), 1.0)
        self.size = self._clamp_size(self.size)
        stages: List[TriggerStage] = []
        for entry in self.trigger_stages:
            if isinstance(entry, TriggerStage):
                stages.append(entry)
            elif isinstance(entry, dict):
                stages.append(_stage_from_dict(entry))
            else:
                raise TypeError(f"Unsupported trigger stage payload: {type(entry).__name__}")
        if len(stages) > TRIGGER_STAGES:
            raise ValueError(f"at most {TRIGGER_STAGES} trigger stages are supported")
        while len(stages) < TRIGGER_STAGES:
            stages.append(TriggerStage())
        self.trigger_stages = stages

    @staticmethod
    def _clamp_size(value: Any) -> int:
        try:
            size = int(value)
        except (TypeError, ValueError):
            size = 512
        return min(max(size, MIN_SAMPLE_COUNT), MAX_SAMPLE_COUNT)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AcquisitionConfig":
        data = dict(payload or {})
        rate = data.pop('rate', None)
        config = cls(**data)
        if rate is not None:
            config.set_rate(int(rate))
        return config

    # -- derived state ---------------------------------------------------

    @property
    def enabled_groups(self) -> Tuple[bool, ...]:
        return tuple(((self.enabled_channels >> (8 * i)) & 0xFF) > 0 for i in range(CHANNEL_GROUPS))

    @property
    def demux_active(self) -> bool:
        """Demultiplexing only applies to the internal clock."""

        return self.demux and self.clock_source is ClockSource.INTERNAL

    @property
    def available_channel_count(self) -> int:
        return 16 if self.demux_active else 32

    @property
    def filter_available(self) -> bool:
        return not self.demux and self.clock_source is ClockSource.INTERNAL

    @property
    def maximum_rate(self) -> int:
        return 2 * CLOCK

    @property
    def sample_rate(self) -> Optional[int]:
        """Effective sample rate in Hz, ``None`` when an external clock is used."""

        if self.clock_source is not ClockSource.INTERNAL:
            return None
        if self.demux:
            return 2 * CLOCK // (self.divider + 1)
        return CLOCK // (self.divider + 1)

    @property
    def max_sample_count(self) -> Optional[int]:
        enabled = sum(1 for group in self.enabled_groups if group)
        return _GROUP_SAMPLE_LIMITS.get(enabled)

    # -- setters ---------------------------------------------------------

    def set_rate(self, rate: int) -> None:
        """Select demux mode and divider for *rate*, a divisor of 200 MHz."""

        if rate <= 0:
            raise ValueError("sample rate must be positive")
        if rate > CLOCK:
            self.demux = True
            self.divider = max((2 * CLOCK // rate) - 1, 0)
        else:
            self.demux = False
            self.divider = (CLOCK // rate) - 1

    def set_size(self, size: int) -> None:
        self.size = self._clamp_size(size)

    def set_ratio(self, ratio: float) -> None:
        self.ratio = min(max(float(ratio), 0.0), 1.0)

    def set_enabled_channels(self, mask: int) -> None:
        self.enabled_channels = int(mask) & 0xFFFFFFFF

    def set_parallel_trigger(
        self,
        stage: int,
        mask: int,
        value: int,
        level: int = 0,
        delay: int = 0,
        start_capture: bool = True,
    ) -> TriggerStage:
        """Match *value* on the channels selected by *mask*.

        In demux mode each probe line carries two samples, so the 16-bit
        pattern is stored in both register halves.
        """

        self._check_stage(stage)
        if self.demux:
            mask, value = replicate_demux(mask), replicate_demux(value)
        entry = TriggerStage(
            mask=mask,
            value=value,
            delay=delay,
            level=level,
            start_capture=start_capture,
        )
        self.trigger_stages[stage] = entry
        return entry

    def set_serial_trigger(
        self,
        stage: int,
        channel: int,
        mask: int,
        value: int,
        level: int = 0,
        delay: int = 0,
        start_capture: bool = True,
    ) -> TriggerStage:
        """Match a 32 sample shift register built from a single *channel*."""

        self._check_stage(stage)
        if self.demux:
            mask, value = replicate_demux(mask), replicate_demux(value)
        entry = TriggerStage(
            mask=mask,
            value=value,
            delay=delay,
            level=level,
            channel=channel,
            serial=True,
            start_capture=start_capture,
        )
        self.trigger_stages[stage] = entry
        return entry

    @staticmethod
    def _check_stage(stage: int) -> None:
        if not 0 <= stage < TRIGGER_STAGES:
            raise IndexError(f"trigger stage {stage} out of range (0-{TRIGGER_STAGES - 1})")

    def snapshot(self) -> "AcquisitionConfig":
        """Return an independent copy for an in-flight capture."""

        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'clock_source': self.clock_source.value,
            'enabled_channels': self.enabled_channels,
            'demux': self.demux,
            'divider': self.divider,
            'ratio': self.ratio,
            'size': self.size,
            'filter_enabled': self.filter_enabled,
            'rle_enabled': self.rle_enabled,
            'alt_number_scheme': self.alt_number_scheme,
            'test_mode': self.test_mode,
            'trigger_enabled': self.trigger_enabled,
            'trigger_stages': [stage.to_dict() for stage in self.trigger_stages],
        }


def _stage_from_dict(payload: Dict[str, Any]) -> TriggerStage:
    data = dict(payload)
    mode = str(data.pop('mode', 'parallel')).strip().lower()
    if mode not in {'parallel', 'serial'}:
        raise ValueError("trigger stage mode must be 'parallel' or 'serial'")
    data.setdefault('serial', mode == 'serial')
    return TriggerStage(**data)


@dataclass(slots=True)
class AppConfig:
    """Top-level configuration bundle."""

    device: DeviceConfig = field(default_factory=DeviceConfig)
    acquisition: AcquisitionConfig = field(default_factory=AcquisitionConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        """Create a configuration instance from a nested dictionary."""

        def _section(name: str) -> Dict[str, Any]:
            data = payload.get(name, {}) if payload else {}
            if isinstance(data, dict):
                return data
            raise TypeError(f"Expected mapping for section '{name}', got {type(data).__name__}")

        return cls(
            device=DeviceConfig(**_section("device")),
            acquisition=AcquisitionConfig.from_dict(_section("acquisition")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return a serialisable representation of the configuration."""

        device = {name: getattr(self.device, name) for name in self.device.__dataclass_fields__}  # type: ignore[attr-defined]
        return {
            'device': device,
            'acquisition': self.acquisition.to_dict(),
        }


def load_config(path: Optional[Path]) -> AppConfig:
    """Load configuration from *path* if provided, otherwise return defaults."""

    if path is None:
        return AppConfig()
    resolved = path.expanduser()
    if not resolved.exists():
        return AppConfig()
    payload: Dict[str, Any]
    suffix = resolved.suffix.lower()
    if suffix in {".json", ".jsn"}:
        payload = _load_json(resolved)
    elif suffix in {".toml", ".tml"}:
        payload = _load_toml(resolved)
    elif suffix in {".yaml", ".yml"}:
        payload = _load_yaml(resolved)
    else:
        raise ValueError(f"Unsupported configuration format: {resolved.suffix}")
    return AppConfig.from_dict(payload)


def _load_json(path: Path) -> Dict[str, Any]:
    import json

    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _load_toml(path: Path) -> Dict[str, Any]:
    import tomllib

    with path.open("rb") as handle:
        return tomllib.load(handle)


def _load_yaml(path: Path) -> Dict[str, Any]:
    import yaml

    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}
