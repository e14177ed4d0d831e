"""CLI entry point for capturing a trace from an Open Bench Logic Sniffer."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from ..acquisition import AcquisitionEngine, CaptureResult
from ..config import AppConfig, ClockSource, load_config
from ..device import DeviceSession
from ..errors import (
    CaptureAbortedError,
    CaptureCancelledError,
    DeviceConnectionError,
    ObsoleteFirmwareError,
    ProtocolError,
)
from ..hardware import list_ports
from ..protocol.metadata import DeviceMetadata

logger = logging.getLogger(__name__)


def _int_auto(value: str) -> int:
    """Parse decimal, ``0x`` hex or ``0b`` binary integers."""

    return int(value, 0)


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Capture a trace from a SUMP compatible logic analyzer.',
        epilog='Settings from --config are applied first, command-line options override them.',
    )
    parser.add_argument('--list-ports', action='store_true', help='List serial ports and exit.')
    parser.add_argument('--config', type=str, help='Path to a JSON, TOML or YAML configuration file.')
    parser.add_argument('--port', type=str, help='Serial port the analyzer is attached to.')
    parser.add_argument('--baud', type=int, help='Override baud rate.')
    parser.add_argument('--sim', action='store_true', help='Use the built-in simulated analyzer.')
    parser.add_argument('--sim-pattern', type=str, help='Data pattern produced by the simulated analyzer.')
    parser.add_argument('--rate', type=int, help='Sample rate in Hz (above 100 MHz enables demux).')
    parser.add_argument('--size', type=int, help='Number of samples to capture.')
    parser.add_argument('--ratio', type=float, help='Fraction of the buffer captured after the trigger.')
    parser.add_argument('--channels', type=_int_auto, help='Enabled channel mask, e.g. 0x000000FF.')
    parser.add_argument(
        '--clock',
        choices=[source.value for source in ClockSource],
        help='Clock source (default: internal).',
    )
    parser.add_argument('--rle', action='store_true', help='Enable run length encoding.')
    parser.add_argument('--filter', action='store_true', help='Enable the noise filter (non-demux only).')
    parser.add_argument('--trigger-mask', type=_int_auto, help='Parallel trigger mask for stage 0.')
    parser.add_argument('--trigger-value', type=_int_auto, help='Parallel trigger value for stage 0.')
    parser.add_argument('--metadata-only', action='store_true', help='Identify the device, print metadata and exit.')
    parser.add_argument('--verbose', '-v', action='store_true', help='Log every command sent to the device.')
    parser.add_argument('--log-file', type=str, help='Also write log output to this file.')
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    device = config.device
    acquisition = config.acquisition

    if args.sim:
        device = device.with_overrides(transport='sim')
    if args.sim_pattern:
        device = device.with_overrides(sim_pattern=args.sim_pattern)
    if args.port:
        device = device.with_overrides(port=args.port)
    if args.baud is not None and args.baud > 0:
        device = device.with_overrides(baud=args.baud)
    if args.clock:
        acquisition.clock_source = ClockSource(args.clock)
    if args.rate is not None:
        acquisition.set_rate(args.rate)
    if args.size is not None:
        acquisition.set_size(args.size)
    if args.ratio is not None:
        acquisition.set_ratio(args.ratio)
    if args.channels is not None:
        acquisition.set_enabled_channels(args.channels)
    if args.rle:
        acquisition.rle_enabled = True
    if args.filter:
        acquisition.filter_enabled = True
    if args.trigger_mask is not None:
        acquisition.trigger_enabled = True
        acquisition.set_parallel_trigger(0, args.trigger_mask, args.trigger_value or 0)
    config.device = device
    return config


def print_ports() -> int:
    ports = list_ports()
    print('Serial ports:')
    if not ports:
        print('  (none)')
        return 1
    for port in ports:
        print(f'  {port.device}  {port.description or "(no description)"}')
    return 0


def print_metadata(metadata: DeviceMetadata) -> None:
    print('Device metadata:')
    if not metadata:
        print('  (none reported)')
        return
    for name, value in metadata.to_dict().items():
        print(f'  {name:<18} {value}')


def print_summary(result: CaptureResult) -> None:
    rate = f'{result.sample_rate} Hz' if result.sample_rate is not None else 'external clock'
    trigger = result.trigger_index if result.has_trigger_data else 'n/a'
    print('Capture summary:')
    print(f'  samples          {len(result)}')
    print(f'  absolute length  {result.absolute_length}')
    print(f'  sample rate      {rate}')
    print(f'  channels         {result.channel_count} (mask 0x{result.enabled_channels:08x})')
    print(f'  trigger index    {trigger}')
    print(f'  run length enc.  {"yes" if result.rle else "no"}')


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    if args.list_ports:
        return print_ports()

    config_path = Path(args.config) if args.config else None
    if config_path is not None and not config_path.exists():
        print(f'Config file not found: {config_path}', file=sys.stderr)
        return 1
    try:
        config = _apply_overrides(load_config(config_path), args)
    except (TypeError, ValueError, IndexError) as exc:
        print(f'Invalid configuration: {exc}', file=sys.stderr)
        return 2

    session = DeviceSession(config.device)
    try:
        session.attach()
    except DeviceConnectionError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    try:
        if args.metadata_only:
            session.detect()
            print_metadata(session.fetch_metadata())
            return 0

        engine = AcquisitionEngine(session, config.acquisition)

        def signal_handler(signum, frame):
            print(f'Received signal {signum}, cancelling capture...')
            engine.stop()

        signal.signal(signal.SIGINT, signal_handler)

        reported = [-1]

        def _progress(percent: int) -> None:
            step = percent // 10
            if step != reported[0]:
                reported[0] = step
                logger.info('Capture progress %d%%', percent)

        result = engine.run(_progress)
        print_summary(result)
        return 0
    except ObsoleteFirmwareError as exc:
        print(f'{exc}. Please upgrade the analyzer firmware.', file=sys.stderr)
        return 1
    except ProtocolError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except CaptureCancelledError:
        print('Capture cancelled.')
        return 130
    except (CaptureAbortedError, DeviceConnectionError) as exc:
        print(f'Capture aborted: {exc}', file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, signal.default_int_handler)
        session.detach()


if __name__ == '__main__':
    raise SystemExit(main(sys.argv[1:]))
