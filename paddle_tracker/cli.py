"""
Paddle tracker command line

Usage:
    paddle-tracker run [--device-name NAME ...] [--duration SECONDS]
    paddle-tracker scan [--timeout SECONDS]
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from bleak import BleakScanner
from scipy.spatial.transform import Rotation

from .ble_transport import BleakTransport
from .config import TrackerConfig
from .position import PositionMapper
from .tracker import PaddleTracker

logger = logging.getLogger(__name__)

REPORT_INTERVAL = 1.0  # seconds between console status lines


def build_parser() -> argparse.ArgumentParser:
    defaults = TrackerConfig()

    parser = argparse.ArgumentParser(
        prog='paddle-tracker',
        description='BLE paddle IMU tracker'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Connect to the paddle and stream orientation')
    run.add_argument('--config', help='JSON configuration file')
    run.add_argument(
        '--device-name',
        action='append',
        dest='device_names',
        help=f'Accepted device name, repeatable (default: {", ".join(defaults.link.device_names)})'
    )
    run.add_argument('--scan-timeout', type=float,
                     help=f'Seconds per scan stage (default: {defaults.link.scan_timeout})')
    run.add_argument('--retries', type=int,
                     help=f'Scan retries before giving up (default: {defaults.link.max_scan_retries})')
    run.add_argument('--packet-timeout', type=float,
                     help=f'Silence before reconnecting (default: {defaults.link.packet_timeout})')
    run.add_argument('--duration', type=float, help='Stop after this many seconds')

    scan = sub.add_parser('scan', help='List advertising BLE devices')
    scan.add_argument('--timeout', type=float, default=10.0, help='Scan duration in seconds')

    return parser


def config_from_args(args) -> TrackerConfig:
    config = TrackerConfig.from_file(args.config) if args.config else TrackerConfig()

    if args.device_names:
        config.link.device_names = tuple(args.device_names)
    if args.scan_timeout is not None:
        config.link.scan_timeout = args.scan_timeout
    if args.retries is not None:
        config.link.max_scan_retries = args.retries
    if args.packet_timeout is not None:
        config.link.packet_timeout = args.packet_timeout

    return config


def format_report(tracker: PaddleTracker) -> str:
    link = tracker.link
    if not tracker.has_valid_data():
        return f"[{link.phase.value}] {link.status}"

    w, x, y, z = tracker.orientation()
    roll, pitch, yaw = Rotation.from_quat([x, y, z, w]).as_euler('xyz', degrees=True)
    return (f"[{link.phase.value}] R: {roll:6.1f}°  P: {pitch:6.1f}°  Y: {yaw:6.1f}°  "
            f"pos: {tracker.position():.2f}  pkts: {tracker.decoder.packet_count}")


async def run_tracker(config: TrackerConfig, duration: Optional[float] = None):
    transport = BleakTransport()
    tracker = PaddleTracker(transport, config)

    async def report():
        while True:
            await asyncio.sleep(REPORT_INTERVAL)
            print(format_report(tracker))

    reporter = asyncio.create_task(report())
    try:
        await tracker.run(duration)
    finally:
        reporter.cancel()
        await transport.aclose()


async def scan_devices(timeout: float):
    print(f"Scanning for BLE devices for {timeout:.0f} seconds...")
    print("=" * 60)

    devices = await BleakScanner.discover(timeout=timeout)

    if not devices:
        print("No BLE devices found!")
        return

    print(f"\nFound {len(devices)} device(s):\n")

    for device in devices:
        print(f"Name: {device.name if device.name else '(Unknown)'}")
        print(f"Address: {device.address}")
        print("-" * 60)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    try:
        if args.command == 'scan':
            asyncio.run(scan_devices(args.timeout))
            return 0

        try:
            config = config_from_args(args)
            PositionMapper(config.position)
        except ValueError as e:
            logger.error(f"Invalid configuration: {e}")
            return 2

        asyncio.run(run_tracker(config, args.duration))
    except KeyboardInterrupt:
        print("\nExiting...")

    return 0


if __name__ == "__main__":
    sys.exit(main())
