"""
Paddle Tracker
BLE IMU paddle acquisition and orientation fusion

Architecture:
- LinkAcquisition: scan -> service -> characteristic -> subscribe state machine
  over a polled transport, with bounded retries and a data-silence watchdog
- PacketDecoder: 13-byte frames to accelerometer / gyroscope samples
- OrientationEngine: gyro integration + Madgwick gravity correction,
  stability detection and automatic realignment per source
- PositionMapper: orientation to a [0, 1] control value with a center dead-zone

Usage:
    tracker = PaddleTracker(BleakTransport())
    await tracker.run()
"""

from .config import LinkConfig, OrientationConfig, PositionConfig, TrackerConfig
from .link import LinkAcquisition, LinkPhase, SubscriptionResult
from .orientation import OrientationEngine
from .packet import ImuSample, PacketDecoder, RawFrame, parse_packet
from .position import PositionMapper
from .tracker import PaddleTracker
from .transport import BleData, DeviceUpdate, ScanStatus, Transport
from .uuids import normalize_uuid

__all__ = [
    'BleData',
    'DeviceUpdate',
    'ImuSample',
    'LinkAcquisition',
    'LinkConfig',
    'LinkPhase',
    'OrientationConfig',
    'OrientationEngine',
    'PacketDecoder',
    'PaddleTracker',
    'PositionConfig',
    'PositionMapper',
    'RawFrame',
    'ScanStatus',
    'SubscriptionResult',
    'TrackerConfig',
    'Transport',
    'normalize_uuid',
    'parse_packet',
]

__version__ = '1.0.0'
