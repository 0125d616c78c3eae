"""
Paddle IMU packet decoding

Frame layout (13 bytes, little-endian):
    byte 0       reserved
    bytes 1-6    accel x, y, z   int16, milli-g
    bytes 7-12   gyro x, y, z    int16, 0.1 deg/s
"""

import logging
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

PACKET_SIZE = 13
ACCEL_SCALE = 1000.0
GYRO_SCALE = 10.0

_ACCEL_OFFSET = 1
_GYRO_OFFSET = 7

Vector3 = Tuple[float, float, float]


@dataclass(frozen=True)
class RawFrame:
    """Raw notification payload tagged with the link it arrived on"""
    source_id: str
    data: bytes


@dataclass(frozen=True)
class ImuSample:
    """Decoded sensor reading"""
    source_id: str
    accel: Vector3  # g
    gyro: Vector3   # deg/s


def parse_packet(data: bytes, source_id: str = "") -> ImuSample:
    """Parse a 13-byte sensor packet"""
    if len(data) != PACKET_SIZE:
        raise ValueError(f"Invalid packet size: {len(data)}")

    accel_x, accel_y, accel_z = struct.unpack_from('<hhh', data, _ACCEL_OFFSET)
    gyro_x, gyro_y, gyro_z = struct.unpack_from('<hhh', data, _GYRO_OFFSET)

    return ImuSample(
        source_id=source_id,
        accel=(accel_x / ACCEL_SCALE, accel_y / ACCEL_SCALE, accel_z / ACCEL_SCALE),
        gyro=(gyro_x / GYRO_SCALE, gyro_y / GYRO_SCALE, gyro_z / GYRO_SCALE),
    )


def build_packet(accel: Vector3, gyro: Vector3) -> bytes:
    """Encode a packet in the device's wire format (used by simulators and tests)"""
    return struct.pack(
        '<B6h',
        0,
        *(int(round(v * ACCEL_SCALE)) for v in accel),
        *(int(round(v * GYRO_SCALE)) for v in gyro),
    )


class PacketDecoder:
    """
    Turns raw frames into ImuSamples.

    Frames of the wrong size are expected noise on the link: they are
    counted and dropped without any other side effect.
    """

    def __init__(self):
        self.packet_count = 0
        self.malformed_count = 0
        self.error_count = 0

    def decode(self, frame: RawFrame) -> Optional[ImuSample]:
        if len(frame.data) != PACKET_SIZE:
            self.malformed_count += 1
            return None

        try:
            sample = parse_packet(frame.data, frame.source_id)
        except (ValueError, struct.error, TypeError) as e:
            logger.error(f"Data parse error on {frame.source_id}: {e}", exc_info=True)
            self.error_count += 1
            return None

        self.packet_count += 1
        return sample

    def get_stats(self) -> dict:
        return {
            'packets': self.packet_count,
            'malformed': self.malformed_count,
            'errors': self.error_count,
        }
