"""
Paddle tracker configuration
Link, orientation fusion and position mapping parameters
"""

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Tuple, Union


@dataclass
class LinkConfig:
    """BLE acquisition parameters"""

    # Accepted advertised names (exact match)
    device_names: Tuple[str, ...] = ("Paddle 1", "Arduino")
    service_uuid: str = "e7f94bb9-9b07-5db7-8fbb-6b1cdbb5399e"
    characteristic_uuid: str = "12340000-0000-0000-0000-000000000000"

    # Source id attached to every sample from this link
    source_id: str = "Player 1"

    scan_timeout: float = 30.0  # seconds per scan stage
    max_scan_retries: int = 3
    packet_timeout: float = 5.0  # seconds of silence before a forced restart
    connected_message_duration: float = 5.0


@dataclass
class OrientationConfig:
    """Orientation fusion parameters"""

    # Sensor mounting: sign applied to x, y, z of both accel and gyro
    axis_signs: Tuple[float, float, float] = (-1.0, 1.0, -1.0)
    sensitivity: float = 1.0  # gyro gain

    # Fusion
    madgwick_beta: float = 0.001
    complementary_alpha: float = 0.3  # 0 = pure gyro, 1 = pure Madgwick
    drift_compensation_rate: float = 0.02
    bias_alpha: float = 0.01  # gyro bias EMA weight while stable

    # Adaptive low-pass (cutoff rises with angular rate)
    adaptive_lowpass: bool = False
    lowpass_min_cutoff: float = 1.0  # Hz
    lowpass_cutoff_slope: float = 0.5  # Hz per rad/s

    # Sample interval smoothing
    initial_dt: float = 0.01
    dt_smoothing: float = 0.1
    min_dt: float = 0.001
    max_dt: float = 0.1

    # Stability detection / auto-realignment
    accel_stability_threshold: float = 0.2  # g, change between samples
    gyro_stability_threshold: float = 1.5  # deg/s
    required_stable_duration: float = 1.0
    reset_cooldown: float = 0.2
    warmup_time: float = 0.5

    # Output easing
    smoothing_factor: float = 0.9
    smoothing_rate: float = 200.0

    # Manual calibration
    enable_calibration: bool = True
    calibration_time: float = 3.0

    # Gravity sanity check while stable
    expected_gravity: float = 1.0  # g
    gravity_tolerance: float = 0.1


@dataclass
class PositionConfig:
    """Control arc parameters"""

    # Euler angles in degrees in the Y-up display frame, applied Z then X then Y.
    # Display yaw turns about the world gravity axis.
    forehand_euler: Tuple[float, float, float] = (-50.0, 50.0, 50.0)
    backhand_euler: Tuple[float, float, float] = (-50.0, -50.0, -50.0)
    forward_axis: Tuple[float, float, float] = (0.0, 1.0, 0.0)  # world frame, horizontal
    dead_zone: float = 0.1  # half-width around 0.5


@dataclass
class TrackerConfig:
    """Full tracker configuration"""

    link: LinkConfig = field(default_factory=LinkConfig)
    orientation: OrientationConfig = field(default_factory=OrientationConfig)
    position: PositionConfig = field(default_factory=PositionConfig)

    tick_interval: float = 1.0 / 60.0

    @classmethod
    def from_dict(cls, data: dict) -> 'TrackerConfig':
        """
        Build a configuration from a nested dict.

        Args:
            data: Mapping with optional 'link', 'orientation', 'position'
                sections and a top-level 'tick_interval'

        Returns:
            TrackerConfig with defaults for every key not given.

        Raises:
            ValueError on unknown sections or keys.
        """
        sections = {
            'link': LinkConfig,
            'orientation': OrientationConfig,
            'position': PositionConfig,
        }
        config = cls()

        for key, value in data.items():
            if key == 'tick_interval':
                config.tick_interval = float(value)
            elif key in sections:
                section = _update_section(getattr(config, key), value, key)
                setattr(config, key, section)
            else:
                raise ValueError(f"Unknown config section: {key}")

        return config

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'TrackerConfig':
        """Load a JSON configuration file"""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


def _update_section(section, values: dict, name: str):
    known = {f.name for f in fields(section)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown {name} config keys: {', '.join(sorted(unknown))}")

    # JSON has no tuples
    converted = {
        k: tuple(v) if isinstance(v, list) else v
        for k, v in values.items()
    }
    return replace(section, **converted)
