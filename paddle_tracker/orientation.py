"""
Orientation Engine
Per-source IMU fusion with drift correction

Each source carries two independently drifting estimates:
- a pure gyro integration
- a Madgwick filter pulled toward gravity by the accelerometer

They are blended into a working rotation. Heading has no absolute
reference, so drift is discarded by re-aligning to gravity whenever the
sensor has been at rest long enough.

Timing uses the arrival time of each sample; the interval is smoothed
and clamped so a late or bunched packet does not kick the integration.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from .config import OrientationConfig
from .madgwick import MadgwickFilter
from .packet import ImuSample
from .position import CENTER, PositionMapper
from .quaternion import (
    gravity_alignment,
    identity,
    quat_angle,
    quat_from_rotation_vector,
    quat_inverse,
    quat_mul,
    quat_normalize,
    quat_slerp,
)

logger = logging.getLogger(__name__)


@dataclass
class OrientationState:
    """Fusion state for one source"""
    source_id: str
    madgwick: MadgwickFilter

    has_data: bool = False
    data_start_time: float = 0.0
    last_update_time: float = 0.0
    avg_dt: float = 0.01
    sample_count: int = 0

    # Rotations, [w, x, y, z]
    gyro_rotation: np.ndarray = field(default_factory=identity)
    drift_compensation: np.ndarray = field(default_factory=identity)
    lowpass_rotation: np.ndarray = field(default_factory=identity)
    working_rotation: np.ndarray = field(default_factory=identity)
    neutral_rotation: np.ndarray = field(default_factory=identity)
    target_rotation: np.ndarray = field(default_factory=identity)
    output_rotation: np.ndarray = field(default_factory=identity)

    # Stability bookkeeping
    last_accel: np.ndarray = field(default_factory=lambda: np.zeros(3))
    is_stable: bool = True
    stable_start_time: float = 0.0
    last_reset_time: float = 0.0
    realign_count: int = 0
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))  # rad/s
    gravity_warned: bool = False

    # Manual calibration
    is_calibrating: bool = False
    calibration_start_time: float = 0.0

    position: float = CENTER


class OrientationEngine:
    """
    Fuses ImuSamples into a stable orientation per source.

    Samples for one source must be fed in arrival order from a single
    caller; states are kept in a dense table indexed by source id.
    """

    def __init__(
            self,
            config: Optional[OrientationConfig] = None,
            mapper: Optional[PositionMapper] = None,
            clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize orientation engine

        Args:
            config: Fusion parameters
            mapper: Position mapper used to derive the scalar position
            clock: Monotonic time source in seconds
        """
        self.config = config if config else OrientationConfig()
        self.mapper = mapper if mapper else PositionMapper()
        self.clock = clock

        self._states: List[OrientationState] = []
        self._index: Dict[str, int] = {}

        self._axis_signs = np.asarray(self.config.axis_signs, dtype=float)

    # ------------------------------------------------------------------
    # Source table
    # ------------------------------------------------------------------

    @property
    def sources(self) -> List[str]:
        return [s.source_id for s in self._states]

    def get_state(self, source_id: str) -> Optional[OrientationState]:
        idx = self._index.get(source_id)
        return self._states[idx] if idx is not None else None

    def _get_or_create(self, source_id: str) -> OrientationState:
        state = self.get_state(source_id)
        if state is None:
            state = OrientationState(
                source_id=source_id,
                madgwick=MadgwickFilter(beta=self.config.madgwick_beta),
                avg_dt=self.config.initial_dt,
            )
            self._index[source_id] = len(self._states)
            self._states.append(state)
        return state

    def remove_source(self, source_id: str) -> bool:
        """Drop all state for a source. Returns False if it was unknown."""
        idx = self._index.pop(source_id, None)
        if idx is None:
            return False

        last = self._states.pop()
        if idx < len(self._states):
            self._states[idx] = last
            self._index[last.source_id] = idx

        logger.info(f"Source {source_id}: orientation state removed")
        return True

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def has_valid_data(self, source_id: str) -> bool:
        state = self.get_state(source_id)
        return bool(state and state.has_data)

    def orientation(self, source_id: str) -> np.ndarray:
        """Eased output rotation (identity until data arrives)"""
        state = self.get_state(source_id)
        if state is None or not state.has_data:
            return identity()
        return state.output_rotation.copy()

    def position(self, source_id: str) -> float:
        state = self.get_state(source_id)
        if state is None or not state.has_data:
            return CENTER
        return state.position

    # ------------------------------------------------------------------
    # Sample processing
    # ------------------------------------------------------------------

    def process(self, sample: ImuSample, now: Optional[float] = None) -> OrientationState:
        """
        Feed one sample.

        Args:
            sample: Decoded IMU sample
            now: Arrival time in seconds (defaults to the engine clock)

        Returns:
            The updated state of the sample's source.
        """
        if now is None:
            now = self.clock()

        state = self._get_or_create(sample.source_id)
        accel = self._axis_signs * np.asarray(sample.accel, dtype=float)
        gyro = self._axis_signs * np.asarray(sample.gyro, dtype=float)

        if not state.has_data:
            self._initialize(state, accel, now)
            return state

        # Samples drained in one burst share an arrival time; their zero
        # intervals pull the average toward the true sample period
        dt = self._smooth_dt(state, max(now - state.last_update_time, 0.0))
        state.last_update_time = max(state.last_update_time, now)
        state.sample_count += 1

        gyro_rad = np.radians(gyro) * self.config.sensitivity
        self._update_stability(state, accel, gyro, gyro_rad, now)

        stable_duration = now - state.stable_start_time
        since_reset = now - state.last_reset_time
        warming_up = (now - state.data_start_time) < self.config.warmup_time

        if (not warming_up and state.is_stable
                and stable_duration >= self.config.required_stable_duration
                and since_reset >= self.config.reset_cooldown):
            self._realign(state, accel, now)
        elif not warming_up:
            self._integrate(state, accel, gyro_rad, dt)
            self._update_target(state)

        return state

    def _initialize(self, state: OrientationState, accel: np.ndarray, now: float):
        state.has_data = True
        state.data_start_time = now
        state.last_update_time = now
        state.stable_start_time = now
        state.is_stable = True
        state.last_accel = accel
        state.sample_count = 1

        self._realign(state, accel, now)
        state.realign_count = 0
        state.output_rotation = state.target_rotation.copy()

        logger.info(f"Source {state.source_id}: orientation initialized from gravity")

    def _smooth_dt(self, state: OrientationState, dt: float) -> float:
        w = self.config.dt_smoothing
        state.avg_dt = state.avg_dt + (dt - state.avg_dt) * w
        return float(np.clip(state.avg_dt, self.config.min_dt, self.config.max_dt))

    def _update_stability(self, state: OrientationState, accel: np.ndarray,
                          gyro: np.ndarray, gyro_rad: np.ndarray, now: float):
        accel_delta = float(np.linalg.norm(accel - state.last_accel))
        gyro_magnitude = float(np.linalg.norm(gyro))
        state.last_accel = accel

        currently_stable = (accel_delta < self.config.accel_stability_threshold
                            and gyro_magnitude < self.config.gyro_stability_threshold)

        if currently_stable:
            if not state.is_stable:
                state.stable_start_time = now
            state.is_stable = True

            # At rest the gyro should read zero: whatever it reads is bias
            a = self.config.bias_alpha
            state.gyro_bias = state.gyro_bias + (gyro_rad - state.gyro_bias) * a

            accel_magnitude = float(np.linalg.norm(accel))
            if (abs(accel_magnitude - self.config.expected_gravity) > self.config.gravity_tolerance
                    and not state.gravity_warned):
                logger.warning(
                    f"Source {state.source_id}: stable accelerometer magnitude is "
                    f"{accel_magnitude:.3f}, expected ~{self.config.expected_gravity}. "
                    f"Possible calibration issue."
                )
                state.gravity_warned = True
        else:
            state.stable_start_time = now
            state.is_stable = False
            state.gravity_warned = False

    def _realign(self, state: OrientationState, accel: np.ndarray, now: float):
        """Snap every estimate to the gravity alignment, discarding drift"""
        alignment = gravity_alignment(accel) if np.linalg.norm(accel) > 1e-6 else identity()
        discarded = np.degrees(quat_angle(state.working_rotation, alignment))

        state.gyro_rotation = alignment.copy()
        state.madgwick.reset(alignment)
        state.lowpass_rotation = alignment.copy()
        state.working_rotation = alignment.copy()
        state.drift_compensation = identity()
        state.neutral_rotation = quat_inverse(alignment)
        state.last_reset_time = now
        state.realign_count += 1

        self._update_target(state)
        logger.debug(f"Source {state.source_id}: realigned to gravity, "
                     f"discarded {discarded:.1f} deg")

    def _integrate(self, state: OrientationState, accel: np.ndarray,
                   gyro_rad: np.ndarray, dt: float):
        cfg = self.config
        omega = gyro_rad - state.gyro_bias if state.is_stable else gyro_rad

        # Pure gyro integration
        delta = quat_from_rotation_vector(omega * dt)
        state.gyro_rotation = quat_normalize(quat_mul(state.gyro_rotation, delta))

        # Gravity-corrected estimate
        state.madgwick.update(accel, omega, dt)
        madg = quat_normalize(quat_mul(state.drift_compensation, state.madgwick.q))

        # While at rest, pull the filtered estimate back toward the gyro estimate
        if state.is_stable:
            toward_gyro = quat_mul(state.gyro_rotation, quat_inverse(state.madgwick.q))
            state.drift_compensation = quat_slerp(
                state.drift_compensation, toward_gyro, cfg.drift_compensation_rate
            )

        blended = quat_slerp(state.gyro_rotation, madg, cfg.complementary_alpha)

        if cfg.adaptive_lowpass:
            cutoff = cfg.lowpass_min_cutoff + cfg.lowpass_cutoff_slope * float(np.linalg.norm(omega))
            tau = 1.0 / (2.0 * np.pi * cutoff)
            alpha = dt / (dt + tau)
            state.lowpass_rotation = quat_slerp(state.lowpass_rotation, blended, alpha)
            state.working_rotation = state.lowpass_rotation.copy()
        else:
            state.lowpass_rotation = blended
            state.working_rotation = blended.copy()

    def _update_target(self, state: OrientationState):
        state.target_rotation = quat_normalize(
            quat_mul(state.neutral_rotation, state.working_rotation)
        )
        state.position = self.mapper.map(state.target_rotation)

    # ------------------------------------------------------------------
    # Per-frame work
    # ------------------------------------------------------------------

    def request_calibration(self, source_id: str, now: Optional[float] = None) -> bool:
        """
        Start a calibration window. Only accepted while the source is at rest.

        Returns:
            True if calibration started.
        """
        if not self.config.enable_calibration:
            return False

        state = self.get_state(source_id)
        if state is None or not state.has_data or not state.is_stable:
            return False

        state.is_calibrating = True
        state.calibration_start_time = now if now is not None else self.clock()
        logger.info(f"Source {source_id}: calibration started, hold still "
                    f"for {self.config.calibration_time:.1f}s")
        return True

    def step(self, frame_dt: float, now: Optional[float] = None):
        """
        Advance output easing and pending calibrations for every source.

        Args:
            frame_dt: Seconds since the previous call
            now: Current time (defaults to the engine clock)
        """
        if now is None:
            now = self.clock()

        ease = 1.0 - (1.0 - self.config.smoothing_factor) ** (max(frame_dt, 0.0) * self.config.smoothing_rate)

        for state in self._states:
            if not state.has_data:
                continue

            state.output_rotation = quat_slerp(state.output_rotation, state.target_rotation, ease)

            if state.is_calibrating and now - state.calibration_start_time >= self.config.calibration_time:
                state.neutral_rotation = quat_inverse(state.working_rotation)
                state.is_calibrating = False
                self._update_target(state)
                logger.info(f"Source {state.source_id}: neutral rotation calibrated")

    def get_status(self) -> dict:
        return {
            s.source_id: {
                'has_data': s.has_data,
                'samples': s.sample_count,
                'stable': s.is_stable,
                'calibrating': s.is_calibrating,
                'realignments': s.realign_count,
                'position': s.position,
            }
            for s in self._states
        }
