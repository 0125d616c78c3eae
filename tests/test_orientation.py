import logging
from dataclasses import replace

import numpy as np
import pytest
from numpy.testing import assert_allclose

from paddle_tracker.orientation import OrientationEngine
from paddle_tracker.packet import ImuSample
from paddle_tracker.quaternion import (
    gravity_alignment,
    identity,
    quat_angle,
    quat_from_axis_angle,
    quat_inverse,
    quat_rotate,
)

STILL = (0.0, 0.0, 0.0)
LEVEL = (0.0, 0.0, 1.0)


@pytest.fixture
def engine(orientation_config):
    return OrientationEngine(orientation_config)


def feed(engine, t, accel=LEVEL, gyro=STILL, source="Player 1"):
    return engine.process(ImuSample(source, accel, gyro), t)


def test_no_data_defaults(engine):
    assert not engine.has_valid_data("Player 1")
    assert_allclose(engine.orientation("Player 1"), identity())
    assert engine.position("Player 1") == 0.5


def test_first_sample_aligns_to_gravity(engine):
    accel = np.array([0.3, 0.2, 0.9])
    state = feed(engine, 0.0, accel=tuple(accel))

    assert engine.has_valid_data("Player 1")
    up = quat_rotate(state.working_rotation, accel / np.linalg.norm(accel))
    assert_allclose(up, [0.0, 0.0, 1.0], atol=1e-9)

    # Neutral cancels the initial tilt
    assert_allclose(state.target_rotation, identity(), atol=1e-9)
    assert_allclose(engine.orientation("Player 1"), identity(), atol=1e-9)
    assert state.realign_count == 0
    assert engine.position("Player 1") == 0.5


def test_axis_signs_applied(orientation_config):
    engine = OrientationEngine(replace(orientation_config, axis_signs=(-1.0, 1.0, -1.0)))
    state = feed(engine, 0.0, accel=(0.0, 0.0, -1.0))

    assert_allclose(state.last_accel, [0.0, 0.0, 1.0])
    assert_allclose(state.working_rotation, identity(), atol=1e-9)


def test_no_integration_during_warmup(engine):
    feed(engine, 0.0)
    state = feed(engine, 0.1, gyro=(0.0, 0.0, 200.0))
    state = feed(engine, 0.2, gyro=(0.0, 0.0, 200.0))

    assert_allclose(state.working_rotation, identity())
    assert not state.is_stable


def test_gyro_rotation_integrated_after_warmup(engine):
    for i in range(101):
        state = feed(engine, i * 0.01, gyro=(0.0, 0.0, 90.0))

    # Roughly half a second of 90 deg/s after warm-up
    angle = np.degrees(quat_angle(state.target_rotation, identity()))
    assert 40.0 < angle < 50.0

    expected = quat_from_axis_angle([0.0, 0.0, 1.0], np.radians(angle))
    assert np.degrees(quat_angle(state.target_rotation, expected)) < 1.0


@pytest.mark.parametrize("rate,end", [(-90.0, 1.0), (90.0, 0.0)])
def test_turning_about_gravity_moves_position(engine, rate, end):
    for i in range(101):
        state = feed(engine, i * 0.01, gyro=(0.0, 0.0, rate))

    assert state.position == pytest.approx(end)


def test_burst_samples_all_fused(engine):
    feed(engine, 0.0)
    state = feed(engine, 0.6, gyro=(0.0, 0.0, 90.0))
    single = quat_angle(state.target_rotation, identity())
    avg_after_gap = state.avg_dt

    # Drained together, so they share an arrival time
    for _ in range(2):
        state = feed(engine, 0.6, gyro=(0.0, 0.0, 90.0))

    assert state.sample_count == 4
    assert state.avg_dt < avg_after_gap
    assert quat_angle(state.target_rotation, identity()) > single


def test_late_sample_does_not_rewind_clock(engine):
    feed(engine, 0.0)
    feed(engine, 0.6)
    state = feed(engine, 0.5)

    assert state.sample_count == 3
    assert state.last_update_time == 0.6


def test_dt_smoothed_and_clamped(engine):
    state = feed(engine, 0.0)
    assert engine._smooth_dt(state, 5.0) == engine.config.max_dt
    assert engine._smooth_dt(state, 0.0) <= engine.config.max_dt

    state.avg_dt = 0.0
    assert engine._smooth_dt(state, 0.0) == engine.config.min_dt


def test_realign_after_stable_duration(engine):
    feed(engine, 0.0)
    for t in (0.2, 0.4, 0.6, 0.8, 0.95):
        state = feed(engine, t)
    assert state.realign_count == 0

    state = feed(engine, 1.05)
    assert state.realign_count == 1

    # Cooldown
    state = feed(engine, 1.15)
    assert state.realign_count == 1
    state = feed(engine, 1.3)
    assert state.realign_count == 2


def test_motion_restarts_stable_timer(engine):
    feed(engine, 0.0)
    feed(engine, 0.3)
    state = feed(engine, 0.6, gyro=(0.0, 0.0, 10.0))
    assert not state.is_stable

    for t in (0.7, 0.9, 1.1, 1.3, 1.5):
        state = feed(engine, t)
    assert state.is_stable
    assert state.realign_count == 0

    state = feed(engine, 1.75)
    assert state.realign_count == 1


def test_accel_jump_breaks_stability(engine):
    feed(engine, 0.0)
    state = feed(engine, 0.1, accel=(0.0, 0.5, 0.866))
    assert not state.is_stable


def test_realign_discards_tilt(engine):
    tilted = (0.0, 0.5, 0.866)
    feed(engine, 0.0)
    t = 0.1
    while t < 2.0:
        state = feed(engine, t, accel=tilted)
        t += 0.05

    assert state.realign_count >= 1
    assert_allclose(state.neutral_rotation, quat_inverse(gravity_alignment(tilted)), atol=1e-9)
    assert_allclose(state.target_rotation, identity(), atol=1e-9)
    assert_allclose(state.drift_compensation, identity(), atol=1e-9)
    assert state.position == 0.5


def test_realign_logs_discarded_angle(engine, caplog):
    feed(engine, 0.0)
    feed(engine, 0.6, gyro=(0.0, 0.0, 90.0))
    state = feed(engine, 0.65)
    drift = np.degrees(quat_angle(state.working_rotation, identity()))
    assert drift > 1.0

    with caplog.at_level(logging.DEBUG, logger="paddle_tracker.orientation"):
        engine._realign(state, np.array(LEVEL), 0.65)

    assert f"discarded {drift:.1f} deg" in caplog.text


def test_bias_learned_while_stable(engine):
    feed(engine, 0.0)
    for i in range(1, 60):
        state = feed(engine, i * 0.01, gyro=(0.5, 0.0, 0.0))

    assert state.is_stable
    assert 0.0 < state.gyro_bias[0] < np.radians(0.5)
    assert state.gyro_bias[1] == 0.0


def test_gravity_warning_once_per_stable_interval(engine, caplog):
    with caplog.at_level(logging.WARNING, logger="paddle_tracker.orientation"):
        feed(engine, 0.0, accel=(0.0, 0.0, 1.5))
        for i in range(1, 10):
            feed(engine, i * 0.01, accel=(0.0, 0.0, 1.5))

    warnings = [r for r in caplog.records if "Possible calibration issue" in r.getMessage()]
    assert len(warnings) == 1


def test_quaternions_stay_normalized(engine):
    rng = np.random.default_rng(3)
    t = 0.0
    for _ in range(400):
        t += rng.uniform(0.002, 0.05)
        accel = tuple(rng.normal(0.0, 0.3, size=3) + [0.0, 0.0, 1.0])
        gyro = tuple(rng.normal(0.0, 60.0, size=3))
        state = feed(engine, t, accel=accel, gyro=gyro)
        engine.step(0.016, t)

        for q in (state.working_rotation, state.target_rotation, state.output_rotation,
                  state.gyro_rotation, state.madgwick.q):
            assert abs(np.linalg.norm(q) - 1.0) < 1e-6
        assert 0.0 <= state.position <= 1.0


def test_step_eases_output_toward_target(engine):
    state = feed(engine, 0.0)
    state.target_rotation = quat_from_axis_angle([0.0, 0.0, 1.0], 0.2)

    engine.step(0.0, 0.0)
    assert_allclose(state.output_rotation, identity())

    # smoothing 0.9 at rate 200 over 5 ms covers 90% of the way
    engine.step(0.005, 0.005)
    assert quat_angle(state.output_rotation, identity()) == pytest.approx(0.18, rel=1e-6)


def test_calibration_rejected_when_moving(engine):
    feed(engine, 0.0)
    feed(engine, 0.1, gyro=(0.0, 50.0, 0.0))

    assert not engine.request_calibration("Player 1", 0.1)
    assert not engine.request_calibration("nobody", 0.1)


def test_calibration_disabled(orientation_config):
    engine = OrientationEngine(replace(orientation_config, enable_calibration=False))
    feed(engine, 0.0)
    assert not engine.request_calibration("Player 1", 0.0)


def test_calibration_sets_neutral(engine):
    feed(engine, 0.0)
    feed(engine, 0.6, gyro=(0.0, 0.0, 90.0))
    state = feed(engine, 0.65)
    assert quat_angle(state.working_rotation, identity()) > 0.01

    assert engine.request_calibration("Player 1", 0.65)
    engine.step(0.016, 1.0)
    assert state.is_calibrating

    engine.step(0.016, 3.7)
    assert not state.is_calibrating
    assert_allclose(state.neutral_rotation, quat_inverse(state.working_rotation))
    assert_allclose(state.target_rotation, identity(), atol=1e-9)


def test_sources_are_independent(engine):
    feed(engine, 0.0, source="a")
    feed(engine, 0.0, accel=(0.0, 1.0, 0.0), source="b")

    assert engine.sources == ["a", "b"]
    assert not np.allclose(engine.get_state("a").working_rotation,
                           engine.get_state("b").working_rotation)


def test_remove_source_swaps_last_into_place(engine):
    for source in ("a", "b", "c"):
        feed(engine, 0.0, source=source)

    assert engine.remove_source("a")
    assert engine.sources == ["c", "b"]
    assert engine.get_state("c").source_id == "c"
    assert not engine.has_valid_data("a")
    assert engine.position("a") == 0.5

    assert not engine.remove_source("a")
    assert engine.remove_source("b")
    assert engine.remove_source("c")
    assert engine.sources == []


def test_get_status(engine):
    feed(engine, 0.0)
    status = engine.get_status()

    assert status["Player 1"]["has_data"]
    assert status["Player 1"]["samples"] == 1
    assert status["Player 1"]["position"] == 0.5
