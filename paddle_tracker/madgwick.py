"""
Madgwick gradient-descent orientation filter (IMU variant)

Accelerometer-only correction: tilt is pulled toward gravity, heading is
left to the gyro and drifts.
"""

import numpy as np

from .quaternion import identity, quat_normalize

ACCEL_EPSILON = 1e-4


class MadgwickFilter:
    """Madgwick filter for orientation estimation"""

    def __init__(self, beta=0.1, q=None):
        self.beta = max(beta, 0.0)
        self.q = quat_normalize(q) if q is not None else identity()

    def reset(self, q=None):
        self.q = quat_normalize(q) if q is not None else identity()

    def update(self, accel, gyro, dt):
        """
        Update orientation with IMU data

        Args:
            accel: (ax, ay, az) in any unit, normalized internally
            gyro: (gx, gy, gz) in rad/s
            dt: sample period in seconds
        """
        if dt <= 0:
            return

        ax, ay, az = accel
        gx, gy, gz = gyro

        # Normalize accelerometer; skip the step when it carries no direction
        norm = np.sqrt(ax*ax + ay*ay + az*az)
        if norm < ACCEL_EPSILON:
            return
        ax, ay, az = ax/norm, ay/norm, az/norm

        q0, q1, q2, q3 = self.q

        # Objective function: estimated minus measured gravity direction
        f1 = 2*(q1*q3 - q0*q2) - ax
        f2 = 2*(q0*q1 + q2*q3) - ay
        f3 = 2*(0.5 - q1*q1 - q2*q2) - az

        J_11or24 = 2*q2
        J_12or23 = 2*q3
        J_13or22 = 2*q0
        J_14or21 = 2*q1
        J_32 = 2*J_14or21
        J_33 = 2*J_11or24

        # Gradient (Jacobian transpose times f)
        step0 = J_14or21*f2 - J_11or24*f1
        step1 = J_12or23*f1 + J_13or22*f2 - J_32*f3
        step2 = J_12or23*f2 - J_33*f3 - J_13or22*f1
        step3 = J_14or21*f1 + J_11or24*f2

        norm = np.sqrt(step0*step0 + step1*step1 + step2*step2 + step3*step3)
        if norm > ACCEL_EPSILON:
            step0, step1, step2, step3 = step0/norm, step1/norm, step2/norm, step3/norm

        # Apply feedback step
        qDot0 = 0.5*(-q1*gx - q2*gy - q3*gz) - self.beta*step0
        qDot1 = 0.5*(q0*gx + q2*gz - q3*gy) - self.beta*step1
        qDot2 = 0.5*(q0*gy - q1*gz + q3*gx) - self.beta*step2
        qDot3 = 0.5*(q0*gz + q1*gy - q2*gx) - self.beta*step3

        # Integrate
        q0 += qDot0 * dt
        q1 += qDot1 * dt
        q2 += qDot2 * dt
        q3 += qDot3 * dt

        self.q = quat_normalize(np.array([q0, q1, q2, q3]))
