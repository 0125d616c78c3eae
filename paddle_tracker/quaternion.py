"""
Quaternion helpers

All quaternions are numpy arrays in [w, x, y, z] order and describe the
rotation from the sensor frame to the world frame: v_world = R(q) @ v_sensor.
The world frame is the Madgwick earth frame, +Z along the axis a resting
accelerometer reads.
"""

import numpy as np
from scipy.spatial.transform import Rotation

GRAVITY_AXIS = np.array([0.0, 0.0, 1.0])

# Y-up display frame <-> Z-up world frame (self-inverse axis swap)
DISPLAY_TO_WORLD = np.array([
    [1.0, 0.0, 0.0],
    [0.0, 0.0, 1.0],
    [0.0, 1.0, 0.0],
])


def identity() -> np.ndarray:
    return np.array([1.0, 0.0, 0.0, 0.0])


def quat_normalize(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=float)
    n = np.linalg.norm(q)
    if n == 0:
        return identity()
    return q / n


def quat_conj(q: np.ndarray) -> np.ndarray:
    """Quaternion conjugate [w,x,y,z] -> [w,-x,-y,-z]."""
    w, x, y, z = q
    return np.array([w, -x, -y, -z], dtype=float)


def quat_inverse(q: np.ndarray) -> np.ndarray:
    return quat_conj(quat_normalize(q))


def quat_mul(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """Hamilton product q = q1 * q2, both [w,x,y,z]."""
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2
    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2,
    ], dtype=float)


def quat_to_matrix(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion [w,x,y,z] to 3x3 rotation matrix.
    v_world = R @ v_sensor
    """
    w, x, y, z = quat_normalize(q)
    return np.array([
        [1 - 2*(y*y + z*z),     2*(x*y - z*w),         2*(x*z + y*w)],
        [    2*(x*y + z*w), 1 - 2*(x*x + z*z),         2*(y*z - x*w)],
        [    2*(x*z - y*w),     2*(y*z + x*w),     1 - 2*(x*x + y*y)],
    ])


def quat_rotate(q: np.ndarray, v) -> np.ndarray:
    return quat_to_matrix(q) @ np.asarray(v, dtype=float)


def quat_slerp(q_prev: np.ndarray, q_new: np.ndarray, alpha: float) -> np.ndarray:
    """
    Spherical linear interpolation between quaternions.
    q_prev, q_new: [w,x,y,z]
    alpha in [0,1], weight toward q_new.
    """
    q_prev = quat_normalize(q_prev)
    q_new = quat_normalize(q_new)

    dot = float(np.dot(q_prev, q_new))
    # Take shortest path
    if dot < 0.0:
        q_new = -q_new
        dot = -dot

    # If very close, fall back to lerp
    if dot > 0.9995:
        q = (1.0 - alpha) * q_prev + alpha * q_new
        return quat_normalize(q)

    theta = np.arccos(dot)
    sin_theta = np.sin(theta)
    w1 = np.sin((1.0 - alpha) * theta) / sin_theta
    w2 = np.sin(alpha * theta) / sin_theta
    return quat_normalize(w1 * q_prev + w2 * q_new)


def quat_from_axis_angle(axis, angle_rad: float) -> np.ndarray:
    axis = np.asarray(axis, dtype=float)
    n = np.linalg.norm(axis)
    if n < 1e-12:
        return identity()
    axis = axis / n
    s = np.sin(angle_rad / 2.0)
    return quat_normalize(np.array([np.cos(angle_rad / 2.0), axis[0]*s, axis[1]*s, axis[2]*s]))


def quat_from_rotation_vector(rotvec) -> np.ndarray:
    """Rotation of |rotvec| radians about rotvec."""
    rotvec = np.asarray(rotvec, dtype=float)
    return quat_from_axis_angle(rotvec, float(np.linalg.norm(rotvec)))


def quat_from_two_vectors(u, v) -> np.ndarray:
    """Shortest-arc rotation taking direction u onto direction v."""
    u = np.asarray(u, dtype=float)
    v = np.asarray(v, dtype=float)
    u = u / np.linalg.norm(u)
    v = v / np.linalg.norm(v)

    w = 1.0 + float(np.dot(u, v))
    if w < 1e-9:
        # Opposite vectors: half turn about any axis orthogonal to u
        axis = np.cross(u, [1.0, 0.0, 0.0])
        if np.linalg.norm(axis) < 1e-6:
            axis = np.cross(u, [0.0, 1.0, 0.0])
        return quat_from_axis_angle(axis, np.pi)

    xyz = np.cross(u, v)
    return quat_normalize(np.array([w, xyz[0], xyz[1], xyz[2]]))


def gravity_alignment(accel) -> np.ndarray:
    """
    Rotation that maps a measured acceleration direction onto the world
    gravity axis. Only tilt is observable, so heading is left at zero.
    """
    return quat_from_two_vectors(accel, GRAVITY_AXIS)


def quat_from_display_euler(euler) -> np.ndarray:
    """
    World rotation for (x, y, z) Euler angles in degrees given in the Y-up
    display frame (x right, y up, z forward), applied Z, then X, then Y
    about the fixed axes.

    The display frame maps onto the world by swapping y and z, so a display
    yaw (about y) is a rotation about the world gravity axis and display
    forward is world +Y.
    """
    x, y, z = euler
    display = Rotation.from_euler('zxy', [z, x, y], degrees=True).as_matrix()
    qx, qy, qz, qw = Rotation.from_matrix(DISPLAY_TO_WORLD @ display @ DISPLAY_TO_WORLD).as_quat()
    return quat_normalize(np.array([qw, qx, qy, qz]))


def quat_angle(q1: np.ndarray, q2: np.ndarray) -> float:
    """Angle in radians of the rotation between q1 and q2."""
    dot = abs(float(np.dot(quat_normalize(q1), quat_normalize(q2))))
    return 2.0 * np.arccos(min(1.0, dot))
