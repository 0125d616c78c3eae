"""
Position mapping

Reduces an orientation to a scalar in [0, 1] by projecting its forward
direction onto the segment between the backhand (0) and forehand (1)
extreme directions.

Forward is horizontal, so turning the paddle about the gravity axis sweeps
it across the arc (negative turns toward the forehand). Pure tilt about
the forward or lateral axis leaves the position at the centre.
"""

from typing import Optional

import numpy as np

from .config import PositionConfig
from .quaternion import quat_from_display_euler, quat_rotate

CENTER = 0.5


class PositionMapper:
    """Projects orientations onto the backhand-forehand control arc"""

    def __init__(self, config: Optional[PositionConfig] = None):
        self.config = config if config else PositionConfig()

        self.forward = np.asarray(self.config.forward_axis, dtype=float)
        self.forehand_rotation = quat_from_display_euler(self.config.forehand_euler)
        self.backhand_rotation = quat_from_display_euler(self.config.backhand_euler)

        self.forehand_dir = quat_rotate(self.forehand_rotation, self.forward)
        self.backhand_dir = quat_rotate(self.backhand_rotation, self.forward)
        self.segment = self.forehand_dir - self.backhand_dir
        self._segment_sq = float(np.dot(self.segment, self.segment))
        if self._segment_sq < 1e-12:
            raise ValueError("Forehand and backhand extremes point the same way")

    def project(self, rotation: np.ndarray) -> float:
        """Raw clamped projection, without the dead-zone"""
        current_dir = quat_rotate(rotation, self.forward)
        u = float(np.dot(current_dir - self.backhand_dir, self.segment)) / self._segment_sq
        return min(1.0, max(0.0, u))

    def map(self, rotation: np.ndarray) -> float:
        u = self.project(rotation)

        dead_zone = self.config.dead_zone
        if CENTER - dead_zone < u < CENTER + dead_zone:
            u = CENTER

        return u
