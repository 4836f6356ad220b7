from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np


@dataclass
class Pose:
    x: float
    y: float
    theta: float = 0.0  # radians, not wrapped

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.x, self.y, self.theta)


def rot2(theta: float) -> np.ndarray:
    c, s = math.cos(theta), math.sin(theta)
    return np.array([[c, -s], [s, c]], dtype=np.float64)


def compose_delta(pose: Pose, dx: float, dy: float, dtheta: float) -> Pose:
    """
    Apply a body-frame motion delta to a planar pose.

    The heading is updated first and the translation is rotated by the new
    heading, so a delta (dx, 0, dtheta) moves along the post-turn direction.
    """
    theta = pose.theta + dtheta
    step = rot2(theta) @ np.array([dx, dy], dtype=np.float64)
    return Pose(pose.x + float(step[0]), pose.y + float(step[1]), theta)
