from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class FrameData:
    idx: int
    ts: float
    img_gray: np.ndarray        # (H,W) uint8, fed to the tracker
    depth: np.ndarray           # (h,w) dense depth from the external depth source


@dataclass
class MotionEstimate:
    dx: float = 0.0             # cm
    dy: float = 0.0             # cm
    dtheta: float = 0.0         # rad
    num_points: int = 0
    valid: bool = False
    reason: str = ""

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.dx, self.dy, self.dtheta)


@dataclass
class FuseStats:
    written: int = 0
    unknown: int = 0
    out_of_bounds: int = 0

    @property
    def dropped_fraction(self) -> float:
        total = self.written + self.unknown + self.out_of_bounds
        return float(self.out_of_bounds) / float(total) if total else 0.0


@dataclass
class FrameResult:
    idx: int
    ts: float
    local_grid: np.ndarray
    occupancy: np.ndarray
    motion: MotionEstimate
    fuse: FuseStats
    pose: tuple[float, float, float]
    tracker_info: dict = field(default_factory=dict)
