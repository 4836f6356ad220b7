# src/occfuse/mapping/fuser.py
from __future__ import annotations

import logging
import math

import numpy as np

from ..geom.se2 import Pose, compose_delta
from ..grid.filters import as_grid
from ..grid.local_grid import UNKNOWN
from ..system.state import FuseStats

logger = logging.getLogger(__name__)


class MapFuser:
    """
    Owner of the global map and the dead-reckoned pose.

    The map is a square int16 grid initialised to UNKNOWN. Each update moves
    the pose by a body-frame delta and pastes the local grid centred on the
    pose cell: last write wins, UNKNOWN local cells never overwrite, cells
    falling outside the map are dropped.
    """

    def __init__(self, map_size: int = 1000, cell_size_cm: float = 5.0):
        if map_size <= 0:
            raise ValueError(f"map_size must be positive, got {map_size}")
        if cell_size_cm <= 0:
            raise ValueError(f"cell_size_cm must be positive, got {cell_size_cm}")
        self.map_size = int(map_size)
        self.cell_size_cm = float(cell_size_cm)
        self.reset()

    @classmethod
    def from_config(cls, cfg: dict) -> "MapFuser":
        m = cfg.get("map", {})
        return cls(map_size=int(m.get("size", 1000)), cell_size_cm=float(m.get("cell_size_cm", 5.0)))

    def reset(self) -> None:
        self._map = np.full((self.map_size, self.map_size), UNKNOWN, dtype=np.int16)
        c = float(self.map_size // 2)
        self.pose = Pose(c, c, 0.0)
        self.num_updates = 0
        logger.info("global map reset: %dx%d cells @ %.1f cm", self.map_size, self.map_size, self.cell_size_cm)

    def cm_to_cells(self, value_cm: float) -> float:
        return value_cm / self.cell_size_cm

    def cell_position(self) -> tuple[int, int]:
        return int(round(self.pose.x)), int(round(self.pose.y))

    def update_pose(self, dx: float, dy: float, dtheta: float) -> Pose:
        """dx, dy in cells (body frame), dtheta in radians."""
        self.pose = compose_delta(self.pose, dx, dy, dtheta)
        return self.pose

    def merge(self, local_grid) -> FuseStats:
        grid = as_grid(local_grid, "local_grid")
        h, w = grid.shape
        stats = FuseStats()

        # an overflowed (inf/nan) pose observes nothing
        if not (math.isfinite(self.pose.x) and math.isfinite(self.pose.y)):
            stats.out_of_bounds = h * w
            return stats

        cx, cy = self.cell_position()

        # global coordinates of the local grid's top-left cell
        x0 = cx - w // 2
        y0 = cy - h // 2

        gx0, gx1 = max(x0, 0), min(x0 + w, self.map_size)
        gy0, gy1 = max(y0, 0), min(y0 + h, self.map_size)

        if gx0 >= gx1 or gy0 >= gy1:
            stats.out_of_bounds = h * w
            return stats

        patch = grid[gy0 - y0:gy1 - y0, gx0 - x0:gx1 - x0]
        known = patch != UNKNOWN
        target = self._map[gy0:gy1, gx0:gx1]
        target[known] = patch[known]

        stats.written = int(known.sum())
        stats.unknown = int(patch.size - stats.written)
        stats.out_of_bounds = h * w - int(patch.size)
        return stats

    def update_map(self, local_grid, dx: float, dy: float, dtheta: float) -> FuseStats:
        grid = as_grid(local_grid, "local_grid")
        self.update_pose(dx, dy, dtheta)
        stats = self.merge(grid)
        self.num_updates += 1
        return stats

    def get_global_map(self) -> np.ndarray:
        """Live map; callers must treat it as read-only."""
        return self._map

    def snapshot(self) -> np.ndarray:
        return self._map.copy()
