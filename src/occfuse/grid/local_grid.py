# src/occfuse/grid/local_grid.py
from __future__ import annotations

import cv2
import numpy as np

from .filters import as_grid, bilateral_filter, fill_holes_edge_aware

UNKNOWN = -1
FREE = 0
OCCUPIED = 1


def depth_to_gray(depth, max_depth: float | None = None, *, invert: bool = False) -> np.ndarray:
    """
    Map a single-channel depth field to uint8 gray, higher = farther.

    Args:
        depth: (H,W) depth or disparity proxy. uint8 input is taken as already
            converted and returned unchanged.
        max_depth: fixed far value mapped to 255. If None the per-frame range
            of valid samples is stretched to [1,255].
        invert: set for disparity-like sources where larger means closer.

    Returns:
        (H,W) uint8. Non-finite or non-positive samples become 0 (holes).
    """
    arr = as_grid(depth, "depth")
    if arr.dtype == np.uint8:
        return arr

    d = arr.astype(np.float64)
    valid = np.isfinite(d) & (d > 0)
    gray = np.zeros(d.shape, dtype=np.uint8)
    if not np.any(valid):
        return gray

    if max_depth is not None:
        lo, hi = 0.0, float(max_depth)
    else:
        lo, hi = float(d[valid].min()), float(d[valid].max())

    if hi > lo:
        t = np.clip((d[valid] - lo) / (hi - lo), 0.0, 1.0)
    else:
        t = np.ones(int(valid.sum()), dtype=np.float64)
    if invert:
        t = 1.0 - t
    gray[valid] = np.rint(1.0 + t * 254.0).astype(np.uint8)
    return gray


def classify_occupancy(grid, free_threshold: int = 180) -> np.ndarray:
    """Binary view of a depth grid: >threshold free, holes unknown, everything else occupied."""
    arr = as_grid(grid)
    occ = np.full(arr.shape, OCCUPIED, dtype=np.int8)
    occ[arr > free_threshold] = FREE
    occ[arr <= 0] = UNKNOWN
    return occ


class LocalGridBuilder:
    """Dense depth -> fixed-resolution, denoised, hole-filled local grid."""

    def __init__(self, cfg: dict):
        g = cfg.get("grid", {})
        b = cfg.get("bilateral", {})
        self.width = int(g.get("width", 128))
        self.height = int(g.get("height", 96))
        self.max_depth = g.get("max_depth", None)
        self.invert_depth = bool(g.get("invert_depth", False))
        self.free_threshold = int(g.get("free_threshold", 180))
        self.radius = int(b.get("radius", 2))
        self.sigma_spatial = float(b.get("sigma_spatial", 1.5))
        self.sigma_depth = float(b.get("sigma_depth", 20.0))
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"grid size must be positive, got {self.width}x{self.height}")

        self.last_grid: np.ndarray | None = None

    def resample(self, gray: np.ndarray) -> np.ndarray:
        # INTER_AREA is a box average when shrinking
        return cv2.resize(gray, (self.width, self.height), interpolation=cv2.INTER_AREA)

    def build(self, depth) -> np.ndarray:
        gray = depth_to_gray(depth, self.max_depth, invert=self.invert_depth)
        grid = self.resample(gray).astype(np.int32)
        grid = bilateral_filter(
            grid,
            radius=self.radius,
            sigma_spatial=self.sigma_spatial,
            sigma_depth=self.sigma_depth,
        )
        grid = fill_holes_edge_aware(grid)
        self.last_grid = grid
        return grid

    def classify(self, grid: np.ndarray) -> np.ndarray:
        return classify_occupancy(grid, self.free_threshold)
