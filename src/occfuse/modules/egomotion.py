# src/occfuse/modules/egomotion.py
from __future__ import annotations

import logging
import math

import numpy as np

from ..system.state import MotionEstimate
from .tracking import Tracker, make_tracker

logger = logging.getLogger(__name__)


class EgomotionEstimator:
    """
    Coarse planar motion from tracked points, no inertial input.

    The estimate is the mean offset of the current-frame points from the
    image centre, scaled to cm. Rotation is approximated as
    atan2(avg_dy, avg_dx) * rotation_gain; this mixes the direction of the
    offset with a turn rate and is kept as a known approximation, not a
    calibrated rotation.

    Holds the previous grayscale frame between calls, so one instance must
    only be driven from one thread at a time.
    """

    def __init__(self, cfg: dict, tracker: Tracker | None = None):
        e = cfg.get("egomotion", {})
        self.min_points = int(e.get("min_points", 5))
        self.scale_cm_per_px = float(e.get("scale_cm_per_px", 0.2))
        self.rotation_gain = float(e.get("rotation_gain", 0.01))
        self.tracker = tracker if tracker is not None else make_tracker(cfg)

        self.prev_gray: np.ndarray | None = None
        self.last_tracker_info: dict = {}

    def reset(self) -> None:
        self.prev_gray = None
        self.last_tracker_info = {}
        logger.info("egomotion estimator reset; next frame starts a new track")

    def propose(self, tracked_points, image_width: int, image_height: int) -> MotionEstimate:
        pts = np.asarray(tracked_points, dtype=np.float64)
        if pts.size == 0:
            pts = pts.reshape(0, 2)
        if pts.ndim != 2 or pts.shape[1] != 2:
            raise ValueError(f"tracked_points must be (N,2), got shape {pts.shape}")

        n = int(pts.shape[0])
        if n < self.min_points:
            return MotionEstimate(num_points=n, valid=False, reason=f"REJECT_TOO_FEW_POINTS:{n}")

        center = np.array([image_width / 2.0, image_height / 2.0], dtype=np.float64)
        avg_dx, avg_dy = (pts - center).mean(axis=0)

        return MotionEstimate(
            dx=float(avg_dx) * self.scale_cm_per_px,
            dy=float(avg_dy) * self.scale_cm_per_px,
            dtheta=math.atan2(float(avg_dy), float(avg_dx)) * self.rotation_gain,
            num_points=n,
            valid=True,
            reason="EGO_OK",
        )

    def estimate(self, tracked_points, image_width: int, image_height: int) -> tuple[float, float, float]:
        return self.propose(tracked_points, image_width, image_height).as_tuple()

    def process_frame(self, img_gray: np.ndarray) -> MotionEstimate:
        """Track against the retained previous frame, then keep img_gray for the next call."""
        if img_gray is None or img_gray.ndim != 2:
            raise ValueError("process_frame expects a grayscale image (H,W).")

        if self.prev_gray is None:
            self.prev_gray = img_gray
            self.last_tracker_info = {}
            return MotionEstimate(reason="INIT")

        _pts_prev, pts_cur, info = self.tracker(self.prev_gray, img_gray)
        self.last_tracker_info = info
        self.prev_gray = img_gray

        h, w = img_gray.shape
        return self.propose(pts_cur, w, h)
