# src/occfuse/system/runner.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait

import numpy as np

from .state import FrameData, FrameResult
from .telemetry import Telemetry
from ..grid.local_grid import LocalGridBuilder
from ..mapping.fuser import MapFuser
from ..modules.egomotion import EgomotionEstimator
from ..modules.tracking import Tracker

logger = logging.getLogger(__name__)


class MappingPipeline:
    """
    One mapping step per frame: depth -> local grid, image -> egomotion,
    (occupancy, motion) -> global map.

    Not thread-safe; FrameWorker is the concurrent front end.
    """

    def __init__(self, cfg: dict, *, tracker: Tracker | None = None, telemetry: Telemetry | None = None):
        self.cfg = cfg
        self.builder = LocalGridBuilder(cfg)
        self.estimator = EgomotionEstimator(cfg, tracker=tracker)
        self.fuser = MapFuser.from_config(cfg)
        self.telemetry = telemetry if telemetry is not None else Telemetry()
        self.trajectory: list[tuple[float, float, float, float]] = []  # (ts, x, y, theta)

    def step(self, frame: FrameData) -> FrameResult:
        """
        Assumptions:
          - frame.depth is a 2D depth field, higher = farther
          - frame.img_gray is the matching grayscale image
          - estimator output is in cm and is converted to map cells here
        """
        # --- 1) Local grid
        local_grid = self.builder.build(frame.depth)
        occupancy = self.builder.classify(local_grid)

        # --- 2) Egomotion
        motion = self.estimator.process_frame(frame.img_gray)

        # --- 3) Fusion
        stats = self.fuser.update_map(
            occupancy,
            self.fuser.cm_to_cells(motion.dx),
            self.fuser.cm_to_cells(motion.dy),
            motion.dtheta,
        )
        pose = self.fuser.pose.as_tuple()
        self.trajectory.append((float(frame.ts), *pose))

        # --- 4) Telemetry
        tracker_info = dict(self.estimator.last_tracker_info)
        self.telemetry.log_frame(frame.idx, {
            "ts": float(frame.ts),
            "motion": {
                "dx_cm": float(motion.dx),
                "dy_cm": float(motion.dy),
                "dtheta": float(motion.dtheta),
                "num_points": int(motion.num_points),
                "valid": bool(motion.valid),
                "reason": motion.reason,
            },
            "tracker": tracker_info,
            "fuse": {
                "written": stats.written,
                "unknown": stats.unknown,
                "out_of_bounds": stats.out_of_bounds,
                "dropped_fraction": stats.dropped_fraction,
            },
            "pose": {"x": pose[0], "y": pose[1], "theta": pose[2]},
        })

        return FrameResult(
            idx=frame.idx,
            ts=frame.ts,
            local_grid=local_grid,
            occupancy=occupancy,
            motion=motion,
            fuse=stats,
            pose=pose,
            tracker_info=tracker_info,
        )


class FrameWorker:
    """
    At most one frame in flight; frames offered while busy are dropped, not queued.

    offer() never blocks: it tries the busy lock and hands the frame to a
    single background thread. The worker publishes each finished frame as a
    copy, so latest() can be polled from any thread.
    """

    def __init__(self, pipeline: MappingPipeline):
        self.pipeline = pipeline
        self.accepted = 0
        self.dropped = 0

        self._busy = threading.Lock()
        self._closed = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="occfuse-frame")
        self._pending: Future | None = None

        self._result_lock = threading.Lock()
        self._latest: FrameResult | None = None
        self._latest_map: np.ndarray | None = None
        self._latest_trajectory: list[tuple[float, float, float, float]] = []

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def offer(self, frame: FrameData) -> bool:
        if self._closed.is_set():
            return False
        if not self._busy.acquire(blocking=False):
            self.dropped += 1
            self.pipeline.telemetry.log_drop()
            logger.debug("frame %d dropped: previous frame still in flight", frame.idx)
            return False

        try:
            self._pending = self._executor.submit(self._run, frame)
        except RuntimeError:
            # shutdown() won the race
            self._busy.release()
            return False
        self.accepted += 1
        return True

    def _run(self, frame: FrameData) -> None:
        try:
            result = self.pipeline.step(frame)
            snapshot = self.pipeline.fuser.snapshot()
            trajectory = list(self.pipeline.trajectory)
            with self._result_lock:
                self._latest = result
                self._latest_map = snapshot
                self._latest_trajectory = trajectory
        except Exception:
            logger.exception("frame %d failed and was dropped", frame.idx)
        finally:
            self._busy.release()

    def latest(self) -> tuple[FrameResult | None, np.ndarray | None]:
        with self._result_lock:
            return self._latest, self._latest_map

    def latest_trajectory(self) -> list[tuple[float, float, float, float]]:
        with self._result_lock:
            return list(self._latest_trajectory)

    def wait_idle(self, timeout: float | None = None) -> bool:
        fut = self._pending
        if fut is None:
            return True
        done, _ = wait([fut], timeout=timeout)
        return bool(done)

    def shutdown(self) -> None:
        """Finish the in-flight frame and reject every later offer."""
        self._closed.set()
        self._executor.shutdown(wait=True)
        logger.info("frame worker stopped: accepted=%d dropped=%d", self.accepted, self.dropped)
