import threading

import numpy as np
import pytest

from occfuse.grid.local_grid import UNKNOWN
from occfuse.mapping.fuser import MapFuser
from occfuse.system.config import load_config
from occfuse.system.runner import FrameWorker, MappingPipeline
from occfuse.system.state import FrameData
from occfuse.system.telemetry import Telemetry


def _static_tracker(prev, cur):
    # points centred in the image: no motion
    h, w = cur.shape
    pts = np.array([[w / 2.0, h / 2.0]] * 8, dtype=np.float32)
    return pts, pts, {"method": "static", "num_good": 8}


def _frame(idx, depth_value=220):
    depth = np.full((96, 128), depth_value, dtype=np.uint8)
    depth[:, :20] = 60  # near obstacle on the left
    return FrameData(idx=idx, ts=float(idx) / 30.0, img_gray=np.zeros((96, 128), np.uint8), depth=depth)


@pytest.fixture
def cfg():
    return load_config(overrides={"map": {"size": 300}, "grid": {"width": 32, "height": 24}})


def test_pipeline_step_fuses_classified_grid(cfg):
    pipeline = MappingPipeline(cfg, tracker=_static_tracker)
    result = pipeline.step(_frame(0))

    assert result.local_grid.shape == (24, 32)
    assert result.motion.reason == "INIT"
    assert result.fuse.written == 24 * 32
    assert result.pose == (150.0, 150.0, 0.0)

    gmap = pipeline.fuser.get_global_map()
    window = gmap[150 - 12:150 + 12, 150 - 16:150 + 16]
    assert np.array_equal(window, result.occupancy)
    assert (window[:, :4] == 1).all()
    assert (window[:, -4:] == 0).all()

    rec = pipeline.telemetry.frames[-1]
    assert rec["frame_idx"] == 0
    assert rec["fuse"]["written"] == 24 * 32


def test_pipeline_static_scene_does_not_drift(cfg):
    pipeline = MappingPipeline(cfg, tracker=_static_tracker)
    pipeline.step(_frame(0))
    first = pipeline.fuser.snapshot()
    for i in range(1, 5):
        res = pipeline.step(_frame(i))
        assert res.motion.valid
    assert pipeline.fuser.cell_position() == (150, 150)
    assert np.array_equal(pipeline.fuser.get_global_map(), first)
    assert len(pipeline.trajectory) == 5


def test_pipeline_motion_converted_to_cells(cfg):
    def right_tracker(prev, cur):
        h, w = cur.shape
        pts = np.array([[w / 2.0 + 50.0, h / 2.0]] * 6, dtype=np.float32)
        return pts, pts, {}

    pipeline = MappingPipeline(cfg, tracker=right_tracker)
    pipeline.step(_frame(0))
    res = pipeline.step(_frame(1))

    # 50 px * 0.2 cm/px = 10 cm = 2 cells, heading atan2(0, 50) = 0
    assert res.motion.dx == pytest.approx(10.0)
    assert res.pose[0] == pytest.approx(152.0)
    assert res.pose[1] == pytest.approx(150.0)


class _BlockingPipeline:
    def __init__(self):
        self.fuser = MapFuser(map_size=10)
        self.telemetry = Telemetry()
        self.release = threading.Event()
        self.started = threading.Event()
        self.seen = []
        self.trajectory = []

    def step(self, frame):
        self.started.set()
        self.release.wait(timeout=5.0)
        self.seen.append(frame.idx)
        if frame.idx < 0:
            raise RuntimeError("bad frame")
        self.trajectory.append((frame.ts, 0.0, 0.0, 0.0))
        return frame.idx


def test_worker_drops_frames_while_busy():
    pipeline = _BlockingPipeline()
    worker = FrameWorker(pipeline)
    try:
        assert worker.offer(_frame(0))
        assert pipeline.started.wait(timeout=5.0)
        assert worker.busy

        assert not worker.offer(_frame(1))
        assert not worker.offer(_frame(2))
        assert worker.dropped == 2
        assert pipeline.telemetry.dropped == 2

        pipeline.release.set()
        assert worker.wait_idle(timeout=5.0)
        assert not worker.busy

        result, snapshot = worker.latest()
        assert result == 0
        assert snapshot.shape == (10, 10)
        assert snapshot is not pipeline.fuser.get_global_map()

        assert worker.offer(_frame(3))
        assert worker.wait_idle(timeout=5.0)
        assert pipeline.seen == [0, 3]
        assert worker.accepted == 2
    finally:
        pipeline.release.set()
        worker.shutdown()


def test_worker_survives_failed_frame_and_stops_on_shutdown():
    pipeline = _BlockingPipeline()
    pipeline.release.set()
    worker = FrameWorker(pipeline)

    assert worker.offer(_frame(-1))
    assert worker.wait_idle(timeout=5.0)
    assert worker.latest() == (None, None)

    assert worker.offer(_frame(4))
    worker.shutdown()
    assert pipeline.seen == [-1, 4]
    assert not worker.offer(_frame(5))
    assert (pipeline.fuser.get_global_map() == UNKNOWN).all()


def test_worker_publishes_copies_of_map_and_trajectory(cfg):
    pipeline = MappingPipeline(cfg, tracker=_static_tracker)
    worker = FrameWorker(pipeline)
    try:
        assert worker.latest_trajectory() == []
        for i in range(3):
            assert worker.offer(_frame(i))
            assert worker.wait_idle(timeout=5.0)

        result, global_map = worker.latest()
        trajectory = worker.latest_trajectory()

        assert result.idx == 2
        assert trajectory[-1][1:] == result.pose
        assert len(trajectory) == 3
        assert np.array_equal(global_map, pipeline.fuser.get_global_map())
        assert global_map is not pipeline.fuser.get_global_map()

        # published data is detached from what the worker keeps mutating
        global_map[:] = UNKNOWN
        trajectory.clear()
        assert (pipeline.fuser.get_global_map() != UNKNOWN).any()
        assert len(worker.latest_trajectory()) == 3
        assert len(pipeline.trajectory) == 3
    finally:
        worker.shutdown()
