import math

import numpy as np
import pytest

from occfuse.modules.egomotion import EgomotionEstimator
from occfuse.modules.tracking import klt_track, make_tracker, orb_track
from occfuse.system.config import load_config


@pytest.fixture
def cfg():
    return load_config()


@pytest.mark.parametrize("n", [0, 1, 4])
def test_too_few_points_is_zero_motion(cfg, n):
    est = EgomotionEstimator(cfg)
    pts = np.full((n, 2), 400.0)
    assert est.estimate(pts, 640, 480) == (0.0, 0.0, 0.0)

    prop = est.propose(pts, 640, 480)
    assert not prop.valid
    assert prop.reason == f"REJECT_TOO_FEW_POINTS:{n}"


def test_centroid_offset_scaled_to_cm(cfg):
    est = EgomotionEstimator(cfg)
    # every point 10 px right and 20 px below the centre of a 640x480 image
    pts = [(330.0, 260.0)] * 5
    dx, dy, dtheta = est.estimate(pts, 640, 480)

    assert dx == pytest.approx(10.0 * 0.2)
    assert dy == pytest.approx(20.0 * 0.2)
    assert dtheta == pytest.approx(math.atan2(20.0, 10.0) * 0.01)


def test_symmetric_points_cancel(cfg):
    est = EgomotionEstimator(cfg)
    pts = [(300, 220), (340, 260), (300, 260), (340, 220), (320, 240)]
    dx, dy, dtheta = est.estimate(pts, 640, 480)
    assert (dx, dy, dtheta) == pytest.approx((0.0, 0.0, 0.0))


def test_config_controls_floor_and_scale():
    cfg = load_config(overrides={"egomotion": {"min_points": 2, "scale_cm_per_px": 1.0}})
    est = EgomotionEstimator(cfg)
    dx, dy, _ = est.estimate([(5.0, 5.0), (7.0, 5.0)], 8, 8)
    assert dx == pytest.approx(2.0)
    assert dy == pytest.approx(1.0)


def test_bad_point_shape_raises(cfg):
    with pytest.raises(ValueError):
        EgomotionEstimator(cfg).estimate(np.zeros((6, 3)), 640, 480)


def test_process_frame_keeps_previous_frame(cfg):
    calls = []
    pts = np.array([[330.0, 240.0]] * 6, dtype=np.float32)

    def tracker(prev, cur):
        calls.append((prev, cur))
        return pts, pts, {"method": "fake", "num_good": len(pts)}

    est = EgomotionEstimator(cfg, tracker=tracker)
    f0 = np.zeros((480, 640), np.uint8)
    f1 = np.ones((480, 640), np.uint8)

    first = est.process_frame(f0)
    assert first.reason == "INIT" and first.as_tuple() == (0.0, 0.0, 0.0)
    assert calls == []

    second = est.process_frame(f1)
    assert second.valid
    assert second.dx == pytest.approx(10.0 * 0.2)
    assert calls[0][0] is f0 and calls[0][1] is f1
    assert est.prev_gray is f1
    assert est.last_tracker_info["num_good"] == 6

    est.reset()
    assert est.process_frame(f0).reason == "INIT"
    assert len(calls) == 1


def _textured_pair(shift=(4, 3)):
    rng = np.random.default_rng(3)
    base = (rng.random((120, 160)) * 255).astype(np.uint8)
    base = np.kron(base[::4, ::4], np.ones((4, 4), np.uint8))[:120, :160]
    cur = np.roll(base, shift=(shift[1], shift[0]), axis=(0, 1))
    return base, cur


def test_klt_tracks_shifted_texture():
    prev, cur = _textured_pair()
    p0, p1, info = klt_track(prev, cur, max_corners=200)
    assert info["method"] == "klt"
    assert p0.shape == p1.shape
    assert p0.shape[0] > 10
    flow = np.median(p1 - p0, axis=0)
    assert flow == pytest.approx([4.0, 3.0], abs=0.5)


def test_orb_returns_matched_pairs():
    prev, cur = _textured_pair()
    p0, p1, info = orb_track(prev, cur, nfeatures=500)
    assert info["method"] == "orb"
    assert p0.shape == p1.shape
    assert p0.ndim == 2 and p0.shape[1] == 2


def test_trackers_reject_color_images():
    img = np.zeros((10, 10, 3), np.uint8)
    with pytest.raises(ValueError):
        orb_track(img, img)


def test_make_tracker_unknown_method():
    with pytest.raises(ValueError):
        make_tracker({"tracking": {"method": "sift"}})
