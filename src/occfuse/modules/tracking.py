# src/occfuse/modules/tracking.py
from __future__ import annotations

from functools import partial
from typing import Callable

import cv2
import numpy as np

Tracker = Callable[[np.ndarray, np.ndarray], "tuple[np.ndarray, np.ndarray, dict]"]


def _empty() -> np.ndarray:
    return np.zeros((0, 2), np.float32)


def _check_pair(prev_gray: np.ndarray, cur_gray: np.ndarray) -> None:
    if prev_gray is None or cur_gray is None:
        raise ValueError("Input images are None")
    if prev_gray.ndim != 2 or cur_gray.ndim != 2:
        raise ValueError("trackers expect grayscale images (H,W).")


def orb_track(
    prev_gray: np.ndarray,
    cur_gray: np.ndarray,
    *,
    nfeatures: int = 1000,
    fast_threshold: int = 20,
    ratio: float = 0.8,
    max_matches: int | None = 500,
) -> tuple[np.ndarray, np.ndarray, dict]:
    """
    Match ORB features between two frames (kNN + Lowe ratio).

    Returns:
        pts_prev, pts_cur: (N,2) float32 matched pixel coords, best matches first
        info: num_kp_prev, num_kp_cur, num_good
    """
    _check_pair(prev_gray, cur_gray)

    orb = cv2.ORB_create(nfeatures=nfeatures, fastThreshold=fast_threshold)
    kp0, des0 = orb.detectAndCompute(prev_gray, None)
    kp1, des1 = orb.detectAndCompute(cur_gray, None)

    info = {
        "method": "orb",
        "num_kp_prev": 0 if kp0 is None else len(kp0),
        "num_kp_cur": 0 if kp1 is None else len(kp1),
        "num_good": 0,
    }
    if des0 is None or des1 is None or len(des0) < 2 or len(des1) < 2:
        return _empty(), _empty(), info

    bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
    good = [
        pair[0]
        for pair in bf.knnMatch(des0, des1, k=2)
        if len(pair) == 2 and pair[0].distance < ratio * pair[1].distance
    ]
    good.sort(key=lambda m: m.distance)
    if max_matches is not None:
        good = good[:max_matches]

    info["num_good"] = len(good)
    if not good:
        return _empty(), _empty(), info

    pts_prev = np.array([kp0[m.queryIdx].pt for m in good], dtype=np.float32)
    pts_cur = np.array([kp1[m.trainIdx].pt for m in good], dtype=np.float32)
    return pts_prev, pts_cur, info


def klt_track(
    prev_gray: np.ndarray,
    cur_gray: np.ndarray,
    *,
    max_corners: int = 400,
    quality: float = 0.01,
    min_distance: float = 7.0,
    win_size: int = 21,
    max_level: int = 3,
    fb_thresh: float = 1.0,
) -> tuple[np.ndarray, np.ndarray, dict]:
    """Shi-Tomasi corners in prev tracked into cur with pyramidal LK and a forward-backward check."""
    _check_pair(prev_gray, cur_gray)
    info = {"method": "klt", "num_corners": 0, "num_good": 0}

    corners = cv2.goodFeaturesToTrack(
        prev_gray,
        maxCorners=int(max_corners),
        qualityLevel=float(quality),
        minDistance=float(min_distance),
    )
    if corners is None:
        return _empty(), _empty(), info
    p0 = corners.reshape(-1, 1, 2).astype(np.float32)
    info["num_corners"] = int(p0.shape[0])

    lk = dict(
        winSize=(win_size, win_size),
        maxLevel=max_level,
        criteria=(cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 30, 0.01),
    )
    p1, st1, _ = cv2.calcOpticalFlowPyrLK(prev_gray, cur_gray, p0, None, **lk)
    p0r, st2, _ = cv2.calcOpticalFlowPyrLK(cur_gray, prev_gray, p1, None, **lk)

    fb = np.linalg.norm(p0r.reshape(-1, 2) - p0.reshape(-1, 2), axis=1)
    ok = st1.reshape(-1).astype(bool) & st2.reshape(-1).astype(bool) & (fb < fb_thresh)

    info["num_good"] = int(ok.sum())
    return p0.reshape(-1, 2)[ok], p1.reshape(-1, 2)[ok].astype(np.float32), info


def make_tracker(cfg: dict) -> Tracker:
    t = cfg.get("tracking", {})
    method = str(t.get("method", "orb")).lower()
    if method == "orb":
        return partial(
            orb_track,
            nfeatures=int(t.get("nfeatures", 1000)),
            fast_threshold=int(t.get("fast_threshold", 20)),
            ratio=float(t.get("ratio", 0.8)),
            max_matches=None if t.get("max_matches", 500) is None else int(t.get("max_matches", 500)),
        )
    if method == "klt":
        return partial(
            klt_track,
            max_corners=int(t.get("max_corners", 400)),
            quality=float(t.get("quality", 0.01)),
            min_distance=float(t.get("min_distance", 7.0)),
            win_size=int(t.get("win_size", 21)),
            max_level=int(t.get("max_level", 3)),
            fb_thresh=float(t.get("fb_thresh", 1.0)),
        )
    raise ValueError(f"Unknown tracking.method: {method!r} (expected 'orb' or 'klt')")
