import numpy as np
import pytest

from occfuse.grid.local_grid import (
    FREE,
    OCCUPIED,
    UNKNOWN,
    LocalGridBuilder,
    classify_occupancy,
    depth_to_gray,
)
from occfuse.system.config import load_config


def test_depth_to_gray_uint8_passthrough():
    gray = np.arange(12, dtype=np.uint8).reshape(3, 4)
    assert depth_to_gray(gray) is gray


def test_depth_to_gray_stretches_valid_range_and_marks_holes():
    depth = np.array([[0.0, 1.0], [np.nan, 3.0]])
    gray = depth_to_gray(depth)
    assert gray.dtype == np.uint8
    assert gray[0, 0] == 0 and gray[1, 0] == 0
    assert gray[0, 1] == 1 and gray[1, 1] == 255


def test_depth_to_gray_fixed_far_plane_and_invert():
    depth = np.array([[2.5, 5.0, 10.0]])
    assert depth_to_gray(depth, max_depth=5.0).tolist() == [[128, 255, 255]]
    assert depth_to_gray(depth, max_depth=5.0, invert=True).tolist() == [[128, 1, 1]]


def test_classify_occupancy():
    grid = np.array([[0, 100, 180, 181, 255, -3]])
    occ = classify_occupancy(grid, free_threshold=180)
    assert occ.tolist() == [[UNKNOWN, OCCUPIED, OCCUPIED, FREE, FREE, UNKNOWN]]


def test_builder_outputs_configured_resolution():
    builder = LocalGridBuilder(load_config())
    depth = np.random.default_rng(0).uniform(0.5, 4.0, size=(480, 640)).astype(np.float32)
    grid = builder.build(depth)

    assert grid.shape == (96, 128)
    assert grid.dtype == np.int32
    assert grid.min() >= 0 and grid.max() <= 255
    assert builder.last_grid is grid


def test_builder_fills_small_holes_and_keeps_flat_depth():
    cfg = load_config(overrides={"grid": {"width": 16, "height": 12}})
    builder = LocalGridBuilder(cfg)
    depth = np.full((120, 160), 200, dtype=np.uint8)
    depth[60:70, 80:90] = 0  # one grid cell worth of missing depth
    grid = builder.build(depth)

    assert grid.shape == (12, 16)
    assert np.count_nonzero(grid <= 0) == 0
    assert grid[0, 0] == 200


def test_builder_rejects_bad_size():
    with pytest.raises(ValueError):
        LocalGridBuilder({"grid": {"width": 0, "height": 96}})
