# src/occfuse/grid/filters.py
from __future__ import annotations

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

EDGE_THRESHOLD = 30.0

_NEIGHBOURS_3X3 = [(dy, dx) for dy in (-1, 0, 1) for dx in (-1, 0, 1)]


def as_grid(grid, name: str = "grid") -> np.ndarray:
    """
    Validate a 2D numeric grid and return it as an ndarray (no copy if possible).

    Raises:
        ValueError: ragged rows, wrong rank, zero extent or non-numeric dtype.
    """
    try:
        arr = np.asarray(grid)
    except ValueError as ex:  # numpy refuses ragged nested sequences
        raise ValueError(f"{name} rows have mismatched lengths") from ex

    if arr.dtype == object:
        raise ValueError(f"{name} rows have mismatched lengths or non-numeric cells")
    if arr.ndim != 2:
        raise ValueError(f"{name} must be 2D (H,W), got shape {arr.shape}")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise ValueError(f"{name} must have non-zero width and height, got shape {arr.shape}")
    if not np.issubdtype(arr.dtype, np.number):
        raise ValueError(f"{name} must be numeric, got dtype {arr.dtype}")
    return arr


def _cast_like(values: np.ndarray, ref: np.ndarray) -> np.ndarray:
    if np.issubdtype(ref.dtype, np.integer):
        return np.rint(values).astype(ref.dtype)
    return values.astype(ref.dtype, copy=False)


def median_filter(grid, window_size: int = 3) -> np.ndarray:
    """
    Median over a window_size x window_size neighbourhood with replicated edges.

    For even window sizes the window extends one cell further up/left and the
    upper middle element of the sorted window is taken.
    """
    arr = as_grid(grid)
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")

    lo = window_size // 2
    hi = window_size - 1 - lo
    padded = np.pad(arr, ((lo, hi), (lo, hi)), mode="edge")
    windows = sliding_window_view(padded, (window_size, window_size))
    flat = windows.reshape(arr.shape[0], arr.shape[1], window_size * window_size)
    return np.sort(flat, axis=-1)[..., flat.shape[-1] // 2]


def bilateral_filter(
    grid,
    radius: int = 2,
    sigma_spatial: float = 1.5,
    sigma_depth: float = 20.0,
) -> np.ndarray:
    """
    Edge-preserving smoothing.

    Each neighbour within `radius` (coordinates clamped to the grid) is
    weighted by a spatial Gaussian times a range Gaussian of its value
    difference to the centre cell. The centre always has weight 1, so the
    normaliser never vanishes.

    Args:
        grid: (H,W) numeric grid.
        radius: half window size; 0 returns a copy of the input.
        sigma_spatial: spatial Gaussian sigma in cells (> 0).
        sigma_depth: range Gaussian sigma in value units (> 0).

    Returns:
        (H,W) grid of the input dtype. Integer grids are rounded to nearest.
    """
    arr = as_grid(grid)
    if radius < 0:
        raise ValueError(f"radius must be >= 0, got {radius}")
    if sigma_spatial <= 0 or sigma_depth <= 0:
        raise ValueError(
            f"bilateral sigmas must be > 0, got sigma_spatial={sigma_spatial} sigma_depth={sigma_depth}"
        )

    src = arr.astype(np.float64)
    H, W = src.shape
    size = 2 * radius + 1

    ax = np.arange(-radius, radius + 1, dtype=np.float64)
    yy, xx = np.meshgrid(ax, ax, indexing="ij")
    spatial = np.exp(-(xx * xx + yy * yy) / (2.0 * sigma_spatial * sigma_spatial))
    inv_range = 1.0 / (2.0 * sigma_depth * sigma_depth)

    padded = np.pad(src, radius, mode="edge")
    num = np.zeros_like(src)
    den = np.zeros_like(src)
    for ky in range(size):
        for kx in range(size):
            diff = padded[ky:ky + H, kx:kx + W] - src
            w = spatial[ky, kx] * np.exp(-(diff * diff) * inv_range)
            # accumulate offsets from the centre so a flat patch stays exact
            num += w * diff
            den += w

    return _cast_like(src + num / den, arr)


def compute_edge_mask(grid, threshold: float = EDGE_THRESHOLD) -> np.ndarray:
    """Sobel magnitude > threshold on interior cells; the outer ring is never an edge."""
    arr = as_grid(grid)
    H, W = arr.shape
    mask = np.zeros((H, W), dtype=bool)
    if H < 3 or W < 3:
        return mask

    src = np.ascontiguousarray(arr, dtype=np.float64)
    gx = cv2.Sobel(src, cv2.CV_64F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
    gy = cv2.Sobel(src, cv2.CV_64F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
    mag = np.sqrt(gx * gx + gy * gy)

    mask[1:-1, 1:-1] = mag[1:-1, 1:-1] > threshold
    return mask


def _neighbour_sums(arr: np.ndarray, eligible: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    H, W = arr.shape
    acc_dtype = np.int64 if np.issubdtype(arr.dtype, np.integer) else np.float64
    vals = np.pad(arr.astype(acc_dtype), 1, mode="constant")
    ok = np.pad(eligible, 1, mode="constant", constant_values=False)

    total = np.zeros((H, W), dtype=acc_dtype)
    count = np.zeros((H, W), dtype=np.int64)
    for dy, dx in _NEIGHBOURS_3X3:
        v = vals[1 + dy:1 + dy + H, 1 + dx:1 + dx + W]
        m = ok[1 + dy:1 + dy + H, 1 + dx:1 + dx + W]
        total += np.where(m, v, 0)
        count += m
    return total, count


def _mean_into(out: np.ndarray, where: np.ndarray, total: np.ndarray, count: np.ndarray) -> None:
    if np.issubdtype(out.dtype, np.integer):
        out[where] = total[where] // count[where]
    else:
        out[where] = total[where] / count[where]


def fill_holes_edge_aware(grid) -> np.ndarray:
    """
    Fill cells <= 0 with the mean of positive 3x3 neighbours.

    A neighbour is skipped when both it and the hole cell lie on a depth
    edge, i.e. the pair straddles a discontinuity, so foreground and
    background values do not bleed into each other. Holes with no usable
    neighbour become 0.
    """
    arr = as_grid(grid)
    edges = compute_edge_mask(arr)
    holes = arr <= 0
    positive = arr > 0

    total, count = _neighbour_sums(arr, positive)
    total_off_edge, count_off_edge = _neighbour_sums(arr, positive & ~edges)
    # holes on an edge only take neighbours that are off the edge
    total[edges] = total_off_edge[edges]
    count[edges] = count_off_edge[edges]

    out = arr.copy()
    out[holes] = 0
    _mean_into(out, holes & (count > 0), total, count)
    return out


def fill_holes(grid) -> np.ndarray:
    """Fill cells < 0 with the mean of positive 3x3 neighbours, no edge test; holes with none become 0."""
    arr = as_grid(grid)
    holes = arr < 0

    total, count = _neighbour_sums(arr, arr > 0)

    out = arr.copy()
    out[holes] = 0
    _mean_into(out, holes & (count > 0), total, count)
    return out
