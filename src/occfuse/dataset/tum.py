from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, List, Tuple

import cv2
import numpy as np

TUM_DEPTH_SCALE = 5000.0  # 16-bit PNG units per metre


@dataclass
class TumEntry:
    ts: float
    path: str


def _read_list_txt(list_path: str) -> List[TumEntry]:
    entries: List[TumEntry] = []
    base = os.path.dirname(list_path)

    with open(list_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            entries.append(TumEntry(ts=float(parts[0]), path=os.path.join(base, parts[1])))
    return entries


def associate(rgb: List[TumEntry], depth: List[TumEntry], max_dt: float) -> List[Tuple[TumEntry, TumEntry]]:
    """Pair every RGB entry with the nearest-in-time depth entry, dropping pairs further apart than max_dt."""
    if not rgb or not depth:
        return []
    depth_sorted = sorted(depth, key=lambda e: e.ts)
    d_ts = np.array([e.ts for e in depth_sorted], dtype=np.float64)

    pairs = []
    for e in rgb:
        j = int(np.searchsorted(d_ts, e.ts))
        cands = [k for k in (j - 1, j) if 0 <= k < len(d_ts)]
        k = min(cands, key=lambda c: abs(d_ts[c] - e.ts))
        if abs(d_ts[k] - e.ts) <= max_dt:
            pairs.append((e, depth_sorted[k]))
    return pairs


class TumRgbdSequence:
    def __init__(self, seq_dir: str, *, max_dt: float = 0.02):
        self.seq_dir = seq_dir
        rgb_txt = os.path.join(seq_dir, "rgb.txt")
        depth_txt = os.path.join(seq_dir, "depth.txt")
        if not os.path.isfile(rgb_txt):
            raise FileNotFoundError(f"Missing rgb.txt: {rgb_txt}")
        if not os.path.isfile(depth_txt):
            raise FileNotFoundError(f"Missing depth.txt: {depth_txt}")
        self.pairs = associate(_read_list_txt(rgb_txt), _read_list_txt(depth_txt), max_dt)

    def __len__(self) -> int:
        return len(self.pairs)

    def iter_frames(
        self,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
    ) -> Iterator[Tuple[int, float, np.ndarray, np.ndarray]]:
        """Yields (idx, ts, gray uint8, depth in metres float32; 0 = no reading)."""
        end = len(self.pairs) if max_frames is None else min(len(self.pairs), start + max_frames * step)
        idx = 0
        for i in range(start, end, step):
            rgb_e, depth_e = self.pairs[i]
            img = cv2.imread(rgb_e.path, cv2.IMREAD_GRAYSCALE)
            if img is None:
                raise FileNotFoundError(f"Failed to read image: {rgb_e.path}")
            raw = cv2.imread(depth_e.path, cv2.IMREAD_UNCHANGED)
            if raw is None:
                raise FileNotFoundError(f"Failed to read depth: {depth_e.path}")
            depth = raw.astype(np.float32) / TUM_DEPTH_SCALE
            yield idx, rgb_e.ts, img, depth
            idx += 1
