from __future__ import annotations

import argparse
import time
from pathlib import Path

import cv2
import numpy as np
import matplotlib.pyplot as plt
import yaml

from occfuse.dataset.tum import TumRgbdSequence
from occfuse.grid.local_grid import FREE, OCCUPIED, UNKNOWN
from occfuse.system.config import load_config
from occfuse.system.runner import FrameWorker, MappingPipeline
from occfuse.system.state import FrameData
from occfuse.system.telemetry import Telemetry


def map_to_image(global_map: np.ndarray) -> np.ndarray:
    """Unknown grey, free white, occupied black."""
    img = np.full(global_map.shape, 127, dtype=np.uint8)
    img[global_map == FREE] = 255
    img[global_map == OCCUPIED] = 0
    return img


class MapVisualizer:
    def __init__(self):
        plt.ion()
        self.fig = plt.figure(figsize=(12, 5))
        self.ax1 = self.fig.add_subplot(121)
        self.ax2 = self.fig.add_subplot(122)

    def update(self, global_map: np.ndarray, trajectory: list[tuple[float, float, float, float]], local_grid=None):
        if not trajectory:
            return
        xs = np.array([p[1] for p in trajectory])
        ys = np.array([p[2] for p in trajectory])

        self.ax1.clear()
        self.ax1.set_title(f'Global map ({len(trajectory)} frames)')
        self.ax1.imshow(map_to_image(global_map), cmap='gray', vmin=0, vmax=255)
        self.ax1.plot(xs, ys, 'b-', linewidth=1.0, alpha=0.7)
        self.ax1.scatter(xs[-1], ys[-1], c='r', s=30, marker='o', label='Current')
        self.ax1.legend()

        self.ax2.clear()
        self.ax2.set_title('Local grid (depth, higher = farther)')
        if local_grid is not None:
            self.ax2.imshow(local_grid, cmap='magma', vmin=0, vmax=255)

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def _write_traj(trajectory: list[tuple[float, float, float, float]], out_path: str) -> None:
    with open(out_path, "w", encoding="utf-8") as f:
        for ts, x, y, theta in trajectory:
            f.write(f"{ts:.6f} {x:.6f} {y:.6f} {theta:.6f}\n")


def main() -> None:
    ap = argparse.ArgumentParser(description="Fuse a TUM RGB-D sequence into a 2D occupancy map.")
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--tum_dir", type=str, required=True, help="Path to TUM sequence dir, e.g. .../freiburg1_xyz")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--visualize", action="store_true", help="Show the map while it is being built")
    ap.add_argument("--viz_update_every", type=int, default=10, help="Update visualization every N frames")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    ap.add_argument("--live", action="store_true", help="Offer frames to a background worker; frames arriving while busy are dropped")
    ap.add_argument("--fps", type=float, default=30.0, help="Frame rate simulated in --live mode")
    args = ap.parse_args()

    print(f"[INFO] Loading config: {args.config}")
    cfg = load_config(args.config)

    seq_name = cfg["dataset"]["sequence"]
    out_dir = Path(args.out_dir) / seq_name
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    print(f"[INFO] Loading TUM sequence: {args.tum_dir}")
    seq = TumRgbdSequence(args.tum_dir, max_dt=float(cfg["dataset"].get("max_dt", 0.02)))
    print(f"[INFO] Associated rgb/depth frames: {len(seq)}")

    telemetry = Telemetry()
    pipeline = MappingPipeline(cfg, telemetry=telemetry)
    worker = FrameWorker(pipeline) if args.live else None
    visualizer = MapVisualizer() if args.visualize else None

    start = int(cfg["dataset"].get("start", 0))
    step_stride = int(cfg["dataset"].get("step", 1))
    max_frames = cfg["dataset"].get("max_frames", None)
    if max_frames is not None:
        max_frames = int(max_frames)

    frame_count = 0
    period = 1.0 / args.fps if args.fps > 0 else 0.0

    print(f"[INFO] Starting loop: start={start} step={step_stride} max_frames={max_frames} live={args.live}")
    for idx, ts, img_gray, depth in seq.iter_frames(start=start, step=step_stride, max_frames=max_frames):
        frame = FrameData(idx=idx, ts=ts, img_gray=img_gray, depth=depth)

        if worker is not None:
            # only read what the worker has published; the pipeline belongs to its thread
            worker.offer(frame)
            time.sleep(period)
            result, global_map = worker.latest()
            trajectory = worker.latest_trajectory()
        else:
            result = pipeline.step(frame)
            global_map = pipeline.fuser.get_global_map()
            trajectory = pipeline.trajectory
        frame_count += 1

        if args.log_every > 0 and (frame_count % args.log_every == 0):
            pose = None if result is None else result.pose
            print(f"[INFO] Frame {frame_count} / {max_frames if max_frames else '?'} pose={pose}")

        if visualizer is not None and global_map is not None and frame_count % args.viz_update_every == 0:
            visualizer.update(
                global_map,
                list(trajectory),
                None if result is None else result.local_grid,
            )

    if worker is not None:
        worker.shutdown()
        print(f"[INFO] Live mode: accepted={worker.accepted} dropped={worker.dropped}")

    # Save outputs
    traj_path = str(out_dir / "traj.txt")
    map_path = str(out_dir / "global_map.png")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    _write_traj(pipeline.trajectory, traj_path)
    cv2.imwrite(map_path, map_to_image(pipeline.fuser.get_global_map()))
    telemetry.dump(metrics_path)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)

    known = int(np.count_nonzero(pipeline.fuser.get_global_map() != UNKNOWN))
    print(f"[OK] observed cells: {known}")
    print(f"[OK] wrote: {traj_path}")
    print(f"[OK] wrote: {map_path}")
    print(f"[OK] wrote: {metrics_path}")

    if visualizer is not None:
        print("[INFO] Showing final map. Close the window to exit.")
        visualizer.update(pipeline.fuser.snapshot(), list(pipeline.trajectory), pipeline.builder.last_grid)
        visualizer.close()


if __name__ == "__main__":
    main()
