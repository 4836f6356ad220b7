import json
import threading


class Telemetry:
    def __init__(self):
        self.frames = []
        self.dropped = 0
        self._lock = threading.Lock()

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        with self._lock:
            self.frames.append(rec)

    def log_drop(self):
        with self._lock:
            self.dropped += 1

    def dump(self, path: str):
        with self._lock:
            payload = {"dropped_frames": self.dropped, "frames": list(self.frames)}
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
