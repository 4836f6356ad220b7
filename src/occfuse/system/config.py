from __future__ import annotations

import copy

import yaml

DEFAULT_CONFIG: dict = {
    "grid": {
        "width": 128,
        "height": 96,
        "free_threshold": 180,
        "max_depth": None,
        "invert_depth": False,
    },
    "bilateral": {
        "radius": 2,
        "sigma_spatial": 1.5,
        "sigma_depth": 20.0,
    },
    "egomotion": {
        "min_points": 5,
        "scale_cm_per_px": 0.2,
        "rotation_gain": 0.01,
    },
    "tracking": {
        "method": "orb",
        "nfeatures": 1000,
        "fast_threshold": 20,
        "ratio": 0.8,
        "max_matches": 500,
        "max_corners": 400,
        "quality": 0.01,
        "min_distance": 7.0,
        "win_size": 21,
        "max_level": 3,
        "fb_thresh": 1.0,
    },
    "map": {
        "size": 1000,
        "cell_size_cm": 5.0,
    },
    "dataset": {
        "sequence": "sequence",
        "start": 0,
        "step": 1,
        "max_frames": None,
        "max_dt": 0.02,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def validate_config(cfg: dict) -> dict:
    g, b, e, m = cfg["grid"], cfg["bilateral"], cfg["egomotion"], cfg["map"]

    if int(g["width"]) <= 0 or int(g["height"]) <= 0:
        raise ValueError(f"grid.width/height must be > 0, got {g['width']}x{g['height']}")
    if g.get("max_depth") is not None and float(g["max_depth"]) <= 0:
        raise ValueError(f"grid.max_depth must be > 0 or null, got {g['max_depth']}")
    if int(b["radius"]) < 0:
        raise ValueError(f"bilateral.radius must be >= 0, got {b['radius']}")
    # a zero sigma would leave the bilateral normaliser undefined
    if float(b["sigma_spatial"]) <= 0 or float(b["sigma_depth"]) <= 0:
        raise ValueError("bilateral.sigma_spatial and bilateral.sigma_depth must be > 0")
    if int(e["min_points"]) < 1:
        raise ValueError(f"egomotion.min_points must be >= 1, got {e['min_points']}")
    if float(e["scale_cm_per_px"]) <= 0:
        raise ValueError(f"egomotion.scale_cm_per_px must be > 0, got {e['scale_cm_per_px']}")
    if int(m["size"]) <= 0 or float(m["cell_size_cm"]) <= 0:
        raise ValueError("map.size and map.cell_size_cm must be > 0")
    if str(cfg["tracking"]["method"]).lower() not in ("orb", "klt"):
        raise ValueError(f"tracking.method must be 'orb' or 'klt', got {cfg['tracking']['method']!r}")
    return cfg


def load_config(path: str | None = None, overrides: dict | None = None) -> dict:
    """Defaults, then the YAML file at `path`, then `overrides`; validated."""
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if path is not None:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config root must be a mapping: {path}")
        cfg = _deep_merge(cfg, loaded)
    if overrides:
        cfg = _deep_merge(cfg, overrides)
    return validate_config(cfg)
