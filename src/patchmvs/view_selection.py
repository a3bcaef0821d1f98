"""Neighbor view selection, depth bounds and baselines."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .camera import Camera
from .config import SolverConfig
from .geometry import angle_between

logger = logging.getLogger(__name__)

DEFAULT_DEPTH_RANGE = (0.1, 100.0)

# camera index -> list of (pixel xy, world point) observations
Observations = Dict[int, List[Tuple[np.ndarray, np.ndarray]]]


def compute_depth_bounds(cams: Sequence[Camera], observations: Observations) -> None:
    """Set min/max depth of each camera from the sparse points it observes."""
    for idx, cam in enumerate(cams):
        depths = []
        gt = []
        for xy, X in observations.get(idx, []):
            d = float(cam.depth(X))
            if d > 0.0:
                depths.append(d)
                gt.append((np.asarray(xy, dtype=np.float64), np.asarray(X, dtype=np.float64)))
        cam.ground_truth = gt
        if depths:
            cam.min_depth = min(depths)
            cam.max_depth = max(depths)
        else:
            logger.warning(
                f"Camera {cam.uid} observes no sparse point, using default depth range {DEFAULT_DEPTH_RANGE}"
            )
            cam.min_depth, cam.max_depth = DEFAULT_DEPTH_RANGE


def select_neighbors(cams: Sequence[Camera], min_angle_deg: float, max_angle_deg: float,
                     max_views: int, rng: np.random.Generator, scale: int = -1) -> None:
    """Keep neighbors whose central viewing ray makes an angle in (min, max) with the reference one."""
    a_min = np.deg2rad(min_angle_deg)
    a_max = np.deg2rad(max_angle_deg)
    dirs = [cam.view_direction(scale) for cam in cams]
    for ref_idx, ref in enumerate(cams):
        putative: List[int] = []
        for idx in range(len(cams)):
            if idx == ref_idx:
                continue
            angle = angle_between(dirs[idx], dirs[ref_idx])
            if a_min < angle < a_max and float(np.dot(dirs[idx], dirs[ref_idx])) > 0.0:
                putative.append(idx)
        if len(putative) > max_views:
            rng.shuffle(putative)
        ref.view_neighbors = putative[:max_views]
        if not ref.view_neighbors:
            logger.warning(f"Camera {ref.uid} has no neighbor in the [{min_angle_deg}, {max_angle_deg}] deg window")


def compute_baselines(cams: Sequence[Camera]) -> None:
    for cam in cams:
        cam.baselines = [float(np.linalg.norm(cam.C - cams[j].C)) for j in cam.view_neighbors]
        if cam.baselines:
            cam.min_baseline = min(cam.baselines)
            cam.max_baseline = max(cam.baselines)
            cam.mean_baseline = float(np.mean(cam.baselines))
        else:
            cam.min_baseline = cam.max_baseline = 0.0
            cam.mean_baseline = 1.0


def prepare_cameras(cams: Sequence[Camera], observations: Observations, config: SolverConfig,
                    rng: Optional[np.random.Generator] = None) -> None:
    """Compute depth bounds, neighbors and baselines once, before any pixel is solved."""
    rng = rng if rng is not None else np.random.default_rng(config.seed)
    compute_depth_bounds(cams, observations)
    select_neighbors(cams, config.min_view_angle, config.max_view_angle, config.max_views, rng, config.scale)
    compute_baselines(cams)
    logger.info(f"Prepared {len(cams)} cameras, mean neighbor count "
                f"{np.mean([len(c.view_neighbors) for c in cams]) if cams else 0:.1f}")

