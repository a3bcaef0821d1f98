"""Workspace level orchestration: prepare, compute and export."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .camera import Camera
from .config import SolverConfig
from .depth_map import DepthMap
from .image import COLOR, load_image, required_channels
from .metrics import DescriptorCache
from .solver import PatchMatchDriver, SolveResult, create_backend
from .view_selection import Observations, prepare_cameras
from .workspace import Workspace

logger = logging.getLogger(__name__)

# Points exported to PLY must have a cost below this fraction of the metric MAX.
PLY_COST_FRACTION = 1.0 / 20.0

ProgressCallback = Callable[[float, str], None]


@dataclass
class ComputeResult:
    solved: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0


def prepare_workspace(
    workspace: Workspace,
    cams: List[Camera],
    observations: Observations,
    config: SolverConfig,
    progress_callback: Optional[ProgressCallback] = None,
) -> None:
    """Select views, then write camera and image channel blobs for every pyramid scale."""
    config.validate()
    prepare_cameras(cams, observations, config)
    workspace.create(cam.uid for cam in cams)
    channels = required_channels(config.metric)
    scales = range(config.scale, config.coarsest_scale + 1)
    for idx, cam in enumerate(cams):
        if progress_callback:
            progress_callback(100.0 * idx / max(1, len(cams)), f"Preparing camera {cam.uid}")
        for scale in scales:
            image = load_image(cam.image_path, scale, channels, name=f"cam_{cam.uid}@{scale}")
            if not workspace.save_image(cam.uid, scale, image):
                raise OSError(f"Could not write image channels of camera {cam.uid}")
            if not workspace.save_camera(cam, scale):
                raise OSError(f"Could not write camera {cam.uid}")
    workspace.write_model(cams)
    logger.info(f"Workspace {workspace.root} prepared for {len(cams)} cameras, scales {list(scales)}")


def export_field(
    workspace: Workspace,
    camera: Camera,
    dm: DepthMap,
    scale: int,
    prefix: str = "final",
    colors: Optional[np.ndarray] = None,
    with_ply: bool = True,
) -> Optional[int]:
    """Write depth / cost / normal PNGs and optionally the PLY of one field; returns the point count."""
    out_dir = workspace.export_dir(camera.uid)
    os.makedirs(out_dir, exist_ok=True)
    base = os.path.join(out_dir, prefix)
    dm.export_depth(f"{base}_depth.png")
    dm.export_cost(f"{base}_cost.png")
    dm.export_normal(f"{base}_normal.png")
    if not with_ply:
        return None
    return dm.export_ply(f"{base}_model.ply", camera, dm.max_cost * PLY_COST_FRACTION, scale, colors=colors)


def solve_camera(
    workspace: Workspace,
    cams: Sequence[Camera],
    index: int,
    driver: PatchMatchDriver,
) -> SolveResult:
    """Full multi-scale solve of ``cams[index]`` with persistence and exports."""
    config = driver.config
    cam = cams[index]
    neighbors = [cams[j] for j in cam.view_neighbors]
    channels = required_channels(config.metric)

    def load_images(scale: int):
        ref = workspace.load_image(cam.uid, scale, channels)
        others = [workspace.load_image(n.uid, scale, channels) for n in neighbors]
        return ref, others

    def on_phase(name: str, scale: int, iteration: int, dm: DepthMap) -> None:
        export_field(workspace, cam, dm, scale, prefix=f"scale_{scale}_{name}_{iteration}")

    def on_scale(scale: int, dm: DepthMap) -> None:
        if not workspace.save_depth_map(cam.uid, scale, dm):
            raise OSError(f"Could not persist depth map of camera {cam.uid} at scale {scale}")

    result = driver.solve(cam, neighbors, load_images, on_phase=on_phase, on_scale=on_scale)
    if not workspace.save_depth_map(cam.uid, config.scale, result.field):
        raise OSError(f"Could not persist depth map of camera {cam.uid}")
    if config.export_ply:
        colors = workspace.load_image(cam.uid, config.scale, {COLOR}).color
        count = export_field(workspace, cam, result.field, config.scale, colors=colors)
        logger.info(f"Camera {cam.uid}: exported {count} points")
    return result


def run_compute(
    workspace: Workspace,
    config: SolverConfig,
    uids: Optional[Sequence[int]] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> ComputeResult:
    """Solve every selected camera; a failing camera is logged and skipped.

    Cameras whose final depth map already exists are skipped unless
    ``config.force_overwrite`` is set.
    """
    config.validate()
    cams = workspace.cameras(config.scale)
    by_uid = {cam.uid: idx for idx, cam in enumerate(cams)}
    selected = list(by_uid) if uids is None else list(uids)
    rng = np.random.default_rng(config.seed)
    cache = DescriptorCache(capacity=config.max_views + 1)
    backend = create_backend(config, rng, cache=cache)
    driver = PatchMatchDriver(backend, config, rng)
    result = ComputeResult()
    t0 = time.time()
    try:
        for n, uid in enumerate(selected):
            if progress_callback:
                progress_callback(100.0 * n / max(1, len(selected)), f"Camera {uid}")
            if uid not in by_uid:
                logger.error(f"Camera {uid} is not part of workspace {workspace.root}")
                result.failed[uid] = "unknown camera"
                continue
            if not config.force_overwrite and os.path.isfile(workspace.depth_map_path(uid, config.scale)):
                logger.info(f"Camera {uid} already has a depth map, skipped (use force_overwrite to recompute)")
                result.skipped.append(uid)
                continue
            try:
                solve_camera(workspace, cams, by_uid[uid], driver)
                result.solved.append(uid)
            except Exception as exc:
                logger.error(f"Depth map computation failed for camera {uid}: {exc}")
                result.failed[uid] = str(exc)
            finally:
                cache.clear()
    finally:
        backend.close()
    result.elapsed_seconds = time.time() - t0
    logger.info(
        f"Solved {len(result.solved)}/{len(selected)} cameras ({len(result.skipped)} skipped) "
        f"in {result.elapsed_seconds:.1f}s"
    )
    return result


def run_export(workspace: Workspace, config: SolverConfig, uids: Optional[Sequence[int]] = None) -> Dict[int, int]:
    """Re-export the persisted final field of each camera; returns point counts."""
    counts: Dict[int, int] = {}
    selected = workspace.camera_ids() if uids is None else list(uids)
    for uid in selected:
        cam = workspace.load_camera(uid, config.scale)
        dm = workspace.load_depth_map(uid, config.scale)
        if dm is None:
            logger.error(f"Depth map of camera {uid} is unreadable, skipped")
            continue
        colors = workspace.load_image(uid, config.scale, {COLOR}).color
        counts[uid] = export_field(workspace, cam, dm, config.scale, colors=colors)
    return counts
