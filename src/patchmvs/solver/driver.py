"""Coarse-to-fine PatchMatch state machine."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from ..camera import Camera
from ..config import SolverConfig
from ..depth_map import DepthMap
from ..image import ImageChannels
from .base import Backend, ScaleContext

logger = logging.getLogger(__name__)

# INIT draws depths from this widening of the camera depth range.
INIT_DEPTH_RANGE = (0.8, 1.2)
# Depths outside this shrinking of the camera depth range are rejected at the end.
FINAL_DEPTH_RANGE = (0.81, 1.19)
MEDIAN_WINDOW = 3

# (scale) -> (reference image, neighbor images)
ImageLoader = Callable[[int], Tuple[ImageChannels, List[ImageChannels]]]
# (phase name, scale, iteration, field)
PhaseHook = Callable[[str, int, int, DepthMap], None]


@dataclass
class SolveResult:
    field: DepthMap
    scale: int
    elapsed_seconds: float
    rejected_pixels: int
    updates: List[int] = field(default_factory=list)


def create_backend(config: SolverConfig, rng: np.random.Generator, cache=None) -> Backend:
    """Instantiate the back-end named by ``config.backend``."""
    if config.backend == "torch":
        from .accel import TorchBackend

        return TorchBackend(config, rng)
    from .cpu import CpuBackend

    return CpuBackend(config, rng, cache=cache)


class PatchMatchDriver:
    """Runs INIT, COST, then (propagate 0, propagate 1, refine) x N per scale.

    Scales go from ``config.coarsest_scale`` down to ``config.scale``; the
    field of a coarse scale is upscaled to seed the next one.
    """

    def __init__(self, backend: Backend, config: SolverConfig, rng: Optional[np.random.Generator] = None):
        self.config = config.validate()
        self.backend = backend
        self.rng = rng if rng is not None else np.random.default_rng(config.seed)

    def initialize(self, camera: Camera, height: int, width: int, scale: int) -> DepthMap:
        lo, hi = INIT_DEPTH_RANGE
        dm = DepthMap(height, width, self.config.max_cost)
        dm.randomize(camera, lo * camera.min_depth, hi * camera.max_depth, scale, self.rng)
        if self.config.use_ground_truth:
            count = dm.set_ground_truth_depth(camera, scale)
            logger.debug(f"Camera {camera.uid}: seeded {count} pixels from sparse points")
        return dm

    def solve(
        self,
        camera: Camera,
        neighbors: Sequence[Camera],
        load_images: ImageLoader,
        on_phase: Optional[PhaseHook] = None,
        on_scale: Optional[Callable[[int, DepthMap], None]] = None,
    ) -> SolveResult:
        """Solve the depth / plane field of ``camera`` at ``config.scale``.

        ``load_images(scale)`` returns the reference channels and one
        channel set per neighbor. ``on_scale`` is called with each finished
        scale's field (before upscaling), ``on_phase`` after every phase
        when intermediate exports are enabled.
        """
        cfg = self.config
        if not neighbors:
            logger.warning(f"Camera {camera.uid} has no view neighbors, every cost stays at MAX")
        t0 = time.time()
        dm: Optional[DepthMap] = None
        updates: List[int] = []
        for scale in range(cfg.coarsest_scale, cfg.scale - 1, -1):
            ts = time.time()
            image, neighbor_images = load_images(scale)
            if dm is None:
                dm = self.initialize(camera, image.height, image.width, scale)
            else:
                dm = dm.upscale(image.height, image.width)
            context = ScaleContext(
                camera=camera,
                neighbors=list(neighbors),
                image=image,
                neighbor_images=list(neighbor_images),
                scale=scale,
                config=cfg,
            )
            self.backend.begin_iteration(0)
            self.backend.bind(context)
            try:
                updates.extend(self._iterate(camera, scale, dm, on_phase))
            finally:
                self.backend.release()
            if on_scale is not None:
                on_scale(scale, dm)
            logger.info(
                f"Camera {camera.uid} scale {scale} ({image.width}x{image.height}) "
                f"done in {time.time() - ts:.2f}s"
            )

        lo, hi = FINAL_DEPTH_RANGE
        rejected = dm.filter_depth_range(lo * camera.min_depth, hi * camera.max_depth)
        if cfg.median_filter:
            dm = dm.median_filter(camera, MEDIAN_WINDOW, MEDIAN_WINDOW, cfg.scale)
        elapsed = time.time() - t0
        logger.info(f"Camera {camera.uid} solved in {elapsed:.2f}s ({rejected} pixels out of range)")
        return SolveResult(field=dm, scale=cfg.scale, elapsed_seconds=elapsed,
                           rejected_pixels=rejected, updates=updates)

    def _iterate(self, camera: Camera, scale: int, dm: DepthMap,
                 on_phase: Optional[PhaseHook]) -> List[int]:
        """COST then the outer iterations of one bound scale; returns pixel updates per iteration."""
        self.backend.compute_cost(dm)
        self._phase(on_phase, "init", scale, 0, dm)
        updates = []
        for it in range(self.config.iterations_at(scale)):
            self.backend.begin_iteration(it)
            n0 = self.backend.propagate(dm, 0)
            self._phase(on_phase, "propagate_0", scale, it, dm)
            n1 = self.backend.propagate(dm, 1)
            self._phase(on_phase, "propagate_1", scale, it, dm)
            nr = self.backend.refine(dm)
            self._phase(on_phase, "refine", scale, it, dm)
            updates.append(n0 + n1 + nr)
            logger.debug(
                f"Camera {camera.uid} scale {scale} iteration {it}: "
                f"propagated {n0}+{n1}, refined {nr}, mean cost {float(np.mean(dm.cost)):.4f}"
            )
        return updates

    def _phase(self, hook: Optional[PhaseHook], name: str, scale: int, iteration: int, dm: DepthMap) -> None:
        if hook is not None and self.config.export_intermediate:
            hook(name, scale, iteration, dm)
