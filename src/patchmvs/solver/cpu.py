"""Multithreaded numpy back-end."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

import numpy as np

from ..aggregation import MultiViewCost
from ..depth_map import INIT_NORMAL_CONE_DEG, DepthMap
from ..geometry import orient_towards, sample_cone
from ..hypothesis import checkerboard_pixels, perturb_normals, propagation_candidates
from ..joint_view import good_cost_threshold, joint_costs
from ..metrics import DescriptorCache
from .base import (
    Backend,
    ScaleContext,
    child_generators,
    clamp_propagated_depth,
    normal_radii,
    refinement_schedule,
    row_blocks,
)

logger = logging.getLogger(__name__)

# Rough number of pixels evaluated by one task.
_PIXELS_PER_TASK = 4096


class CpuBackend(Backend):
    """Row-block parallel evaluation on a thread pool.

    Within a phase every task owns a disjoint range of rows. Propagation of
    one checkerboard color only reads the other color, so waiting on all the
    futures of color 0 before submitting color 1 is the only synchronization
    needed.
    """

    name = "cpu"

    def __init__(self, config, rng: np.random.Generator, cache: Optional[DescriptorCache] = None):
        super().__init__(config, rng)
        self.cache = cache
        self.workers = config.workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._cost: Optional[MultiViewCost] = None
        self._radii: List[float] = []
        self._disparity_range: Tuple[float, float] = (0.0, 0.0)
        # best view per pixel, joint view selection only
        self._best_view: Optional[np.ndarray] = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def bind(self, context: ScaleContext) -> None:
        super().bind(context)
        self._cost = MultiViewCost(
            context.camera,
            context.neighbors,
            context.image,
            context.neighbor_images,
            self.config,
            context.scale,
            cache=self.cache,
        )
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="patchmvs")
        self._disparity_range = context.disparity_range()
        self._radii = refinement_schedule(*self._disparity_range, self.config.refine_threshold)
        if not self._radii:
            logger.warning(
                f"Camera {context.camera.uid}: empty disparity range {self._disparity_range}, refinement disabled"
            )

    def release(self) -> None:
        super().release()
        self._cost = None
        self._best_view = None

    # -- scheduling -------------------------------------------------------

    def _blocks(self, field: DepthMap) -> List[Tuple[int, int]]:
        rows_per_task = max(1, _PIXELS_PER_TASK // max(field.width, 1))
        parts = max(self.workers, -(-field.height // rows_per_task))
        return row_blocks(field.height, parts)

    def _run(self, fn: Callable[..., int], field: DepthMap, *args, seeded: bool = False) -> int:
        blocks = self._blocks(field)
        if not seeded:
            futures = [self._executor.submit(fn, field, r0, r1, *args) for r0, r1 in blocks]
        else:
            gens = child_generators(self.rng, len(blocks))
            futures = [
                self._executor.submit(fn, field, r0, r1, *args, gen) for (r0, r1), gen in zip(blocks, gens)
            ]
        # barrier: every block of the phase is done before returning
        return sum(f.result() for f in futures)

    # -- phases -----------------------------------------------------------

    def compute_cost(self, field: DepthMap) -> None:
        self._require_context()
        if self.config.joint_view_selection:
            self._reset_best_view(field)
        self._run(self._cost_rows, field)

    def propagate(self, field: DepthMap, color: int) -> int:
        self._require_context()
        return self._run(self._propagate_rows, field, color)

    def refine(self, field: DepthMap) -> int:
        self._require_context()
        if not self._radii:
            return 0
        if not self.config.joint_view_selection:
            return self._run(self._refine_rows, field, seeded=True)
        if self._best_view is None or self._best_view.shape != field.cost.shape:
            self._reset_best_view(field)
        return self._run(self._joint_refine_rows, field, seeded=True)

    def _reset_best_view(self, field: DepthMap) -> None:
        self._best_view = np.full((field.height, field.width), -1, dtype=np.int64)

    # -- row tasks --------------------------------------------------------

    def _cost_rows(self, field: DepthMap, r0: int, r1: int) -> int:
        rows, cols = np.mgrid[r0:r1, 0:field.width]
        rows = rows.ravel()
        cols = cols.ravel()
        planes = field.plane[rows, cols]
        if self.config.joint_view_selection:
            field.cost[rows, cols] = self._cost.joint_cost_batch(rows, cols, planes)
        else:
            field.cost[rows, cols] = self._cost.cost_batch(rows, cols, planes)
        return int(rows.size)

    def _propagate_rows(self, field: DepthMap, r0: int, r1: int, color: int) -> int:
        ctx = self.context
        rows, cols = checkerboard_pixels(field.height, field.width, color, r0, r1)
        if rows.size == 0:
            return 0
        src_r, src_c, ok = propagation_candidates(self.config.propagation, rows, cols, field.cost)
        n_cand, n = src_r.shape
        planes = field.plane[src_r, src_c]
        if self.config.joint_view_selection:
            costs = self._joint_propagation_costs(rows, cols, planes, ok)
        else:
            costs = self._cost.cost_batch(
                np.broadcast_to(rows, src_r.shape).ravel(),
                np.broadcast_to(cols, src_c.shape).ravel(),
                planes.reshape(-1, 4),
            ).reshape(n_cand, n)
            costs[~ok] = np.inf
        best = np.argmin(costs, axis=0)
        idx = np.arange(n)
        best_cost = costs[best, idx]
        better = best_cost < field.cost[rows, cols]
        if not np.any(better):
            return 0
        r = rows[better]
        c = cols[better]
        plane = planes[best[better], idx[better]]
        depth = ctx.camera.depth_from_plane(plane[:, :3], plane[:, 3], c, r, ctx.scale)
        lo, hi = ctx.propagation_depth_range
        field.depth[r, c] = clamp_propagated_depth(depth, lo, hi, ctx.max_depth)
        field.plane[r, c] = plane
        field.cost[r, c] = best_cost[better]
        return int(better.sum())

    def _refine_rows(self, field: DepthMap, r0: int, r1: int, rng: np.random.Generator) -> int:
        ctx = self.context
        camera, scale = ctx.camera, ctx.scale
        min_disp, max_disp = self._disparity_range
        rows, cols = np.mgrid[r0:r1, 0:field.width]
        rows = rows.ravel()
        cols = cols.ravel()
        n = rows.size
        view = camera.local_rays(cols, rows, scale)
        tiled_rows = np.tile(rows, 3)
        tiled_cols = np.tile(cols, 3)
        idx = np.arange(n)
        updated = np.zeros(n, dtype=bool)
        for radius, n_radius in zip(self._radii, normal_radii(len(self._radii))):
            cur_plane = field.plane[rows, cols]
            cur_depth = field.depth[rows, cols]
            cur_cost = field.cost[rows, cols]
            n_old = cur_plane[:, :3]

            disp = camera.depth_to_disparity(cur_depth, scale)
            new_disp = np.clip(disp + rng.uniform(-radius, radius, size=n), min_disp, max_disp)
            new_depth = camera.disparity_to_depth(new_disp, scale)
            n_new = perturb_normals(n_old, n_radius, view, rng)

            candidates = np.stack([
                np.concatenate([n_new, camera.plane_offset(n_new, cols, rows, new_depth, scale)[:, None]], axis=1),
                np.concatenate([n_new, camera.plane_offset(n_new, cols, rows, cur_depth, scale)[:, None]], axis=1),
                np.concatenate([n_old, camera.plane_offset(n_old, cols, rows, new_depth, scale)[:, None]], axis=1),
            ])
            depths = np.stack([new_depth, cur_depth, new_depth])
            costs = self._cost.cost_batch(tiled_rows, tiled_cols, candidates.reshape(-1, 4)).reshape(3, n)

            best = np.argmin(costs, axis=0)
            best_cost = costs[best, idx]
            better = best_cost < cur_cost
            if not np.any(better):
                continue
            r = rows[better]
            c = cols[better]
            field.plane[r, c] = candidates[best[better], idx[better]]
            field.depth[r, c] = depths[best[better], idx[better]]
            field.cost[r, c] = best_cost[better]
            updated |= better
        return int(updated.sum())

    # -- joint view selection ----------------------------------------------

    def _joint_propagation_costs(self, rows: np.ndarray, cols: np.ndarray, planes: np.ndarray,
                                 ok: np.ndarray) -> np.ndarray:
        costs = self._cost.cost_tensor(rows, cols, planes)
        threshold = good_cost_threshold(self.iteration)
        hyp_cost, any_view, _ = joint_costs(costs, threshold, self.config.max_cost, valid=ok)
        # no selected view: the pixel keeps its plane
        hyp_cost[:, ~any_view] = np.inf
        return hyp_cost

    def _joint_refine_rows(self, field: DepthMap, r0: int, r1: int, rng: np.random.Generator) -> int:
        """Refinement with eight hypotheses per round scored by joint view selection.

        Besides the current plane and the three perturbations, a random plane,
        its two mixes with the current one and the halfway plane between the
        current and the perturbed one are tested.
        """
        ctx = self.context
        camera, scale = ctx.camera, ctx.scale
        min_disp, max_disp = self._disparity_range
        rows, cols = np.mgrid[r0:r1, 0:field.width]
        rows = rows.ravel()
        cols = cols.ravel()
        n = rows.size
        view = camera.local_rays(cols, rows, scale)
        unit_view = view / np.linalg.norm(view, axis=1, keepdims=True)
        threshold = good_cost_threshold(self.iteration)
        idx = np.arange(n)
        updated = np.zeros(n, dtype=bool)

        def plane(normals: np.ndarray, depth: np.ndarray) -> np.ndarray:
            return np.concatenate([normals, camera.plane_offset(normals, cols, rows, depth, scale)[:, None]], axis=1)

        for radius, n_radius in zip(self._radii, normal_radii(len(self._radii))):
            cur_plane = field.plane[rows, cols]
            cur_depth = field.depth[rows, cols]
            cur_cost = field.cost[rows, cols]
            n_old = cur_plane[:, :3]

            disp = camera.depth_to_disparity(cur_depth, scale)
            new_disp = np.clip(disp + rng.uniform(-radius, radius, size=n), min_disp, max_disp)
            new_depth = camera.disparity_to_depth(new_disp, scale)
            n_new = perturb_normals(n_old, n_radius, view, rng)
            rnd_depth = rng.uniform(ctx.min_depth, ctx.max_depth, size=n)
            n_rnd = orient_towards(sample_cone(-unit_view, INIT_NORMAL_CONE_DEG, rng), view)
            half_depth = 0.5 * (cur_depth + new_depth)
            n_half = n_old + n_new
            norm = np.linalg.norm(n_half, axis=1, keepdims=True)
            n_half = np.divide(n_half, norm, out=n_old.copy(), where=norm > 1e-12)

            candidates = np.stack([
                cur_plane,
                plane(n_new, new_depth),
                plane(n_new, cur_depth),
                plane(n_old, new_depth),
                plane(n_rnd, rnd_depth),
                plane(n_rnd, cur_depth),
                plane(n_old, rnd_depth),
                plane(n_half, half_depth),
            ])
            depths = np.stack([cur_depth, new_depth, cur_depth, new_depth,
                               rnd_depth, cur_depth, rnd_depth, half_depth])
            costs = self._cost.cost_tensor(rows, cols, candidates)
            previous = self._best_view[rows, cols]
            hyp_cost, any_view, current_best = joint_costs(
                costs, threshold, self.config.max_cost, previous_best=previous
            )
            self._best_view[rows[any_view], cols[any_view]] = current_best[any_view]

            best = np.argmin(hyp_cost, axis=0)
            best_cost = hyp_cost[best, idx]
            better = any_view & (best_cost < cur_cost)
            if not np.any(better):
                continue
            r = rows[better]
            c = cols[better]
            field.plane[r, c] = candidates[best[better], idx[better]]
            field.depth[r, c] = depths[best[better], idx[better]]
            field.cost[r, c] = best_cost[better]
            updated |= better
        return int(updated.sum())

    def best_views(self) -> Optional[np.ndarray]:
        """Copy of the per-pixel best view memory (joint view selection only)."""
        return None if self._best_view is None else self._best_view.copy()
