"""Torch accelerator back-end."""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np
import torch

from ..camera import INVALID_DISPARITY
from ..config import (
    ACCELERATED_METRICS,
    METRIC_BILATERAL_NCC,
    METRIC_CENSUS,
    METRIC_NCC,
    METRIC_PM,
    ConfigError,
)
from ..depth_map import DepthMap
from ..hypothesis import ASYMMETRIC_REGIONS, offsets_for
from ..metrics.bilateral import color_table, precompute_reference_stats, spatial_table
from ..metrics.census import proba_table
from ..metrics.patchmatch import exp_table
from . import kernels
from .base import Backend, ScaleContext, normal_radii, refinement_schedule

logger = logging.getLogger(__name__)

# Windows evaluated per kernel launch.
_CHUNK = 1 << 15


def default_device(requested: Optional[str] = None) -> torch.device:
    if requested:
        return torch.device(requested)
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


class FieldBuffers:
    """Device side cost / depth / plane buffers of one field.

    ``upload`` and ``download`` are the only transfers between the host
    field and the device.
    """

    def __init__(self, device: torch.device):
        self.device = device
        self.cost: Optional[torch.Tensor] = None
        self.depth: Optional[torch.Tensor] = None
        self.plane: Optional[torch.Tensor] = None

    def upload(self, field: DepthMap) -> None:
        self.cost = torch.as_tensor(field.cost, dtype=torch.float64).to(self.device, copy=True)
        self.depth = torch.as_tensor(field.depth, dtype=torch.float64).to(self.device, copy=True)
        self.plane = torch.as_tensor(field.plane, dtype=torch.float64).to(self.device, copy=True)

    def download(self, field: DepthMap) -> None:
        field.cost[...] = self.cost.cpu().numpy()
        field.depth[...] = self.depth.cpu().numpy()
        field.plane[...] = self.plane.cpu().numpy()

    def clear(self) -> None:
        self.cost = self.depth = self.plane = None


class _NeighborView:
    def __init__(self, image: kernels.ImageTensors, R: torch.Tensor, t: torch.Tensor, K: torch.Tensor):
        self.image = image
        self.R = R
        self.t = t
        self.K = K


class TorchBackend(Backend):
    """Runs every phase as batched tensor kernels over the active pixels.

    Per-neighbor costs are written into a [n_neighbors, n_pixels] tensor and
    reduced by a separate sort-and-average step.
    """

    name = "torch"

    def __init__(self, config, rng: np.random.Generator):
        if config.metric not in ACCELERATED_METRICS:
            raise ConfigError(f"Metric '{config.metric}' has no accelerator kernel, use backend='cpu'")
        super().__init__(config, rng)
        self.device = default_device(config.device)
        self.buffers = FieldBuffers(self.device)
        self.max_cost = config.max_cost
        self._generator = torch.Generator(device=self.device)
        self._generator.manual_seed(int(rng.integers(0, 2 ** 63 - 1)))
        self._dy, self._dx = kernels.window_offsets(self.device)
        self._ref: Optional[kernels.ImageTensors] = None
        self._views: List[_NeighborView] = []
        self._K_inv: Optional[torch.Tensor] = None
        self._radii: List[float] = []
        self._disparity_range: Tuple[float, float] = (0.0, 0.0)
        self._fx_baseline = 1.0
        logger.debug(f"Torch back-end on {self.device}")

    def _tensor(self, arr) -> torch.Tensor:
        return torch.as_tensor(np.asarray(arr, dtype=np.float64), device=self.device)

    def bind(self, context: ScaleContext) -> None:
        super().bind(context)
        cam, scale = context.camera, context.scale
        self._ref = kernels.ImageTensors.from_channels(context.image, self.device)
        self._K_inv = self._tensor(cam.K_inv_at(scale))
        self._views = []
        for other, image in zip(context.neighbors, context.neighbor_images):
            rig = cam.stereo_rig(other)
            self._views.append(_NeighborView(
                kernels.ImageTensors.from_channels(image, self.device),
                self._tensor(rig.R),
                self._tensor(rig.t),
                self._tensor(other.K_at(scale)),
            ))
        self._prepare_tables(context)
        self._fx_baseline = float(cam.K_at(scale)[0, 0] * cam.mean_baseline)
        self._disparity_range = context.disparity_range()
        self._radii = refinement_schedule(*self._disparity_range, self.config.refine_threshold)
        if not self._radii:
            logger.warning(
                f"Camera {cam.uid}: empty disparity range {self._disparity_range}, refinement disabled"
            )

    def _prepare_tables(self, context: ScaleContext) -> None:
        metric = self.config.metric
        if metric == METRIC_PM:
            self._weights = self._tensor(exp_table(self.config.gamma))
        elif metric == METRIC_CENSUS:
            self._census_table = self._tensor(proba_table(65, self.config.census_lambda))
            self._ad_table = self._tensor(proba_table(256, self.config.ad_lambda))
        elif metric == METRIC_BILATERAL_NCC:
            spatial = spatial_table()
            color = color_table()
            stats = precompute_reference_stats(context.image.grayscale, spatial, color)
            self._spatial = self._tensor(spatial)
            self._color = self._tensor(color)
            self._stats = [self._tensor(s) for s in stats]

    def release(self) -> None:
        super().release()
        self._ref = None
        self._views = []
        self.buffers.clear()
        if self.device.type == "cuda":
            torch.cuda.empty_cache()

    # -- cost evaluation --------------------------------------------------

    def _view_cost(self, view: _NeighborView, rows: torch.Tensor, cols: torch.Tensor,
                   planes: torch.Tensor) -> torch.Tensor:
        H = kernels.homographies(view.R, view.t, self._K_inv, view.K, planes)
        s = kernels.warp(rows, cols, H, self._ref, view.image, self._dy, self._dx)
        metric = self.config.metric
        if metric == METRIC_NCC:
            costs = kernels.ncc_cost(self._ref, view.image, s, self.max_cost)
        elif metric == METRIC_PM:
            costs = kernels.pm_cost(self._ref, view.image, s, rows, cols, self._weights,
                                    self.config.alpha, self.config.tau_i, self.config.tau_g)
        elif metric == METRIC_CENSUS:
            costs = kernels.census_cost(self._ref, view.image, s, self._census_table, self._ad_table)
        else:
            costs = kernels.bilateral_ncc_cost(self._ref, view.image, s, rows, cols, self._spatial,
                                               self._color, self._stats, self.max_cost)
        return kernels.finalize(costs, s.valid, self.max_cost)

    def cost_batch(self, rows: torch.Tensor, cols: torch.Tensor, planes: torch.Tensor) -> torch.Tensor:
        """Aggregated multi-view cost of ``planes`` [N, 4] at pixels (rows, cols)."""
        out = torch.empty(rows.numel(), dtype=torch.float64, device=self.device)
        for start in range(0, rows.numel(), _CHUNK):
            sl = slice(start, start + _CHUNK)
            r, c, p = rows[sl], cols[sl], planes[sl]
            matrix = torch.empty((len(self._views), r.numel()), dtype=torch.float64, device=self.device)
            for v, view in enumerate(self._views):
                matrix[v] = self._view_cost(view, r, c, p)
            out[sl] = kernels.aggregate(matrix, self.config.k_best, self.max_cost)
        return out

    # -- phases -----------------------------------------------------------

    @torch.no_grad()
    def compute_cost(self, field: DepthMap) -> None:
        self._require_context()
        self.buffers.upload(field)
        b = self.buffers
        h, w = field.height, field.width
        rows = torch.arange(h, device=self.device).repeat_interleave(w)
        cols = torch.arange(w, device=self.device).repeat(h)
        b.cost.view(-1)[:] = self.cost_batch(rows, cols, b.plane.view(-1, 4))
        b.download(field)

    @torch.no_grad()
    def propagate(self, field: DepthMap, color: int) -> int:
        ctx = self._require_context()
        self.buffers.upload(field)
        b = self.buffers
        h, w = field.height, field.width
        rows, cols = kernels.checkerboard_pixels(h, w, color, self.device)
        if rows.numel() == 0:
            return 0
        if self.config.propagation == "asymmetric":
            src_r, src_c, ok = kernels.asymmetric_sources(ASYMMETRIC_REGIONS, rows, cols, b.cost)
        else:
            src_r, src_c, ok = kernels.candidate_sources(offsets_for(self.config.propagation), rows, cols, h, w)
        src_r = torch.where(ok, src_r, torch.zeros_like(src_r))
        src_c = torch.where(ok, src_c, torch.zeros_like(src_c))
        n_cand, n = src_r.shape
        planes = b.plane[src_r, src_c]
        costs = self.cost_batch(
            rows.unsqueeze(0).expand(n_cand, n).reshape(-1),
            cols.unsqueeze(0).expand(n_cand, n).reshape(-1),
            planes.reshape(-1, 4),
        ).view(n_cand, n)
        costs = torch.where(ok, costs, torch.full_like(costs, float("inf")))
        best_cost, best = torch.min(costs, dim=0)
        better = best_cost < b.cost[rows, cols]
        count = int(better.sum())
        if count:
            idx = torch.arange(n, device=self.device)
            r, c = rows[better], cols[better]
            plane = planes[best[better], idx[better]]
            depth = kernels.depth_from_plane(plane, kernels.local_rays(self._K_inv, r, c))
            lo, hi = ctx.propagation_depth_range
            depth = torch.where(torch.isfinite(depth), depth.clamp(lo, hi), torch.full_like(depth, ctx.max_depth))
            b.depth[r, c] = depth
            b.plane[r, c] = plane
            b.cost[r, c] = best_cost[better]
        b.download(field)
        return count

    @torch.no_grad()
    def refine(self, field: DepthMap) -> int:
        self._require_context()
        if not self._radii:
            return 0
        self.buffers.upload(field)
        b = self.buffers
        h, w = field.height, field.width
        rows = torch.arange(h, device=self.device).repeat_interleave(w)
        cols = torch.arange(w, device=self.device).repeat(h)
        n = rows.numel()
        rays = kernels.local_rays(self._K_inv, rows, cols)
        min_disp, max_disp = self._disparity_range
        idx = torch.arange(n, device=self.device)
        updated = torch.zeros(n, dtype=torch.bool, device=self.device)
        cost = b.cost.view(-1)
        depth = b.depth.view(-1)
        plane = b.plane.view(-1, 4)
        for radius, n_radius in zip(self._radii, normal_radii(len(self._radii))):
            n_old = plane[:, :3]
            disp = kernels.focal_ratio(depth, self._fx_baseline, INVALID_DISPARITY)
            new_disp = (disp + self._uniform(radius, (n,))).clamp(min_disp, max_disp)
            new_depth = kernels.focal_ratio(new_disp, self._fx_baseline, INVALID_DISPARITY)
            n_new = n_old + self._uniform(n_radius, (n, 3))
            norm = n_new.norm(dim=1, keepdim=True)
            n_new = torch.where(norm > 1e-12, n_new / norm, n_old)
            n_new = kernels.orient_towards(n_new, rays)

            candidates = torch.stack([
                torch.cat([n_new, kernels.plane_offset(n_new, rays, new_depth).unsqueeze(1)], dim=1),
                torch.cat([n_new, kernels.plane_offset(n_new, rays, depth).unsqueeze(1)], dim=1),
                torch.cat([n_old, kernels.plane_offset(n_old, rays, new_depth).unsqueeze(1)], dim=1),
            ])
            depths = torch.stack([new_depth, depth, new_depth])
            costs = self.cost_batch(rows.repeat(3), cols.repeat(3), candidates.reshape(-1, 4)).view(3, n)
            best_cost, best = torch.min(costs, dim=0)
            better = best_cost < cost
            if not bool(better.any()):
                continue
            plane[better] = candidates[best[better], idx[better]]
            depth[better] = depths[best[better], idx[better]]
            cost[better] = best_cost[better]
            updated |= better
        b.download(field)
        return int(updated.sum())

    def _uniform(self, radius: float, shape) -> torch.Tensor:
        u = torch.rand(shape, generator=self._generator, dtype=torch.float64, device=self.device)
        return (2.0 * u - 1.0) * radius
