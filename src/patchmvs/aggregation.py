"""Multi-view cost aggregation."""
from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from .camera import Camera, StereoRig
from .config import SolverConfig
from .geometry import homography_batch
from .image import ImageChannels
from .joint_view import good_cost_threshold, view_importance, weighted_cost
from .metrics import CostMetric, DescriptorCache, create_metrics


def aggregate(costs: np.ndarray, k: int, max_cost: float) -> np.ndarray:
    """Trimmed mean of the ``k`` best valid costs along axis 0.

    ``costs`` is [n_views, n_pixels] (or [n_views]). Values that are not
    finite, negative or at least ``max_cost`` do not count; a pixel with no
    valid view gets ``max_cost``.
    """
    c = np.array(costs, dtype=np.float64, copy=True)
    squeeze = c.ndim == 1
    if squeeze:
        c = c[:, None]
    if c.shape[0] == 0:
        out = np.full(c.shape[1], max_cost, dtype=np.float64)
        return float(out[0]) if squeeze else out
    bad = ~np.isfinite(c) | (c < 0.0) | (c >= max_cost)
    c[bad] = max_cost
    c.sort(axis=0)
    used = np.minimum(k, (~bad).sum(axis=0))
    take = np.arange(c.shape[0])[:, None] < used[None, :]
    total = np.where(take, c, 0.0).sum(axis=0)
    with np.errstate(all="ignore"):
        out = np.where(used > 0, total / np.maximum(used, 1), max_cost)
    return float(out[0]) if squeeze else out


class MultiViewCost:
    """Evaluates plane hypotheses of the reference camera against its neighbors."""

    def __init__(self, camera: Camera, neighbors: Sequence[Camera], image: ImageChannels,
                 neighbor_images: Sequence[ImageChannels], config: SolverConfig, scale: int,
                 cache: Optional[DescriptorCache] = None):
        if len(neighbors) != len(neighbor_images):
            raise ValueError("one image per neighbor camera is required")
        self.camera = camera
        self.neighbors = list(neighbors)
        self.image = image
        self.neighbor_images = list(neighbor_images)
        self.config = config
        self.scale = scale
        self.k = config.k_best
        self.max_cost = config.max_cost
        self.rigs: List[StereoRig] = [camera.stereo_rig(other) for other in self.neighbors]
        self.K_ref_inv = camera.K_inv_at(scale)
        self.K_others = [other.K_at(scale) for other in self.neighbors]
        self.metrics: List[CostMetric] = create_metrics(image, self.neighbor_images, config, cache=cache)

    @property
    def num_views(self) -> int:
        return len(self.metrics)

    def homographies(self, view: int, planes: np.ndarray) -> np.ndarray:
        rig = self.rigs[view]
        return homography_batch(rig.R, rig.t, self.K_ref_inv, self.K_others[view], planes)

    def cost_matrix(self, rows: np.ndarray, cols: np.ndarray, planes: np.ndarray) -> np.ndarray:
        """Per-neighbor costs [n_views, n_pixels]."""
        planes = np.asarray(planes, dtype=np.float64).reshape(-1, 4)
        out = np.empty((self.num_views, planes.shape[0]), dtype=np.float64)
        for view, metric in enumerate(self.metrics):
            out[view] = metric.cost_batch(rows, cols, self.homographies(view, planes))
        return out

    def cost_tensor(self, rows: np.ndarray, cols: np.ndarray, planes: np.ndarray) -> np.ndarray:
        """Per-neighbor costs [n_views, n_hypotheses, n_pixels] of ``planes`` [n_hypotheses, n_pixels, 4]."""
        n_hyp, n = planes.shape[:2]
        out = self.cost_matrix(np.tile(rows, n_hyp), np.tile(cols, n_hyp), planes.reshape(-1, 4))
        return out.reshape(self.num_views, n_hyp, n)

    def joint_cost_batch(self, rows: np.ndarray, cols: np.ndarray, planes: np.ndarray) -> np.ndarray:
        """Importance-weighted cost of one hypothesis per pixel, every view selected."""
        costs = self.cost_matrix(rows, cols, planes)[:, None, :]
        threshold = good_cost_threshold(0)
        importance = view_importance(costs, np.ones((self.num_views, costs.shape[2]), dtype=bool), threshold)
        return weighted_cost(costs, importance, self.max_cost)[0]

    def cost_batch(self, rows: np.ndarray, cols: np.ndarray, planes: np.ndarray) -> np.ndarray:
        return aggregate(self.cost_matrix(rows, cols, planes), self.k, self.max_cost)

    def cost(self, row: int, col: int, plane: np.ndarray) -> float:
        out = self.cost_batch(np.array([row]), np.array([col]), np.asarray(plane)[None])
        return float(out[0])
