"""Dense Daisy-like descriptor distance."""
from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Optional

import numpy as np
from scipy import ndimage

from ..config import MAX_COST, METRIC_DAISY, SolverConfig
from ..image import COLOR, GRAYSCALE, ImageChannels
from .base import CostMetric, WindowSamples, project_points

NUM_ORIENTATIONS = 8
RING_RADII = (5.0, 10.0)
RING_POINTS = 8
LAYER_SIGMAS = (2.5, 2.5, 5.0)  # center, first ring, second ring
DESCRIPTOR_SIZE = NUM_ORIENTATIONS * (1 + RING_POINTS * len(RING_RADII))


def compute_descriptors(gray: np.ndarray) -> np.ndarray:
    """Daisy-like descriptor [H, W, DESCRIPTOR_SIZE] (float32, unit norm).

    Oriented gradient layers are smoothed with Gaussians of growing sigma and
    sampled at the center and on concentric rings; each histogram is
    normalized before the full vector is.
    """
    g = gray.astype(np.float64)
    gy, gx = np.gradient(g)
    h, w = g.shape
    angles = 2.0 * np.pi * np.arange(NUM_ORIENTATIONS) / NUM_ORIENTATIONS
    layers = np.stack([np.maximum(0.0, np.cos(a) * gx + np.sin(a) * gy) for a in angles], axis=-1)
    smoothed = {
        sigma: ndimage.gaussian_filter(layers, sigma=(sigma, sigma, 0.0), mode="nearest")
        for sigma in set(LAYER_SIGMAS)
    }
    rows, cols = np.mgrid[0:h, 0:w]
    histograms = [smoothed[LAYER_SIGMAS[0]]]
    for ring, radius in enumerate(RING_RADII):
        layer = smoothed[LAYER_SIGMAS[ring + 1]]
        for k in range(RING_POINTS):
            theta = 2.0 * np.pi * k / RING_POINTS
            r = np.clip(np.rint(rows + radius * np.sin(theta)).astype(np.int64), 0, h - 1)
            c = np.clip(np.rint(cols + radius * np.cos(theta)).astype(np.int64), 0, w - 1)
            histograms.append(layer[r, c])
    desc = np.concatenate([_normalize(hist) for hist in histograms], axis=-1)
    return _normalize(desc).astype(np.float32)


def _normalize(v: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(v, axis=-1, keepdims=True)
    return np.divide(v, norm, out=np.zeros_like(v), where=norm > 0.0)


class DescriptorCache:
    """Per-image memoized descriptors, bounded with least-recently-used eviction.

    Keys are image identities; the cache keeps a reference to each image so an
    identity cannot be recycled while its descriptors are cached.
    """

    def __init__(self, capacity: int = 16):
        self.capacity = capacity
        self._entries: "OrderedDict[int, tuple]" = OrderedDict()
        self._lock = threading.Lock()
        self.misses = 0

    def get(self, image: ImageChannels) -> np.ndarray:
        key = id(image)
        # concurrent misses on one image compute it once
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] is image:
                self._entries.move_to_end(key)
                return entry[1]
            desc = compute_descriptors(image.grayscale)
            desc.setflags(write=False)
            self.misses += 1
            self._entries[key] = (image, desc)
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
        return desc

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class DaisyMetric(CostMetric):
    name = METRIC_DAISY
    MAX_COST = MAX_COST[METRIC_DAISY]
    REQUIRED_CHANNELS = frozenset({GRAYSCALE, COLOR})

    def __init__(self, ref: ImageChannels, other: ImageChannels, config: SolverConfig,
                 cache: Optional[DescriptorCache] = None):
        super().__init__(ref, other, config)
        self.cache = cache if cache is not None else DescriptorCache()

    def _warp(self, rows: np.ndarray, cols: np.ndarray, H: np.ndarray) -> WindowSamples:
        # A single sample at the window center.
        py = rows[:, None]
        px = cols[:, None]
        qx, qy, ok = project_points(H, px.astype(np.float64), py.astype(np.float64))
        ok &= self.ref.inside(py, px) & self.other.inside(qy, qx)
        return WindowSamples(
            py=np.where(ok, py, 0), px=np.where(ok, px, 0),
            qy=np.where(ok, qy, 0), qx=np.where(ok, qx, 0),
            valid=ok[:, 0],
        )

    def _evaluate(self, rows: np.ndarray, cols: np.ndarray, s: WindowSamples) -> np.ndarray:
        dp = self.cache.get(self.ref)[s.py[:, 0], s.px[:, 0]].astype(np.float64)
        dq = self.cache.get(self.other)[s.qy[:, 0], s.qx[:, 0]].astype(np.float64)
        dist = ((dp - dq) ** 2).sum(axis=1)
        return 2.0 * (1.0 - np.exp(-dist))
