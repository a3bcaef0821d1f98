"""Bilateral weighted normalized cross correlation."""
from __future__ import annotations

import numpy as np

from ..config import MAX_COST, METRIC_BILATERAL_NCC, SolverConfig
from ..image import COLOR, GRAYSCALE, ImageChannels
from .base import WINDOW, WINDOW_DX, WINDOW_DY, CostMetric, WindowSamples

SIGMA_SPATIAL = WINDOW / 2.0
SIGMA_COLOR = 0.2 * 255.0


def spatial_table(sigma: float = SIGMA_SPATIAL) -> np.ndarray:
    """Spatial weight of each window sample, in window sample order."""
    return np.exp(-(WINDOW_DX.astype(np.float64) ** 2 + WINDOW_DY.astype(np.float64) ** 2) / (2.0 * sigma * sigma))


def color_table(sigma: float = SIGMA_COLOR) -> np.ndarray:
    """Weight of an intensity delta in ``[-255, 255]``, indexed by ``delta + 255``."""
    delta = np.arange(-255, 256, dtype=np.float64)
    return np.exp(-(delta * delta) / (2.0 * sigma * sigma))


class BilateralNCCMetric(CostMetric):
    """NCC where each sample is weighted by its distance and color similarity to the center.

    Weight sums, weighted mean and weighted variance of the reference window
    are precomputed for every pixel, so an evaluation only accumulates the
    terms that involve the warped neighbor samples.
    """

    name = METRIC_BILATERAL_NCC
    MAX_COST = MAX_COST[METRIC_BILATERAL_NCC]
    REQUIRED_CHANNELS = frozenset({GRAYSCALE, COLOR})

    def __init__(self, ref: ImageChannels, other: ImageChannels, config: SolverConfig,
                 reference_stats=None):
        super().__init__(ref, other, config)
        self.spatial = spatial_table()
        self.color = color_table()
        if reference_stats is None:
            reference_stats = precompute_reference_stats(ref.grayscale, self.spatial, self.color)
        self.sum_w, self.mean_p, self.var_p = reference_stats

    def _weights(self, rows: np.ndarray, cols: np.ndarray, s: WindowSamples) -> np.ndarray:
        center = self.ref.grayscale[rows, cols].astype(np.int64)
        Ip = self.ref.grayscale[s.py, s.px].astype(np.int64)
        return self.spatial[None, :] * self.color[Ip - center[:, None] + 255]

    def _evaluate(self, rows: np.ndarray, cols: np.ndarray, s: WindowSamples) -> np.ndarray:
        w = self._weights(rows, cols, s)
        p = self.ref.grayscale[s.py, s.px].astype(np.float64) / 255.0
        q = self.other.grayscale[s.qy, s.qx].astype(np.float64) / 255.0
        sum_w = self.sum_w[rows, cols]
        mean_p = self.mean_p[rows, cols]
        var_p = self.var_p[rows, cols]
        mean_q = (w * q).sum(axis=1) / sum_w
        var_q = (w * q * q).sum(axis=1) / sum_w - mean_q * mean_q
        cov = (w * p * q).sum(axis=1) / sum_w - mean_p * mean_q
        ncc = cov / np.sqrt(var_p * var_q)
        cost = 1.0 - np.clip(ncc, -1.0, 1.0)
        return np.where(np.isfinite(ncc), cost, self.MAX_COST)


def precompute_reference_stats(gray: np.ndarray, spatial: np.ndarray, color: np.ndarray):
    """Per-pixel bilateral weight sum, weighted mean and weighted variance.

    Pixels whose window leaves the image get NaN, which the metric maps to
    MAX (those windows are rejected by the sampling step anyway).
    """
    h, w = gray.shape
    g = gray.astype(np.int64)
    half = WINDOW // 2
    padded = np.pad(g, half, mode="edge")
    sum_w = np.zeros((h, w), dtype=np.float64)
    sum_wp = np.zeros((h, w), dtype=np.float64)
    sum_wpp = np.zeros((h, w), dtype=np.float64)
    for i, (dy, dx) in enumerate(zip(WINDOW_DY, WINDOW_DX)):
        shifted = padded[half + dy:half + dy + h, half + dx:half + dx + w]
        wt = spatial[i] * color[shifted - g + 255]
        p = shifted / 255.0
        sum_w += wt
        sum_wp += wt * p
        sum_wpp += wt * p * p
    mean = sum_wp / sum_w
    var = sum_wpp / sum_w - mean * mean
    outside = np.ones((h, w), dtype=bool)
    outside[half:h - half, half:w - half] = False
    for arr in (sum_w, mean, var):
        arr[outside] = np.nan
    return sum_w, mean, var
