"""Intensity + gradient dissimilarity with adaptive support weights."""
from __future__ import annotations

import numpy as np

from ..config import MAX_COST, METRIC_PM, SolverConfig
from ..image import COLOR, GRADIENT, GRAYSCALE, ImageChannels
from .base import CostMetric, WindowSamples


def exp_table(gamma: float) -> np.ndarray:
    """``exp(-i / gamma)`` for every integer intensity difference."""
    return np.exp(-np.arange(256, dtype=np.float64) / gamma)


class PatchMatchMetric(CostMetric):
    name = METRIC_PM
    MAX_COST = MAX_COST[METRIC_PM]
    REQUIRED_CHANNELS = frozenset({GRAYSCALE, COLOR, GRADIENT})

    def __init__(self, ref: ImageChannels, other: ImageChannels, config: SolverConfig):
        super().__init__(ref, other, config)
        self.weights = exp_table(config.gamma)
        self.alpha = config.alpha
        self.tau_i = config.tau_i
        self.tau_g = config.tau_g

    def _evaluate(self, rows: np.ndarray, cols: np.ndarray, s: WindowSamples) -> np.ndarray:
        center = self.ref.grayscale[np.clip(rows, 0, self.ref.height - 1),
                                    np.clip(cols, 0, self.ref.width - 1)].astype(np.int64)
        Ip = self.ref.grayscale[s.py, s.px].astype(np.int64)
        Iq = self.other.grayscale[s.qy, s.qx].astype(np.int64)
        Gp = self.ref.gradient[s.py, s.px]
        Gq = self.other.gradient[s.qy, s.qx]
        w = self.weights[np.abs(center[:, None] - Ip)]
        cost_i = np.minimum(np.abs(Ip - Iq).astype(np.float64), self.tau_i)
        cost_g = np.minimum(np.abs(Gp - Gq).sum(axis=-1), self.tau_g)
        return (w * ((1.0 - self.alpha) * cost_i + self.alpha * cost_g)).sum(axis=1)
