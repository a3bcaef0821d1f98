"""Zero-mean normalized cross correlation."""
from __future__ import annotations

import numpy as np

from ..config import MAX_COST, METRIC_NCC
from ..image import COLOR, GRAYSCALE
from .base import NUM_SAMPLES, CostMetric, WindowSamples


class NCCMetric(CostMetric):
    name = METRIC_NCC
    MAX_COST = MAX_COST[METRIC_NCC]
    REQUIRED_CHANNELS = frozenset({GRAYSCALE, COLOR})

    def _evaluate(self, rows: np.ndarray, cols: np.ndarray, s: WindowSamples) -> np.ndarray:
        p = self.ref.grayscale[s.py, s.px].astype(np.float64) / 255.0
        q = self.other.grayscale[s.qy, s.qx].astype(np.float64) / 255.0
        return ncc_cost(p, q, self.MAX_COST)


def ncc_cost(p: np.ndarray, q: np.ndarray, max_cost: float) -> np.ndarray:
    """``1 - clamp(ncc, -1, 1)`` row-wise; ``max_cost`` where the correlation is undefined."""
    n = float(NUM_SAMPLES)
    sum_p = p.sum(axis=1)
    sum_q = q.sum(axis=1)
    sum_pp = (p * p).sum(axis=1)
    sum_qq = (q * q).sum(axis=1)
    sum_pq = (p * q).sum(axis=1)
    with np.errstate(all="ignore"):
        denom = np.sqrt((sum_pp - sum_p * sum_p / n) * (sum_qq - sum_q * sum_q / n))
        ncc = (sum_pq - sum_p * sum_q / n) / denom
    cost = 1.0 - np.clip(ncc, -1.0, 1.0)
    return np.where(np.isfinite(ncc), cost, max_cost)
