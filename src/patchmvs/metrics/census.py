"""Census + absolute difference cost."""
from __future__ import annotations

import numpy as np

from ..config import MAX_COST, METRIC_CENSUS, SolverConfig
from ..image import CENSUS, COLOR, GRAYSCALE, ImageChannels
from .base import CostMetric, WindowSamples

_POPCOUNT8 = np.array([bin(i).count("1") for i in range(256)], dtype=np.int64)


def popcount64(values: np.ndarray) -> np.ndarray:
    """Number of set bits of each uint64 entry."""
    v = np.ascontiguousarray(values, dtype=np.uint64)
    return _POPCOUNT8[v.view(np.uint8)].reshape(v.shape + (8,)).sum(axis=-1)


def proba_table(size: int, lam: float) -> np.ndarray:
    """``1 - exp(-i / lam)`` for i in ``[0, size)``."""
    return 1.0 - np.exp(-np.arange(size, dtype=np.float64) / lam)


class CensusMetric(CostMetric):
    name = METRIC_CENSUS
    MAX_COST = MAX_COST[METRIC_CENSUS]
    REQUIRED_CHANNELS = frozenset({GRAYSCALE, COLOR, CENSUS})

    def __init__(self, ref: ImageChannels, other: ImageChannels, config: SolverConfig):
        super().__init__(ref, other, config)
        self.census_table = proba_table(65, config.census_lambda)
        self.ad_table = proba_table(256, config.ad_lambda)

    def _evaluate(self, rows: np.ndarray, cols: np.ndarray, s: WindowSamples) -> np.ndarray:
        cp = self.ref.census[s.py, s.px]
        cq = self.other.census[s.qy, s.qx]
        hamming = popcount64(np.bitwise_xor(cp, cq))
        Ip = self.ref.grayscale[s.py, s.px].astype(np.int64)
        Iq = self.other.grayscale[s.qy, s.qx].astype(np.int64)
        per_sample = self.census_table[hamming] + self.ad_table[np.abs(Ip - Iq)]
        return per_sample.mean(axis=1)
