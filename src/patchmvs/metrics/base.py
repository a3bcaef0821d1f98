"""Shared cost metric contract and window warping."""
from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet

import numpy as np

from ..config import SolverConfig
from ..image import ImageChannels

WINDOW = 15
HALF_WINDOW = WINDOW // 2
WINDOW_STEP = 2

_OFFSETS = np.arange(-HALF_WINDOW, HALF_WINDOW + 1, WINDOW_STEP)
# Row-major sample offsets of the sparse window (8 x 8 samples).
WINDOW_DY, WINDOW_DX = (a.ravel() for a in np.meshgrid(_OFFSETS, _OFFSETS, indexing="ij"))
NUM_SAMPLES = WINDOW_DY.size

_EPS = np.finfo(np.float64).eps
# Warped coordinates are clipped to this range before the integer cast.
_COORD_LIMIT = 1 << 30


@dataclass
class WindowSamples:
    """Reference and warped integer sample positions of a batch of windows."""

    py: np.ndarray
    px: np.ndarray
    qy: np.ndarray
    qx: np.ndarray
    valid: np.ndarray  # [N] every sample of the window is usable


def project_points(H: np.ndarray, px: np.ndarray, py: np.ndarray):
    """Apply per-row homographies ``H`` [N, 3, 3] to points [N, S]; returns (qx, qy, ok)."""
    hx = H[:, 0, 0, None] * px + H[:, 0, 1, None] * py + H[:, 0, 2, None]
    hy = H[:, 1, 0, None] * px + H[:, 1, 1, None] * py + H[:, 1, 2, None]
    hz = H[:, 2, 0, None] * px + H[:, 2, 1, None] * py + H[:, 2, 2, None]
    with np.errstate(all="ignore"):
        ok = np.abs(hz) > _EPS
        fx = hx / hz
        fy = hy / hz
    ok &= np.isfinite(fx) & np.isfinite(fy)
    fx = np.where(ok, np.clip(fx, -_COORD_LIMIT, _COORD_LIMIT), -1.0)
    fy = np.where(ok, np.clip(fy, -_COORD_LIMIT, _COORD_LIMIT), -1.0)
    # truncation toward zero, as an integer cast does
    return np.trunc(fx).astype(np.int64), np.trunc(fy).astype(np.int64), ok


def warp_window(rows: np.ndarray, cols: np.ndarray, H: np.ndarray,
                ref: ImageChannels, other: ImageChannels,
                dy: np.ndarray = WINDOW_DY, dx: np.ndarray = WINDOW_DX) -> WindowSamples:
    """Sample the window around each (row, col) and warp it with its homography.

    A window is invalid when any reference sample leaves the reference image,
    any homogeneous coordinate vanishes, or any warped sample leaves the
    other image. Invalid samples are redirected to pixel (0, 0) so gathers
    stay in bounds.
    """
    py = rows[:, None] + dy[None, :]
    px = cols[:, None] + dx[None, :]
    ref_ok = ref.inside(py, px)
    qx, qy, z_ok = project_points(H, px.astype(np.float64), py.astype(np.float64))
    other_ok = other.inside(qy, qx)
    sample_ok = ref_ok & z_ok & other_ok
    valid = np.all(sample_ok, axis=1)
    py = np.where(sample_ok, py, 0)
    px = np.where(sample_ok, px, 0)
    qy = np.where(sample_ok, qy, 0)
    qx = np.where(sample_ok, qx, 0)
    return WindowSamples(py=py, px=px, qy=qy, qx=qx, valid=valid)


class CostMetric:
    """Photo-consistency between the reference image and one warped neighbor.

    Subclasses implement ``_evaluate`` on a batch of warped windows;
    invalid windows are forced to ``MAX_COST`` afterwards, so no degenerate
    configuration can raise or leak a non-finite value.
    """

    name: str = ""
    MAX_COST: float = 1.0
    REQUIRED_CHANNELS: FrozenSet[str] = frozenset()

    def __init__(self, ref: ImageChannels, other: ImageChannels, config: SolverConfig):
        missing = self.REQUIRED_CHANNELS - (ref.channels & other.channels)
        if missing:
            raise ValueError(f"Metric '{self.name}' needs channels {sorted(missing)}")
        self.ref = ref
        self.other = other
        self.config = config

    def cost(self, row: int, col: int, H: np.ndarray) -> float:
        out = self.cost_batch(np.array([row]), np.array([col]), np.asarray(H, dtype=np.float64)[None])
        return float(out[0])

    def cost_batch(self, rows: np.ndarray, cols: np.ndarray, H: np.ndarray) -> np.ndarray:
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        if rows.size == 0:
            return np.zeros(0, dtype=np.float64)
        samples = self._warp(rows, cols, H)
        with np.errstate(all="ignore"):
            costs = self._evaluate(rows, cols, samples)
        bad = ~samples.valid | ~np.isfinite(costs)
        costs = np.clip(costs, 0.0, self.MAX_COST)
        costs[bad] = self.MAX_COST
        return costs

    def _warp(self, rows: np.ndarray, cols: np.ndarray, H: np.ndarray) -> WindowSamples:
        return warp_window(rows, cols, H, self.ref, self.other)

    def _evaluate(self, rows: np.ndarray, cols: np.ndarray, s: WindowSamples) -> np.ndarray:
        raise NotImplementedError
