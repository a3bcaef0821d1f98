"""Back-end contract shared by the CPU and accelerator solvers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from ..camera import INVALID_DISPARITY, Camera
from ..config import SolverConfig
from ..depth_map import DepthMap
from ..image import ImageChannels

# Propagated depths are clamped to this widening of the camera depth range.
PROPAGATION_DEPTH_RANGE = (0.7, 1.3)


@dataclass
class ScaleContext:
    """Everything a back-end needs to solve one camera at one pyramid scale."""

    camera: Camera
    neighbors: List[Camera]
    image: ImageChannels
    neighbor_images: List[ImageChannels]
    scale: int
    config: SolverConfig

    @property
    def min_depth(self) -> float:
        return self.camera.min_depth

    @property
    def max_depth(self) -> float:
        return self.camera.max_depth

    @property
    def propagation_depth_range(self) -> Tuple[float, float]:
        lo, hi = PROPAGATION_DEPTH_RANGE
        return lo * self.min_depth, hi * self.max_depth

    def disparity_range(self) -> Tuple[float, float]:
        """(min_disparity, max_disparity) of the camera depth range at this scale."""
        lo = self.camera.depth_to_disparity(self.max_depth, self.scale)
        hi = self.camera.depth_to_disparity(self.min_depth, self.scale)
        return float(lo), float(hi)


def refinement_schedule(min_disparity: float, max_disparity: float, threshold: float) -> List[float]:
    """Disparity radii of the refinement rounds.

    Starts at half the disparity range and halves every round while the
    radius stays above ``threshold``. The normal radius follows the same
    halving from 1 (see ``normal_radii``).
    """
    if min_disparity == INVALID_DISPARITY or max_disparity == INVALID_DISPARITY:
        return []
    radius = (max_disparity - min_disparity) / 2.0
    if not np.isfinite(radius) or threshold <= 0.0:
        return []
    radii = []
    while radius > threshold:
        radii.append(radius)
        radius /= 2.0
    return radii


def normal_radii(count: int) -> List[float]:
    return [1.0 / (2 ** i) for i in range(count)]


def clamp_propagated_depth(depth: np.ndarray, min_depth: float, max_depth: float,
                           fallback: float) -> np.ndarray:
    """Clamp recomputed depths; non finite ones become ``fallback``."""
    out = np.clip(depth, min_depth, max_depth)
    return np.where(np.isfinite(depth), out, fallback)


def row_blocks(height: int, parts: int) -> List[Tuple[int, int]]:
    """Split ``[0, height)`` into at most ``parts`` contiguous non-empty row ranges."""
    parts = max(1, min(parts, height))
    bounds = np.linspace(0, height, parts + 1).astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


class Backend:
    """Executes the phases of the PatchMatch state machine on a bound scale.

    ``bind`` is called once per (camera, scale) before any phase, ``release``
    once the scale is done. Phases mutate the field in place and must never
    increase the cost of a pixel.
    """

    name = "base"

    def __init__(self, config: SolverConfig, rng: np.random.Generator):
        self.config = config
        self.rng = rng
        self.context = None
        self.iteration = 0

    def bind(self, context: ScaleContext) -> None:
        self.context = context

    def begin_iteration(self, iteration: int) -> None:
        """Called before each outer iteration of a scale."""
        self.iteration = iteration

    def release(self) -> None:
        self.context = None

    def close(self) -> None:
        """Free resources held across scales."""

    def compute_cost(self, field: DepthMap) -> None:
        raise NotImplementedError

    def propagate(self, field: DepthMap, color: int) -> int:
        raise NotImplementedError

    def refine(self, field: DepthMap) -> int:
        raise NotImplementedError

    def _require_context(self) -> ScaleContext:
        if self.context is None:
            raise RuntimeError(f"{type(self).__name__} used before bind()")
        return self.context


def child_generators(rng: np.random.Generator, count: int) -> Sequence[np.random.Generator]:
    """Independent generators for parallel tasks, derived deterministically from ``rng``."""
    seeds = rng.integers(0, 2 ** 63 - 1, size=count)
    return [np.random.default_rng(int(s)) for s in seeds]
