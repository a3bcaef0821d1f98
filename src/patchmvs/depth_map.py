"""Per-pixel depth / plane field evolved by the solver."""
from __future__ import annotations

import logging
import struct
from typing import Optional

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .camera import Camera
from .geometry import orient_towards, sample_cone
from .writers import to_uint8, write_ply, write_png

logger = logging.getLogger(__name__)

_MAGIC = b"PMVD"
INIT_NORMAL_CONE_DEG = 60.0


class DepthMap:
    """Cost, depth and plane (nx, ny, nz, d) for every pixel of one camera at one scale."""

    def __init__(self, height: int, width: int, max_cost: float = np.inf):
        self.max_cost = float(max_cost)
        self.cost = np.full((height, width), self.max_cost, dtype=np.float64)
        self.depth = np.zeros((height, width), dtype=np.float64)
        self.plane = np.zeros((height, width, 4), dtype=np.float64)

    @property
    def height(self) -> int:
        return self.cost.shape[0]

    @property
    def width(self) -> int:
        return self.cost.shape[1]

    def inside(self, row, col):
        return (row >= 0) & (row < self.height) & (col >= 0) & (col < self.width)

    def copy(self) -> "DepthMap":
        out = DepthMap(self.height, self.width, self.max_cost)
        out.cost[...] = self.cost
        out.depth[...] = self.depth
        out.plane[...] = self.plane
        return out

    def pixel_grid(self):
        rows, cols = np.mgrid[0:self.height, 0:self.width]
        return rows.ravel(), cols.ravel()

    # -- initialization ---------------------------------------------------

    def randomize(self, camera: Camera, min_depth: float, max_depth: float, scale: int,
                  rng: np.random.Generator, cone_deg: float = INIT_NORMAL_CONE_DEG) -> None:
        """Random depth in [min_depth, max_depth] and a normal facing the camera for each pixel."""
        rows, cols = self.pixel_grid()
        depth = rng.uniform(min_depth, max_depth, size=rows.size)
        view = camera.local_rays(cols, rows, scale)
        view /= np.linalg.norm(view, axis=1, keepdims=True)
        normals = orient_towards(sample_cone(-view, cone_deg, rng), view)
        d = camera.plane_offset(normals, cols, rows, depth, scale)
        self.depth[...] = depth.reshape(self.height, self.width)
        self.plane[..., :3] = normals.reshape(self.height, self.width, 3)
        self.plane[..., 3] = d.reshape(self.height, self.width)
        self.cost.fill(self.max_cost)

    def set_ground_truth_depth(self, camera: Camera, scale: int) -> int:
        """Overwrite the depth of pixels observing a known sparse point; returns the count."""
        div = float(2 ** max(scale, 0))
        count = 0
        for xy, X in camera.ground_truth:
            col = int(xy[0] / div)
            row = int(xy[1] / div)
            if not self.inside(row, col):
                continue
            d = float(camera.depth(X))
            n = self.plane[row, col, :3]
            self.depth[row, col] = d
            self.plane[row, col, 3] = float(camera.plane_offset(n, col, row, d, scale))
            count += 1
        return count

    # -- pyramid ----------------------------------------------------------

    def upscale(self, target_height: int, target_width: int) -> "DepthMap":
        """2x upsampling: even pixels copy, odd ones average their 2 or 4 source neighbors.

        Plane normals are averaged then renormalized.
        """
        res = DepthMap(target_height, target_width, self.max_cost)
        rows = np.arange(target_height)
        cols = np.arange(target_width)
        r0 = np.clip(rows // 2, 0, self.height - 1)
        c0 = np.clip(cols // 2, 0, self.width - 1)
        r1 = np.where(rows % 2 == 1, np.clip(r0 + 1, 0, self.height - 1), r0)
        c1 = np.where(cols % 2 == 1, np.clip(c0 + 1, 0, self.width - 1), c0)

        def interp(values: np.ndarray) -> np.ndarray:
            return (values[r0][:, c0] + values[r0][:, c1] + values[r1][:, c0] + values[r1][:, c1]) / 4.0

        res.cost[...] = interp(self.cost)
        res.depth[...] = interp(self.depth)
        plane = interp(self.plane)
        norm = np.linalg.norm(plane[..., :3], axis=-1, keepdims=True)
        plane[..., :3] = np.divide(plane[..., :3], norm, out=plane[..., :3].copy(), where=norm > 0.0)
        res.plane[...] = plane
        return res

    # -- filtering --------------------------------------------------------

    def filter_depth_range(self, min_th: float, max_th: float) -> int:
        """Set depths outside [min_th, max_th] to -1; returns how many were rejected."""
        bad = (self.depth < min_th) | (self.depth > max_th)
        self.depth[bad] = -1.0
        return int(bad.sum())

    def median_filter(self, camera: Camera, x_size: int, y_size: int, scale: int) -> "DepthMap":
        """Median filter of cost, depth and normals over an odd window; borders are kept."""
        if x_size % 2 == 0 or y_size % 2 == 0:
            raise ValueError("median filter window sizes must be odd")
        res = self.copy()
        hx, hy = x_size // 2, y_size // 2
        if self.height <= 2 * hy or self.width <= 2 * hx:
            return res
        inner = (slice(hy, self.height - hy), slice(hx, self.width - hx))

        def median(values: np.ndarray) -> np.ndarray:
            windows = sliding_window_view(values, (y_size, x_size), axis=(0, 1))
            return np.median(windows.reshape(windows.shape[:2] + (-1,)), axis=-1)

        res.cost[inner] = median(self.cost)
        res.depth[inner] = median(self.depth)
        n = np.stack([median(self.plane[..., i]) for i in range(3)], axis=-1)
        norm = np.linalg.norm(n, axis=-1, keepdims=True)
        n = np.divide(n, norm, out=np.zeros_like(n), where=norm > 0.0)
        rows, cols = np.mgrid[inner]
        d = camera.plane_offset(n, cols, rows, res.depth[inner], scale)
        res.plane[inner] = np.concatenate([n, d[..., None]], axis=-1)
        return res

    # -- persistence ------------------------------------------------------

    def save(self, path: str) -> bool:
        record = np.concatenate([self.cost[..., None], self.depth[..., None], self.plane], axis=-1)
        try:
            with open(path, "wb") as f:
                f.write(_MAGIC)
                f.write(struct.pack("<IId", self.height, self.width, self.max_cost))
                f.write(np.ascontiguousarray(record, dtype="<f8").tobytes())
        except OSError as e:
            logger.error(f"Could not write depth map {path}: {e}")
            return False
        return True

    @classmethod
    def load(cls, path: str) -> Optional["DepthMap"]:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            logger.error(f"Could not open depth map {path}: {e}")
            return None
        header = struct.calcsize("<IId")
        if data[:4] != _MAGIC or len(data) < 4 + header:
            logger.error(f"Corrupted depth map {path}")
            return None
        h, w, max_cost = struct.unpack_from("<IId", data, 4)
        payload = data[4 + header:]
        if len(payload) != h * w * 6 * 8:
            logger.error(f"Truncated depth map {path}")
            return None
        record = np.frombuffer(payload, dtype="<f8").reshape(h, w, 6)
        out = cls(h, w, max_cost)
        out.cost[...] = record[..., 0]
        out.depth[...] = record[..., 1]
        out.plane[...] = record[..., 2:]
        return out

    # -- exports ----------------------------------------------------------

    def export_depth(self, path: str) -> None:
        """Grayscale image of the depth, normalized over the valid (positive) depths."""
        write_png(path, _normalized(np.maximum(self.depth, 0.0), self.depth > 0.0))

    def export_cost(self, path: str) -> None:
        valid = self.depth > 0.0
        img = _normalized(self.cost, valid)
        img[~valid] = 0
        write_png(path, img)

    def export_normal(self, path: str) -> None:
        img = to_uint8((self.plane[..., :3] + 1.0) / 2.0)
        img[self.depth <= 0.0] = 0
        write_png(path, img)

    def export_ply(self, path: str, camera: Camera, cost_threshold: float, scale: int,
                   colors: Optional[np.ndarray] = None) -> int:
        """Unproject confident pixels to world points; returns the number written."""
        keep = (self.cost < cost_threshold) & (self.depth > 0.0)
        rows, cols = np.nonzero(keep)
        xyz = camera.unproject(cols, rows, self.depth[rows, cols], scale)
        rgb = colors[rows, cols] if colors is not None else None
        write_ply(path, xyz.reshape(-1, 3), rgb)
        return int(rows.size)


def _normalized(values: np.ndarray, valid: np.ndarray) -> np.ndarray:
    if not np.any(valid):
        return np.zeros(values.shape, dtype=np.uint8)
    lo = values[valid].min()
    hi = values[valid].max()
    with np.errstate(all="ignore"):
        scaled = (values - lo) / (hi - lo)
    return to_uint8(scaled)
