"""Camera data structures and projective operations."""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from .geometry import P_from_KRt, cam_center_world, relative_motion, rescale_dims, scale_K

logger = logging.getLogger(__name__)

INVALID_DISPARITY = -1.0

_MAGIC = b"PMVC"
_VERSION = 1


@dataclass
class StereoRig:
    """Relative motion from a reference camera to one of its neighbors."""

    R: np.ndarray
    t: np.ndarray


@dataclass
class Camera:
    uid: int
    image_path: str
    width: int
    height: int
    K: np.ndarray
    R: np.ndarray
    t: np.ndarray
    min_depth: float = 0.1
    max_depth: float = 100.0
    view_neighbors: List[int] = field(default_factory=list)
    baselines: List[float] = field(default_factory=list)
    min_baseline: float = 0.0
    max_baseline: float = 0.0
    mean_baseline: float = 1.0
    # (pixel xy at full resolution, world point)
    ground_truth: List[Tuple[np.ndarray, np.ndarray]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)
        self.update_projection()

    def update_projection(self) -> None:
        """Recompute every quantity derived from (K, R, t)."""
        self.K_inv = np.linalg.inv(self.K)
        self.C = cam_center_world(self.R, self.t)
        self.P = P_from_KRt(self.K, self.R, self.t)
        self.M_inv = np.linalg.inv(self.P[:, :3])
        self._scaled = {}

    def _scaled_entry(self, scale: int):
        entry = self._scaled.get(scale)
        if entry is None:
            K = scale_K(self.K, scale)
            P = P_from_KRt(K, self.R, self.t)
            entry = (K, np.linalg.inv(K), P, np.linalg.inv(P[:, :3]))
            self._scaled[scale] = entry
        return entry

    def K_at(self, scale: int = -1) -> np.ndarray:
        return self.K if scale < 0 else self._scaled_entry(scale)[0]

    def K_inv_at(self, scale: int = -1) -> np.ndarray:
        return self.K_inv if scale < 0 else self._scaled_entry(scale)[1]

    def P_at(self, scale: int = -1) -> np.ndarray:
        return self.P if scale < 0 else self._scaled_entry(scale)[2]

    def M_inv_at(self, scale: int = -1) -> np.ndarray:
        return self.M_inv if scale < 0 else self._scaled_entry(scale)[3]

    def dims_at(self, scale: int = -1) -> Tuple[int, int]:
        """(width, height) of the image at ``scale``."""
        if scale < 0:
            return self.width, self.height
        return rescale_dims(self.width, self.height, scale)

    def flat_pose(self) -> np.ndarray:
        """Return flattened 4x4 pose."""
        T = np.eye(4)
        T[:3, :3] = self.R
        T[:3, 3] = self.t
        return T.reshape(-1)

    # -- projection -------------------------------------------------------

    def project(self, X: np.ndarray, scale: int = -1) -> np.ndarray:
        """Project world point(s) [..., 3] to pixel coordinates [..., 2]."""
        X = np.asarray(X, dtype=np.float64)
        P = self.P_at(scale)
        x = X @ P[:, :3].T + P[:, 3]
        return x[..., :2] / x[..., 2:3]

    def unproject(self, x, y, depth, scale: int = -1) -> np.ndarray:
        """World point at ``depth`` along the ray through pixel (x, y)."""
        local = self.unproject_local(x, y, depth, scale)
        return self.C + local @ self.R

    def unproject_local(self, x, y, depth, scale: int = -1) -> np.ndarray:
        """Point at ``depth`` along the ray through (x, y), in camera coordinates."""
        rays = self.local_rays(x, y, scale)
        return np.asarray(depth, dtype=np.float64)[..., None] * rays

    def local_rays(self, x, y, scale: int = -1) -> np.ndarray:
        """``K^-1 [x, y, 1]`` for scalar or array pixel coordinates."""
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        pix = np.stack([x, y, np.ones_like(x)], axis=-1)
        return pix @ self.K_inv_at(scale).T

    def ray(self, x, scale: int = -1) -> Tuple[np.ndarray, np.ndarray]:
        """(origin, unit direction) in world frame of the ray through pixel ``x``."""
        local = self.local_rays(x[0], x[1], scale)
        direction = self.R.T @ local
        return self.C.copy(), direction / np.linalg.norm(direction)

    def view_direction(self, scale: int = -1) -> np.ndarray:
        """World direction of the ray through the image center."""
        w, h = self.dims_at(scale)
        return self.ray((w / 2, h / 2), scale)[1]

    def depth(self, X: np.ndarray, scale: int = -1) -> np.ndarray:
        """Signed depth of world point(s) along the optical axis."""
        X = np.asarray(X, dtype=np.float64)
        P = self.P_at(scale)
        return X @ P[2, :3] + P[2, 3]

    def rotate_to_world(self, n: np.ndarray) -> np.ndarray:
        v = np.asarray(n, dtype=np.float64) @ self.R
        return v / np.linalg.norm(v, axis=-1, keepdims=True)

    # -- depth / disparity ------------------------------------------------

    def depth_to_disparity(self, depth, scale: int = -1, baseline: Optional[float] = None):
        """``fx * baseline / depth``; non finite results map to ``INVALID_DISPARITY``."""
        return self._focal_ratio(depth, scale, baseline)

    def disparity_to_depth(self, disparity, scale: int = -1, baseline: Optional[float] = None):
        return self._focal_ratio(disparity, scale, baseline)

    def _focal_ratio(self, value, scale: int, baseline: Optional[float]):
        b = self.mean_baseline if baseline is None else baseline
        fx = self.K_at(scale)[0, 0]
        value = np.asarray(value, dtype=np.float64)
        with np.errstate(all="ignore"):
            out = fx * b / value
        out = np.where(np.isfinite(out), out, INVALID_DISPARITY)
        return float(out) if out.ndim == 0 else out

    # -- planes -----------------------------------------------------------

    def plane_offset(self, n: np.ndarray, x, y, depth, scale: int = -1):
        """Offset ``d`` of the plane with normal ``n`` through the unprojected pixel."""
        X = self.unproject_local(x, y, depth, scale)
        return -np.sum(np.asarray(n) * X, axis=-1)

    def depth_from_plane(self, n: np.ndarray, d, x, y, scale: int = -1):
        """Depth at pixel (x, y) of the intersection of its ray with plane (n, d)."""
        rays = self.local_rays(x, y, scale)
        with np.errstate(all="ignore"):
            return -np.asarray(d) / np.sum(np.asarray(n) * rays, axis=-1)

    def stereo_rig(self, other: "Camera") -> StereoRig:
        R, t = relative_motion(self.R, self.t, other.R, other.t)
        return StereoRig(R, t)

    # -- persistence ------------------------------------------------------

    def save(self, path: str) -> bool:
        try:
            with open(path, "wb") as f:
                f.write(_MAGIC)
                f.write(struct.pack("<I", _VERSION))
                f.write(struct.pack("<qii", self.uid, self.width, self.height))
                _write_str(f, self.image_path)
                for M in (self.K, self.K_inv, self.R, self.M_inv):
                    f.write(struct.pack("<9d", *M.reshape(-1)))
                f.write(struct.pack("<3d", *self.t))
                f.write(struct.pack("<3d", *self.C))
                f.write(struct.pack("<12d", *self.P.reshape(-1)))
                f.write(struct.pack("<dd", self.min_depth, self.max_depth))
                f.write(struct.pack("<ddd", self.min_baseline, self.max_baseline, self.mean_baseline))
                f.write(struct.pack("<Q", len(self.baselines)))
                f.write(struct.pack(f"<{len(self.baselines)}d", *self.baselines))
                f.write(struct.pack("<Q", len(self.view_neighbors)))
                f.write(struct.pack(f"<{len(self.view_neighbors)}q", *self.view_neighbors))
                f.write(struct.pack("<Q", len(self.ground_truth)))
                for xy, X in self.ground_truth:
                    f.write(struct.pack("<5d", float(xy[0]), float(xy[1]), *np.asarray(X, dtype=np.float64)))
        except OSError as e:
            logger.error(f"Could not write camera {self.uid} to {path}: {e}")
            return False
        return True

    @classmethod
    def load(cls, path: str) -> Optional["Camera"]:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            logger.error(f"Could not open camera file {path}: {e}")
            return None
        try:
            return cls._decode(data)
        except (struct.error, ValueError, UnicodeDecodeError) as e:
            logger.error(f"Corrupted camera file {path}: {e}")
            return None

    @classmethod
    def _decode(cls, data: bytes) -> "Camera":
        if data[:4] != _MAGIC:
            raise ValueError("bad magic")
        off = 4
        (version,) = struct.unpack_from("<I", data, off)
        off += 4
        if version != _VERSION:
            raise ValueError(f"unsupported version {version}")
        uid, width, height = struct.unpack_from("<qii", data, off)
        off += 16
        image_path, off = _read_str(data, off)
        mats = []
        for _ in range(4):
            mats.append(np.array(struct.unpack_from("<9d", data, off)).reshape(3, 3))
            off += 72
        K, _K_inv, R, _M_inv = mats
        t = np.array(struct.unpack_from("<3d", data, off))
        off += 24 + 24 + 96  # t, C, P
        min_depth, max_depth = struct.unpack_from("<dd", data, off)
        off += 16
        min_b, max_b, mean_b = struct.unpack_from("<ddd", data, off)
        off += 24
        (nb,) = struct.unpack_from("<Q", data, off)
        off += 8
        baselines = list(struct.unpack_from(f"<{nb}d", data, off))
        off += 8 * nb
        (nn,) = struct.unpack_from("<Q", data, off)
        off += 8
        neighbors = list(struct.unpack_from(f"<{nn}q", data, off))
        off += 8 * nn
        (ng,) = struct.unpack_from("<Q", data, off)
        off += 8
        gt = []
        for _ in range(ng):
            vals = struct.unpack_from("<5d", data, off)
            off += 40
            gt.append((np.array(vals[:2]), np.array(vals[2:])))
        return cls(
            uid=uid, image_path=image_path, width=width, height=height, K=K, R=R, t=t,
            min_depth=min_depth, max_depth=max_depth, view_neighbors=neighbors,
            baselines=baselines, min_baseline=min_b, max_baseline=max_b,
            mean_baseline=mean_b, ground_truth=gt,
        )


def _write_str(f, s: str) -> None:
    raw = s.encode("utf-8")
    f.write(struct.pack("<I", len(raw)))
    f.write(raw)


def _read_str(data: bytes, off: int) -> Tuple[str, int]:
    (n,) = struct.unpack_from("<I", data, off)
    off += 4
    return data[off:off + n].decode("utf-8"), off + n
