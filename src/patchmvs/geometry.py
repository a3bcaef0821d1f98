"""Geometry helpers for plane sweeping and hypothesis sampling."""
from __future__ import annotations

from typing import Tuple

import numpy as np


def P_from_KRt(K: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    return K @ np.concatenate([R, t.reshape(3, 1)], axis=1)


def cam_center_world(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    return (-R.T @ t.reshape(3, 1)).reshape(3)


def scale_K(K: np.ndarray, scale: int) -> np.ndarray:
    """Intrinsics of an image downsampled ``scale`` times by a factor 2."""
    Ks = np.array(K, dtype=np.float64, copy=True)
    div = float(2 ** scale)
    Ks[0, 0] /= div
    Ks[1, 1] /= div
    Ks[0, 1] /= div
    Ks[0, 2] /= div
    Ks[1, 2] /= div
    return Ks


def rescale_dims(width: int, height: int, scale: int) -> Tuple[int, int]:
    div = 2 ** scale
    return width // div, height // div


def relative_motion(R1: np.ndarray, t1: np.ndarray, R2: np.ndarray, t2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Motion (R, t) mapping camera-1 local coordinates to camera-2 local coordinates."""
    R = R2 @ R1.T
    t = t2.reshape(3) - R @ t1.reshape(3)
    return R, t


def homography(R: np.ndarray, t: np.ndarray, K_ref_inv: np.ndarray, K_other: np.ndarray,
               n: np.ndarray, d: float) -> np.ndarray:
    """Plane induced homography ``K_other (R - t n^T / d) K_ref^-1``."""
    with np.errstate(all="ignore"):
        return K_other @ (R - np.outer(t, n) / d) @ K_ref_inv


def homography_batch(R: np.ndarray, t: np.ndarray, K_ref_inv: np.ndarray, K_other: np.ndarray,
                     planes: np.ndarray) -> np.ndarray:
    """Batched homographies for ``planes`` of shape [N, 4]; returns [N, 3, 3].

    A zero offset yields non-finite entries, which the cost metrics resolve
    to their MAX sentinel.
    """
    n = planes[:, :3]
    d = planes[:, 3]
    with np.errstate(all="ignore"):
        tn = t[None, :, None] * n[:, None, :] / d[:, None, None]
        M = R[None] - tn
        return np.einsum("ij,njk,kl->nil", K_other, M, K_ref_inv)


def normalized_frame(axes: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Orthonormal frames (u, v, w) with w along each row of ``axes`` [N, 3]."""
    w = axes / np.linalg.norm(axes, axis=-1, keepdims=True)
    wx, wy, wz = w[..., 0], w[..., 1], w[..., 2]
    zero = np.zeros_like(wx)
    use_xz = (np.abs(wx) > np.abs(wy))[..., None]
    with np.errstate(all="ignore"):
        u_xz = np.stack([-wz, zero, wx], axis=-1) / np.hypot(wx, wz)[..., None]
        u_yz = np.stack([zero, wz, -wy], axis=-1) / np.hypot(wy, wz)[..., None]
    u = np.where(use_xz, u_xz, u_yz)
    v = np.cross(w, u)
    return u, v, w


def sample_cone(axes: np.ndarray, half_angle_deg: float, rng: np.random.Generator) -> np.ndarray:
    """Draw one direction uniformly (w.r.t. solid angle) in the cone around each row of ``axes``."""
    axes = np.atleast_2d(axes)
    u, v, w = normalized_frame(axes)
    count = axes.shape[0]
    cos_max = np.cos(np.deg2rad(half_angle_deg))
    u1 = rng.random(count)
    u2 = rng.random(count)
    ct = (1.0 - u1) + u1 * cos_max
    st = np.sqrt(np.clip(1.0 - ct * ct, 0.0, 1.0))
    phi = 2.0 * np.pi * u2
    return (np.cos(phi) * st)[:, None] * u + (np.sin(phi) * st)[:, None] * v + ct[:, None] * w


def angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Angle in radians between two vectors."""
    na = np.linalg.norm(a)
    nb = np.linalg.norm(b)
    c = float(np.dot(a, b) / (na * nb))
    return float(np.arccos(np.clip(c, -1.0, 1.0)))


def orient_towards(normals: np.ndarray, view_dirs: np.ndarray) -> np.ndarray:
    """Flip normals so that ``n . view_dir <= 0`` row-wise."""
    flip = np.einsum("ij,ij->i", normals, view_dirs) > 0.0
    out = normals.copy()
    out[flip] *= -1.0
    return out
