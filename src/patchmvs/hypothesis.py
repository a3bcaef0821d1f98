"""Propagation candidate patterns and checkerboard coloring."""
from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

from .geometry import orient_towards

Offsets = List[Tuple[int, int]]  # (dx, dy)

FULL_OFFSETS: Offsets = [
    (0, -5), (0, -3), (-1, -2), (1, -2), (-2, -1), (0, -1), (2, -1),
    (-5, 0), (-3, 0), (-1, 0), (1, 0), (3, 0), (5, 0),
    (-2, 1), (0, 1), (2, 1), (-1, 2), (1, 2), (0, 3), (0, 5),
]

SPEED_OFFSETS: Offsets = [
    (0, -5), (0, -1), (-5, 0), (-1, 0), (1, 0), (5, 0), (0, 1), (0, 5),
]

_CLOSE_NORTH: Offsets = [(0, -1), (-1, -2), (1, -2), (-2, -3), (2, -3), (-3, -4), (3, -4)]
_FAR_NORTH: Offsets = [(0, -k) for k in range(3, 24, 2)]

# North, south, west, east V shapes, then the four far axis-aligned lines.
ASYMMETRIC_REGIONS: List[Offsets] = [
    _CLOSE_NORTH,
    [(dx, -dy) for dx, dy in _CLOSE_NORTH],
    [(dy, dx) for dx, dy in _CLOSE_NORTH],
    [(-dy, dx) for dx, dy in _CLOSE_NORTH],
    _FAR_NORTH,
    [(dx, -dy) for dx, dy in _FAR_NORTH],
    [(dy, dx) for dx, dy in _FAR_NORTH],
    [(-dy, dx) for dx, dy in _FAR_NORTH],
]


def checkerboard_mask(height: int, width: int, color: int) -> np.ndarray:
    """Pixels whose (row + col) parity equals ``color``."""
    rows, cols = np.mgrid[0:height, 0:width]
    return (rows + cols) % 2 == color


def row_columns(row: int, width: int, color: int) -> np.ndarray:
    """Columns of ``row`` that belong to checkerboard ``color``."""
    start = color if row % 2 == 0 else (color + 1) % 2
    return np.arange(start, width, 2)


def checkerboard_pixels(height: int, width: int, color: int, row_start: int = 0,
                        row_stop: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
    """(rows, cols) of the ``color`` pixels within rows [row_start, row_stop)."""
    row_stop = height if row_stop is None else row_stop
    rows = []
    cols = []
    for row in range(row_start, row_stop):
        c = row_columns(row, width, color)
        rows.append(np.full(c.shape, row))
        cols.append(c)
    if not rows:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    return np.concatenate(rows).astype(np.int64), np.concatenate(cols).astype(np.int64)


def offsets_for(scheme: str) -> Offsets:
    if scheme == "full":
        return FULL_OFFSETS
    if scheme == "speed":
        return SPEED_OFFSETS
    raise ValueError(f"Scheme '{scheme}' has no fixed offset pattern")


def propagation_candidates(scheme: str, rows: np.ndarray, cols: np.ndarray,
                           cost: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Source pixels whose hypotheses are tested at (rows, cols).

    Returns (src_rows, src_cols, valid), each [n_candidates, n_pixels]. For the
    asymmetric scheme, each region contributes its in-bounds offset with the
    lowest current cost (``cost`` is the [H, W] cost map).
    """
    h, w = cost.shape
    if scheme == "asymmetric":
        picked_r = []
        picked_c = []
        picked_ok = []
        for region in ASYMMETRIC_REGIONS:
            dx = np.array([o[0] for o in region])[:, None]
            dy = np.array([o[1] for o in region])[:, None]
            r = rows[None, :] + dy
            c = cols[None, :] + dx
            inside = (r >= 0) & (r < h) & (c >= 0) & (c < w)
            values = np.where(inside, cost[np.clip(r, 0, h - 1), np.clip(c, 0, w - 1)], np.inf)
            # ties keep the first offset of the region
            best = np.argmin(values, axis=0)
            idx = np.arange(rows.size)
            picked_r.append(r[best, idx])
            picked_c.append(c[best, idx])
            picked_ok.append(inside[best, idx])
        src_r = np.stack(picked_r)
        src_c = np.stack(picked_c)
        ok = np.stack(picked_ok)
    else:
        offsets = offsets_for(scheme)
        dx = np.array([o[0] for o in offsets])[:, None]
        dy = np.array([o[1] for o in offsets])[:, None]
        src_r = rows[None, :] + dy
        src_c = cols[None, :] + dx
        ok = (src_r >= 0) & (src_r < h) & (src_c >= 0) & (src_c < w)
    return np.where(ok, src_r, 0), np.where(ok, src_c, 0), ok


def perturb_normals(normals: np.ndarray, radius: float, view_dirs: np.ndarray,
                    rng: np.random.Generator) -> np.ndarray:
    """Add uniform noise in ``[-radius, radius]`` per component, renormalize and face the camera.

    Rows whose perturbed vector vanishes keep their original normal.
    """
    n = normals + rng.uniform(-radius, radius, size=normals.shape)
    norm = np.linalg.norm(n, axis=1, keepdims=True)
    n = np.divide(n, norm, out=normals.copy(), where=norm > 1e-12)
    return orient_towards(n, view_dirs)
