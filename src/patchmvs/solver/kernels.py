"""Torch kernels of the accelerator back-end.

Every kernel works on flat batches of pixels and mirrors the numpy metrics
sample for sample: same sparse window, same truncation of warped
coordinates, same MAX sentinel for any invalid window.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import torch

from ..image import ImageChannels
from ..metrics.base import NUM_SAMPLES, WINDOW_DX, WINDOW_DY

_EPS = float(np.finfo(np.float64).eps)
_COORD_LIMIT = float(1 << 30)

_M1 = 0x5555555555555555
_M2 = 0x3333333333333333
_M4 = 0x0F0F0F0F0F0F0F0F


@dataclass
class ImageTensors:
    """Device copy of the channels of one image."""

    gray: torch.Tensor  # [H, W] float64
    gradient: Optional[torch.Tensor]  # [H, W, 2] float64
    census: Optional[torch.Tensor]  # [H, W] int64
    height: int
    width: int

    @classmethod
    def from_channels(cls, image: ImageChannels, device: torch.device) -> "ImageTensors":
        gradient = None
        if image.gradient is not None:
            gradient = torch.as_tensor(np.array(image.gradient, dtype=np.float64), device=device)
        census = None
        if image.census is not None:
            # census codes use at most 62 bits, the int64 view keeps their value
            census = torch.as_tensor(np.array(image.census, dtype=np.uint64).view(np.int64), device=device)
        return cls(
            gray=torch.as_tensor(np.array(image.grayscale, dtype=np.float64), device=device),
            gradient=gradient,
            census=census,
            height=image.height,
            width=image.width,
        )

    def inside(self, row: torch.Tensor, col: torch.Tensor) -> torch.Tensor:
        return (row >= 0) & (row < self.height) & (col >= 0) & (col < self.width)


@dataclass
class Samples:
    py: torch.Tensor
    px: torch.Tensor
    qy: torch.Tensor
    qx: torch.Tensor
    valid: torch.Tensor  # [N]


def window_offsets(device: torch.device) -> Tuple[torch.Tensor, torch.Tensor]:
    dy = torch.as_tensor(WINDOW_DY, dtype=torch.int64, device=device)
    dx = torch.as_tensor(WINDOW_DX, dtype=torch.int64, device=device)
    return dy, dx


def homographies(R: torch.Tensor, t: torch.Tensor, K_ref_inv: torch.Tensor, K_other: torch.Tensor,
                 planes: torch.Tensor) -> torch.Tensor:
    """``K_other (R - t n^T / d) K_ref^-1`` for planes [N, 4]; returns [N, 3, 3]."""
    n = planes[:, :3]
    d = planes[:, 3]
    tn = t.view(1, 3, 1) * n.unsqueeze(1) / d.view(-1, 1, 1)
    return K_other.unsqueeze(0) @ (R.unsqueeze(0) - tn) @ K_ref_inv.unsqueeze(0)


def warp(rows: torch.Tensor, cols: torch.Tensor, H: torch.Tensor, ref: ImageTensors,
         other: ImageTensors, dy: torch.Tensor, dx: torch.Tensor) -> Samples:
    py = rows.unsqueeze(1) + dy.unsqueeze(0)
    px = cols.unsqueeze(1) + dx.unsqueeze(0)
    fx = px.to(torch.float64)
    fy = py.to(torch.float64)
    hx = H[:, 0, 0, None] * fx + H[:, 0, 1, None] * fy + H[:, 0, 2, None]
    hy = H[:, 1, 0, None] * fx + H[:, 1, 1, None] * fy + H[:, 1, 2, None]
    hz = H[:, 2, 0, None] * fx + H[:, 2, 1, None] * fy + H[:, 2, 2, None]
    ok = hz.abs() > _EPS
    wx = hx / hz
    wy = hy / hz
    ok &= torch.isfinite(wx) & torch.isfinite(wy)
    wx = torch.where(ok, wx.clamp(-_COORD_LIMIT, _COORD_LIMIT), torch.full_like(wx, -1.0))
    wy = torch.where(ok, wy.clamp(-_COORD_LIMIT, _COORD_LIMIT), torch.full_like(wy, -1.0))
    qx = torch.trunc(wx).to(torch.int64)
    qy = torch.trunc(wy).to(torch.int64)
    sample_ok = ref.inside(py, px) & ok & other.inside(qy, qx)
    zero = torch.zeros_like(py)
    return Samples(
        py=torch.where(sample_ok, py, zero),
        px=torch.where(sample_ok, px, zero),
        qy=torch.where(sample_ok, qy, zero),
        qx=torch.where(sample_ok, qx, zero),
        valid=sample_ok.all(dim=1),
    )


def finalize(costs: torch.Tensor, valid: torch.Tensor, max_cost: float) -> torch.Tensor:
    bad = ~valid | ~torch.isfinite(costs)
    costs = costs.clamp(0.0, max_cost)
    return torch.where(bad, torch.full_like(costs, max_cost), costs)


def ncc_cost(ref: ImageTensors, other: ImageTensors, s: Samples, max_cost: float) -> torch.Tensor:
    p = ref.gray[s.py, s.px] / 255.0
    q = other.gray[s.qy, s.qx] / 255.0
    n = float(NUM_SAMPLES)
    sum_p = p.sum(dim=1)
    sum_q = q.sum(dim=1)
    denom = torch.sqrt(((p * p).sum(dim=1) - sum_p * sum_p / n) * ((q * q).sum(dim=1) - sum_q * sum_q / n))
    ncc = ((p * q).sum(dim=1) - sum_p * sum_q / n) / denom
    cost = 1.0 - ncc.clamp(-1.0, 1.0)
    return torch.where(torch.isfinite(ncc), cost, torch.full_like(cost, max_cost))


def pm_cost(ref: ImageTensors, other: ImageTensors, s: Samples, rows: torch.Tensor, cols: torch.Tensor,
            weights: torch.Tensor, alpha: float, tau_i: float, tau_g: float) -> torch.Tensor:
    center = ref.gray[rows.clamp(0, ref.height - 1), cols.clamp(0, ref.width - 1)]
    Ip = ref.gray[s.py, s.px]
    Iq = other.gray[s.qy, s.qx]
    w = weights[(center.unsqueeze(1) - Ip).abs().to(torch.int64)]
    cost_i = (Ip - Iq).abs().clamp(max=tau_i)
    cost_g = (ref.gradient[s.py, s.px] - other.gradient[s.qy, s.qx]).abs().sum(dim=-1).clamp(max=tau_g)
    return (w * ((1.0 - alpha) * cost_i + alpha * cost_g)).sum(dim=1)


def popcount(values: torch.Tensor) -> torch.Tensor:
    """Set bits of non-negative int64 values."""
    x = values - ((values >> 1) & _M1)
    x = (x & _M2) + ((x >> 2) & _M2)
    x = (x + (x >> 4)) & _M4
    total = torch.zeros_like(x)
    for shift in range(0, 64, 8):
        total += (x >> shift) & 0xFF
    return total


def census_cost(ref: ImageTensors, other: ImageTensors, s: Samples, census_table: torch.Tensor,
                ad_table: torch.Tensor) -> torch.Tensor:
    hamming = popcount(torch.bitwise_xor(ref.census[s.py, s.px], other.census[s.qy, s.qx]))
    ad = (ref.gray[s.py, s.px] - other.gray[s.qy, s.qx]).abs().to(torch.int64)
    return (census_table[hamming] + ad_table[ad]).mean(dim=1)


def bilateral_ncc_cost(ref: ImageTensors, other: ImageTensors, s: Samples, rows: torch.Tensor,
                       cols: torch.Tensor, spatial: torch.Tensor, color: torch.Tensor,
                       stats: Sequence[torch.Tensor], max_cost: float) -> torch.Tensor:
    sum_w_map, mean_p_map, var_p_map = stats
    center = ref.gray[rows, cols]
    Ip = ref.gray[s.py, s.px]
    w = spatial.unsqueeze(0) * color[(Ip - center.unsqueeze(1)).to(torch.int64) + 255]
    p = Ip / 255.0
    q = other.gray[s.qy, s.qx] / 255.0
    sum_w = sum_w_map[rows, cols]
    mean_p = mean_p_map[rows, cols]
    var_p = var_p_map[rows, cols]
    mean_q = (w * q).sum(dim=1) / sum_w
    var_q = (w * q * q).sum(dim=1) / sum_w - mean_q * mean_q
    cov = (w * p * q).sum(dim=1) / sum_w - mean_p * mean_q
    ncc = cov / torch.sqrt(var_p * var_q)
    cost = 1.0 - ncc.clamp(-1.0, 1.0)
    return torch.where(torch.isfinite(ncc), cost, torch.full_like(cost, max_cost))


def aggregate(costs: torch.Tensor, k: int, max_cost: float) -> torch.Tensor:
    """Sort-and-reduce of a [n_views, n_pixels] cost tensor: mean of the ``k`` best valid views."""
    n_views, n_pixels = costs.shape
    if n_views == 0:
        return torch.full((n_pixels,), max_cost, dtype=costs.dtype, device=costs.device)
    bad = ~torch.isfinite(costs) | (costs < 0.0) | (costs >= max_cost)
    c = torch.where(bad, torch.full_like(costs, max_cost), costs)
    c, _ = torch.sort(c, dim=0)
    used = (~bad).sum(dim=0).clamp(max=k)
    take = torch.arange(n_views, device=costs.device).unsqueeze(1) < used.unsqueeze(0)
    total = torch.where(take, c, torch.zeros_like(c)).sum(dim=0)
    mean = total / used.clamp(min=1).to(costs.dtype)
    return torch.where(used > 0, mean, torch.full_like(mean, max_cost))


def local_rays(K_inv: torch.Tensor, rows: torch.Tensor, cols: torch.Tensor) -> torch.Tensor:
    pix = torch.stack([cols.to(torch.float64), rows.to(torch.float64), torch.ones_like(cols, dtype=torch.float64)], dim=1)
    return pix @ K_inv.T


def depth_from_plane(planes: torch.Tensor, rays: torch.Tensor) -> torch.Tensor:
    return -planes[:, 3] / (planes[:, :3] * rays).sum(dim=1)


def plane_offset(normals: torch.Tensor, rays: torch.Tensor, depth: torch.Tensor) -> torch.Tensor:
    return -(normals * (depth.unsqueeze(1) * rays)).sum(dim=1)


def focal_ratio(values: torch.Tensor, fx_baseline: float, invalid: float) -> torch.Tensor:
    """``fx * baseline / value``, the conversion between depth and disparity."""
    out = fx_baseline / values
    return torch.where(torch.isfinite(out), out, torch.full_like(out, invalid))


def orient_towards(normals: torch.Tensor, view_dirs: torch.Tensor) -> torch.Tensor:
    flip = (normals * view_dirs).sum(dim=1, keepdim=True) > 0.0
    return torch.where(flip, -normals, normals)


def checkerboard_pixels(height: int, width: int, color: int, device: torch.device):
    rows = torch.arange(height, device=device).view(-1, 1).expand(height, width)
    cols = torch.arange(width, device=device).view(1, -1).expand(height, width)
    mask = (rows + cols) % 2 == color
    return rows[mask], cols[mask]


def candidate_sources(offsets: Sequence[Tuple[int, int]], rows: torch.Tensor, cols: torch.Tensor,
                      height: int, width: int):
    """Source pixels of fixed (dx, dy) offsets: [n_offsets, N] rows, cols and in-bounds mask."""
    dx = torch.as_tensor([o[0] for o in offsets], dtype=torch.int64, device=rows.device).unsqueeze(1)
    dy = torch.as_tensor([o[1] for o in offsets], dtype=torch.int64, device=rows.device).unsqueeze(1)
    r = rows.unsqueeze(0) + dy
    c = cols.unsqueeze(0) + dx
    ok = (r >= 0) & (r < height) & (c >= 0) & (c < width)
    return r, c, ok


def asymmetric_sources(regions: Sequence[Sequence[Tuple[int, int]]], rows: torch.Tensor, cols: torch.Tensor,
                       cost: torch.Tensor):
    """For each region, the in-bounds offset with the lowest current cost."""
    height, width = cost.shape
    idx = torch.arange(rows.numel(), device=rows.device)
    out_r, out_c, out_ok = [], [], []
    for region in regions:
        r, c, ok = candidate_sources(region, rows, cols, height, width)
        values = cost[r.clamp(0, height - 1), c.clamp(0, width - 1)]
        values = torch.where(ok, values, torch.full_like(values, float("inf")))
        best = torch.argmin(values, dim=0)
        out_r.append(r[best, idx])
        out_c.append(c[best, idx])
        out_ok.append(ok[best, idx])
    return torch.stack(out_r), torch.stack(out_c), torch.stack(out_ok)
