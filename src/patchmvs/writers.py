"""Point cloud and image writers."""
from __future__ import annotations

import os
from typing import Optional

import numpy as np
from PIL import Image


def ensure_dir(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def write_ply(path_out: str, xyz: np.ndarray, rgb_uint8: Optional[np.ndarray] = None) -> None:
    """Binary little-endian PLY with float positions and optional uchar colors."""
    N = xyz.shape[0]
    props = ["property float x", "property float y", "property float z"]
    fields = [("x", "<f4"), ("y", "<f4"), ("z", "<f4")]
    if rgb_uint8 is not None:
        props += ["property uchar red", "property uchar green", "property uchar blue"]
        fields += [("red", "u1"), ("green", "u1"), ("blue", "u1")]
    header = "\n".join(
        ["ply", "format binary_little_endian 1.0", f"element vertex {N}", *props, "end_header"]
    ) + "\n"
    vertices = np.empty(N, dtype=fields)
    vertices["x"] = xyz[:, 0]
    vertices["y"] = xyz[:, 1]
    vertices["z"] = xyz[:, 2]
    if rgb_uint8 is not None:
        vertices["red"] = rgb_uint8[:, 0]
        vertices["green"] = rgb_uint8[:, 1]
        vertices["blue"] = rgb_uint8[:, 2]
    ensure_dir(path_out)
    with open(path_out, "wb") as f:
        f.write(header.encode("ascii"))
        f.write(vertices.tobytes())


def read_ply_vertices(path: str) -> np.ndarray:
    """Read back the xyz positions written by ``write_ply``."""
    with open(path, "rb") as f:
        data = f.read()
    end = data.index(b"end_header\n") + len(b"end_header\n")
    header = data[:end].decode("ascii").splitlines()
    count = next(int(line.split()[-1]) for line in header if line.startswith("element vertex"))
    has_color = any(line.endswith(" red") for line in header)
    fields = [("x", "<f4"), ("y", "<f4"), ("z", "<f4")]
    if has_color:
        fields += [("red", "u1"), ("green", "u1"), ("blue", "u1")]
    vertices = np.frombuffer(data[end:], dtype=fields, count=count)
    return np.stack([vertices["x"], vertices["y"], vertices["z"]], axis=1).astype(np.float64)


def to_uint8(values: np.ndarray) -> np.ndarray:
    """Scale values in [0, 1] to [0, 255] with truncation."""
    scaled = np.nan_to_num(values * 255.0, nan=0.0, posinf=255.0, neginf=0.0)
    return np.clip(scaled, 0.0, 255.0).astype(np.uint8)


def write_png(path: str, arr: np.ndarray) -> None:
    ensure_dir(path)
    Image.fromarray(arr).save(path)
