"""Per-scale image channels consumed by the cost metrics."""
from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional

import numpy as np
from PIL import Image
from scipy import ndimage

from .config import METRIC_BILATERAL_NCC, METRIC_CENSUS, METRIC_DAISY, METRIC_NCC, METRIC_PM

logger = logging.getLogger(__name__)

COLOR = "color"
GRAYSCALE = "grayscale"
GRADIENT = "gradient"
CENSUS = "census"
ALL_CHANNELS = (COLOR, GRAYSCALE, GRADIENT, CENSUS)

# Pixels closer than this to the image edge carry no gradient / census signal.
BORDER = 4
CENSUS_HALF_ROWS = 4
CENSUS_HALF_COLS = 3

_REQUIRED = {
    METRIC_PM: frozenset({GRAYSCALE, COLOR, GRADIENT}),
    METRIC_NCC: frozenset({GRAYSCALE, COLOR}),
    METRIC_CENSUS: frozenset({GRAYSCALE, COLOR, CENSUS}),
    METRIC_BILATERAL_NCC: frozenset({GRAYSCALE, COLOR}),
    METRIC_DAISY: frozenset({GRAYSCALE, COLOR}),
}

_MAGIC = b"PMVI"
_DTYPES = (np.dtype("<u1"), np.dtype("<f8"), np.dtype("<u8"))

_SCHARR_X = np.outer(np.array([3.0, 10.0, 3.0]) / 16.0, np.array([-1.0, 0.0, 1.0]) / 2.0)
_SCHARR_Y = _SCHARR_X.T


def required_channels(metric: str) -> FrozenSet[str]:
    """Channels the given cost metric reads."""
    return _REQUIRED[metric]


def _freeze(arr: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if arr is not None:
        arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class ImageChannels:
    """Immutable channel bundle of one camera at one scale."""

    color: np.ndarray
    grayscale: np.ndarray
    gradient: Optional[np.ndarray] = None
    census: Optional[np.ndarray] = None
    name: str = ""

    def __post_init__(self) -> None:
        for arr in (self.color, self.grayscale, self.gradient, self.census):
            _freeze(arr)

    @property
    def width(self) -> int:
        return int(self.grayscale.shape[1])

    @property
    def height(self) -> int:
        return int(self.grayscale.shape[0])

    @property
    def channels(self) -> FrozenSet[str]:
        present = {COLOR, GRAYSCALE}
        if self.gradient is not None:
            present.add(GRADIENT)
        if self.census is not None:
            present.add(CENSUS)
        return frozenset(present)

    def inside(self, row, col):
        return (row >= 0) & (row < self.height) & (col >= 0) & (col < self.width)

    @classmethod
    def from_rgb(cls, rgb: np.ndarray, channels: Iterable[str] = (), name: str = "") -> "ImageChannels":
        """Build channels from an RGB (or grayscale) uint8 array."""
        rgb = np.asarray(rgb)
        if rgb.ndim == 2:
            rgb = np.repeat(rgb[..., None], 3, axis=2)
        rgb = np.array(rgb, dtype=np.uint8, copy=True, order="C")
        gray = np.asarray(Image.fromarray(rgb).convert("L"), dtype=np.uint8)
        channels = set(channels)
        return cls(
            color=rgb,
            grayscale=gray,
            gradient=compute_gradient(gray) if GRADIENT in channels else None,
            census=compute_census(gray) if CENSUS in channels else None,
            name=name,
        )

    def save(self, paths: Dict[str, str]) -> bool:
        """Write each present channel whose name appears in ``paths``."""
        arrays = {COLOR: self.color, GRAYSCALE: self.grayscale, GRADIENT: self.gradient, CENSUS: self.census}
        for key, path in paths.items():
            arr = arrays.get(key)
            if arr is None:
                continue
            if not _write_blob(path, arr):
                return False
        return True

    @classmethod
    def load(cls, paths: Dict[str, str], channels: Iterable[str], name: str = "") -> Optional["ImageChannels"]:
        """Read the requested channels back; ``None`` when any of them is missing."""
        wanted = set(channels) | {COLOR, GRAYSCALE}
        arrays: Dict[str, np.ndarray] = {}
        for key in wanted:
            path = paths.get(key)
            if path is None:
                logger.error(f"No path given for channel '{key}'")
                return None
            arr = _read_blob(path)
            if arr is None:
                return None
            arrays[key] = arr
        color = arrays[COLOR]
        gray = arrays[GRAYSCALE]
        return cls(
            color=color,
            grayscale=gray[..., 0] if gray.ndim == 3 else gray,
            gradient=arrays.get(GRADIENT),
            census=arrays[CENSUS][..., 0] if CENSUS in arrays else None,
            name=name,
        )


def load_image(path: str, scale: int, channels: Iterable[str], name: str = "") -> ImageChannels:
    """Load an RGB image at pyramid ``scale`` and compute the requested channels."""
    if not os.path.isfile(path):
        raise FileNotFoundError(path)
    im = Image.open(path).convert("RGB")
    div = 2 ** scale
    size = (im.size[0] // div, im.size[1] // div)
    if im.size != size:
        im = im.resize(size, Image.BILINEAR)
    return ImageChannels.from_rgb(np.asarray(im, dtype=np.uint8), channels, name=name or f"{path}@{scale}")


def compute_gradient(gray: np.ndarray) -> np.ndarray:
    """Normalized Scharr derivatives (dx, dy); zero on the border band."""
    g = gray.astype(np.float64)
    dx = ndimage.correlate(g, _SCHARR_X, mode="nearest")
    dy = ndimage.correlate(g, _SCHARR_Y, mode="nearest")
    out = np.stack([dx, dy], axis=-1)
    _clear_border(out)
    return out


def compute_census(gray: np.ndarray) -> np.ndarray:
    """9x7 census transform, one bit per neighbor darker than the center (62 bits)."""
    h, w = gray.shape
    out = np.zeros((h, w), dtype=np.uint64)
    if h <= 2 * BORDER or w <= 2 * BORDER:
        return out
    g = gray.astype(np.int16)
    center = g[BORDER:h - BORDER, BORDER:w - BORDER]
    census = np.zeros(center.shape, dtype=np.uint64)
    one = np.uint64(1)
    for dy in range(-CENSUS_HALF_ROWS, CENSUS_HALF_ROWS + 1):
        for dx in range(-CENSUS_HALF_COLS, CENSUS_HALF_COLS + 1):
            if dx == 0 and dy == 0:
                continue
            neigh = g[BORDER + dy:h - BORDER + dy, BORDER + dx:w - BORDER + dx]
            census = (census << one) | (neigh < center).astype(np.uint64)
    out[BORDER:h - BORDER, BORDER:w - BORDER] = census
    return out


def _clear_border(arr: np.ndarray) -> None:
    arr[:BORDER] = 0
    arr[-BORDER:] = 0
    arr[:, :BORDER] = 0
    arr[:, -BORDER:] = 0


def _write_blob(path: str, arr: np.ndarray) -> bool:
    arr3 = arr if arr.ndim == 3 else arr[..., None]
    code = next(i for i, dt in enumerate(_DTYPES) if dt == arr3.dtype)
    try:
        with open(path, "wb") as f:
            f.write(_MAGIC)
            f.write(struct.pack("<IIIB", arr3.shape[0], arr3.shape[1], arr3.shape[2], code))
            f.write(np.ascontiguousarray(arr3, dtype=_DTYPES[code]).tobytes())
    except OSError as e:
        logger.error(f"Could not write image channel {path}: {e}")
        return False
    return True


def _read_blob(path: str) -> Optional[np.ndarray]:
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        logger.error(f"Could not open image channel {path}: {e}")
        return None
    header = struct.calcsize("<IIIB")
    if data[:4] != _MAGIC or len(data) < 4 + header:
        logger.error(f"Corrupted image channel {path}")
        return None
    h, w, c, code = struct.unpack_from("<IIIB", data, 4)
    if code >= len(_DTYPES):
        logger.error(f"Unknown dtype code {code} in {path}")
        return None
    dtype = _DTYPES[code]
    payload = data[4 + header:]
    if len(payload) != h * w * c * dtype.itemsize:
        logger.error(f"Truncated image channel {path}")
        return None
    arr = np.frombuffer(payload, dtype=dtype).reshape(h, w, c).copy()
    return arr
