# SPDX-FileCopyrightText: 2025 LichtFeld Studio Authors
# SPDX-License-Identifier: GPL-3.0-or-later
"""PatchMatch multi-view stereo depth map estimation.

Estimates a depth and a surface normal for every pixel of a calibrated
camera from its photo-consistency with neighboring views.
"""

import logging as _logging
from .logging import configure_logger as configure_logger
from .logging import logger as _logger

if not any(not isinstance(h, _logging.NullHandler) for h in _logger.handlers):
    configure_logger()

from .aggregation import MultiViewCost, aggregate
from .camera import INVALID_DISPARITY, Camera, StereoRig
from .config import ConfigError, SolverConfig
from .depth_map import DepthMap
from .image import ImageChannels, load_image
from .metrics import create_metric
from .solver import CpuBackend, PatchMatchDriver, create_backend
from .workspace import Workspace

__all__ = [
    "Camera",
    "ConfigError",
    "CpuBackend",
    "DepthMap",
    "ImageChannels",
    "INVALID_DISPARITY",
    "MultiViewCost",
    "PatchMatchDriver",
    "SolverConfig",
    "StereoRig",
    "Workspace",
    "aggregate",
    "configure_logger",
    "create_backend",
    "create_metric",
    "load_image",
]
