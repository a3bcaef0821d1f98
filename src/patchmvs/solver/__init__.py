"""PatchMatch solver: state machine and execution back-ends."""
from __future__ import annotations

from .base import Backend, ScaleContext, refinement_schedule
from .cpu import CpuBackend
from .driver import PatchMatchDriver, SolveResult, create_backend

__all__ = [
    "Backend",
    "CpuBackend",
    "PatchMatchDriver",
    "ScaleContext",
    "SolveResult",
    "create_backend",
    "refinement_schedule",
]
