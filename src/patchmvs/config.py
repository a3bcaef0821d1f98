"""Solver configuration dataclasses."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

METRIC_NCC = "ncc"
METRIC_PM = "pm"
METRIC_CENSUS = "census"
METRIC_BILATERAL_NCC = "bilateral_ncc"
METRIC_DAISY = "daisy"

MAX_COST = {
    METRIC_NCC: 2.0,
    METRIC_PM: 10e6,
    METRIC_CENSUS: 2.0,
    METRIC_BILATERAL_NCC: 2.0,
    METRIC_DAISY: 2.0,
}

PROPAGATION_SCHEMES = ("full", "speed", "asymmetric")
BACKENDS = ("cpu", "torch")

# Metrics that have a torch kernel.
ACCELERATED_METRICS = (METRIC_NCC, METRIC_PM, METRIC_CENSUS, METRIC_BILATERAL_NCC)


class ConfigError(ValueError):
    """Raised when a configuration is rejected before solving starts."""


@dataclass
class SolverConfig:
    metric: str = METRIC_NCC
    # PatchMatch intensity + gradient metric
    alpha: float = 0.9
    tau_i: float = 10.0
    tau_g: float = 2.0
    gamma: float = 10.0
    # Census + AD metric
    census_lambda: float = 30.0
    ad_lambda: float = 10.0
    # Pyramid
    scale: int = 0
    num_scales: int = 3
    iterations: Tuple[int, ...] = (4, 3, 3)
    # View selection / aggregation
    min_view_angle: float = 5.0
    max_view_angle: float = 60.0
    max_views: int = 9
    k_best: int = 3
    propagation: str = "full"
    joint_view_selection: bool = False
    refine_threshold: float = 0.01
    # Execution
    backend: str = "cpu"
    device: Optional[str] = None
    num_threads: int = 0
    seed: Optional[int] = None
    # Extras
    use_ground_truth: bool = False
    median_filter: bool = False
    export_intermediate: bool = False
    export_ply: bool = True
    force_overwrite: bool = False

    @property
    def max_cost(self) -> float:
        return MAX_COST[self.metric]

    @property
    def coarsest_scale(self) -> int:
        return self.scale + self.num_scales - 1

    @property
    def workers(self) -> int:
        return self.num_threads if self.num_threads > 0 else (os.cpu_count() or 1)

    def iterations_at(self, scale: int) -> int:
        """Number of outer iterations at a pyramid scale (coarsest first)."""
        index = self.coarsest_scale - scale
        if index < len(self.iterations):
            return int(self.iterations[index])
        return 3

    def validate(self) -> "SolverConfig":
        if self.metric not in MAX_COST:
            raise ConfigError(f"Unknown cost metric '{self.metric}' (expected one of {sorted(MAX_COST)})")
        if self.propagation not in PROPAGATION_SCHEMES:
            raise ConfigError(f"Unknown propagation scheme '{self.propagation}'")
        if self.backend not in BACKENDS:
            raise ConfigError(f"Unknown backend '{self.backend}'")
        if self.backend == "torch" and self.metric not in ACCELERATED_METRICS:
            raise ConfigError(f"Metric '{self.metric}' has no accelerator kernel, use backend='cpu'")
        if self.backend == "torch" and self.joint_view_selection:
            raise ConfigError("Joint view selection is only available with backend='cpu'")
        if self.k_best < 1:
            raise ConfigError("k_best must be >= 1")
        if self.max_views < 1:
            raise ConfigError("max_views must be >= 1")
        if not 0.0 <= self.min_view_angle < self.max_view_angle <= 180.0:
            raise ConfigError(
                f"Invalid view angle window [{self.min_view_angle}, {self.max_view_angle}]"
            )
        if self.scale < 0 or self.num_scales < 1:
            raise ConfigError("scale must be >= 0 and num_scales >= 1")
        if self.refine_threshold <= 0.0:
            raise ConfigError("refine_threshold must be positive")
        if not 0.0 <= self.alpha <= 1.0:
            raise ConfigError("alpha must lie in [0, 1]")
        if self.gamma <= 0.0 or self.census_lambda <= 0.0 or self.ad_lambda <= 0.0:
            raise ConfigError("gamma, census_lambda and ad_lambda must be positive")
        return self

    @classmethod
    def from_args(cls, args) -> "SolverConfig":
        iterations = tuple(int(v) for v in str(args.iterations).split(",") if v.strip())
        return cls(
            metric=args.metric,
            alpha=args.alpha,
            tau_i=args.tau_i,
            tau_g=args.tau_g,
            gamma=args.gamma,
            census_lambda=args.census_lambda,
            ad_lambda=args.ad_lambda,
            scale=args.scale,
            num_scales=args.num_scales,
            iterations=iterations or (4, 3, 3),
            min_view_angle=args.min_view_angle,
            max_view_angle=args.max_view_angle,
            max_views=args.max_views,
            k_best=args.k_best,
            propagation=args.propagation,
            joint_view_selection=args.joint_view_selection,
            refine_threshold=args.refine_threshold,
            backend=args.backend,
            device=args.device,
            num_threads=args.num_threads,
            seed=args.seed,
            use_ground_truth=args.use_ground_truth,
            median_filter=args.median_filter,
            export_intermediate=args.export_intermediate,
            force_overwrite=args.force_overwrite,
        ).validate()
