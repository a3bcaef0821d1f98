"""Photo-consistency cost metrics."""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Type

from ..config import ConfigError, SolverConfig
from ..image import ImageChannels
from .base import CostMetric
from .bilateral import BilateralNCCMetric, color_table, precompute_reference_stats, spatial_table
from .census import CensusMetric
from .descriptor import DaisyMetric, DescriptorCache
from .ncc import NCCMetric
from .patchmatch import PatchMatchMetric

METRICS: Dict[str, Type[CostMetric]] = {
    cls.name: cls
    for cls in (NCCMetric, PatchMatchMetric, CensusMetric, BilateralNCCMetric, DaisyMetric)
}


def metric_class(name: str) -> Type[CostMetric]:
    try:
        return METRICS[name]
    except KeyError:
        raise ConfigError(f"Unknown cost metric '{name}'") from None


def create_metric(name: str, ref: ImageChannels, other: ImageChannels, config: SolverConfig) -> CostMetric:
    return metric_class(name)(ref, other, config)


def create_metrics(ref: ImageChannels, others: Sequence[ImageChannels], config: SolverConfig,
                   cache: Optional[DescriptorCache] = None) -> List[CostMetric]:
    """One metric per neighbor, sharing whatever only depends on the reference image."""
    cls = metric_class(config.metric)
    if cls is BilateralNCCMetric:
        stats = precompute_reference_stats(ref.grayscale, spatial_table(), color_table())
        return [BilateralNCCMetric(ref, other, config, reference_stats=stats) for other in others]
    if cls is DaisyMetric:
        cache = cache if cache is not None else DescriptorCache(capacity=len(others) + 1)
        return [DaisyMetric(ref, other, config, cache=cache) for other in others]
    return [cls(ref, other, config) for other in others]


__all__ = [
    "CostMetric",
    "NCCMetric",
    "PatchMatchMetric",
    "CensusMetric",
    "BilateralNCCMetric",
    "DaisyMetric",
    "DescriptorCache",
    "METRICS",
    "create_metric",
    "create_metrics",
    "metric_class",
]
