import pytest

from patchmvs.cli import build_argparser
from patchmvs.config import ConfigError, SolverConfig


def test_defaults_are_valid():
    config = SolverConfig().validate()
    assert config.max_cost == 2.0
    assert config.coarsest_scale == 2
    assert config.workers >= 1
    assert not config.joint_view_selection
    assert not config.force_overwrite
    assert SolverConfig(metric="pm").max_cost == 10e6


@pytest.mark.parametrize(
    "kwargs",
    [
        {"metric": "sad"},
        {"propagation": "diagonal"},
        {"backend": "opencl"},
        {"backend": "torch", "metric": "daisy"},
        {"k_best": 0},
        {"max_views": 0},
        {"min_view_angle": 30.0, "max_view_angle": 10.0},
        {"max_view_angle": 200.0},
        {"scale": -1},
        {"num_scales": 0},
        {"refine_threshold": 0.0},
        {"alpha": 1.5},
        {"gamma": 0.0},
        {"census_lambda": 0.0},
        {"backend": "torch", "joint_view_selection": True},
    ],
)
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises(ConfigError):
        SolverConfig(**kwargs).validate()


def test_iterations_per_scale():
    config = SolverConfig(scale=1, num_scales=3, iterations=(5, 2))
    assert config.coarsest_scale == 3
    assert config.iterations_at(3) == 5
    assert config.iterations_at(2) == 2
    # scales past the configured list fall back to three iterations
    assert config.iterations_at(1) == 3


def test_from_args():
    args = build_argparser().parse_args([
        "--workspace", "ws", "compute",
        "--metric", "census", "--iterations", "2,1", "--num_scales", "2",
        "--propagation", "asymmetric", "--seed", "4", "--median_filter", "--cameras", "0", "2",
        "--census_lambda", "25", "--ad_lambda", "12", "--refine_threshold", "0.05",
        "--joint_view_selection", "--force_overwrite",
    ])
    config = SolverConfig.from_args(args)
    assert config.metric == "census"
    assert config.iterations == (2, 1)
    assert config.num_scales == 2
    assert config.propagation == "asymmetric"
    assert config.seed == 4
    assert config.median_filter
    assert config.census_lambda == 25.0
    assert config.ad_lambda == 12.0
    assert config.refine_threshold == 0.05
    assert config.joint_view_selection
    assert config.force_overwrite
    assert not config.use_ground_truth
    assert args.cameras == [0, 2]


def test_from_args_validates():
    args = build_argparser().parse_args(["--workspace", "ws", "compute", "--k_best", "0"])
    with pytest.raises(ConfigError):
        SolverConfig.from_args(args)
