import numpy as np

from patchmvs.aggregation import MultiViewCost, aggregate
from patchmvs.config import SolverConfig

from conftest import PLANE_Z


def test_aggregate_trimmed_mean():
    costs = np.array([0.5, 0.1, 0.9, 0.3])
    assert np.isclose(aggregate(costs, 2, 2.0), 0.2)
    assert np.isclose(aggregate(costs, 10, 2.0), 0.45)


def test_aggregate_ignores_invalid_views():
    costs = np.array([[0.4, 2.0, np.nan, -1.0, np.inf, 0.2]]).T
    assert np.isclose(aggregate(costs, 3, 2.0)[0], 0.3)


def test_aggregate_without_valid_view_is_max():
    assert aggregate(np.array([2.0, np.nan, 5.0]), 3, 2.0) == 2.0
    out = aggregate(np.zeros((0, 4)), 3, 2.0)
    np.testing.assert_array_equal(out, [2.0] * 4)


def test_aggregate_is_monotonic():
    rng = np.random.default_rng(0)
    base = rng.uniform(0.0, 1.5, size=(5, 200))
    worse = base.copy()
    worse[2] += rng.uniform(0.0, 0.5, size=200)
    assert np.all(aggregate(worse, 3, 2.0) >= aggregate(base, 3, 2.0) - 1e-12)


def test_true_plane_has_lower_cost(scene):
    ref = scene.ref
    imgs = scene.images()
    mvc = MultiViewCost(ref, scene.neighbors, imgs[1], [imgs[0], imgs[2]], SolverConfig(), scale=0)
    assert mvc.num_views == 2
    rows = np.array([20, 24, 28])
    cols = np.array([20, 24, 26])
    n = np.array([0.0, 0.0, -1.0])
    true_planes = np.array([[*n, PLANE_Z]] * 3)
    wrong_planes = np.array([[*n, 0.6 * PLANE_Z]] * 3)
    good = mvc.cost_batch(rows, cols, true_planes)
    bad = mvc.cost_batch(rows, cols, wrong_planes)
    assert np.all(good < 0.5)
    assert good.mean() < 0.3
    assert np.all(bad > good)
    assert np.isclose(mvc.cost(24, 24, true_planes[0]), good[1])
    assert mvc.cost_matrix(rows, cols, true_planes).shape == (2, 3)
