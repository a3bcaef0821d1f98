import numpy as np
import pytest

from patchmvs.joint_view import (
    BETA,
    STALE_BEST_WEIGHT,
    best_view,
    boost_previous_best,
    good_cost_threshold,
    joint_costs,
    selection_set,
    view_importance,
    weighted_cost,
)

# [views, hypotheses, pixels]: view 0 matches well, view 1 has a single good
# hypothesis, view 2 two good and two bad ones.
COSTS = np.array([
    [0.1, 0.2, 0.5, 1.0],
    [0.1, 1.5, 1.6, 2.0],
    [0.3, 0.4, 1.3, 1.9],
])[:, :, None]


def confidence(values):
    values = np.asarray(values)
    return float(np.mean(np.exp(-(values ** 2) / (2.0 * BETA ** 2))))


def test_threshold_tightens_with_iterations():
    assert good_cost_threshold(0) == pytest.approx(0.8)
    assert good_cost_threshold(3) == pytest.approx(0.8 * np.exp(-9.0 / 90.0))
    assert good_cost_threshold(5) < good_cost_threshold(1)


def test_selection_set():
    selected = selection_set(COSTS, 0.8)
    np.testing.assert_array_equal(selected[:, 0], [True, False, True])
    # three bad hypotheses reject a view
    five = np.array([[0.1, 0.2, 1.3, 1.4, 1.5], [0.1, 0.2, 1.3, 1.4, 1.0]])[:, :, None]
    np.testing.assert_array_equal(selection_set(five, 0.8)[:, 0], [False, True])


def test_selection_ignores_invalid_hypotheses():
    valid = np.array([False, False, True, True])[:, None]
    selected = selection_set(COSTS, 0.8, valid)
    assert not selected.any()


def test_view_importance():
    selected = selection_set(COSTS, 0.8)
    importance = view_importance(COSTS, selected, 0.8)
    assert importance[0, 0] == pytest.approx(confidence([0.1, 0.2, 0.5]))
    assert importance[1, 0] == 0.0
    assert importance[2, 0] == pytest.approx(confidence([0.3, 0.4]))
    np.testing.assert_array_equal(best_view(importance), [0])


def test_best_view_without_views():
    np.testing.assert_array_equal(best_view(np.zeros((0, 3))), [-1, -1, -1])


def test_boost_previous_best():
    importance = np.array([[0.5], [0.0], [0.4]])
    selected = np.array([[True], [False], [True]])
    np.testing.assert_allclose(boost_previous_best(importance, selected, np.array([0]))[:, 0], [1.0, 0.0, 0.4])
    np.testing.assert_allclose(
        boost_previous_best(importance, selected, np.array([1]))[:, 0], [0.5, STALE_BEST_WEIGHT, 0.4]
    )
    np.testing.assert_allclose(boost_previous_best(importance, selected, np.array([-1])), importance)


def test_weighted_cost():
    importance = np.array([[0.6], [0.0], [0.2]])
    out = weighted_cost(COSTS, importance, 2.0)
    assert out.shape == (4, 1)
    assert out[0, 0] == pytest.approx((0.6 * 0.1 + 0.2 * 0.3) / 0.8)
    assert out[3, 0] == pytest.approx((0.6 * 1.0 + 0.2 * 1.9) / 0.8)
    # no weight at all
    np.testing.assert_array_equal(weighted_cost(COSTS, np.zeros((3, 1)), 2.0), np.full((4, 1), 2.0))


def test_joint_costs():
    costs, any_view, current = joint_costs(COSTS, 0.8, 2.0)
    assert any_view[0]
    assert current[0] == 0
    assert np.argmin(costs[:, 0]) == 0
    assert np.all(costs <= 2.0)

    valid = np.array([True, False, True, True])[:, None]
    costs, _, _ = joint_costs(COSTS, 0.8, 2.0, valid=valid)
    assert costs[1, 0] == np.inf
    assert np.isfinite(costs[[0, 2, 3], 0]).all()


def test_joint_costs_previous_best_changes_weights():
    plain, _, _ = joint_costs(COSTS, 0.8, 2.0, previous_best=np.array([-1]))
    boosted, _, current = joint_costs(COSTS, 0.8, 2.0, previous_best=np.array([2]))
    # the best view is reported before boosting
    assert current[0] == 0
    # view 2 has the higher cost on hypothesis 0, so boosting it raises that cost
    assert boosted[0, 0] > plain[0, 0]
