"""Joint view selection: per-pixel view weights for a set of plane hypotheses.

All functions work on a cost tensor ``costs`` of shape
[n_views, n_hypotheses, n_pixels]. A view is selected for a pixel when
enough hypotheses match well in it and few match badly; selected views are
weighted by a Gaussian of their good costs, and each hypothesis cost is the
weighted mean over the views.
"""
from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

TAU_MIN = 0.8
TAU_UP = 1.2
THRESHOLD_DECAY = 90.0
BETA = 0.3
MIN_GOOD = 2
MAX_BAD = 3
# Importance of the previous best view once it left the selection set.
STALE_BEST_WEIGHT = 0.2
MIN_WEIGHT_SUM = 1e-3


def good_cost_threshold(iteration: int) -> float:
    """Cost under which a hypothesis counts as a good match; tightens with the iteration."""
    return TAU_MIN * float(np.exp(-(iteration * iteration) / THRESHOLD_DECAY))


def _valid_mask(costs: np.ndarray, valid: Optional[np.ndarray]) -> np.ndarray:
    if valid is None:
        return np.ones(costs.shape[1:], dtype=bool)
    return np.asarray(valid, dtype=bool)


def selection_set(costs: np.ndarray, threshold: float, valid: Optional[np.ndarray] = None,
                  tau_up: float = TAU_UP, min_good: int = MIN_GOOD, max_bad: int = MAX_BAD) -> np.ndarray:
    """[n_views, n_pixels] mask of the views kept for each pixel.

    ``valid`` ([n_hypotheses, n_pixels]) excludes hypotheses that do not exist
    for a pixel.
    """
    ok = _valid_mask(costs, valid)[None]
    good = ((costs < threshold) & ok).sum(axis=1)
    bad = ((costs > tau_up) & ok).sum(axis=1)
    return (good >= min_good) & (bad < max_bad)


def view_importance(costs: np.ndarray, selected: np.ndarray, threshold: float,
                    valid: Optional[np.ndarray] = None, beta: float = BETA) -> np.ndarray:
    """Mean Gaussian confidence of the good costs of each selected view, 0 elsewhere."""
    ok = _valid_mask(costs, valid)[None] & (costs < threshold)
    conf = np.where(ok, np.exp(-(costs * costs) / (2.0 * beta * beta)), 0.0)
    count = ok.sum(axis=1)
    mean = np.divide(conf.sum(axis=1), count, out=np.zeros(count.shape), where=count > 0)
    return np.where(selected, mean, 0.0)


def best_view(importance: np.ndarray) -> np.ndarray:
    """Index of the most important view per pixel, -1 without views."""
    if importance.shape[0] == 0:
        return np.full(importance.shape[1], -1, dtype=np.int64)
    return np.argmax(importance, axis=0).astype(np.int64)


def boost_previous_best(importance: np.ndarray, selected: np.ndarray, previous: np.ndarray) -> np.ndarray:
    """Double the weight of the previous best view if still selected.

    A previous best view that left the selection set keeps a small weight.
    """
    views = np.arange(importance.shape[0])[:, None]
    was_best = views == np.asarray(previous)[None, :]
    return np.where(selected, importance * (1.0 + was_best), STALE_BEST_WEIGHT * was_best)


def weighted_cost(costs: np.ndarray, importance: np.ndarray, max_cost: float) -> np.ndarray:
    """[n_hypotheses, n_pixels] importance-weighted mean cost, ``max_cost`` without weight."""
    w = importance[:, None, :]
    total_w = importance.sum(axis=0)
    capped = np.where(np.isfinite(costs), np.minimum(costs, max_cost), max_cost)
    total = (w * capped).sum(axis=0)
    with np.errstate(all="ignore"):
        mean = np.clip(total / total_w[None, :], 0.0, max_cost)
    return np.where(total_w[None, :] > MIN_WEIGHT_SUM, mean, max_cost)


def joint_costs(costs: np.ndarray, threshold: float, max_cost: float,
                valid: Optional[np.ndarray] = None,
                previous_best: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Select views, weigh them and score every hypothesis.

    Returns (hypothesis costs [n_hypotheses, n_pixels], any view selected
    [n_pixels], best view before boosting [n_pixels]). Hypotheses that are
    not ``valid`` cost ``inf``.
    """
    selected = selection_set(costs, threshold, valid)
    importance = view_importance(costs, selected, threshold, valid)
    current_best = best_view(importance)
    if previous_best is not None:
        importance = boost_previous_best(importance, selected, previous_best)
    out = weighted_cost(costs, importance, max_cost)
    if valid is not None:
        out = np.where(valid, out, np.inf)
    return out, selected.any(axis=0), current_best
