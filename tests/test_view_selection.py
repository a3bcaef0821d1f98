import numpy as np

from patchmvs.config import SolverConfig
from patchmvs.view_selection import (
    DEFAULT_DEPTH_RANGE,
    compute_baselines,
    compute_depth_bounds,
    prepare_cameras,
    select_neighbors,
)

from conftest import BASELINE, make_camera


def rig():
    # cameras on the x axis looking at the same point, the last one faces them
    cams = [make_camera(i, (BASELINE * i, 0.0, 0.0)) for i in range(4)]
    cams.append(make_camera(4, (0.0, 0.0, 10.0), target=(0.0, 0.0, 0.0)))
    return cams


def test_depth_bounds_from_observations(scene):
    cams = scene.cams
    compute_depth_bounds(cams, scene.observations())
    ref = scene.ref
    assert np.isclose(ref.min_depth, 4.0)
    assert np.isclose(ref.max_depth, 6.0)
    assert len(ref.ground_truth) == 8


def test_depth_bounds_ignore_points_behind(scene):
    cam = scene.ref
    behind = np.array([0.0, 0.0, -3.0])
    front = np.array([0.0, 0.0, 5.0])
    compute_depth_bounds([cam], {0: [(np.zeros(2), behind), (np.zeros(2), front)]})
    assert cam.min_depth == cam.max_depth == 5.0
    assert len(cam.ground_truth) == 1


def test_depth_bounds_default_without_points():
    cam = make_camera(0, (0.0, 0.0, 0.0))
    compute_depth_bounds([cam], {})
    assert (cam.min_depth, cam.max_depth) == DEFAULT_DEPTH_RANGE
    assert cam.ground_truth == []


def test_neighbors_inside_angle_window():
    cams = rig()
    select_neighbors(cams, 5.0, 60.0, 9, np.random.default_rng(0))
    # 16.7 deg and 33.4 deg apart on the same side, the far camera is opposite
    assert cams[0].view_neighbors == [1, 2, 3]
    assert cams[1].view_neighbors == [0, 2, 3]
    assert cams[4].view_neighbors == []
    select_neighbors(cams, 20.0, 60.0, 9, np.random.default_rng(0))
    assert cams[0].view_neighbors == [2, 3]
    assert 0 not in cams[1].view_neighbors and 2 not in cams[1].view_neighbors


def test_neighbors_are_capped():
    cams = rig()
    select_neighbors(cams, 5.0, 60.0, 2, np.random.default_rng(3))
    assert len(cams[0].view_neighbors) == 2
    assert set(cams[0].view_neighbors) <= {1, 2, 3}


def test_baselines():
    cams = rig()
    cams[0].view_neighbors = [1, 3]
    cams[4].view_neighbors = []
    compute_baselines(cams)
    assert np.allclose(cams[0].baselines, [BASELINE, 3 * BASELINE])
    assert cams[0].min_baseline == BASELINE
    assert cams[0].max_baseline == 3 * BASELINE
    assert np.isclose(cams[0].mean_baseline, 2 * BASELINE)
    assert cams[4].mean_baseline == 1.0


def test_prepare_cameras(scene):
    for cam in scene.cams:
        cam.view_neighbors = []
    prepare_cameras(scene.cams, scene.observations(), SolverConfig(seed=0))
    assert scene.ref.view_neighbors == [0, 2]
    assert np.isclose(scene.ref.mean_baseline, BASELINE)
    assert np.isclose(scene.cams[0].max_baseline, 2 * BASELINE)
