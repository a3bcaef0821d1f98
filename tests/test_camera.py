import numpy as np

from patchmvs.camera import INVALID_DISPARITY, Camera
from patchmvs.geometry import homography

from conftest import PLANE_Z, make_camera


def test_project_unproject_round_trip(scene):
    cam = scene.cams[0]
    xs = np.array([0.0, 10.5, 30.0, 47.0])
    ys = np.array([3.0, 20.0, 40.25, 1.0])
    depths = np.array([1.0, 4.5, 7.0, 12.0])
    X = cam.unproject(xs, ys, depths)
    np.testing.assert_allclose(cam.project(X), np.stack([xs, ys], axis=1), atol=1e-9)
    np.testing.assert_allclose(cam.depth(X), depths, atol=1e-9)


def test_project_unproject_at_scale(scene):
    cam = scene.cams[2]
    X = cam.unproject(12.0, 7.0, 5.0, scale=1)
    np.testing.assert_allclose(cam.project(X, scale=1), [12.0, 7.0], atol=1e-9)
    # the same point lands at twice the coordinates at full resolution
    np.testing.assert_allclose(cam.project(X), [24.0, 14.0], atol=1e-9)


def test_scaled_intrinsics(scene):
    cam = scene.cams[0]
    K1 = cam.K_at(1)
    assert K1[0, 0] == cam.K[0, 0] / 2
    assert K1[1, 2] == cam.K[1, 2] / 2
    assert K1[2, 2] == 1.0
    assert cam.dims_at(1) == (24, 24)
    assert cam.K_at(-1) is cam.K


def test_depth_disparity_round_trip(scene):
    cam = scene.ref
    depths = np.array([4.0, 5.0, 6.5])
    disp = cam.depth_to_disparity(depths)
    np.testing.assert_allclose(disp, cam.K[0, 0] * cam.mean_baseline / depths)
    np.testing.assert_allclose(cam.disparity_to_depth(disp), depths)
    assert cam.depth_to_disparity(5.0, scale=1) == cam.depth_to_disparity(5.0) / 2
    assert cam.depth_to_disparity(5.0, baseline=1.0) == cam.K[0, 0] / 5.0


def test_disparity_sentinel(scene):
    cam = scene.ref
    assert cam.depth_to_disparity(0.0) == INVALID_DISPARITY
    assert cam.disparity_to_depth(0.0) == INVALID_DISPARITY
    out = cam.depth_to_disparity(np.array([0.0, np.nan, 5.0]))
    assert out[0] == INVALID_DISPARITY
    assert out[1] == INVALID_DISPARITY
    assert out[2] > 0.0


def test_plane_offset_and_depth_from_plane(scene):
    cam = scene.ref
    n = np.array([0.1, -0.2, -1.0])
    n /= np.linalg.norm(n)
    d = cam.plane_offset(n, 20.0, 30.0, 5.5)
    assert np.isclose(cam.depth_from_plane(n, d, 20.0, 30.0), 5.5)
    # the plane through the unprojected point contains it
    X = cam.unproject_local(20.0, 30.0, 5.5)
    assert np.isclose(np.dot(n, X) + d, 0.0)


def test_depth_from_plane_parallel_ray_is_not_finite(scene):
    cam = scene.ref
    # normal orthogonal to the central ray
    assert not np.isfinite(cam.depth_from_plane(np.array([1.0, 0.0, 0.0]), -1.0, 24.0, 24.0))


def test_stereo_rig_and_homography(scene):
    ref, other = scene.ref, scene.cams[0]
    rig = ref.stereo_rig(other)
    X = np.array([0.3, -0.2, PLANE_Z])
    # the world plane z = PLANE_Z expressed in the reference frame
    n_local = ref.R @ np.array([0.0, 0.0, 1.0])
    d_local = -np.dot(n_local, ref.R @ X + ref.t)
    H = homography(rig.R, rig.t, ref.K_inv, other.K, n_local, d_local)
    x_ref = ref.project(X)
    h = H @ np.array([x_ref[0], x_ref[1], 1.0])
    np.testing.assert_allclose(h[:2] / h[2], other.project(X), atol=1e-8)


def test_ray_and_view_direction(scene):
    cam = scene.cams[0]
    origin, direction = cam.ray((24.0, 24.0))
    np.testing.assert_allclose(origin, cam.C)
    np.testing.assert_allclose(direction, cam.view_direction())
    assert np.isclose(np.linalg.norm(direction), 1.0)


def test_save_load_round_trip(tmp_path, scene):
    cam = scene.cams[0]
    cam.ground_truth = [(np.array([3.0, 4.0]), np.array([0.1, 0.2, 5.0]))]
    path = str(tmp_path / "cam.bin")
    assert cam.save(path)
    loaded = Camera.load(path)
    assert loaded is not None
    assert loaded.uid == cam.uid
    assert loaded.view_neighbors == cam.view_neighbors
    np.testing.assert_allclose(loaded.P, cam.P)
    np.testing.assert_allclose(loaded.baselines, cam.baselines)
    assert loaded.mean_baseline == cam.mean_baseline
    assert len(loaded.ground_truth) == 1
    np.testing.assert_allclose(loaded.ground_truth[0][1], [0.1, 0.2, 5.0])


def test_load_failures(tmp_path):
    assert Camera.load(str(tmp_path / "missing.bin")) is None
    bad = tmp_path / "bad.bin"
    bad.write_bytes(b"nope")
    assert Camera.load(str(bad)) is None
    cam = make_camera(3, (0.0, 0.0, 0.0))
    assert not cam.save(str(tmp_path / "no_such_dir" / "cam.bin"))
