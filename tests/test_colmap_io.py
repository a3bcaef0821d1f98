from types import SimpleNamespace

import numpy as np
import pytest
from PIL import Image

from patchmvs import cli, colmap_io
from patchmvs.colmap_io import K_from_camera, cameras_from_reconstruction, load_reconstruction, pose_world2cam
from patchmvs.workspace import Workspace

ROT_Z_90 = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])


def colmap_camera(model, params, width=640, height=480):
    return SimpleNamespace(model=SimpleNamespace(name=model), params=params, width=width, height=height)


def posed_image(name, camera_id, R, t, points2D=()):
    pose = SimpleNamespace(rotation=SimpleNamespace(matrix=lambda: R), translation=np.asarray(t))
    return SimpleNamespace(name=name, camera_id=camera_id, cam_from_world=pose, points2D=list(points2D))


def keypoint(xy, point_id=None):
    return SimpleNamespace(xy=np.asarray(xy), point3D_id=point_id if point_id is not None else -1,
                           has_point3D=lambda: point_id is not None)


@pytest.mark.parametrize(
    "model, params, expected",
    [
        ("PINHOLE", [500.0, 510.0, 320.0, 240.0], (500.0, 510.0, 320.0, 240.0)),
        ("SIMPLE_PINHOLE", [500.0, 320.0, 240.0], (500.0, 500.0, 320.0, 240.0)),
        ("SIMPLE_RADIAL", [500.0, 321.0, 241.0, 0.01], (500.0, 500.0, 321.0, 241.0)),
        ("RADIAL", [500.0, 321.0, 241.0, 0.01, 0.0], (500.0, 500.0, 321.0, 241.0)),
        ("OPENCV", [500.0, 510.0, 322.0, 242.0, 0.1, 0.0, 0.0, 0.0], (500.0, 510.0, 322.0, 242.0)),
        ("OPENCV_FISHEYE", [500.0, 510.0, 322.0, 242.0, 0.1, 0.0, 0.0, 0.0], (500.0, 510.0, 322.0, 242.0)),
        ("UNKNOWN", [450.0], (450.0, 450.0, 320.0, 240.0)),
    ],
)
def test_K_from_camera_models(model, params, expected):
    K = K_from_camera(colmap_camera(model, params))
    fx, fy, cx, cy = expected
    np.testing.assert_allclose(K, [[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])


def test_pose_from_cam_from_world():
    im = posed_image("a.png", 1, ROT_Z_90, [1.0, 2.0, 3.0])
    R, t = pose_world2cam(im)
    np.testing.assert_allclose(R, ROT_Z_90)
    np.testing.assert_allclose(t, [1.0, 2.0, 3.0])


def test_pose_from_legacy_quaternion():
    half = np.pi / 4.0
    im = SimpleNamespace(qvec=np.array([np.cos(half), 0.0, 0.0, np.sin(half)]), tvec=np.array([0.0, 0.0, 4.0]))
    R, t = pose_world2cam(im)
    np.testing.assert_allclose(R, ROT_Z_90, atol=1e-12)
    np.testing.assert_allclose(t, [0.0, 0.0, 4.0])


def test_missing_sparse_model(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_reconstruction(str(tmp_path / "sparse" / "0"))


def test_cameras_from_reconstruction(monkeypatch, tmp_path):
    cams = {
        1: colmap_camera("PINHOLE", [40.0, 41.0, 24.0, 23.0], width=48, height=46),
        2: colmap_camera("SIMPLE_PINHOLE", [30.0, 16.0, 12.0], width=32, height=24),
    }
    points3D = {
        10: SimpleNamespace(xyz=np.array([0.0, 0.0, 5.0])),
        11: SimpleNamespace(xyz=np.array([1.0, 0.0, 5.0])),
    }
    imgs = {
        7: posed_image("late.png", 2, np.eye(3), [0.5, 0.0, 0.0], [keypoint((1.0, 2.0), 11)]),
        3: posed_image("early.png", 1, ROT_Z_90, [0.0, 0.0, 0.0], [
            keypoint((24.0, 23.0), 10),
            keypoint((5.0, 5.0)),
            # id not in the model
            keypoint((6.0, 6.0), 99),
        ]),
    }
    rec = SimpleNamespace(points3D=points3D)
    monkeypatch.setattr(colmap_io, "load_reconstruction", lambda sparse_dir: (rec, cams, imgs))

    out, observations = cameras_from_reconstruction("sparse", str(tmp_path))
    # ordered by image id
    assert [c.uid for c in out] == [0, 1]
    first, second = out
    assert first.image_path == str(tmp_path / "early.png")
    assert (first.width, first.height) == (48, 46)
    np.testing.assert_allclose(first.K, [[40.0, 0.0, 24.0], [0.0, 41.0, 23.0], [0.0, 0.0, 1.0]])
    np.testing.assert_allclose(first.R, ROT_Z_90)
    assert (second.width, second.height) == (32, 24)
    np.testing.assert_allclose(second.t, [0.5, 0.0, 0.0])

    assert len(observations[0]) == 1
    xy, X = observations[0][0]
    np.testing.assert_allclose(xy, [24.0, 23.0])
    np.testing.assert_allclose(X, [0.0, 0.0, 5.0])
    assert len(observations[1]) == 1
    np.testing.assert_allclose(observations[1][0][1], [1.0, 0.0, 5.0])


def test_cli_prepare(monkeypatch, tmp_path, scene):
    images = tmp_path / "images"
    images.mkdir()
    for idx, cam in enumerate(scene.cams):
        path = images / f"{idx}.png"
        Image.fromarray(scene.rgb(idx)).save(path)
        cam.image_path = str(path)
        cam.view_neighbors = []
    calls = []

    def fake_import(sparse_dir, images_dir):
        calls.append((sparse_dir, images_dir))
        return scene.cams, scene.observations()

    monkeypatch.setattr(cli, "cameras_from_reconstruction", fake_import)
    ws = str(tmp_path / "ws")
    args = ["--workspace", ws, "--log_level", "warning", "prepare", "--scene_root", str(tmp_path),
            "--num_scales", "1", "--seed", "0"]
    assert cli.main(args) == 0
    assert calls == [(str(tmp_path / "sparse" / "0"), str(images))]
    assert Workspace(ws).camera_ids() == [0, 1, 2]
    assert Workspace(ws).load_camera(1, 0).view_neighbors == [0, 2]


def test_cli_prepare_without_model(tmp_path):
    ws = str(tmp_path / "ws")
    assert cli.main(["--workspace", ws, "prepare", "--scene_root", str(tmp_path)]) == 1
