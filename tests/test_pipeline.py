import os

import numpy as np
import pytest
from PIL import Image

from patchmvs.cli import main
from patchmvs.config import SolverConfig
from patchmvs.depth_map import DepthMap
from patchmvs.pipeline import prepare_workspace, run_compute, run_export
from patchmvs.workspace import Workspace
from patchmvs.writers import read_ply_vertices

from conftest import PLANE_Z


def pipeline_config(**kwargs):
    kwargs.setdefault("num_scales", 1)
    kwargs.setdefault("iterations", (2,))
    kwargs.setdefault("seed", 0)
    kwargs.setdefault("num_threads", 2)
    return SolverConfig(**kwargs)


@pytest.fixture
def prepared(tmp_path, scene):
    images = tmp_path / "images"
    images.mkdir()
    for idx, cam in enumerate(scene.cams):
        path = images / f"{idx:03d}.png"
        Image.fromarray(scene.rgb(idx)).save(path)
        cam.image_path = str(path)
        cam.view_neighbors = []
    ws = Workspace(str(tmp_path / "ws"))
    prepare_workspace(ws, scene.cams, scene.observations(), pipeline_config())
    return ws


def test_prepare_workspace_layout(prepared):
    ws = prepared
    assert ws.camera_ids() == [0, 1, 2]
    model = ws.read_model()
    assert model[1]["neighbors"] == [0, 2]
    assert np.isclose(model[1]["min_depth"], 4.0)
    cam = ws.load_camera(1, 0)
    assert cam.view_neighbors == [0, 2]
    assert len(cam.ground_truth) == 8
    image = ws.load_image(1, 0, ["color", "grayscale"])
    assert (image.width, image.height) == (48, 48)
    assert os.path.isfile(ws.channel_path(0, "grayscale", 0))


def test_prepare_writes_every_scale(tmp_path, scene):
    images = tmp_path / "images"
    images.mkdir()
    for idx, cam in enumerate(scene.cams):
        path = images / f"{idx}.png"
        Image.fromarray(scene.rgb(idx)).save(path)
        cam.image_path = str(path)
    ws = Workspace(str(tmp_path / "ws"))
    prepare_workspace(ws, scene.cams, scene.observations(), pipeline_config(num_scales=2, metric="census"))
    coarse = ws.load_image(0, 1, ["census"])
    assert (coarse.width, coarse.height) == (24, 24)
    assert ws.load_camera(2, 1).uid == 2


def test_missing_workspace_data(tmp_path):
    ws = Workspace(str(tmp_path / "empty"))
    with pytest.raises(FileNotFoundError):
        ws.camera_ids()
    with pytest.raises(FileNotFoundError):
        ws.load_camera(0, 0)
    with pytest.raises(FileNotFoundError):
        ws.load_image(0, 0, ["color"])
    with pytest.raises(FileNotFoundError):
        ws.load_depth_map(0, 0)


def test_compute_and_export(prepared):
    ws = prepared
    result = run_compute(ws, pipeline_config(), uids=[1])
    assert result.solved == [1]
    assert result.failed == {}
    dm = ws.load_depth_map(1, 0)
    assert isinstance(dm, DepthMap)
    assert dm.depth.shape == (48, 48)
    out = ws.export_dir(1)
    for name in ("final_depth.png", "final_cost.png", "final_normal.png", "final_model.ply"):
        assert os.path.isfile(os.path.join(out, name))
    xyz = read_ply_vertices(os.path.join(out, "final_model.ply"))
    assert xyz.shape[0] > 0
    assert abs(np.median(xyz[:, 2]) - PLANE_Z) < 0.3

    counts = run_export(ws, pipeline_config(), uids=[1])
    assert counts == {1: xyz.shape[0]}


def test_compute_reports_unknown_and_failing_cameras(prepared):
    ws = prepared
    os.remove(ws.channel_path(2, "grayscale", 0))
    result = run_compute(ws, pipeline_config(iterations=(1,)), uids=[0, 1, 7])
    # both 0 and 1 need camera 2 as a neighbor
    assert result.solved == []
    assert set(result.failed) == {0, 1, 7}
    assert result.failed[7] == "unknown camera"


def test_intermediate_exports(prepared):
    ws = prepared
    config = pipeline_config(iterations=(1,), export_intermediate=True, export_ply=False)
    progress = []
    run_compute(ws, config, uids=[1], progress_callback=lambda pct, msg: progress.append(pct))
    out = ws.export_dir(1)
    for phase in ("init", "propagate_0", "propagate_1", "refine"):
        assert os.path.isfile(os.path.join(out, f"scale_0_{phase}_0_depth.png"))
    assert not os.path.isfile(os.path.join(out, "final_model.ply"))
    assert progress == [0.0]


def test_cli_compute_and_export(prepared):
    ws = prepared.root
    args = ["--workspace", ws, "--log_level", "warning"]
    solver = ["--num_scales", "1", "--iterations", "1", "--seed", "0", "--num_threads", "2"]
    assert main(args + ["compute", "--cameras", "1"] + solver) == 0
    assert main(args + ["export", "--cameras", "1"] + solver) == 0
    assert os.path.isfile(os.path.join(prepared.export_dir(1), "final_model.ply"))


def test_cli_errors(tmp_path):
    ws = str(tmp_path / "empty")
    assert main(["--workspace", ws, "compute"]) == 1
    assert main(["--workspace", ws, "compute", "--k_best", "0"]) == 2


def test_existing_depth_maps_are_skipped(prepared):
    ws = prepared
    config = pipeline_config(iterations=(1,), export_ply=False)
    first = run_compute(ws, config, uids=[1])
    assert first.solved == [1]
    path = ws.depth_map_path(1, 0)
    with open(path, "rb") as f:
        content = f.read()
    stamp = os.stat(path).st_mtime_ns

    second = run_compute(ws, config, uids=[1])
    assert second.solved == []
    assert second.skipped == [1]
    assert second.failed == {}
    assert os.stat(path).st_mtime_ns == stamp
    with open(path, "rb") as f:
        assert f.read() == content

    forced = run_compute(ws, pipeline_config(iterations=(1,), export_ply=False, force_overwrite=True, seed=1),
                         uids=[1])
    assert forced.solved == [1]
    assert forced.skipped == []
