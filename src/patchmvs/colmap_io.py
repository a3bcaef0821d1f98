"""COLMAP reconstruction import."""
from __future__ import annotations

import logging
import os
from typing import List, Tuple

import numpy as np
import pycolmap
from scipy.spatial.transform import Rotation

from .camera import Camera
from .view_selection import Observations

logger = logging.getLogger(__name__)


def load_reconstruction(sparse_dir: str):
    if not os.path.isdir(sparse_dir):
        raise FileNotFoundError(f"Sparse model directory not found: {sparse_dir}")
    rec = pycolmap.Reconstruction(sparse_dir)
    return rec, rec.cameras, rec.images


def K_from_camera(cam: pycolmap.Camera) -> np.ndarray:
    K = np.eye(3, dtype=np.float64)
    model = str(cam.model.name).upper()
    p = np.asarray(cam.params, dtype=np.float64)
    w, h = cam.width, cam.height
    if "PINHOLE" in model and "SIMPLE" not in model:
        fx, fy, cx, cy = p[0], p[1], p[2], p[3]
    elif "SIMPLE_PINHOLE" in model or "SIMPLE_RADIAL" in model or model == "RADIAL":
        fx = fy = p[0]
        cx, cy = p[1], p[2]
    elif "OPENCV" in model or "FISHEYE" in model:
        fx, fy, cx, cy = p[0], p[1], p[2], p[3]
    else:
        fx = fy = p[0]
        cx = p[1] if len(p) > 1 else w / 2
        cy = p[2] if len(p) > 2 else h / 2
    if "PINHOLE" not in model:
        logger.warning(f"Camera model {model} has distortion, images are used as-is (expected undistorted input)")
    K[0, 0], K[1, 1], K[0, 2], K[1, 2] = fx, fy, cx, cy
    return K


def pose_world2cam(im: pycolmap.Image) -> Tuple[np.ndarray, np.ndarray]:
    if hasattr(im, "cam_from_world"):
        cfw = im.cam_from_world
        cfw = cfw() if callable(cfw) else cfw
        R = np.asarray(cfw.rotation.matrix(), dtype=np.float64)
        t = np.asarray(cfw.translation, dtype=np.float64).reshape(3)
    else:
        # legacy bindings: qvec is (w, x, y, z)
        w, x, y, z = np.asarray(im.qvec, dtype=np.float64).reshape(4)
        R = Rotation.from_quat([x, y, z, w]).as_matrix()
        t = np.asarray(im.tvec, dtype=np.float64).reshape(3)
    return R, t


def cameras_from_reconstruction(sparse_dir: str, images_dir: str) -> Tuple[List[Camera], Observations]:
    """Build cameras and their sparse observations from a COLMAP model.

    Cameras are indexed in increasing image id order; ``Observations`` uses
    those indices, matching ``Camera.view_neighbors``.
    """
    rec, cams, imgs = load_reconstruction(sparse_dir)
    img_ids = sorted(imgs.keys())
    out: List[Camera] = []
    observations: Observations = {}
    for idx, iid in enumerate(img_ids):
        im = imgs[iid]
        cam = cams[im.camera_id]
        R, t = pose_world2cam(im)
        out.append(Camera(
            uid=idx,
            image_path=os.path.join(images_dir, im.name),
            width=int(cam.width),
            height=int(cam.height),
            K=K_from_camera(cam),
            R=R,
            t=t,
        ))
        obs = []
        for p in im.points2D:
            if p.has_point3D() and p.point3D_id in rec.points3D:
                X = np.asarray(rec.points3D[p.point3D_id].xyz, dtype=np.float64)
                obs.append((np.asarray(p.xy, dtype=np.float64), X))
        observations[idx] = obs
    logger.info(f"Loaded {len(out)} posed images from {sparse_dir}")
    return out, observations
