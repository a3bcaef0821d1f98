import numpy as np
import pytest
from scipy import ndimage

from patchmvs.camera import Camera
from patchmvs.image import ALL_CHANNELS, ImageChannels

WIDTH = 48
HEIGHT = 48
FOCAL = 40.0
PLANE_Z = 5.0
BASELINE = 1.5


def look_at(center, target):
    """World-to-camera rotation of a camera at ``center`` looking at ``target`` (image y down)."""
    z = np.asarray(target, dtype=np.float64) - center
    z /= np.linalg.norm(z)
    x = np.cross(np.array([0.0, 1.0, 0.0]), z)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    return np.stack([x, y, z])


def make_texture(seed=7, size=96, extent=6.0):
    rng = np.random.default_rng(seed)
    noise = ndimage.gaussian_filter(rng.uniform(0.0, 255.0, size=(size, size)), 1.2)
    lo, hi = noise.min(), noise.max()
    noise = (noise - lo) / (hi - lo) * 220.0 + 15.0

    def texture(X, Y):
        u = (X + extent) / (2 * extent) * (size - 1)
        v = (Y + extent) / (2 * extent) * (size - 1)
        return ndimage.map_coordinates(noise, [v.ravel(), u.ravel()], order=1, mode="nearest").reshape(X.shape)

    return texture


def make_camera(uid, center, target=(0.0, 0.0, PLANE_Z), image_path=""):
    K = np.array([[FOCAL, 0.0, WIDTH / 2], [0.0, FOCAL, HEIGHT / 2], [0.0, 0.0, 1.0]])
    C = np.asarray(center, dtype=np.float64)
    R = look_at(C, np.asarray(target, dtype=np.float64))
    return Camera(uid=uid, image_path=image_path, width=WIDTH, height=HEIGHT, K=K, R=R, t=-R @ C,
                  min_depth=4.0, max_depth=6.0)


def render(camera, texture, scale=0):
    """Grayscale rendering of the plane z = PLANE_Z seen by ``camera``."""
    w, h = camera.dims_at(scale)
    ys, xs = np.mgrid[0:h, 0:w].astype(np.float64)
    local = camera.local_rays(xs, ys, scale)
    world_dirs = local @ camera.R
    s = (PLANE_Z - camera.C[2]) / world_dirs[..., 2]
    X = camera.C[0] + s * world_dirs[..., 0]
    Y = camera.C[1] + s * world_dirs[..., 1]
    gray = np.clip(texture(X, Y), 0, 255).astype(np.uint8)
    return np.repeat(gray[..., None], 3, axis=2)


class Scene:
    def __init__(self, cams, texture):
        self.cams = cams
        self.texture = texture
        self.ref = cams[1]
        self.neighbors = [cams[0], cams[2]]

    def rgb(self, idx, scale=0):
        return render(self.cams[idx], self.texture, scale)

    def images(self, scale=0, channels=ALL_CHANNELS):
        return [ImageChannels.from_rgb(self.rgb(i, scale), channels, name=f"cam_{i}@{scale}")
                for i in range(len(self.cams))]

    def loader(self, channels=ALL_CHANNELS):
        def load(scale):
            imgs = self.images(scale, channels)
            return imgs[1], [imgs[0], imgs[2]]
        return load

    def observations(self):
        """Plane points plus one nearer and one farther sparse point, seen by every camera."""
        points = [np.array([x, y, PLANE_Z]) for x in (-0.5, 0.0, 0.5) for y in (-0.5, 0.5)]
        points += [np.array([0.1, 0.1, 4.0]), np.array([-0.1, 0.0, 6.0])]
        obs = {}
        for idx, cam in enumerate(self.cams):
            obs[idx] = [(cam.project(X), X) for X in points]
        return obs


def make_scene():
    cams = [make_camera(i, (BASELINE * (i - 1), 0.0, 0.0)) for i in range(3)]
    for cam, others in zip(cams, ([1, 2], [0, 2], [0, 1])):
        cam.view_neighbors = others
        cam.baselines = [float(np.linalg.norm(cam.C - cams[j].C)) for j in others]
        cam.min_baseline = min(cam.baselines)
        cam.max_baseline = max(cam.baselines)
        cam.mean_baseline = float(np.mean(cam.baselines))
    return Scene(cams, make_texture())


@pytest.fixture
def scene():
    return make_scene()


@pytest.fixture
def textured_rgb():
    rng = np.random.default_rng(3)
    img = ndimage.gaussian_filter(rng.uniform(0, 255, size=(40, 40)), 1.0)
    img = (img - img.min()) / (img.max() - img.min()) * 255.0
    return np.repeat(img.astype(np.uint8)[..., None], 3, axis=2)


@pytest.fixture
def rng():
    return np.random.default_rng(0)
