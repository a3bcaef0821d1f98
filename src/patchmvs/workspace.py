"""On-disk layout of a depth map computation."""
from __future__ import annotations

import json
import logging
import os
from typing import Dict, Iterable, List, Optional, Sequence

from .camera import Camera
from .depth_map import DepthMap
from .image import ALL_CHANNELS, ImageChannels

logger = logging.getLogger(__name__)

MODEL_FILE = "model"


class Workspace:
    """Paths and persistence helpers rooted at one output directory.

    Layout::

        <root>/model
        <root>/depth/cam_<id>/{color,grayscale,gradient,census}_<scale>.bin
        <root>/depth/cam_<id>/cam_<scale>.bin
        <root>/depth/cam_<id>/dm_<scale>.bin
        <root>/depth/cam_<id>/export/
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    @property
    def depth_dir(self) -> str:
        return os.path.join(self.root, "depth")

    @property
    def model_path(self) -> str:
        return os.path.join(self.root, MODEL_FILE)

    def camera_dir(self, uid: int) -> str:
        return os.path.join(self.depth_dir, f"cam_{uid}")

    def export_dir(self, uid: int) -> str:
        return os.path.join(self.camera_dir(uid), "export")

    def channel_path(self, uid: int, channel: str, scale: int) -> str:
        return os.path.join(self.camera_dir(uid), f"{channel}_{scale}.bin")

    def channel_paths(self, uid: int, scale: int) -> Dict[str, str]:
        return {ch: self.channel_path(uid, ch, scale) for ch in ALL_CHANNELS}

    def camera_path(self, uid: int, scale: int) -> str:
        return os.path.join(self.camera_dir(uid), f"cam_{scale}.bin")

    def depth_map_path(self, uid: int, scale: int) -> str:
        return os.path.join(self.camera_dir(uid), f"dm_{scale}.bin")

    def create(self, uids: Iterable[int] = ()) -> None:
        os.makedirs(self.depth_dir, exist_ok=True)
        for uid in uids:
            os.makedirs(self.camera_dir(uid), exist_ok=True)

    # -- model ------------------------------------------------------------

    def write_model(self, cams: Sequence[Camera]) -> None:
        """Summary of the camera list; its order defines neighbor indices."""
        entries = [
            {
                "uid": cam.uid,
                "image": cam.image_path,
                "width": cam.width,
                "height": cam.height,
                "min_depth": cam.min_depth,
                "max_depth": cam.max_depth,
                "neighbors": list(cam.view_neighbors),
            }
            for cam in cams
        ]
        os.makedirs(self.root, exist_ok=True)
        with open(self.model_path, "w", encoding="utf-8") as f:
            json.dump({"cameras": entries}, f, indent=2)

    def read_model(self) -> List[dict]:
        if not os.path.isfile(self.model_path):
            raise FileNotFoundError(f"No camera model in workspace {self.root}")
        with open(self.model_path, "r", encoding="utf-8") as f:
            return json.load(f)["cameras"]

    def camera_ids(self) -> List[int]:
        return [int(entry["uid"]) for entry in self.read_model()]

    # -- cameras ----------------------------------------------------------

    def save_camera(self, cam: Camera, scale: int) -> bool:
        os.makedirs(self.camera_dir(cam.uid), exist_ok=True)
        return cam.save(self.camera_path(cam.uid, scale))

    def load_camera(self, uid: int, scale: int) -> Camera:
        path = self.camera_path(uid, scale)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Camera {uid} has no data at scale {scale} ({path})")
        cam = Camera.load(path)
        if cam is None:
            raise OSError(f"Unreadable camera file {path}")
        return cam

    def cameras(self, scale: int) -> List[Camera]:
        """Every camera of the model, in model order."""
        return [self.load_camera(uid, scale) for uid in self.camera_ids()]

    # -- images -----------------------------------------------------------

    def save_image(self, uid: int, scale: int, image: ImageChannels) -> bool:
        os.makedirs(self.camera_dir(uid), exist_ok=True)
        return image.save(self.channel_paths(uid, scale))

    def load_image(self, uid: int, scale: int, channels: Iterable[str]) -> ImageChannels:
        paths = self.channel_paths(uid, scale)
        wanted = set(channels)
        missing = [paths[ch] for ch in wanted if not os.path.isfile(paths[ch])]
        if missing:
            raise FileNotFoundError(f"Camera {uid} is missing image channels at scale {scale}: {missing}")
        image = ImageChannels.load(paths, wanted, name=f"cam_{uid}@{scale}")
        if image is None:
            raise OSError(f"Unreadable image channels for camera {uid} at scale {scale}")
        return image

    # -- depth maps -------------------------------------------------------

    def save_depth_map(self, uid: int, scale: int, dm: DepthMap) -> bool:
        os.makedirs(self.camera_dir(uid), exist_ok=True)
        return dm.save(self.depth_map_path(uid, scale))

    def load_depth_map(self, uid: int, scale: int) -> Optional[DepthMap]:
        path = self.depth_map_path(uid, scale)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Camera {uid} has no depth map at scale {scale} ({path})")
        return DepthMap.load(path)
