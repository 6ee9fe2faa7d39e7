"""
Simulated depth sensor.

Casts one ray per viewport cell through a perspective frustum against the
scene and returns the hits as a point cloud. The sensor is mounted either on
the tool flange (hand-eye) or relative to the robot base (bird-eye).
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from .frame_store import BASE_FRAME, TOOL_FRAME, FrameStore
from .point_cloud import PointCloud, load_ascii, save_ascii
from .pose_utils import euler_to_T
from .scene import ALL_LAYERS, Scene


SENSOR_FRAME = "sensor"


class MountType(Enum):
    HAND_EYE = "hand_eye"  # on the tool flange
    BIRD_EYE = "bird_eye"  # fixed relative to the robot base


@dataclass
class RangeSensorConfig:
    width: int = 160
    height: int = 120
    fov_deg: float = 60.0        # vertical field of view
    max_distance: float = 2.0
    noise_level: float = 0.0005  # radius of the uniform noise ball, meters
    layer_mask: int = ALL_LAYERS
    mount_type: MountType = MountType.HAND_EYE
    mount_position: Tuple[float, float, float] = (0.0, 0.05, 0.05)
    mount_rotation_deg: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    master_path: str = "data/master_cloud.ply"
    seed: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'RangeSensorConfig':
        config = cls()
        for key, value in data.items():
            if not hasattr(config, key):
                continue
            if key == "mount_type":
                value = MountType(value)
            elif key in ("mount_position", "mount_rotation_deg"):
                value = tuple(float(v) for v in value)
            setattr(config, key, value)
        return config


class SimulatedRangeSensor:
    def __init__(self, config: RangeSensorConfig, frame_store: FrameStore, scene: Scene):
        self.config = config
        self.frame_store = frame_store
        self.scene = scene
        self.logger = logging.getLogger(__name__)
        self.rng = np.random.default_rng(config.seed)

        self._master = PointCloud(frame=self.cloud_frame)
        self._scan = PointCloud(frame=self.cloud_frame)
        self.mount()

    def mount(self):
        """(Re)attach the sensor frame according to the mount configuration."""
        parent = TOOL_FRAME if self.config.mount_type == MountType.HAND_EYE else BASE_FRAME
        offset = euler_to_T(self.config.mount_position, self.config.mount_rotation_deg)
        self.frame_store.attach_frame(SENSOR_FRAME, parent, offset)
        self.logger.info(f"Sensor mounted {self.config.mount_type.value} on '{parent}'")

    @property
    def cloud_frame(self) -> str:
        """Frame the master and scan clouds are stored in.

        Hand-eye clouds stay sensor-local. Bird-eye clouds are re-expressed in
        the tool frame so registration reports tool motion directly.
        """
        return SENSOR_FRAME if self.config.mount_type == MountType.HAND_EYE else TOOL_FRAME

    @property
    def master(self) -> PointCloud:
        return self._master

    @property
    def scan(self) -> PointCloud:
        return self._scan

    def sensor_transform(self) -> np.ndarray:
        return self.frame_store.frame(SENSOR_FRAME).transform

    def ray_grid(self) -> np.ndarray:
        """Unit ray directions in the sensor frame, row-major over the viewport."""
        w, h = self.config.width, self.config.height
        xs = np.arange(w) / w
        ys = np.arange(h) / h
        u, v = np.meshgrid(xs, ys)
        tan_half = np.tan(np.radians(self.config.fov_deg) / 2.0)
        aspect = w / h
        dirs = np.stack([
            (2.0 * u - 1.0) * tan_half * aspect,
            (2.0 * v - 1.0) * tan_half,
            np.ones_like(u),
        ], axis=-1).reshape(-1, 3)
        return dirs / np.linalg.norm(dirs, axis=1, keepdims=True)

    def _noise(self, n: int) -> np.ndarray:
        if self.config.noise_level <= 0 or n == 0:
            return np.zeros((n, 3))
        directions = self.rng.normal(size=(n, 3))
        directions /= np.linalg.norm(directions, axis=1, keepdims=True)
        radii = self.config.noise_level * np.cbrt(self.rng.uniform(size=n))
        return directions * radii[:, None]

    def capture(self, target_frame: str = SENSOR_FRAME) -> PointCloud:
        T_world_sensor = self.sensor_transform()
        dirs_world = self.ray_grid() @ T_world_sensor[:3, :3].T
        origins = np.tile(T_world_sensor[:3, 3], (len(dirs_world), 1))

        hits = self.scene.raycast(origins, dirs_world, self.config.max_distance, self.config.layer_mask)
        mask = hits.hit
        points = hits.points[mask] + self._noise(int(np.count_nonzero(mask)))
        normals = hits.normals[mask]
        colors = self.scene.sample_colors(hits)[mask]

        T_target_world = self.frame_store.world_to_frame(target_frame)
        points = points @ T_target_world[:3, :3].T + T_target_world[:3, 3]
        normals = normals @ T_target_world[:3, :3].T

        cloud = PointCloud(points, normals, colors, target_frame, time.time())
        self.logger.debug(f"Captured {len(cloud)} points in '{target_frame}' frame")
        return cloud

    def capture_master(self) -> PointCloud:
        self._master = self.capture(self.cloud_frame)
        self.logger.info(f"Master cloud captured: {len(self._master)} points")
        save_ascii(self._master, self.config.master_path)
        return self._master

    def capture_scan(self) -> PointCloud:
        self._scan = self.capture(self.cloud_frame)
        self.logger.info(f"Scan cloud captured: {len(self._scan)} points")
        return self._scan

    def load_master(self) -> PointCloud:
        cloud = load_ascii(self.config.master_path, self.cloud_frame)
        if cloud.frame != self.cloud_frame and not cloud.is_empty:
            self.logger.warning(
                f"Stored master is in '{cloud.frame}' frame but the sensor expects "
                f"'{self.cloud_frame}'; ignoring it"
            )
            return self._master
        self._master = cloud
        return self._master

    def clear_scan(self):
        self._scan.clear()

    def clear_master(self):
        self._master.clear()
