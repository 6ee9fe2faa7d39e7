"""
Simulated scene: primitive shapes, materials and vectorized ray casting.

Shapes are a tagged variant (Box, Sphere, Capsule) defined in the object's
local frame using the internal convention. Every ray cast is done in numpy
over the whole ray batch at once, one object at a time.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .errors import ConfigurationError
from .pose_utils import euler_to_T, internal_to_external_vector, invert_T


logger = logging.getLogger(__name__)

ALL_LAYERS = -1
ROBOT_LINK_TAG = "robot_link"
COLLISION_OBJECT_TAG = "collision_object"

# Descriptor used when a shape has no primitive counterpart
DEFAULT_DESCRIPTOR_SIZE = 0.05


@dataclass(frozen=True)
class Box:
    size: Tuple[float, float, float]  # full extents along local x, y, z


@dataclass(frozen=True)
class Sphere:
    radius: float


@dataclass(frozen=True)
class Capsule:
    radius: float
    height: float  # total height along local y, caps included


Shape = Union[Box, Sphere, Capsule]


def shape_descriptor(shape) -> Dict:
    """Map a shape to its primitive descriptor in the external convention.

    Box dimensions are the extents along external X, Y, Z. Spheres carry a
    radius. Capsules have no primitive and are sent as a cylinder
    [height, radius]. Anything else becomes a small box.
    """
    if isinstance(shape, Box):
        dims = np.abs(internal_to_external_vector(np.asarray(shape.size, dtype=float)))
        return {"type": "box", "dimensions": [float(d) for d in dims]}
    if isinstance(shape, Sphere):
        return {"type": "sphere", "dimensions": [float(shape.radius)]}
    if isinstance(shape, Capsule):
        return {"type": "cylinder", "dimensions": [float(shape.height), float(shape.radius)]}
    return {"type": "box", "dimensions": [DEFAULT_DESCRIPTOR_SIZE] * 3}


def resolve_asset_path(path, base_dir=None) -> Path:
    """Absolute paths are kept; relative ones are taken from base_dir."""
    path = Path(path)
    if path.is_absolute() or base_dir is None:
        return path
    return Path(base_dir) / path


@dataclass
class Material:
    base_color: np.ndarray = field(default_factory=lambda: np.array([255, 255, 255], dtype=np.uint8))
    texture: Optional[np.ndarray] = None  # H x W x 3, RGB uint8

    def __post_init__(self):
        self.base_color = np.asarray(self.base_color, dtype=np.uint8).reshape(3)

    @classmethod
    def from_texture_file(cls, path, base_color=(255, 255, 255)) -> 'Material':
        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if image is None:
            logger.warning(f"Could not read texture {path}; using base color only")
            return cls(np.array(base_color, dtype=np.uint8))
        return cls(np.array(base_color, dtype=np.uint8), cv2.cvtColor(image, cv2.COLOR_BGR2RGB))

    def sample(self, uv: np.ndarray) -> np.ndarray:
        """Colors for an N x 2 array of UVs; rows with NaN get the base color."""
        uv = np.asarray(uv, dtype=float).reshape(-1, 2)
        colors = np.tile(self.base_color, (len(uv), 1))
        if self.texture is None or len(uv) == 0:
            return colors
        valid = np.all(np.isfinite(uv), axis=1)
        if not np.any(valid):
            return colors
        h, w = self.texture.shape[:2]
        u = np.clip(uv[valid, 0], 0.0, 1.0)
        v = np.clip(uv[valid, 1], 0.0, 1.0)
        # v = 0 is the bottom row of the image
        cols = np.round(u * (w - 1)).astype(int)
        rows = np.round((1.0 - v) * (h - 1)).astype(int)
        colors[valid] = self.texture[rows, cols, :3]
        return colors


@dataclass
class SceneObject:
    name: str
    shape: Shape
    transform: np.ndarray = field(default_factory=lambda: np.eye(4))  # world-from-object
    material: Material = field(default_factory=Material)
    layer: int = 0
    tags: Tuple[str, ...] = ()

    def __post_init__(self):
        self.transform = np.asarray(self.transform, dtype=float)
        self.tags = tuple(self.tags)


@dataclass
class RaycastHits:
    hit: np.ndarray           # N bool
    distance: np.ndarray      # N, inf on miss
    points: np.ndarray        # N x 3, world
    normals: np.ndarray       # N x 3, world, unit
    object_index: np.ndarray  # N int, -1 on miss
    uv: np.ndarray            # N x 2, NaN where the shape has no UVs

    @property
    def count(self) -> int:
        return int(np.count_nonzero(self.hit))


def _intersect_box(o: np.ndarray, d: np.ndarray, size) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    half = np.asarray(size, dtype=float) / 2.0
    d_safe = np.where(np.abs(d) < 1e-12, 1e-12, d)
    t1 = (-half - o) / d_safe
    t2 = (half - o) / d_safe
    t_min = np.minimum(t1, t2)
    t_max = np.maximum(t1, t2)
    t_near = np.max(t_min, axis=1)
    t_far = np.min(t_max, axis=1)
    hit = (t_near <= t_far) & (t_near >= 0.0)

    axis = np.argmax(t_min, axis=1)
    n = np.zeros_like(o)
    rows = np.arange(len(o))
    n[rows, axis] = -np.sign(d_safe[rows, axis])

    p = o + d * t_near[:, None]
    local = p / np.where(half > 0, 2.0 * half, 1.0) + 0.5
    # Face UVs use the two axes spanning the hit face
    uv_axes = np.array([[2, 1], [0, 2], [0, 1]])[axis]
    uv = np.stack([local[rows, uv_axes[:, 0]], local[rows, uv_axes[:, 1]]], axis=1)
    return np.where(hit, t_near, np.inf), n, uv


def _intersect_sphere(o: np.ndarray, d: np.ndarray, radius: float):
    b = np.einsum('ij,ij->i', o, d)
    c = np.einsum('ij,ij->i', o, o) - radius * radius
    disc = b * b - c
    sq = np.sqrt(np.maximum(disc, 0.0))
    t = -b - sq
    hit = (disc >= 0.0) & (t >= 0.0) & (c > 0.0)
    p = o + d * t[:, None]
    n = p / max(radius, 1e-12)
    u = 0.5 + np.arctan2(n[:, 0], n[:, 2]) / (2.0 * np.pi)
    v = 0.5 + np.arcsin(np.clip(n[:, 1], -1.0, 1.0)) / np.pi
    return np.where(hit, t, np.inf), n, np.stack([u, v], axis=1)


def _intersect_capsule(o: np.ndarray, d: np.ndarray, radius: float, height: float):
    h = max(height / 2.0 - radius, 0.0)
    t_best = np.full(len(o), np.inf)
    n_best = np.zeros_like(o)

    # Lateral cylinder surface around local y
    a = d[:, 0] ** 2 + d[:, 2] ** 2
    b = o[:, 0] * d[:, 0] + o[:, 2] * d[:, 2]
    c = o[:, 0] ** 2 + o[:, 2] ** 2 - radius * radius
    disc = b * b - a * c
    a_safe = np.where(a < 1e-12, 1.0, a)
    t_cyl = (-b - np.sqrt(np.maximum(disc, 0.0))) / a_safe
    y_cyl = o[:, 1] + d[:, 1] * t_cyl
    ok = (a >= 1e-12) & (disc >= 0.0) & (t_cyl >= 0.0) & (np.abs(y_cyl) <= h)
    p = o + d * t_cyl[:, None]
    n_cyl = np.stack([p[:, 0], np.zeros(len(o)), p[:, 2]], axis=1) / max(radius, 1e-12)
    better = ok & (t_cyl < t_best)
    t_best = np.where(better, t_cyl, t_best)
    n_best[better] = n_cyl[better]

    # End caps
    for sign in (1.0, -1.0):
        center = np.array([0.0, sign * h, 0.0])
        t_cap, n_cap, _ = _intersect_sphere(o - center, d, radius)
        y_cap = o[:, 1] + d[:, 1] * np.where(np.isfinite(t_cap), t_cap, 0.0)
        on_cap = np.isfinite(t_cap) & (sign * y_cap >= h)
        better = on_cap & (t_cap < t_best)
        t_best = np.where(better, t_cap, t_best)
        n_best[better] = n_cap[better]

    # Rays starting inside the capsule see nothing
    y_clamped = np.clip(o[:, 1], -h, h)
    seg = o - np.stack([np.zeros(len(o)), y_clamped, np.zeros(len(o))], axis=1)
    inside = np.linalg.norm(seg, axis=1) < radius
    t_best = np.where(inside, np.inf, t_best)
    return t_best, n_best, np.full((len(o), 2), np.nan)


class Scene:
    def __init__(self, objects: Optional[Sequence[SceneObject]] = None):
        self.objects: List[SceneObject] = list(objects or [])

    def add(self, obj: SceneObject) -> SceneObject:
        self.objects.append(obj)
        return obj

    def get(self, name: str) -> Optional[SceneObject]:
        for obj in self.objects:
            if obj.name == name:
                return obj
        return None

    def collision_objects(self) -> List[SceneObject]:
        return [obj for obj in self.objects if COLLISION_OBJECT_TAG in obj.tags]

    def raycast(self, origins: np.ndarray, directions: np.ndarray, max_distance: float,
                layer_mask: int = ALL_LAYERS) -> RaycastHits:
        """Cast N rays (world, internal convention) and keep the nearest hit each."""
        origins = np.asarray(origins, dtype=float).reshape(-1, 3)
        directions = np.asarray(directions, dtype=float).reshape(-1, 3)
        norms = np.linalg.norm(directions, axis=1, keepdims=True)
        directions = directions / np.where(norms < 1e-12, 1.0, norms)
        n = len(origins)

        best_t = np.full(n, np.inf)
        best_n = np.zeros((n, 3))
        best_uv = np.full((n, 2), np.nan)
        best_obj = np.full(n, -1, dtype=int)

        for index, obj in enumerate(self.objects):
            if not (layer_mask & (1 << obj.layer)):
                continue
            T_inv = invert_T(obj.transform)
            Rm = obj.transform[:3, :3]
            o_local = origins @ T_inv[:3, :3].T + T_inv[:3, 3]
            d_local = directions @ T_inv[:3, :3].T

            if isinstance(obj.shape, Box):
                t, normal, uv = _intersect_box(o_local, d_local, obj.shape.size)
            elif isinstance(obj.shape, Sphere):
                t, normal, uv = _intersect_sphere(o_local, d_local, obj.shape.radius)
            elif isinstance(obj.shape, Capsule):
                t, normal, uv = _intersect_capsule(o_local, d_local, obj.shape.radius, obj.shape.height)
            else:
                logger.debug(f"Skipping object {obj.name} with unsupported shape")
                continue

            closer = (t <= max_distance) & (t < best_t)
            if not np.any(closer):
                continue
            best_t[closer] = t[closer]
            best_n[closer] = normal[closer] @ Rm.T
            best_uv[closer] = uv[closer]
            best_obj[closer] = index

        hit = best_obj >= 0
        points = origins + directions * np.where(hit, best_t, 0.0)[:, None]
        lengths = np.linalg.norm(best_n, axis=1, keepdims=True)
        normals = best_n / np.where(lengths < 1e-12, 1.0, lengths)
        return RaycastHits(hit, best_t, points, normals, best_obj, best_uv)

    def sample_colors(self, hits: RaycastHits) -> np.ndarray:
        colors = np.zeros((len(hits.hit), 3), dtype=np.uint8)
        for index in np.unique(hits.object_index[hits.hit]):
            rows = hits.object_index == index
            colors[rows] = self.objects[index].material.sample(hits.uv[rows])
        return colors

    @classmethod
    def from_config(cls, entries: Sequence[Dict], base_dir=None) -> 'Scene':
        """Build a scene from config entries.

        Each entry has `name`, `shape` ({"type": "box", "size": [...]} or
        sphere/capsule with `radius`/`height`), optional `position`,
        `rotation_deg` (extrinsic x-y-z), `color`, `texture`, `layer`, `tags`.
        """
        scene = cls()
        for entry in entries:
            shape_cfg = entry.get("shape", {})
            kind = shape_cfg.get("type", "box")
            if kind == "box":
                shape = Box(tuple(float(v) for v in shape_cfg.get("size", [0.1, 0.1, 0.1])))
            elif kind == "sphere":
                shape = Sphere(float(shape_cfg.get("radius", 0.05)))
            elif kind == "capsule":
                shape = Capsule(float(shape_cfg.get("radius", 0.05)), float(shape_cfg.get("height", 0.2)))
            else:
                raise ConfigurationError(f"Unknown shape type '{kind}' for scene object {entry.get('name')}")

            color = entry.get("color", [255, 255, 255])
            texture = entry.get("texture")
            if texture:
                material = Material.from_texture_file(resolve_asset_path(texture, base_dir), color)
            else:
                material = Material(np.array(color, dtype=np.uint8))

            transform = euler_to_T(entry.get("position", [0.0, 0.0, 0.0]),
                                   entry.get("rotation_deg", [0.0, 0.0, 0.0]))
            scene.add(SceneObject(
                name=entry.get("name", f"object_{len(scene.objects)}"),
                shape=shape,
                transform=transform,
                material=material,
                layer=int(entry.get("layer", 0)),
                tags=tuple(entry.get("tags", ())),
            ))
        logger.info(f"Scene loaded with {len(scene.objects)} objects")
        return scene
