"""
Point cloud container, ASCII persistence, wire encoding and residual analysis.

Clouds hold parallel arrays: positions and normals as float32 N x 3 and
colors as uint8 N x 3. Persistence uses an ASCII PLY-style layout with one
vertex per line; the wire form is a PointCloud2-like dict with base64 data.
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree

from .pose_utils import transform_points


logger = logging.getLogger(__name__)

# PointField datatypes
UINT32 = 6
FLOAT32 = 7

MATCH_COLOR = np.array([0, 255, 0], dtype=np.uint8)
MISMATCH_COLOR = np.array([255, 0, 0], dtype=np.uint8)


@dataclass
class PointSample:
    position: np.ndarray
    normal: np.ndarray
    color: np.ndarray


@dataclass
class PointCloud:
    positions: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float32))
    normals: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float32))
    colors: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.uint8))
    frame: str = "sensor"
    timestamp: float = 0.0

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float32).reshape(-1, 3)
        self.normals = np.asarray(self.normals, dtype=np.float32).reshape(-1, 3)
        self.colors = np.asarray(self.colors, dtype=np.uint8).reshape(-1, 3)
        if not (len(self.positions) == len(self.normals) == len(self.colors)):
            raise ValueError(
                f"Point cloud arrays differ in length: {len(self.positions)}, "
                f"{len(self.normals)}, {len(self.colors)}"
            )

    def __len__(self) -> int:
        return len(self.positions)

    @property
    def is_empty(self) -> bool:
        return len(self.positions) == 0

    @classmethod
    def from_samples(cls, samples: Sequence[PointSample], frame: str = "sensor",
                     timestamp: Optional[float] = None) -> 'PointCloud':
        if not samples:
            return cls(frame=frame, timestamp=time.time() if timestamp is None else timestamp)
        return cls(
            np.array([s.position for s in samples]),
            np.array([s.normal for s in samples]),
            np.array([s.color for s in samples]),
            frame,
            time.time() if timestamp is None else timestamp,
        )

    def samples(self) -> List[PointSample]:
        return [PointSample(p.copy(), n.copy(), c.copy())
                for p, n, c in zip(self.positions, self.normals, self.colors)]

    def transformed(self, T: np.ndarray, frame: str) -> 'PointCloud':
        """Copy of this cloud with points and normals mapped through T."""
        positions = transform_points(T, self.positions)
        normals = np.asarray(self.normals, dtype=float) @ T[:3, :3].T
        return PointCloud(positions, normals, self.colors.copy(), frame, self.timestamp)

    def copy(self) -> 'PointCloud':
        return PointCloud(self.positions.copy(), self.normals.copy(), self.colors.copy(),
                          self.frame, self.timestamp)

    def clear(self):
        self.positions = np.zeros((0, 3), dtype=np.float32)
        self.normals = np.zeros((0, 3), dtype=np.float32)
        self.colors = np.zeros((0, 3), dtype=np.uint8)


def save_ascii(cloud: PointCloud, path) -> bool:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write("ply\n")
            f.write("format ascii 1.0\n")
            f.write(f"comment frame_id {cloud.frame}\n")
            f.write(f"element vertex {len(cloud)}\n")
            for name in ("x", "y", "z", "nx", "ny", "nz"):
                f.write(f"property float {name}\n")
            for name in ("red", "green", "blue"):
                f.write(f"property uchar {name}\n")
            f.write("end_header\n")
            for p, n, c in zip(cloud.positions, cloud.normals, cloud.colors):
                f.write(
                    f"{p[0]:.6f} {p[1]:.6f} {p[2]:.6f} "
                    f"{n[0]:.6f} {n[1]:.6f} {n[2]:.6f} "
                    f"{int(c[0])} {int(c[1])} {int(c[2])}\n"
                )
        logger.info(f"Saved {len(cloud)} points to {path}")
        return True
    except OSError as e:
        logger.error(f"Failed to save point cloud to {path}: {e}")
        return False


def load_ascii(path, frame: str = "sensor") -> PointCloud:
    """Load a cloud written by save_ascii.

    Reads the vertex count from the header and then at most that many lines.
    Lines with fewer than nine values are skipped. A missing or unreadable
    file gives an empty cloud.
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"Point cloud file not found: {path}")
        return PointCloud(frame=frame)

    positions, normals, colors = [], [], []
    try:
        with open(path, "r") as f:
            vertex_count = 0
            for line in f:
                tokens = line.split()
                if not tokens:
                    continue
                if tokens[0] == "end_header":
                    break
                if tokens[:2] == ["element", "vertex"] and len(tokens) >= 3:
                    vertex_count = int(tokens[2])
                elif tokens[:2] == ["comment", "frame_id"] and len(tokens) >= 3:
                    frame = tokens[2]

            for _ in range(vertex_count):
                line = next(f, None)
                if line is None:
                    break
                tokens = line.split()
                if len(tokens) < 9:
                    continue
                try:
                    values = [float(t) for t in tokens[:6]]
                    rgb = [int(float(t)) for t in tokens[6:9]]
                except (ValueError, OverflowError):
                    logger.debug(f"Skipping unparsable point line: {line.strip()}")
                    continue
                if not np.all(np.isfinite(values)):
                    logger.debug(f"Skipping non-finite point line: {line.strip()}")
                    continue
                positions.append(values[:3])
                normals.append(values[3:6])
                colors.append(np.clip(rgb, 0, 255))
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load point cloud from {path}: {e}")
        return PointCloud(frame=frame)

    if not positions:
        return PointCloud(frame=frame, timestamp=time.time())
    cloud = PointCloud(np.array(positions), np.array(normals), np.array(colors), frame, time.time())
    logger.info(f"Loaded {len(cloud)} points from {path}")
    return cloud


def to_wire(cloud: PointCloud, include_normals: bool = False, include_colors: bool = False,
            frame_id: Optional[str] = None) -> Dict:
    """Encode a cloud as a PointCloud2-like dict (little-endian, one row)."""
    names = ["x", "y", "z"]
    formats = ["<f4", "<f4", "<f4"]
    if include_normals:
        names += ["normal_x", "normal_y", "normal_z"]
        formats += ["<f4", "<f4", "<f4"]
    if include_colors:
        names.append("rgb")
        formats.append("<u4")
    dtype = np.dtype({"names": names, "formats": formats})

    records = np.zeros(len(cloud), dtype=dtype)
    for i, axis in enumerate("xyz"):
        records[axis] = cloud.positions[:, i]
    if include_normals:
        for i, axis in enumerate("xyz"):
            records[f"normal_{axis}"] = cloud.normals[:, i]
    if include_colors:
        c = cloud.colors.astype(np.uint32)
        records["rgb"] = (c[:, 0] << 16) | (c[:, 1] << 8) | c[:, 2]

    fields = [
        {"name": name, "offset": dtype.fields[name][1],
         "datatype": UINT32 if name == "rgb" else FLOAT32, "count": 1}
        for name in names
    ]
    return {
        "frame_id": frame_id or cloud.frame,
        "height": 1,
        "width": len(cloud),
        "fields": fields,
        "is_bigendian": False,
        "point_step": dtype.itemsize,
        "row_step": dtype.itemsize * len(cloud),
        "is_dense": True,
        "data": base64.b64encode(records.tobytes()).decode("ascii"),
    }


def from_wire(message: Dict) -> PointCloud:
    if message.get("is_bigendian", False):
        raise ValueError("Big-endian point clouds are not supported")
    width = int(message["width"]) * int(message.get("height", 1))
    point_step = int(message["point_step"])
    type_codes = {FLOAT32: "<f4", UINT32: "<u4"}

    names, formats, offsets = [], [], []
    for f in message["fields"]:
        if f["datatype"] not in type_codes:
            raise ValueError(f"Unsupported field datatype {f['datatype']} for {f['name']}")
        names.append(f["name"])
        formats.append(type_codes[f["datatype"]])
        offsets.append(int(f["offset"]))
    dtype = np.dtype({"names": names, "formats": formats, "offsets": offsets, "itemsize": point_step})

    if width == 0:
        return PointCloud(frame=message.get("frame_id", "sensor"), timestamp=time.time())
    raw = base64.b64decode(message["data"])
    if len(raw) < width * point_step:
        raise ValueError(f"Point cloud data too short: {len(raw)} bytes for {width} points")
    records = np.frombuffer(raw, dtype=dtype, count=width)

    positions = np.stack([records[a] for a in "xyz"], axis=1)
    if all(f"normal_{a}" in names for a in "xyz"):
        normals = np.stack([records[f"normal_{a}"] for a in "xyz"], axis=1)
    else:
        normals = np.zeros((width, 3))
    if "rgb" in names:
        packed = records["rgb"].astype(np.uint32)
        colors = np.stack([(packed >> 16) & 0xFF, (packed >> 8) & 0xFF, packed & 0xFF], axis=1)
    else:
        colors = np.full((width, 3), 255)
    return PointCloud(positions, normals, colors, message.get("frame_id", "sensor"), time.time())


@dataclass
class ComparisonResult:
    matched: np.ndarray      # N bool, scan points within tolerance of the master
    distances: np.ndarray    # N nearest-neighbour distances
    cloud: PointCloud        # scan recolored green/red
    tolerance: float

    @property
    def match_ratio(self) -> float:
        return float(np.mean(self.matched)) if len(self.matched) else 0.0

    @property
    def mean_error(self) -> float:
        finite = self.distances[np.isfinite(self.distances)]
        return float(np.mean(finite)) if len(finite) else 0.0

    @property
    def max_error(self) -> float:
        finite = self.distances[np.isfinite(self.distances)]
        return float(np.max(finite)) if len(finite) else 0.0


def compare_clouds(scan: PointCloud, master: PointCloud, tolerance: float = 0.002) -> ComparisonResult:
    """Flag scan points that have a master point within `tolerance`.

    With an empty master every scan point counts as matched.
    """
    n = len(scan)
    if master.is_empty:
        matched = np.ones(n, dtype=bool)
        distances = np.zeros(n)
    elif n == 0:
        matched = np.zeros(0, dtype=bool)
        distances = np.zeros(0)
    else:
        tree = cKDTree(np.asarray(master.positions, dtype=float))
        distances, _ = tree.query(np.asarray(scan.positions, dtype=float), k=1)
        matched = distances < tolerance

    colored = scan.copy()
    colored.colors = np.where(matched[:, None], MATCH_COLOR, MISMATCH_COLOR).astype(np.uint8)
    return ComparisonResult(matched, np.asarray(distances, dtype=float), colored, tolerance)
