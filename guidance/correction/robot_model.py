"""
Kinematic robot model loaded from URDF.

Links and joints are parsed with xml.etree; forward kinematics chains the
joint origins with each joint's motion. URDF data is in the external
convention (X forward, Y left, Z up); `link_world_transform` re-expresses the
result in the internal scene convention and applies the root placement.
"""

import logging
import math
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import numpy as np
from scipy.spatial.transform import Rotation as R

from .pose_utils import INTERNAL, convert_transform


logger = logging.getLogger(__name__)

MOVABLE_TYPES = ("revolute", "continuous", "prismatic")


def _parse_floats(attr: Optional[str], n: int, default: float = 0.0) -> np.ndarray:
    if not attr:
        return np.full((n,), default, dtype=float)
    parts = attr.replace(",", " ").split()
    if len(parts) < n:
        parts = parts + [str(default)] * (n - len(parts))
    return np.array([float(x) for x in parts[:n]], dtype=float)


def _origin_transform(xyz: np.ndarray, rpy: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R.from_euler('xyz', rpy).as_matrix()
    T[:3, 3] = xyz
    return T


@dataclass
class JointHandle:
    """A single URDF joint plus its current actuator position."""
    name: str
    jtype: str
    parent: str
    child: str
    origin_xyz: np.ndarray
    origin_rpy: np.ndarray
    axis: np.ndarray
    limit_lower: float
    limit_upper: float
    position: float = 0.0
    supports_absolute: bool = True
    _origin: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        self._origin = _origin_transform(self.origin_xyz, self.origin_rpy)

    @property
    def is_fixed(self) -> bool:
        return self.jtype not in MOVABLE_TYPES

    @property
    def is_continuous(self) -> bool:
        return self.jtype == "continuous"

    @property
    def limits(self):
        return (self.limit_lower, self.limit_upper)

    def get_position(self) -> float:
        return self.position

    def set_position(self, value: float):
        if self.is_fixed:
            return
        self.position = float(value)

    def apply_delta(self, delta: float):
        if self.is_fixed:
            return
        self.position += float(delta)

    def motion_transform(self) -> np.ndarray:
        """Parent-to-child transform at the current position."""
        T_motion = np.eye(4)
        if self.jtype in ("revolute", "continuous"):
            T_motion[:3, :3] = R.from_rotvec(self.axis * self.position).as_matrix()
        elif self.jtype == "prismatic":
            T_motion[:3, 3] = self.axis * self.position
        return self._origin @ T_motion


class RobotModel:
    def __init__(self, links: List[str], joints: List[JointHandle],
                 root_transform: Optional[np.ndarray] = None, name: str = "robot"):
        self.name = name
        self.links = list(links)
        self._joints: Dict[str, JointHandle] = {}
        self._child_map: Dict[str, List[JointHandle]] = {}
        self._parent_map: Dict[str, JointHandle] = {}
        for joint in joints:
            self._joints[joint.name] = joint
            self._child_map.setdefault(joint.parent, []).append(joint)
            self._parent_map[joint.child] = joint
        self.root_transform = np.eye(4) if root_transform is None else np.asarray(root_transform, dtype=float)

    @classmethod
    def from_urdf(cls, urdf_path, root_transform: Optional[np.ndarray] = None) -> 'RobotModel':
        path = Path(urdf_path)
        if not path.exists():
            raise FileNotFoundError(f"URDF not found: {path}")
        return cls.from_urdf_string(path.read_text(), root_transform)

    @classmethod
    def from_urdf_string(cls, text: str, root_transform: Optional[np.ndarray] = None) -> 'RobotModel':
        root = ET.fromstring(text)
        links = [link.get("name") for link in root.findall("link") if link.get("name")]
        joints = []

        for joint_node in root.findall("joint"):
            jname = joint_node.get("name")
            jtype = joint_node.get("type", "fixed")
            parent_node = joint_node.find("parent")
            child_node = joint_node.find("child")
            if jname is None or parent_node is None or child_node is None:
                logger.warning(f"Skipping incomplete joint element: {jname}")
                continue
            parent = parent_node.get("link")
            child = child_node.get("link")
            if parent is None or child is None:
                continue

            origin_node = joint_node.find("origin")
            if origin_node is not None:
                xyz = _parse_floats(origin_node.get("xyz"), 3, 0.0)
                rpy = _parse_floats(origin_node.get("rpy"), 3, 0.0)
            else:
                xyz = np.zeros(3)
                rpy = np.zeros(3)

            axis_node = joint_node.find("axis")
            axis = _parse_floats(axis_node.get("xyz") if axis_node is not None else None, 3, 0.0)
            if np.linalg.norm(axis) < 1e-12:
                axis = np.array([1.0, 0.0, 0.0])
            else:
                axis = axis / np.linalg.norm(axis)

            limit_node = joint_node.find("limit")
            if jtype in ("revolute", "prismatic"):
                if limit_node is None:
                    lower, upper = -math.inf, math.inf
                else:
                    lower = float(limit_node.get("lower", "-inf"))
                    upper = float(limit_node.get("upper", "inf"))
            elif jtype == "continuous":
                lower, upper = -math.inf, math.inf
            else:
                lower, upper = 0.0, 0.0

            joints.append(JointHandle(
                name=jname,
                jtype=jtype,
                parent=parent,
                child=child,
                origin_xyz=xyz,
                origin_rpy=rpy,
                axis=axis,
                limit_lower=lower,
                limit_upper=upper,
            ))

        model = cls(links, joints, root_transform, name=root.get("name", "robot"))
        logger.info(f"Loaded robot '{model.name}' with {len(links)} links and {len(joints)} joints")
        return model

    @property
    def root_link(self) -> str:
        roots = [link for link in self.links if link not in self._parent_map]
        if not roots:
            roots = list(self._child_map.keys())
        if not roots:
            raise RuntimeError("Failed to infer root link from URDF")
        return roots[0]

    def has_link(self, name: str) -> bool:
        return name in self.links

    def joint(self, name: str) -> Optional[JointHandle]:
        return self._joints.get(name)

    def iter_joints(self) -> Iterator[JointHandle]:
        """Depth-first from the root link, children in document order."""
        yield from self._walk(self.root_link, set())

    def _walk(self, link: str, visited: set) -> Iterator[JointHandle]:
        if link in visited:
            return
        visited.add(link)
        for joint in self._child_map.get(link, []):
            yield joint
            yield from self._walk(joint.child, visited)

    def link_transform_external(self, link: str) -> np.ndarray:
        """Root-to-link transform in the external convention."""
        if link not in self.links:
            raise KeyError(f"Unknown link: {link}")
        chain = []
        current = link
        while current in self._parent_map:
            joint = self._parent_map[current]
            chain.append(joint)
            current = joint.parent
        T = np.eye(4)
        for joint in reversed(chain):
            T = T @ joint.motion_transform()
        return T

    def link_world_transform(self, link: str) -> np.ndarray:
        """World transform of a link in the internal convention."""
        return self.root_transform @ convert_transform(self.link_transform_external(link), INTERNAL)
