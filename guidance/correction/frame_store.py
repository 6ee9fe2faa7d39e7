"""
Frame Store: named coordinate frames and joint-angle state of the robot.

Owns the mapping from joint names to joint handles and the derived poses
(tool in base, in both axis conventions). Created once and ticked every
control tick.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .pose_utils import EXTERNAL, INTERNAL, Pose, convert_pose, invert_T
from .robot_model import JointHandle, RobotModel


BASE_FRAME = "base"
TOOL_FRAME = "tool"
WORLD_FRAME = "world"


@dataclass
class FrameHandle:
    name: str
    transform: np.ndarray  # world-from-frame, internal convention

    @property
    def position(self) -> np.ndarray:
        return self.transform[:3, 3].copy()

    def to_pose(self) -> Pose:
        return Pose.from_matrix(self.transform, WORLD_FRAME, self.name, INTERNAL)


class FrameStore:
    def __init__(self, robot: RobotModel, tool_link: str = "tool0",
                 fallback_tool_link: str = "wrist_3_link", base_link: str = "base_link"):
        self.logger = logging.getLogger(__name__)
        self.robot = robot
        self.tool_link_name = tool_link
        self.fallback_tool_link_name = fallback_tool_link
        self.base_link_name = base_link

        self._joints: List[JointHandle] = []
        self._joint_map: Dict[str, JointHandle] = {}
        self._limits: List[Tuple[float, float]] = []
        self._angles = np.zeros(0)
        self._override: Optional[Sequence] = None

        self._tool_link: Optional[str] = None
        self._base_link: Optional[str] = None
        self._attached: Dict[str, Tuple[str, np.ndarray]] = {}

        self._T_world_base = np.eye(4)
        self._T_world_tool = np.eye(4)
        self._tool_pose_base = Pose.identity(BASE_FRAME, TOOL_FRAME)
        self._tool_pose_base_external = convert_pose(self._tool_pose_base, EXTERNAL)
        self.initialized = False

    def initialize(self, joint_list: Optional[Sequence[Union[str, JointHandle]]] = None):
        """Build the joint map.

        An explicit list is used verbatim, dropping repeated names. Otherwise
        every non-fixed joint under the robot root is taken in traversal order.
        """
        self._override = joint_list
        self._joints = []
        self._joint_map = {}

        if joint_list:
            for entry in joint_list:
                joint = self.robot.joint(entry) if isinstance(entry, str) else entry
                if joint is None:
                    self.logger.warning(f"Override joint not found in robot: {entry}")
                    continue
                if not joint.name or joint.name in self._joint_map:
                    continue
                self._add_joint(joint)
            self.logger.info(f"Using {len(self._joints)} manually assigned joints")
        else:
            for joint in self.robot.iter_joints():
                if joint.is_fixed or joint.name in self._joint_map:
                    continue
                self._add_joint(joint)

        if not self._joints:
            self.logger.error("No joints found; continuing with an empty joint set")

        self._limits = [self._validated_limits(j) for j in self._joints]
        self._angles = np.zeros(len(self._joints))

        if self.robot.has_link(self.tool_link_name):
            self._tool_link = self.tool_link_name
        elif self.robot.has_link(self.fallback_tool_link_name):
            self.logger.warning(f"Tool link '{self.tool_link_name}' missing, using '{self.fallback_tool_link_name}'")
            self._tool_link = self.fallback_tool_link_name
        else:
            self.logger.error("No tool link found; tool pose stays at identity")
            self._tool_link = None

        self._base_link = self.base_link_name if self.robot.has_link(self.base_link_name) else self.robot.root_link

        self.initialized = True
        self.logger.info(f"Frame store initialized with {len(self._joints)} joints")
        self.tick()

    def rediscover(self):
        self.initialize(self._override)

    def _add_joint(self, joint: JointHandle):
        self._joints.append(joint)
        self._joint_map[joint.name] = joint

    def _validated_limits(self, joint: JointHandle) -> Tuple[float, float]:
        lower, upper = joint.limits
        if lower > upper:
            self.logger.warning(f"Joint {joint.name} has inverted limits [{lower}, {upper}]; swapping")
            lower, upper = upper, lower
        return (lower, upper)

    def tick(self):
        for i, joint in enumerate(self._joints):
            angle = joint.get_position()
            if not joint.is_continuous:
                lower, upper = self._limits[i]
                angle = min(max(angle, lower), upper)
            self._angles[i] = angle

        if self._base_link is not None:
            self._T_world_base = self.robot.link_world_transform(self._base_link)
        if self._tool_link is not None:
            self._T_world_tool = self.robot.link_world_transform(self._tool_link)

        T_base_tool = invert_T(self._T_world_base) @ self._T_world_tool
        self._tool_pose_base = Pose.from_matrix(T_base_tool, BASE_FRAME, TOOL_FRAME, INTERNAL)
        self._tool_pose_base_external = convert_pose(self._tool_pose_base, EXTERNAL)

    # joint state

    @property
    def joint_count(self) -> int:
        return len(self._joints)

    @property
    def joint_names(self) -> List[str]:
        return [j.name for j in self._joints]

    @property
    def joint_map(self) -> Dict[str, JointHandle]:
        return dict(self._joint_map)

    @property
    def joints(self) -> List[JointHandle]:
        return list(self._joints)

    @property
    def joint_angles(self) -> np.ndarray:
        return self._angles.copy()

    @property
    def joint_angles_degrees(self) -> np.ndarray:
        return np.degrees(self._angles)

    @property
    def joint_limits(self) -> List[Tuple[float, float]]:
        return list(self._limits)

    def is_continuous(self, index: int) -> bool:
        return self._joints[index].is_continuous or not all(math.isfinite(v) for v in self._limits[index])

    # frames

    @property
    def tool_link(self) -> Optional[str]:
        return self._tool_link

    @property
    def base_frame(self) -> FrameHandle:
        return FrameHandle(BASE_FRAME, self._T_world_base.copy())

    @property
    def tool_frame(self) -> FrameHandle:
        return FrameHandle(TOOL_FRAME, self._T_world_tool.copy())

    @property
    def world_frame(self) -> FrameHandle:
        return FrameHandle(WORLD_FRAME, np.eye(4))

    def attach_frame(self, name: str, parent: str, offset: np.ndarray):
        """Attach a frame rigidly to an existing frame (e.g. a sensor mount)."""
        if name in (BASE_FRAME, TOOL_FRAME, WORLD_FRAME):
            raise ValueError(f"Cannot re-attach builtin frame '{name}'")
        self._attached[name] = (parent, np.asarray(offset, dtype=float).copy())

    def frame(self, name: str) -> FrameHandle:
        if name == BASE_FRAME:
            return self.base_frame
        if name == TOOL_FRAME:
            return self.tool_frame
        if name == WORLD_FRAME:
            return self.world_frame
        if name in self._attached:
            parent, offset = self._attached[name]
            return FrameHandle(name, self.frame(parent).transform @ offset)
        raise KeyError(f"Unknown frame: {name}")

    def has_frame(self, name: str) -> bool:
        return name in (BASE_FRAME, TOOL_FRAME, WORLD_FRAME) or name in self._attached

    def world_to_frame(self, name: str) -> np.ndarray:
        return invert_T(self.frame(name).transform)

    # poses

    def tool_pose_base(self, convention: str = INTERNAL) -> Pose:
        pose = self._tool_pose_base_external if convention == EXTERNAL else self._tool_pose_base
        return Pose(pose.position.copy(), pose.orientation.copy(), pose.frame, pose.child_frame, pose.convention)

    def tool_pose_world(self) -> Pose:
        return self.tool_frame.to_pose()
