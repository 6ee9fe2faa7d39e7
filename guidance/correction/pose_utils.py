"""
Pose utilities and dataclasses for hand-eye guidance.

Provides minimal SE3 helpers and the pose type used by the system without any
inverse kinematics. Positions are in meters; orientations are unit quaternions
ordered [x, y, z, w] unless stated otherwise.

Two axis conventions meet here. The internal (scene) convention is x=right,
y=up, z=forward. The external (robotics) convention is X=forward, Y=left,
Z=up. Anything crossing that boundary goes through `convert_pose`,
`convert_transform` or the vector/quaternion helpers below, which all derive
from the single `_AXIS_MAP`.
"""

from dataclasses import dataclass
from typing import Optional
import numpy as np
from scipy.spatial.transform import Rotation as R

from .errors import FrameMismatchError


INTERNAL = "internal"
EXTERNAL = "external"

# internal (x right, y up, z forward) -> external (X forward, Y left, Z up)
_AXIS_MAP = np.array([
    [0.0, 0.0, 1.0],
    [-1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
])


def normalize_quaternion(q) -> np.ndarray:
    q = np.asarray(q, dtype=float).reshape(4)
    norm = np.linalg.norm(q)
    if norm < 1e-12:
        raise ValueError("Quaternion has zero length")
    return q / norm


@dataclass
class Pose:
    position: np.ndarray     # [x, y, z] in meters
    orientation: np.ndarray  # [x, y, z, w], normalized on construction
    frame: str = "base"
    child_frame: Optional[str] = None
    convention: str = INTERNAL

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=float).reshape(3)
        self.orientation = normalize_quaternion(self.orientation)

    @classmethod
    def identity(cls, frame: str = "base", child_frame: Optional[str] = None,
                 convention: str = INTERNAL) -> 'Pose':
        return cls(np.zeros(3), np.array([0.0, 0.0, 0.0, 1.0]), frame, child_frame, convention)

    @classmethod
    def from_matrix(cls, T: np.ndarray, frame: str = "base", child_frame: Optional[str] = None,
                    convention: str = INTERNAL) -> 'Pose':
        T = np.asarray(T, dtype=float)
        return cls(T[:3, 3].copy(), R.from_matrix(T[:3, :3]).as_quat(), frame, child_frame, convention)

    @property
    def rotation_matrix(self) -> np.ndarray:
        return R.from_quat(self.orientation).as_matrix()

    def to_matrix(self) -> np.ndarray:
        return pose_to_T(self.position, self.orientation)

    def inverse(self) -> 'Pose':
        return Pose.from_matrix(invert_T(self.to_matrix()), self.child_frame or self.frame,
                                self.frame, self.convention)

    def compose(self, other: 'Pose') -> 'Pose':
        """Return self ∘ other.

        `other` must be expressed in the child frame of `self`, and both poses
        must use the same axis convention.
        """
        if self.convention != other.convention:
            raise FrameMismatchError(
                f"Cannot compose {self.convention} pose with {other.convention} pose"
            )
        if self.child_frame is not None and other.frame != self.child_frame:
            raise FrameMismatchError(
                f"Cannot compose pose of '{self.child_frame}' with pose expressed in '{other.frame}'"
            )
        T = self.to_matrix() @ other.to_matrix()
        return Pose.from_matrix(T, self.frame, other.child_frame, self.convention)

    def distance_to(self, other: 'Pose') -> float:
        return float(np.linalg.norm(self.position - other.position))

    def angle_to(self, other: 'Pose') -> float:
        """Angle between the two orientations in degrees."""
        return quaternion_angle_deg(self.orientation, other.orientation)


def pose_to_T(translation: np.ndarray, quaternion: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R.from_quat(normalize_quaternion(quaternion)).as_matrix()
    T[:3, 3] = np.asarray(translation, dtype=float).reshape(3)
    return T


def euler_to_T(translation: np.ndarray, euler_deg: np.ndarray) -> np.ndarray:
    """Transform from a translation and extrinsic x-y-z Euler angles in degrees."""
    T = np.eye(4)
    T[:3, :3] = R.from_euler('xyz', np.asarray(euler_deg, dtype=float), degrees=True).as_matrix()
    T[:3, 3] = np.asarray(translation, dtype=float).reshape(3)
    return T


def invert_T(T: np.ndarray) -> np.ndarray:
    Rm = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = Rm.T
    Ti[:3, 3] = -Rm.T @ t
    return Ti


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3]


def rotation_angle_deg(R1: np.ndarray, R2: np.ndarray) -> float:
    """Angle of the relative rotation between two rotation matrices, in degrees."""
    R_rel = R1.T @ R2
    trace = float(np.clip(np.trace(R_rel), -1.0, 3.0))
    return float(np.degrees(np.arccos((trace - 1.0) / 2.0)))


def quaternion_angle_deg(q1: np.ndarray, q2: np.ndarray) -> float:
    dot = abs(float(np.dot(normalize_quaternion(q1), normalize_quaternion(q2))))
    return float(np.degrees(2.0 * np.arccos(min(1.0, dot))))


def is_rigid_transform(T: np.ndarray, tolerance: float = 1e-3) -> bool:
    T = np.asarray(T, dtype=float)
    if T.shape != (4, 4) or not np.all(np.isfinite(T)):
        return False
    Rm = T[:3, :3]
    if not np.allclose(Rm.T @ Rm, np.eye(3), atol=tolerance):
        return False
    if abs(np.linalg.det(Rm) - 1.0) > tolerance:
        return False
    return np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=tolerance)


def internal_to_external_vector(v: np.ndarray) -> np.ndarray:
    return _AXIS_MAP @ np.asarray(v, dtype=float).reshape(3)


def external_to_internal_vector(v: np.ndarray) -> np.ndarray:
    return _AXIS_MAP.T @ np.asarray(v, dtype=float).reshape(3)


def internal_to_external_angular(w: np.ndarray) -> np.ndarray:
    """Angular velocity (axis-angle rate) into the external convention."""
    return -(_AXIS_MAP @ np.asarray(w, dtype=float).reshape(3))


def internal_to_external_quaternion(q: np.ndarray) -> np.ndarray:
    # The axis map is a reflection, so the rotation axis flips sign.
    q = np.asarray(q, dtype=float).reshape(4)
    return np.concatenate([-(_AXIS_MAP @ q[:3]), q[3:]])


def external_to_internal_quaternion(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=float).reshape(4)
    return np.concatenate([-(_AXIS_MAP.T @ q[:3]), q[3:]])


def convert_pose(pose: Pose, convention: str) -> Pose:
    """Re-express a pose in the requested axis convention."""
    if convention not in (INTERNAL, EXTERNAL):
        raise ValueError(f"Unknown axis convention: {convention}")
    if pose.convention == convention:
        return Pose(pose.position.copy(), pose.orientation.copy(), pose.frame,
                    pose.child_frame, pose.convention)
    if convention == EXTERNAL:
        position = internal_to_external_vector(pose.position)
        orientation = internal_to_external_quaternion(pose.orientation)
    else:
        position = external_to_internal_vector(pose.position)
        orientation = external_to_internal_quaternion(pose.orientation)
    return Pose(position, orientation, pose.frame, pose.child_frame, convention)


def convert_transform(T: np.ndarray, convention: str) -> np.ndarray:
    """Re-express a 4x4 transform given in the other convention."""
    A = np.eye(4)
    if convention == EXTERNAL:
        A[:3, :3] = _AXIS_MAP
    elif convention == INTERNAL:
        A[:3, :3] = _AXIS_MAP.T
    else:
        raise ValueError(f"Unknown axis convention: {convention}")
    return A @ np.asarray(T, dtype=float) @ A.T


def internal_to_external(pose: Pose) -> Pose:
    return convert_pose(pose, EXTERNAL)


def external_to_internal(pose: Pose) -> Pose:
    return convert_pose(pose, INTERNAL)


def T_to_pose(T: np.ndarray, frame: str = "base", child_frame: Optional[str] = None,
              convention: str = INTERNAL) -> Pose:
    return Pose.from_matrix(T, frame, child_frame, convention)
