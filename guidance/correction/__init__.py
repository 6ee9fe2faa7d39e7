"""
Robot Guidance Simulator - Correction Module

This package contains the core guidance functionality including:
- Control loop coordination
- Frame store and URDF robot model
- Simulated scene and range sensor
- Hand-eye correction engine
- Joint motion guard and velocity streaming
- Pose utilities and axis conventions
- External service clients
"""

from .errors import GuidanceError, FrameMismatchError, ConfigurationError
from .pose_utils import (
    Pose,
    INTERNAL,
    EXTERNAL,
    pose_to_T,
    invert_T,
    T_to_pose,
    convert_pose,
    convert_transform,
    internal_to_external,
    external_to_internal,
    rotation_angle_deg,
)
from .robot_model import RobotModel, JointHandle
from .frame_store import FrameStore, FrameHandle
from .scene import Scene, SceneObject, Material, Box, Sphere, Capsule, shape_descriptor
from .point_cloud import PointCloud, PointSample, save_ascii, load_ascii, to_wire, from_wire, compare_clouds
from .range_sensor import SimulatedRangeSensor, RangeSensorConfig, MountType
from .dispatch import ControlQueue
from .collision import LinkCollisionSensor, CollisionMonitor
from .discrete_io import DiscreteIOClient, SignalWatcher
from .guidance_engine import HandEyeCorrectionEngine, GuidanceConfig, GuidancePhase, CorrectionResult
from .joint_guard import JointMotionGuard, JogConfig, GuardState, wrap_angle
from .velocity_streamer import VelocityCommandStreamer, StreamerConfig
from .service_clients import MotionResult, JsonLineConnection
from .control_loop import ControlLoop, SystemConfig

__all__ = [
    'GuidanceError',
    'FrameMismatchError',
    'ConfigurationError',
    'Pose',
    'INTERNAL',
    'EXTERNAL',
    'pose_to_T',
    'invert_T',
    'T_to_pose',
    'convert_pose',
    'convert_transform',
    'internal_to_external',
    'external_to_internal',
    'rotation_angle_deg',
    'RobotModel',
    'JointHandle',
    'FrameStore',
    'FrameHandle',
    'Scene',
    'SceneObject',
    'Material',
    'Box',
    'Sphere',
    'Capsule',
    'shape_descriptor',
    'PointCloud',
    'PointSample',
    'save_ascii',
    'load_ascii',
    'to_wire',
    'from_wire',
    'compare_clouds',
    'SimulatedRangeSensor',
    'RangeSensorConfig',
    'MountType',
    'ControlQueue',
    'LinkCollisionSensor',
    'CollisionMonitor',
    'DiscreteIOClient',
    'SignalWatcher',
    'HandEyeCorrectionEngine',
    'GuidanceConfig',
    'GuidancePhase',
    'CorrectionResult',
    'JointMotionGuard',
    'JogConfig',
    'GuardState',
    'wrap_angle',
    'VelocityCommandStreamer',
    'StreamerConfig',
    'MotionResult',
    'JsonLineConnection',
    'ControlLoop',
    'SystemConfig',
]
