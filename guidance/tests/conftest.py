"""
Test configuration and shared fixtures for the guidance simulator tests.
"""

import pytest
from unittest.mock import Mock

from guidance.correction.collision import CollisionMonitor, LinkCollisionSensor
from guidance.correction.dispatch import ControlQueue
from guidance.correction.frame_store import FrameStore
from guidance.correction.guidance_engine import GuidanceConfig, HandEyeCorrectionEngine
from guidance.correction.range_sensor import MountType, RangeSensorConfig, SimulatedRangeSensor
from guidance.correction.robot_model import RobotModel
from guidance.correction.scene import COLLISION_OBJECT_TAG, Box, Scene, SceneObject
from guidance.correction.pose_utils import euler_to_T


# Three movable joints and a fixed tool flange. At zero the tool sits at
# external (0.55, 0, 0.1), i.e. internal (0, 0.1, 0.55), with identity rotation.
TEST_URDF = """<?xml version="1.0"?>
<robot name="test_arm">
  <link name="base_link"/>
  <link name="link_1"/>
  <link name="link_2"/>
  <link name="link_3"/>
  <link name="tool0"/>
  <joint name="joint_1" type="revolute">
    <parent link="base_link"/>
    <child link="link_1"/>
    <origin xyz="0 0 0.1" rpy="0 0 0"/>
    <axis xyz="0 0 1"/>
    <limit lower="-3.14" upper="3.14" effort="10" velocity="1"/>
  </joint>
  <joint name="joint_2" type="revolute">
    <parent link="link_1"/>
    <child link="link_2"/>
    <origin xyz="0.3 0 0" rpy="0 0 0"/>
    <axis xyz="0 1 0"/>
    <limit lower="-1.5" upper="1.5" effort="10" velocity="1"/>
  </joint>
  <joint name="joint_3" type="continuous">
    <parent link="link_2"/>
    <child link="link_3"/>
    <origin xyz="0.2 0 0" rpy="0 0 0"/>
    <axis xyz="1 0 0"/>
  </joint>
  <joint name="tool_joint" type="fixed">
    <parent link="link_3"/>
    <child link="tool0"/>
    <origin xyz="0.05 0 0" rpy="0 0 0"/>
  </joint>
</robot>
"""


@pytest.fixture
def urdf_text():
    return TEST_URDF


@pytest.fixture
def robot():
    return RobotModel.from_urdf_string(TEST_URDF)


@pytest.fixture
def frame_store(robot):
    store = FrameStore(robot, tool_link="tool0", fallback_tool_link="link_3")
    store.initialize()
    return store


@pytest.fixture
def wall_scene():
    """A wide wall 0.49 m in front of the tool at zero position."""
    scene = Scene()
    scene.add(SceneObject(
        name="wall",
        shape=Box((1.0, 1.0, 0.02)),
        transform=euler_to_T([0.0, 0.1, 1.05], [0.0, 0.0, 0.0]),
        tags=(COLLISION_OBJECT_TAG,),
    ))
    return scene


@pytest.fixture
def sensor_config(tmp_path):
    return RangeSensorConfig(
        width=16,
        height=12,
        noise_level=0.0,
        mount_type=MountType.HAND_EYE,
        mount_position=(0.0, 0.0, 0.0),
        master_path=str(tmp_path / "master_cloud.ply"),
        seed=1,
    )


@pytest.fixture
def sensor(sensor_config, frame_store, wall_scene):
    return SimulatedRangeSensor(sensor_config, frame_store, wall_scene)


@pytest.fixture
def control_queue():
    return ControlQueue()


@pytest.fixture
def mock_registration():
    """Registration client that records callbacks instead of calling out."""
    client = Mock()
    client.request_registration = Mock()
    return client


@pytest.fixture
def mock_motion():
    executor = Mock()
    executor.move_to_pose = Mock()
    return executor


@pytest.fixture
def engine(frame_store, sensor, control_queue, mock_registration, mock_motion, wall_scene):
    eng = HandEyeCorrectionEngine(
        GuidanceConfig(sync_scene_before_run=False),
        frame_store, sensor, control_queue,
        registration_client=mock_registration,
        motion_executor=mock_motion,
        scene=wall_scene,
    )
    eng.compute_offset()
    return eng


@pytest.fixture
def collision_monitor(frame_store):
    return CollisionMonitor([LinkCollisionSensor(j.child) for j in frame_store.joints])
