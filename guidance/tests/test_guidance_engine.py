"""
Tests for the hand-eye correction engine.
"""
import pytest
import numpy as np
from unittest.mock import Mock

from guidance.correction.frame_store import TOOL_FRAME, FrameStore
from guidance.correction.guidance_engine import (
    GuidanceConfig, GuidancePhase, HandEyeCorrectionEngine,
)
from guidance.correction.pose_utils import EXTERNAL, euler_to_T, invert_T
from guidance.correction.range_sensor import SENSOR_FRAME, MountType, SimulatedRangeSensor
from guidance.correction.robot_model import RobotModel
from guidance.correction.service_clients import MotionResult


def identity_list():
    return np.eye(4).reshape(-1).tolist()


def respond_registration(engine, mock_registration, matrix):
    """Deliver a registration result the way the transport thread would."""
    callback = mock_registration.request_registration.call_args[0][2]
    callback(matrix)
    engine.control_queue.drain()


def respond_motion(engine, mock_motion, result):
    callback = mock_motion.move_to_pose.call_args[0][1]
    callback(result)
    engine.control_queue.drain()


def prepare_clouds(engine):
    engine.sensor.capture_master()
    engine.sensor.capture_scan()


class TestCorrectionComposition:
    """Test cases for turning a registration result into a tool target."""

    def test_identity_keeps_tool_pose(self, engine, frame_store):
        result = engine.compute_tool_target(np.eye(4))

        expected = frame_store.tool_pose_base(EXTERNAL)
        assert result.target_pose.convention == EXTERNAL
        assert np.allclose(result.target_pose.position, expected.position)
        assert result.target_pose.angle_to(expected) < 1e-4
        assert result.position_gap == pytest.approx(0.0, abs=1e-9)
        assert result.rotation_gap_deg == pytest.approx(0.0, abs=1e-4)

    def test_translation_in_sensor_frame(self, engine):
        # Scan points sit 1 cm further along sensor x than the master points,
        # so the tool has to move 1 cm along -x.
        T_icp = euler_to_T([0.01, 0.0, 0.0], [0.0, 0.0, 0.0])
        result = engine.compute_tool_target(T_icp)

        assert np.allclose(result.T_tool_target[:3, 3], [-0.01, 0.1, 0.55])
        assert np.allclose(result.target_pose.position, [0.55, 0.01, 0.1])
        assert result.position_gap == pytest.approx(0.01)

    def test_offset_mount_uses_hand_eye_offset(self, sensor_config, frame_store, wall_scene,
                                               control_queue):
        sensor_config.mount_position = (0.0, 0.05, 0.05)
        sensor_config.mount_rotation_deg = (0.0, 90.0, 0.0)
        sensor = SimulatedRangeSensor(sensor_config, frame_store, wall_scene)
        engine = HandEyeCorrectionEngine(GuidanceConfig(), frame_store, sensor, control_queue)
        offset = engine.compute_offset()

        T_icp = euler_to_T([0.002, -0.001, 0.003], [0.5, -0.3, 1.0])
        result = engine.compute_tool_target(T_icp)

        T_world_sensor = frame_store.frame(SENSOR_FRAME).transform
        expected = T_world_sensor @ invert_T(T_icp) @ invert_T(offset)
        assert np.allclose(result.T_tool_target, expected)
        # The sensor ends up where the registration says it should be
        assert np.allclose(result.T_tool_target @ offset, T_world_sensor @ invert_T(T_icp))

    def test_bird_eye_composes_on_tool(self, sensor_config, frame_store, wall_scene, control_queue):
        sensor_config.mount_type = MountType.BIRD_EYE
        sensor = SimulatedRangeSensor(sensor_config, frame_store, wall_scene)
        engine = HandEyeCorrectionEngine(GuidanceConfig(), frame_store, sensor, control_queue)

        T_icp = euler_to_T([0.0, 0.02, 0.0], [0.0, 0.0, 0.0])
        result = engine.compute_tool_target(T_icp)

        T_world_tool = frame_store.frame(TOOL_FRAME).transform
        assert np.allclose(result.T_tool_target, T_world_tool @ invert_T(T_icp))

    def test_target_expressed_in_base_frame(self, urdf_text, sensor_config, wall_scene, control_queue):
        robot = RobotModel.from_urdf_string(urdf_text, euler_to_T([0.2, 0.0, 0.0], [0.0, 0.0, 0.0]))
        store = FrameStore(robot, fallback_tool_link="link_3")
        store.initialize()
        sensor = SimulatedRangeSensor(sensor_config, store, wall_scene)
        engine = HandEyeCorrectionEngine(GuidanceConfig(), store, sensor, control_queue)
        engine.compute_offset()

        result = engine.compute_tool_target(np.eye(4))

        assert result.target_pose.frame == "base"
        assert np.allclose(result.target_pose.position, [0.55, 0.0, 0.1])


class TestMotionInvalidation:
    """Test cases for clearing the scan once the tool moves."""

    @pytest.fixture
    def distance_engine(self, engine):
        engine.config.scan_clear_angle_deg = 180.0
        engine.check_motion()
        engine.sensor.capture_scan()
        return engine

    def test_small_motion_keeps_scan(self, distance_engine, robot, frame_store):
        robot.joint("joint_1").set_position(0.005)  # ~2.7 mm at the tool
        frame_store.tick()

        assert distance_engine.check_motion() is False
        assert not distance_engine.sensor.scan.is_empty

    def test_invalidated_on_threshold_tick(self, distance_engine, robot, frame_store):
        robot.joint("joint_1").set_position(0.01)  # ~5.5 mm at the tool
        frame_store.tick()

        assert distance_engine.check_motion() is True
        assert distance_engine.sensor.scan.is_empty
        assert distance_engine.statistics['scans_invalidated'] == 1

    def test_slow_motion_accumulates(self, distance_engine, robot, frame_store):
        for step in range(1, 5):
            robot.joint("joint_1").set_position(0.0025 * step)
            frame_store.tick()
            invalidated = distance_engine.check_motion()
            assert invalidated is (step == 4)

    def test_rotation_threshold(self, engine, robot, frame_store):
        engine.check_motion()
        engine.sensor.capture_scan()

        robot.joint("joint_3").set_position(np.radians(0.2))  # rotation only
        frame_store.tick()

        assert engine.check_motion() is True
        assert engine.sensor.scan.is_empty


class TestRunGuidance:
    """Test cases for the request side of a guidance run."""

    def test_requires_both_clouds(self, engine, mock_registration):
        assert engine.run_guidance() is False

        engine.sensor.capture_master()
        assert engine.run_guidance() is False
        mock_registration.request_registration.assert_not_called()

    def test_requires_collaborators(self, frame_store, sensor, control_queue):
        engine = HandEyeCorrectionEngine(GuidanceConfig(), frame_store, sensor, control_queue)
        prepare_clouds(engine)
        assert engine.run_guidance() is False

    def test_sends_wire_clouds(self, engine, mock_registration):
        prepare_clouds(engine)

        assert engine.run_guidance() is True
        master_wire, scan_wire, callback = mock_registration.request_registration.call_args[0]
        assert master_wire["width"] == len(engine.sensor.master)
        assert scan_wire["frame_id"] == SENSOR_FRAME
        assert callable(callback)
        assert engine.phase == GuidancePhase.AWAITING_REGISTRATION
        assert engine.registration_in_flight

    def test_single_request_in_flight(self, engine, mock_registration):
        prepare_clouds(engine)

        assert engine.run_guidance() is True
        assert engine.run_guidance() is False
        assert mock_registration.request_registration.call_count == 1

    def test_request_failure_clears_flag(self, engine, mock_registration):
        prepare_clouds(engine)
        mock_registration.request_registration.side_effect = OSError("bridge down")

        assert engine.run_guidance() is False
        assert not engine.registration_in_flight
        assert engine.phase == GuidancePhase.IDLE

    def test_callback_only_posts(self, engine, mock_registration, mock_motion):
        prepare_clouds(engine)
        engine.run_guidance()

        callback = mock_registration.request_registration.call_args[0][2]
        callback(identity_list())

        # Nothing happens until the control thread drains the queue
        assert engine.registration_in_flight
        mock_motion.move_to_pose.assert_not_called()
        assert engine.control_queue.pending() == 1

    def test_scene_synced_before_run(self, engine, mock_registration):
        publisher = Mock()
        engine.collision_publisher = publisher
        engine.config.sync_scene_before_run = True
        prepare_clouds(engine)

        engine.run_guidance()

        publisher.publish_collision_object.assert_called_once()
        object_id, descriptor, pose = publisher.publish_collision_object.call_args[0]
        assert object_id == "wall"
        assert descriptor["type"] == "box"
        assert np.allclose(descriptor["dimensions"], [0.02, 1.0, 1.0])
        assert pose.convention == EXTERNAL
        assert np.allclose(pose.position, [1.05, 0.0, 0.1])


class TestRegistrationResponse:
    """Test cases for validating and applying registration results."""

    @pytest.fixture
    def running(self, engine):
        prepare_clouds(engine)
        engine.run_guidance()
        return engine

    def test_identity_dispatches_current_pose(self, running, mock_registration, mock_motion, frame_store):
        respond_registration(running, mock_registration, identity_list())

        assert not running.registration_in_flight
        assert running.phase == GuidancePhase.AWAITING_MOTION
        assert running.statistics['corrections_applied'] == 1
        pose = mock_motion.move_to_pose.call_args[0][0]
        assert pose.convention == EXTERNAL
        assert np.allclose(pose.position, frame_store.tool_pose_base(EXTERNAL).position)

    @pytest.mark.parametrize("matrix", [
        None,
        list(range(15)),
        [float("nan")] + identity_list()[1:],
        np.diag([2.0, 1.0, 1.0, 1.0]).reshape(-1).tolist(),
        ["a"] * 16,
    ])
    def test_invalid_matrix_rejected(self, running, mock_registration, mock_motion, matrix):
        respond_registration(running, mock_registration, matrix)

        assert not running.registration_in_flight
        assert running.phase == GuidancePhase.IDLE
        assert running.statistics['corrections_rejected'] == 1
        assert running.last_correction is None
        mock_motion.move_to_pose.assert_not_called()

    def test_new_run_allowed_after_response(self, running, mock_registration):
        respond_registration(running, mock_registration, None)
        assert running.run_guidance() is True

    def test_motion_failure_returns_to_idle(self, running, mock_registration, mock_motion):
        respond_registration(running, mock_registration, identity_list())
        respond_motion(running, mock_motion, MotionResult(False, "no plan"))

        assert running.phase == GuidancePhase.IDLE

    def test_motion_success_waits_for_start(self, running, mock_registration, mock_motion):
        player = Mock()
        running.trajectory_player = player
        respond_registration(running, mock_registration, identity_list())
        respond_motion(running, mock_motion, MotionResult(True, "", [[0.0, 0.0, 0.0]]))

        assert running.phase == GuidancePhase.WAITING_FOR_MOTION_START
        player.load.assert_called_once_with([[0.0, 0.0, 0.0]])


class TestSettleDetection:
    """Test cases for waiting on the robot after an accepted move."""

    @pytest.fixture
    def accepted(self, engine, mock_registration, mock_motion):
        prepare_clouds(engine)
        engine.run_guidance()
        respond_registration(engine, mock_registration, identity_list())
        respond_motion(engine, mock_motion, MotionResult(True))
        return engine

    def test_start_timeout_then_stop_delay(self, accepted):
        dt = 0.1
        for _ in range(29):
            accepted.update(dt)
        assert accepted.phase == GuidancePhase.WAITING_FOR_MOTION_START

        for _ in range(3):
            accepted.update(dt)
        assert accepted.phase == GuidancePhase.WAITING_FOR_STOP

        for _ in range(10):
            accepted.update(dt)
        assert accepted.phase == GuidancePhase.IDLE
        assert accepted.statistics['residual_analyses'] == 1
        assert accepted.last_comparison.match_ratio == 1.0

    def test_motion_resets_stop_timer(self, accepted, robot, frame_store):
        accepted.update(0.1)
        robot.joint("joint_1").set_position(0.01)
        frame_store.tick()
        accepted.update(0.1)
        assert accepted.phase == GuidancePhase.WAITING_FOR_STOP

        for _ in range(4):
            accepted.update(0.1)
        robot.joint("joint_1").set_position(0.0)
        frame_store.tick()
        accepted.update(0.1)
        assert accepted.phase == GuidancePhase.WAITING_FOR_STOP

        for _ in range(7):
            accepted.update(0.1)
        assert accepted.phase == GuidancePhase.IDLE

    def test_status(self, accepted):
        status = accepted.get_status()
        assert status['phase'] == GuidancePhase.WAITING_FOR_MOTION_START.value
        assert status['mount_type'] == "hand_eye"
        assert status['statistics']['guidance_runs'] == 1
        assert 'last_position_gap' in status


class TestEndToEnd:
    """A full run: the registration service reports the true misalignment."""

    @pytest.mark.parametrize("mount_type", [MountType.HAND_EYE, MountType.BIRD_EYE])
    def test_guidance_recovers_master_pose(self, mount_type, sensor_config, robot, frame_store,
                                           wall_scene, control_queue, mock_registration, mock_motion):
        sensor_config.width = 10
        sensor_config.height = 10
        sensor_config.mount_type = mount_type
        if mount_type == MountType.BIRD_EYE:
            sensor_config.mount_position = (0.0, 0.1, 0.3)
        sensor = SimulatedRangeSensor(sensor_config, frame_store, wall_scene)
        engine = HandEyeCorrectionEngine(
            GuidanceConfig(), frame_store, sensor, control_queue,
            registration_client=mock_registration, motion_executor=mock_motion,
        )
        engine.compute_offset()

        master_tool_pose = frame_store.tool_pose_base(EXTERNAL)
        frame = sensor.cloud_frame
        T_world_frame_master = frame_store.frame(frame).transform
        sensor.capture_master()
        assert len(sensor.master) == 100

        # The part has shifted relative to the robot: the robot is now off
        robot.joint("joint_1").set_position(0.02)
        robot.joint("joint_2").set_position(-0.03)
        frame_store.tick()
        sensor.capture_scan()

        # ICP maps the scan onto the master, expressed in the cloud frame
        T_world_frame_now = frame_store.frame(frame).transform
        T_icp = invert_T(T_world_frame_master) @ T_world_frame_now

        assert engine.run_guidance() is True
        respond_registration(engine, mock_registration, T_icp.reshape(-1).tolist())

        target = mock_motion.move_to_pose.call_args[0][0]
        assert np.allclose(target.position, master_tool_pose.position, atol=1e-6)
        assert target.angle_to(master_tool_pose) < 1e-3

        # The motion executor brings the robot back to the master pose
        respond_motion(engine, mock_motion, MotionResult(True))
        engine.update(0.1)
        robot.joint("joint_1").set_position(0.0)
        robot.joint("joint_2").set_position(0.0)
        frame_store.tick()
        engine.update(0.1)
        assert engine.phase == GuidancePhase.WAITING_FOR_STOP
        for _ in range(9):
            engine.update(0.1)

        assert engine.phase == GuidancePhase.IDLE
        assert engine.last_comparison.match_ratio == 1.0
