"""
Tests for pose utilities and axis convention conversions.
"""
import pytest
import numpy as np
from scipy.spatial.transform import Rotation as R

from guidance.correction.errors import FrameMismatchError
from guidance.correction.pose_utils import (
    Pose, INTERNAL, EXTERNAL,
    pose_to_T, euler_to_T, invert_T, transform_points,
    rotation_angle_deg, is_rigid_transform,
    internal_to_external_vector, external_to_internal_vector,
    internal_to_external_angular,
    convert_pose, convert_transform, internal_to_external, external_to_internal,
)


def random_pose(seed, convention=INTERNAL, frame="base", child_frame="tool"):
    rng = np.random.default_rng(seed)
    return Pose(rng.uniform(-1.0, 1.0, 3), rng.normal(size=4),
                frame, child_frame, convention)


class TestPose:
    """Test cases for the Pose dataclass."""

    def test_pose_creation_normalizes_orientation(self):
        """Orientation is stored as a unit quaternion."""
        pose = Pose(np.array([1.0, 2.0, 3.0]), np.array([0.0, 0.0, 0.0, 2.0]))

        assert np.allclose(pose.orientation, [0.0, 0.0, 0.0, 1.0])
        assert pose.frame == "base"
        assert pose.convention == INTERNAL

    def test_zero_quaternion_rejected(self):
        with pytest.raises(ValueError):
            Pose(np.zeros(3), np.zeros(4))

    def test_matrix_round_trip(self):
        pose = random_pose(3)
        again = Pose.from_matrix(pose.to_matrix(), pose.frame, pose.child_frame)

        assert np.allclose(again.position, pose.position)
        assert pose.angle_to(again) < 1e-4

    def test_inverse_swaps_frames(self):
        pose = random_pose(4)
        inv = pose.inverse()

        assert inv.frame == "tool"
        assert inv.child_frame == "base"
        assert np.allclose(pose.to_matrix() @ inv.to_matrix(), np.eye(4), atol=1e-9)

    def test_compose_chains_frames(self):
        base_tool = Pose(np.array([0.0, 0.0, 1.0]), np.array([0.0, 0.0, 0.0, 1.0]), "base", "tool")
        tool_sensor = Pose(np.array([0.1, 0.0, 0.0]), np.array([0.0, 0.0, 0.0, 1.0]), "tool", "sensor")

        base_sensor = base_tool.compose(tool_sensor)

        assert base_sensor.frame == "base"
        assert base_sensor.child_frame == "sensor"
        assert np.allclose(base_sensor.position, [0.1, 0.0, 1.0])

    def test_compose_rejects_frame_mismatch(self):
        base_tool = Pose.identity("base", "tool")
        other = Pose.identity("sensor", "target")

        with pytest.raises(FrameMismatchError):
            base_tool.compose(other)

    def test_compose_rejects_convention_mismatch(self):
        a = Pose.identity("base", "tool", INTERNAL)
        b = Pose.identity("tool", "sensor", EXTERNAL)

        with pytest.raises(FrameMismatchError):
            a.compose(b)

    def test_distance_and_angle(self):
        a = Pose.identity()
        b = Pose(np.array([0.3, 0.4, 0.0]), R.from_euler('z', 10, degrees=True).as_quat())

        assert a.distance_to(b) == pytest.approx(0.5)
        assert a.angle_to(b) == pytest.approx(10.0)


class TestTransforms:
    """Test cases for the SE3 helpers."""

    def test_invert_T(self):
        T = euler_to_T([0.1, -0.2, 0.3], [10.0, 20.0, 30.0])
        assert np.allclose(T @ invert_T(T), np.eye(4))

    def test_pose_to_T_identity(self):
        T = pose_to_T(np.zeros(3), np.array([0.0, 0.0, 0.0, 1.0]))
        assert np.allclose(T, np.eye(4))

    def test_transform_points(self):
        T = euler_to_T([1.0, 0.0, 0.0], [0.0, 0.0, 90.0])
        points = transform_points(T, np.array([[1.0, 0.0, 0.0]]))
        assert np.allclose(points, [[1.0, 1.0, 0.0]])

    def test_rotation_angle_deg(self):
        R1 = np.eye(3)
        R2 = R.from_euler('x', 45, degrees=True).as_matrix()
        assert rotation_angle_deg(R1, R2) == pytest.approx(45.0)

    @pytest.mark.parametrize("T,expected", [
        (np.eye(4), True),
        (euler_to_T([1.0, 2.0, 3.0], [30.0, 0.0, 0.0]), True),
        (np.diag([2.0, 1.0, 1.0, 1.0]), False),
        (np.diag([-1.0, 1.0, 1.0, 1.0]), False),
        (np.full((4, 4), np.nan), False),
    ])
    def test_is_rigid_transform(self, T, expected):
        assert is_rigid_transform(T) is expected


class TestAxisConventions:
    """Test cases for internal (x right, y up, z forward) vs external (X forward, Y left, Z up)."""

    @pytest.mark.parametrize("internal,external", [
        ([0.0, 0.0, 1.0], [1.0, 0.0, 0.0]),   # forward
        ([1.0, 0.0, 0.0], [0.0, -1.0, 0.0]),  # right
        ([0.0, 1.0, 0.0], [0.0, 0.0, 1.0]),   # up
        ([1.0, 2.0, 3.0], [3.0, -1.0, 2.0]),
    ])
    def test_vector_mapping(self, internal, external):
        assert np.allclose(internal_to_external_vector(internal), external)
        assert np.allclose(external_to_internal_vector(external), internal)

    def test_angular_velocity_flips_sign(self):
        # A yaw about "up" reverses handedness between the two conventions
        assert np.allclose(internal_to_external_angular([0.0, 1.0, 0.0]), [0.0, 0.0, -1.0])

    @pytest.mark.parametrize("seed", range(5))
    def test_pose_conversion_matches_transform_conversion(self, seed):
        pose = random_pose(seed)

        external = convert_pose(pose, EXTERNAL)
        expected = convert_transform(pose.to_matrix(), EXTERNAL)

        assert external.convention == EXTERNAL
        assert np.allclose(external.to_matrix(), expected, atol=1e-9)

    @pytest.mark.parametrize("seed", range(5))
    def test_round_trip(self, seed):
        pose = random_pose(seed)
        back = external_to_internal(internal_to_external(pose))

        assert np.allclose(back.position, pose.position)
        assert back.angle_to(pose) < 1e-4
        assert back.frame == pose.frame
        assert back.child_frame == pose.child_frame

    @pytest.mark.parametrize("convention", [INTERNAL, EXTERNAL])
    def test_conversion_is_idempotent(self, convention):
        pose = convert_pose(random_pose(7), convention)
        again = convert_pose(pose, convention)

        assert again is not pose
        assert np.allclose(again.position, pose.position)
        assert np.allclose(again.orientation, pose.orientation)

    def test_unknown_convention_rejected(self):
        with pytest.raises(ValueError):
            convert_pose(Pose.identity(), "sideways")
        with pytest.raises(ValueError):
            convert_transform(np.eye(4), "sideways")

    def test_transform_conversion_keeps_rotation_proper(self):
        T = euler_to_T([0.1, 0.2, 0.3], [15.0, -25.0, 40.0])
        converted = convert_transform(T, EXTERNAL)

        assert is_rigid_transform(converted)
        assert np.allclose(convert_transform(converted, INTERNAL), T)
