"""
Hand-eye correction engine.

Aligns the robot tool to the pose it had when the master cloud was captured:
the scan and master clouds go to an external registration service, the
returned transform is turned into a tool target in the base frame, and the
target is handed to the motion executor. After an accepted move the engine
waits for the robot to settle, captures a fresh scan and compares it with the
master.

Transforms are world-from-frame in the internal convention unless noted.
Registration results are assumed to be expressed in the cloud frame (sensor
for a hand-eye mount, tool for a bird-eye mount).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import numpy as np

from .dispatch import ControlQueue
from .frame_store import BASE_FRAME, TOOL_FRAME, FrameStore
from .point_cloud import ComparisonResult, compare_clouds, to_wire
from .pose_utils import (EXTERNAL, INTERNAL, Pose, convert_pose, invert_T,
                         is_rigid_transform, rotation_angle_deg)
from .range_sensor import SENSOR_FRAME, MountType, SimulatedRangeSensor
from .scene import Scene, shape_descriptor
from .service_clients import (CollisionObjectPublisher, MotionExecutor,
                              MotionResult, RegistrationClient)


@dataclass
class GuidanceConfig:
    scan_clear_distance: float = 0.005    # meters
    scan_clear_angle_deg: float = 0.1
    moving_distance: float = 0.0001       # per tick
    moving_angle_deg: float = 0.01        # per tick
    stop_delay: float = 0.6               # seconds still before the final scan
    start_timeout: float = 3.0            # seconds to wait for motion to begin
    error_threshold: float = 0.002        # residual analysis tolerance, meters
    include_normals: bool = False
    include_colors: bool = False
    sync_scene_before_run: bool = True


class GuidancePhase(Enum):
    IDLE = "idle"
    AWAITING_REGISTRATION = "awaiting_registration"
    AWAITING_MOTION = "awaiting_motion"
    WAITING_FOR_MOTION_START = "waiting_for_motion_start"
    WAITING_FOR_STOP = "waiting_for_stop"


@dataclass
class CorrectionResult:
    T_icp: np.ndarray
    T_tool_current: np.ndarray   # world
    T_tool_target: np.ndarray    # world
    target_pose: Pose            # tool in base frame, external convention
    position_gap: float          # meters
    rotation_gap_deg: float


class HandEyeCorrectionEngine:
    def __init__(self, config: GuidanceConfig, frame_store: FrameStore,
                 sensor: SimulatedRangeSensor, control_queue: ControlQueue,
                 registration_client: Optional[RegistrationClient] = None,
                 motion_executor: Optional[MotionExecutor] = None,
                 collision_publisher: Optional[CollisionObjectPublisher] = None,
                 scene: Optional[Scene] = None,
                 trajectory_player=None):
        self.config = config
        self.frame_store = frame_store
        self.sensor = sensor
        self.control_queue = control_queue
        self.registration_client = registration_client
        self.motion_executor = motion_executor
        self.collision_publisher = collision_publisher
        self.scene = scene
        self.trajectory_player = trajectory_player
        self.logger = logging.getLogger(__name__)

        self.T_tool_sensor = np.eye(4)
        self.phase = GuidancePhase.IDLE
        self._registration_in_flight = False

        self._last_observed: Optional[Pose] = None
        self._previous_tick: Optional[Pose] = None
        self._start_wait_timer = 0.0
        self._stop_timer = 0.0

        self.last_correction: Optional[CorrectionResult] = None
        self.last_comparison: Optional[ComparisonResult] = None
        self.statistics = {
            'guidance_runs': 0,
            'corrections_applied': 0,
            'corrections_rejected': 0,
            'scans_invalidated': 0,
            'residual_analyses': 0,
        }

    @property
    def registration_in_flight(self) -> bool:
        return self._registration_in_flight

    def compute_offset(self) -> np.ndarray:
        """Static tool-to-sensor offset from the current frames."""
        T_world_tool = self.frame_store.frame(TOOL_FRAME).transform
        T_world_sensor = self.frame_store.frame(SENSOR_FRAME).transform
        self.T_tool_sensor = invert_T(T_world_tool) @ T_world_sensor
        self.logger.info(f"Hand-eye offset: {np.round(self.T_tool_sensor[:3, 3], 4)}")
        return self.T_tool_sensor

    def check_motion(self) -> bool:
        """Clear the scan once the tool has moved past the thresholds.

        Displacement accumulates against the last pose at which the scan was
        cleared, so slow motion still invalidates the scan eventually.
        """
        current = self.frame_store.tool_pose_world()
        if self._last_observed is None:
            self._last_observed = current
            return False

        dist = current.distance_to(self._last_observed)
        angle = current.angle_to(self._last_observed)
        if dist > self.config.scan_clear_distance or angle > self.config.scan_clear_angle_deg:
            self.sensor.clear_scan()
            self._last_observed = current
            self.statistics['scans_invalidated'] += 1
            self.logger.debug(f"Scan invalidated (moved {dist * 1000:.2f} mm, {angle:.3f} deg)")
            return True
        return False

    def capture_master(self):
        master = self.sensor.capture_master()
        self.logger.info(f"Master captured with {len(master)} points in '{master.frame}' frame")
        return master

    def sync_scene(self) -> int:
        """Publish every scene collision object to the planner, relative to the base."""
        if self.collision_publisher is None or self.scene is None:
            return 0
        T_base_world = self.frame_store.world_to_frame(BASE_FRAME)
        count = 0
        for obj in self.scene.collision_objects():
            pose = Pose.from_matrix(T_base_world @ obj.transform, BASE_FRAME, obj.name, INTERNAL)
            try:
                self.collision_publisher.publish_collision_object(
                    obj.name, shape_descriptor(obj.shape), convert_pose(pose, EXTERNAL)
                )
                count += 1
            except Exception as e:
                self.logger.error(f"Failed to publish collision object {obj.name}: {e}")
        self.logger.info(f"Synced {count} collision objects")
        return count

    def run_guidance(self) -> bool:
        if self._registration_in_flight:
            self.logger.warning("Registration already in flight; ignoring guidance request")
            return False
        if self.registration_client is None or self.motion_executor is None:
            self.logger.error("Guidance needs a registration client and a motion executor")
            return False

        master = self.sensor.master
        scan = self.sensor.scan
        if master.is_empty or scan.is_empty:
            self.logger.warning(
                f"Cannot run guidance: master has {len(master)} points, scan has {len(scan)}"
            )
            return False

        if self.config.sync_scene_before_run:
            self.sync_scene()

        master_wire = to_wire(master, self.config.include_normals, self.config.include_colors)
        scan_wire = to_wire(scan, self.config.include_normals, self.config.include_colors)

        self._registration_in_flight = True
        self.phase = GuidancePhase.AWAITING_REGISTRATION
        self.statistics['guidance_runs'] += 1
        try:
            self.registration_client.request_registration(master_wire, scan_wire, self._on_registration_response)
        except Exception as e:
            self.logger.error(f"Registration request failed: {e}")
            self._registration_in_flight = False
            self.phase = GuidancePhase.IDLE
            return False

        self.logger.info(f"Registration requested ({len(scan)} scan / {len(master)} master points)")
        return True

    def _on_registration_response(self, matrix_data):
        # Transport thread: hand over to the control thread only
        self.control_queue.post(self.handle_registration_response, matrix_data)

    def _on_motion_result(self, result: MotionResult):
        self.control_queue.post(self.handle_motion_result, result)

    def handle_registration_response(self, matrix_data) -> Optional[CorrectionResult]:
        """Validate a registration result and dispatch the corrected tool pose."""
        self._registration_in_flight = False

        T_icp = self._parse_matrix(matrix_data)
        if T_icp is None:
            self.statistics['corrections_rejected'] += 1
            self.phase = GuidancePhase.IDLE
            return None

        result = self.compute_tool_target(T_icp)
        self.apply_correction(result)
        return result

    def _parse_matrix(self, matrix_data) -> Optional[np.ndarray]:
        if matrix_data is None:
            self.logger.warning("Registration failed or timed out")
            return None
        try:
            values = np.asarray(matrix_data, dtype=float).reshape(-1)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Registration returned non-numeric data: {e}")
            return None
        if values.size != 16 or not np.all(np.isfinite(values)):
            self.logger.error(f"Registration returned invalid matrix ({values.size} values)")
            return None
        T = values.reshape(4, 4)
        if not is_rigid_transform(T):
            self.logger.error("Registration returned a non-rigid transform")
            return None
        return T

    def compute_tool_target(self, T_icp: np.ndarray) -> CorrectionResult:
        T_world_tool = self.frame_store.frame(TOOL_FRAME).transform
        if self.sensor.config.mount_type == MountType.HAND_EYE:
            T_world_sensor = self.frame_store.frame(SENSOR_FRAME).transform
            T_sensor_target = T_world_sensor @ invert_T(T_icp)
            T_tool_target = T_sensor_target @ invert_T(self.T_tool_sensor)
        else:
            T_tool_target = T_world_tool @ invert_T(T_icp)

        T_base_target = self.frame_store.world_to_frame(BASE_FRAME) @ T_tool_target
        target = Pose.from_matrix(T_base_target, BASE_FRAME, TOOL_FRAME, INTERNAL)
        return CorrectionResult(
            T_icp=T_icp,
            T_tool_current=T_world_tool,
            T_tool_target=T_tool_target,
            target_pose=convert_pose(target, EXTERNAL),
            position_gap=float(np.linalg.norm(T_tool_target[:3, 3] - T_world_tool[:3, 3])),
            rotation_gap_deg=rotation_angle_deg(T_world_tool[:3, :3], T_tool_target[:3, :3]),
        )

    def apply_correction(self, result: CorrectionResult):
        self.last_correction = result
        self.statistics['corrections_applied'] += 1
        self.phase = GuidancePhase.AWAITING_MOTION
        self.logger.info(
            f"Correction gap: {result.position_gap * 1000:.2f} mm, {result.rotation_gap_deg:.3f} deg; "
            f"target {np.round(result.target_pose.position, 4)}"
        )
        try:
            self.motion_executor.move_to_pose(result.target_pose, self._on_motion_result)
        except Exception as e:
            self.logger.error(f"Failed to dispatch motion: {e}")
            self.phase = GuidancePhase.IDLE

    def handle_motion_result(self, result: MotionResult):
        if result.success:
            self.logger.info("Guidance move accepted; waiting for the robot to move and stop")
            if result.trajectory and self.trajectory_player is not None:
                self.trajectory_player.load(result.trajectory)
            self.phase = GuidancePhase.WAITING_FOR_MOTION_START
            self._start_wait_timer = 0.0
            self._stop_timer = 0.0
        else:
            self.logger.warning(f"Motion planning failed: {result.message}")
            self.phase = GuidancePhase.IDLE

    def update(self, dt: float):
        """Per-tick settle detection after an accepted move."""
        current = self.frame_store.tool_pose_world()
        previous = self._previous_tick
        self._previous_tick = current
        if previous is None:
            return

        moving = (current.distance_to(previous) > self.config.moving_distance
                  or current.angle_to(previous) > self.config.moving_angle_deg)

        if self.phase == GuidancePhase.WAITING_FOR_MOTION_START:
            if moving:
                self.logger.info("Robot movement detected")
                self.phase = GuidancePhase.WAITING_FOR_STOP
            else:
                self._start_wait_timer += dt
                if self._start_wait_timer >= self.config.start_timeout:
                    self.logger.warning("Robot did not start moving in time; proceeding to analysis")
                    self.phase = GuidancePhase.WAITING_FOR_STOP

        if self.phase == GuidancePhase.WAITING_FOR_STOP:
            if moving:
                self._stop_timer = 0.0
            else:
                self._stop_timer += dt
                if self._stop_timer >= self.config.stop_delay:
                    self.complete_guidance()

    def complete_guidance(self) -> ComparisonResult:
        self.phase = GuidancePhase.IDLE
        self._start_wait_timer = 0.0
        self._stop_timer = 0.0

        scan = self.sensor.capture_scan()
        self.last_comparison = compare_clouds(scan, self.sensor.master, self.config.error_threshold)
        self.statistics['residual_analyses'] += 1
        self.logger.info(
            f"Guidance complete: {self.last_comparison.match_ratio * 100:.1f}% of points within "
            f"{self.config.error_threshold * 1000:.1f} mm (mean error "
            f"{self.last_comparison.mean_error * 1000:.2f} mm)"
        )
        return self.last_comparison

    def get_status(self) -> Dict:
        status = {
            'phase': self.phase.value,
            'registration_in_flight': self._registration_in_flight,
            'mount_type': self.sensor.config.mount_type.value,
            'master_points': len(self.sensor.master),
            'scan_points': len(self.sensor.scan),
            'statistics': dict(self.statistics),
        }
        if self.last_correction is not None:
            status['last_position_gap'] = self.last_correction.position_gap
        if self.last_comparison is not None:
            status['last_match_ratio'] = self.last_comparison.match_ratio
        return status
