"""
Control loop for the robot guidance simulator.

Wires the Frame Store, scene, range sensor, correction engine, joint guard,
velocity streamer and discrete I/O together and runs them from one fixed-rate
control thread. Other threads only reach the components through the control
queue.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .collision import CollisionMonitor, LinkCollisionSensor
from .discrete_io import DiscreteIOClient, SignalWatcher
from .dispatch import ControlQueue
from .errors import ConfigurationError
from .frame_store import FrameStore
from .guidance_engine import GuidanceConfig, HandEyeCorrectionEngine
from .joint_guard import GuardState, JogConfig, JointMotionGuard
from .pose_utils import EXTERNAL, euler_to_T
from .range_sensor import RangeSensorConfig, SimulatedRangeSensor
from .robot_model import RobotModel
from .scene import Scene
from .service_clients import (JsonLineConnection, TcpMotionExecutor,
                              TcpRegistrationClient, TcpTopicPublisher)
from .velocity_streamer import StreamerConfig, VelocityCommandStreamer


def _update_dataclass(instance, values: Dict[str, Any]):
    for key, value in values.items():
        if hasattr(instance, key):
            setattr(instance, key, value)
    return instance


@dataclass
class SystemConfig:
    """Configuration for the guidance simulator."""
    # Robot
    urdf_path: str = "guidance/config/robot.urdf"
    base_link: str = "base_link"
    tool_link: str = "tool0"
    fallback_tool_link: str = "wrist_3_link"
    override_joints: List[str] = field(default_factory=list)
    robot_position: tuple = (0.0, 0.0, 0.0)       # world, internal convention
    robot_rotation_deg: tuple = (0.0, 0.0, 0.0)
    initial_joint_positions: Dict[str, float] = field(default_factory=dict)
    collision_links: List[str] = field(default_factory=list)

    # Components
    sensor: RangeSensorConfig = field(default_factory=RangeSensorConfig)
    guidance: GuidanceConfig = field(default_factory=GuidanceConfig)
    jog: JogConfig = field(default_factory=JogConfig)
    streamer: StreamerConfig = field(default_factory=StreamerConfig)
    scene_objects: List[Dict[str, Any]] = field(default_factory=list)

    # External services
    services_enabled: bool = False
    services_host: str = "127.0.0.1"
    services_port: int = 9090
    services_timeout: float = 10.0
    registration_service: str = "/calculate_icp"
    motion_service: str = "/move_robot_to_pose"
    topics: Dict[str, str] = field(default_factory=dict)

    # Discrete I/O
    vision_signal_address: int = 0

    # Timing
    processing_rate: float = 30.0  # Hz
    trajectory_rate: float = 50.0  # trajectory points played per second

    base_dir: str = "."

    @classmethod
    def from_json(cls, config_file: str) -> 'SystemConfig':
        """
        Load configuration from JSON file.

        Args:
            config_file: Path to JSON configuration file

        Returns:
            SystemConfig instance
        """
        with open(config_file, 'r') as f:
            config_data = json.load(f)

        config = cls()
        config.base_dir = str(Path(config_file).resolve().parent)

        # Update robot settings
        robot_config = config_data.get('robot', {})
        config.urdf_path = robot_config.get('urdf', config.urdf_path)
        config.base_link = robot_config.get('base_link', config.base_link)
        config.tool_link = robot_config.get('tool_link', config.tool_link)
        config.fallback_tool_link = robot_config.get('fallback_tool_link', config.fallback_tool_link)
        config.override_joints = list(robot_config.get('override_joints', config.override_joints))
        config.robot_position = tuple(robot_config.get('position', config.robot_position))
        config.robot_rotation_deg = tuple(robot_config.get('rotation_deg', config.robot_rotation_deg))
        config.initial_joint_positions = dict(robot_config.get('initial_joint_positions', {}))
        config.collision_links = list(robot_config.get('collision_links', config.collision_links))

        # Update component settings
        config.sensor = RangeSensorConfig.from_dict(config_data.get('sensor', {}))
        _update_dataclass(config.guidance, config_data.get('guidance', {}))
        _update_dataclass(config.jog, config_data.get('jog', {}))
        _update_dataclass(config.streamer, config_data.get('streamer', {}))
        config.scene_objects = list(config_data.get('scene', {}).get('objects', []))

        # Update service settings
        services_config = config_data.get('services', {})
        config.services_enabled = services_config.get('enabled', config.services_enabled)
        config.services_host = services_config.get('host', config.services_host)
        config.services_port = services_config.get('port', config.services_port)
        config.services_timeout = services_config.get('timeout', config.services_timeout)
        config.registration_service = services_config.get('registration_service', config.registration_service)
        config.motion_service = services_config.get('motion_service', config.motion_service)
        config.topics = dict(services_config.get('topics', {}))

        # Update I/O settings
        io_config = config_data.get('io', {})
        config.vision_signal_address = io_config.get('vision_signal_address', config.vision_signal_address)

        # Update processing settings
        processing_config = config_data.get('processing', {})
        config.processing_rate = processing_config.get('rate', config.processing_rate)
        config.trajectory_rate = processing_config.get('trajectory_rate', config.trajectory_rate)

        if config.processing_rate <= 0:
            raise ConfigurationError(f"processing.rate must be positive, got {config.processing_rate}")
        return config

    def resolve(self, path: str) -> str:
        p = Path(path)
        if p.is_absolute() or p.exists():
            return str(p)
        return str(Path(self.base_dir) / p)


class TrajectoryPlayer:
    """Plays joint trajectories returned by the motion service onto the model."""

    def __init__(self, frame_store: FrameStore, rate: float = 50.0):
        self.frame_store = frame_store
        self.rate = rate
        self.logger = logging.getLogger(__name__)
        self._points: List[np.ndarray] = []
        self._elapsed = 0.0

    @property
    def active(self) -> bool:
        return bool(self._points)

    def load(self, trajectory: Sequence[Sequence[float]]):
        count = self.frame_store.joint_count
        points = [np.asarray(p, dtype=float) for p in trajectory]
        if any(len(p) != count for p in points):
            self.logger.error(f"Trajectory points must have {count} joint values; ignoring trajectory")
            return
        self._points = points
        self._elapsed = 0.0
        self.logger.info(f"Playing trajectory with {len(points)} points")

    def step(self, dt: float):
        if not self._points:
            return
        self._elapsed += dt
        index = min(int(self._elapsed * self.rate), len(self._points) - 1)
        for joint, value in zip(self.frame_store.joints, self._points[index]):
            joint.set_position(value)
        if index == len(self._points) - 1:
            self._points = []


class ControlLoop:
    """
    Owns every component and runs the fixed-order control tick.
    """

    def __init__(self, config: SystemConfig, frame_store: FrameStore, scene: Scene,
                 sensor: SimulatedRangeSensor, engine: HandEyeCorrectionEngine,
                 guard: JointMotionGuard, streamer: VelocityCommandStreamer,
                 control_queue: ControlQueue, collision_monitor: CollisionMonitor,
                 trajectory_player: Optional[TrajectoryPlayer] = None,
                 signal_watcher: Optional[SignalWatcher] = None,
                 connection: Optional[JsonLineConnection] = None):
        self.config = config
        self.frame_store = frame_store
        self.scene = scene
        self.sensor = sensor
        self.engine = engine
        self.guard = guard
        self.streamer = streamer
        self.control_queue = control_queue
        self.collision_monitor = collision_monitor
        self.trajectory_player = trajectory_player
        self.signal_watcher = signal_watcher
        self.connection = connection
        self.logger = logging.getLogger(__name__)

        self._jog_lock = threading.Lock()
        self._pending_jog: Optional[tuple] = None

        self.running = False
        self._thread: Optional[threading.Thread] = None
        self.tick_count = 0
        self.system_statistics = {
            'ticks': 0,
            'queued_calls': 0,
            'jogs_committed': 0,
            'jogs_rolled_back': 0,
            'vision_triggers': 0,
        }

    @classmethod
    def from_config(cls, config: SystemConfig, io_client: Optional[DiscreteIOClient] = None) -> 'ControlLoop':
        logger = logging.getLogger(__name__)
        root_transform = euler_to_T(config.robot_position, config.robot_rotation_deg)
        robot = RobotModel.from_urdf(config.resolve(config.urdf_path), root_transform)
        for name, value in config.initial_joint_positions.items():
            joint = robot.joint(name)
            if joint is None:
                logger.warning(f"Initial position given for unknown joint {name}")
                continue
            joint.set_position(value)

        frame_store = FrameStore(robot, config.tool_link, config.fallback_tool_link, config.base_link)
        frame_store.initialize(config.override_joints or None)

        scene = Scene.from_config(config.scene_objects, config.base_dir)
        sensor_config = config.sensor
        sensor_config.master_path = config.resolve(sensor_config.master_path)
        sensor = SimulatedRangeSensor(sensor_config, frame_store, scene)
        frame_store.tick()
        sensor.load_master()

        connection = None
        registration = motion = publisher = None
        if config.services_enabled:
            connection = JsonLineConnection(config.services_host, config.services_port, config.services_timeout)
            registration = TcpRegistrationClient(connection, config.registration_service)
            motion = TcpMotionExecutor(connection, config.motion_service)
            publisher = TcpTopicPublisher(connection, config.topics)

        links = config.collision_links or [j.child for j in frame_store.joints]
        collision_monitor = CollisionMonitor([LinkCollisionSensor(link) for link in links])

        control_queue = ControlQueue()
        player = TrajectoryPlayer(frame_store, config.trajectory_rate)
        engine = HandEyeCorrectionEngine(
            config.guidance, frame_store, sensor, control_queue,
            registration_client=registration, motion_executor=motion,
            collision_publisher=publisher, scene=scene, trajectory_player=player,
        )
        engine.compute_offset()

        guard = JointMotionGuard(config.jog, frame_store, collision_monitor,
                                 joint_publisher=publisher, jog_publisher=publisher)
        streamer = VelocityCommandStreamer(config.streamer, frame_store,
                                           twist_publisher=publisher, jog_publisher=publisher)
        watcher = SignalWatcher(io_client, config.vision_signal_address) if io_client else None

        return cls(config, frame_store, scene, sensor, engine, guard, streamer, control_queue,
                   collision_monitor, player, watcher, connection)

    # input from other threads

    def jog_joint(self, index: int, direction: float):
        """Request a jog step; consumed by the next tick."""
        with self._jog_lock:
            self._pending_jog = (int(index), float(direction))

    def request_guidance(self):
        self.control_queue.post(self.engine.run_guidance)

    def request_master_capture(self):
        self.control_queue.post(self.engine.capture_master)

    def request_scan_capture(self):
        self.control_queue.post(self.sensor.capture_scan)

    # control thread

    def tick(self, dt: float):
        # Simulated joint feedback from an executing trajectory
        if self.trajectory_player is not None:
            self.trajectory_player.step(dt)

        # 1. Frame Store
        self.frame_store.tick()
        self.guard.sync_from_actual()

        # 2. Motion invalidation
        self.engine.check_motion()

        # 3. Queued calls (registration responses, motion results, requests)
        if self.connection is not None:
            self.connection.expire_pending()
        self.system_statistics['queued_calls'] += self.control_queue.drain()

        # 4. Settle detection
        self.engine.update(dt)

        # 5. Pending jog
        with self._jog_lock:
            pending, self._pending_jog = self._pending_jog, None
        if pending is not None:
            state = self.guard.jog(pending[1], dt, index=pending[0])
            key = 'jogs_rolled_back' if state == GuardState.ROLLED_BACK else 'jogs_committed'
            self.system_statistics[key] += 1

        # 6. Velocity streaming
        self.streamer.tick()

        # 7. Discrete I/O
        if self.signal_watcher is not None and self.signal_watcher.poll():
            self.system_statistics['vision_triggers'] += 1
            self.logger.info("Vision signal received; capturing scan and running guidance")
            self.sensor.capture_scan()
            self.engine.run_guidance()

        self.tick_count += 1
        self.system_statistics['ticks'] = self.tick_count

    def start(self) -> bool:
        if self.running:
            return True
        try:
            if self.connection is not None:
                self.connection.connect()
            self.running = True
            self._thread = threading.Thread(target=self._run_loop, daemon=True)
            self._thread.start()
            self.logger.info(f"Control loop started at {self.config.processing_rate} Hz")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start control loop: {e}")
            self.running = False
            return False

    def stop(self):
        self.logger.info("Stopping control loop")
        self.running = False
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self.connection is not None:
            self.connection.close()
        self.logger.info("Control loop stopped")

    def _run_loop(self):
        period = 1.0 / self.config.processing_rate
        last = time.monotonic()
        while self.running:
            start = time.monotonic()
            try:
                self.tick(start - last)
            except Exception as e:
                self.logger.error(f"Control tick failed: {e}")
            last = start
            elapsed = time.monotonic() - start
            time.sleep(max(0.0, period - elapsed))

    def get_system_status(self) -> Dict[str, Any]:
        tool = self.frame_store.tool_pose_base(EXTERNAL)
        return {
            'running': self.running,
            'joint_names': self.frame_store.joint_names,
            'joint_angles_deg': [round(float(a), 3) for a in self.frame_store.joint_angles_degrees],
            'tool_position_base': [round(float(v), 5) for v in tool.position],
            'colliding_links': self.collision_monitor.colliding_links(),
            'guard_state': self.guard.state.value,
            'guidance': self.engine.get_status(),
            'statistics': self.system_statistics.copy(),
        }
