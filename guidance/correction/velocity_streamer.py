"""
Velocity Command Streamer.

Turns directional input into velocity commands streamed every tick. Input
must keep arriving: once nothing has come in for the deadman window a single
zero command is sent and streaming stops until the next input.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from .frame_store import FrameStore
from .pose_utils import internal_to_external_angular, internal_to_external_vector
from .service_clients import JointJogPublisher, TwistPublisher


@dataclass
class StreamerConfig:
    linear_speed: float = 0.2      # m/s
    angular_speed: float = 0.5     # rad/s
    joint_speed: float = 0.5       # rad/s
    speed_multiplier: float = 1.0
    deadman_window: float = 0.05   # seconds
    limit_clipping: bool = True
    limit_buffer: float = 0.01     # radians


class VelocityCommandStreamer:
    def __init__(self, config: StreamerConfig, frame_store: Optional[FrameStore] = None,
                 twist_publisher: Optional[TwistPublisher] = None,
                 jog_publisher: Optional[JointJogPublisher] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.frame_store = frame_store
        self.twist_publisher = twist_publisher
        self.jog_publisher = jog_publisher
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.speed_multiplier = config.speed_multiplier
        self.linear = np.zeros(3)
        self.angular = np.zeros(3)
        self.joint_index = -1
        self.joint_velocity = 0.0
        self.joint_mode = False
        self.last_input_time = float("-inf")
        self.stopped = True
        self._clipping = False

    def set_speed_multiplier(self, value: float):
        self.speed_multiplier = max(0.0, float(value))

    def set_direction(self, linear: Sequence[float], angular: Sequence[float]):
        """Cartesian input in the internal convention, components in [-1, 1]."""
        self.joint_mode = False
        self.linear = np.asarray(linear, dtype=float).reshape(3) * self.config.linear_speed * self.speed_multiplier
        self.angular = np.asarray(angular, dtype=float).reshape(3) * self.config.angular_speed * self.speed_multiplier
        self.last_input_time = self.clock()

    def set_joint_direction(self, index: int, direction: float):
        self.joint_mode = True
        self.joint_index = int(index)
        self.joint_velocity = float(direction) * self.config.joint_speed * self.speed_multiplier
        self.last_input_time = self.clock()

    def tick(self, now: Optional[float] = None) -> bool:
        """Stream the current command; returns True if anything was sent."""
        now = self.clock() if now is None else now
        if now - self.last_input_time > self.config.deadman_window:
            if not self.stopped:
                self._send_stop()
                return True
            return False

        if self.joint_mode:
            if self.jog_publisher is None or self.joint_index < 0:
                return False
            names = self.frame_store.joint_names if self.frame_store else []
            if self.joint_index >= len(names):
                self.logger.warning(f"Joint index {self.joint_index} out of range")
                return False
            self.jog_publisher.publish_jog(names[self.joint_index], self._clipped_joint_velocity())
        else:
            if self.twist_publisher is None:
                return False
            self.twist_publisher.publish_twist(
                internal_to_external_vector(self.linear).tolist(),
                internal_to_external_angular(self.angular).tolist(),
            )
        self.stopped = False
        return True

    def _clipped_joint_velocity(self) -> float:
        velocity = self.joint_velocity
        if not self.config.limit_clipping or self.frame_store is None:
            return velocity
        i = self.joint_index
        if self.frame_store.is_continuous(i):
            return velocity

        angle = self.frame_store.joint_angles[i]
        lower, upper = self.frame_store.joint_limits[i]
        buffer = self.config.limit_buffer
        at_limit = (velocity > 0 and angle >= upper - buffer) or (velocity < 0 and angle <= lower + buffer)
        if at_limit:
            if not self._clipping:
                self.logger.warning(f"Joint limit reached on {self.frame_store.joint_names[i]}")
            self._clipping = True
            return 0.0
        self._clipping = False
        return velocity

    def _send_stop(self):
        if self.joint_mode:
            if self.jog_publisher is not None and self.frame_store is not None \
                    and 0 <= self.joint_index < self.frame_store.joint_count:
                self.jog_publisher.publish_jog(self.frame_store.joint_names[self.joint_index], 0.0)
        elif self.twist_publisher is not None:
            self.twist_publisher.publish_twist([0.0, 0.0, 0.0], [0.0, 0.0, 0.0])

        self.linear = np.zeros(3)
        self.angular = np.zeros(3)
        self.joint_velocity = 0.0
        self.joint_index = -1
        self.stopped = True
        self.logger.debug("Deadman window elapsed; stopped")
