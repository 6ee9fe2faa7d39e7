"""
Joint Motion Guard: collision-gated joint jogging with rollback.

Each jog is applied speculatively. If any link reports a collision afterwards
the joint vector is restored from the snapshot taken just before the move.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

import numpy as np

from .collision import CollisionMonitor
from .frame_store import FrameStore
from .service_clients import JointCommandPublisher, JointJogPublisher


def wrap_angle(angle: float) -> float:
    """Wrap into (-pi, pi]."""
    return float(np.pi - (np.pi - angle) % (2.0 * np.pi))


class GuardState(Enum):
    IDLE = "idle"
    SPECULATIVE_MOVE = "speculative_move"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class JogConfig:
    rotation_speed_deg: float = 30.0  # degrees per second
    auto_publish: bool = True
    publish_frequency: float = 20.0   # Hz


class JointMotionGuard:
    def __init__(self, config: JogConfig, frame_store: FrameStore, collision_monitor: CollisionMonitor,
                 joint_publisher: Optional[JointCommandPublisher] = None,
                 jog_publisher: Optional[JointJogPublisher] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.frame_store = frame_store
        self.collision_monitor = collision_monitor
        self.joint_publisher = joint_publisher
        self.jog_publisher = jog_publisher
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        n = frame_store.joint_count
        self.current = np.zeros(n)
        self.previous = np.zeros(n)
        self.selected_index = 0
        self.state = GuardState.IDLE
        self._last_publish_time = float("-inf")
        self.sync_from_actual()

    @property
    def rate(self) -> float:
        return float(np.radians(self.config.rotation_speed_deg))

    def select_joint(self, index: int) -> int:
        count = len(self.current)
        self.selected_index = int(min(max(index, 0), max(count - 1, 0)))
        return self.selected_index

    def sync_from_actual(self):
        """Mirror the Frame Store readings into the committed vector."""
        angles = self.frame_store.joint_angles
        if len(angles) != len(self.current):
            self.previous = angles.copy()
        self.current = angles

    def _clamp(self, index: int, value: float) -> float:
        lower, upper = self.frame_store.joint_limits[index]
        return float(min(max(value, lower), upper))

    def set_joint_configuration(self, positions: Sequence[float]) -> bool:
        """Drive every joint to the given vector; limited joints are clamped."""
        positions = np.asarray(positions, dtype=float).reshape(-1)
        if len(positions) != len(self.current):
            self.logger.warning(f"Joint count mismatch: expected {len(self.current)}, got {len(positions)}")
            return False
        for i, joint in enumerate(self.frame_store.joints):
            value = positions[i] if self.frame_store.is_continuous(i) else self._clamp(i, positions[i])
            if joint.supports_absolute:
                joint.set_position(value)
            else:
                joint.apply_delta(value - joint.get_position())
            self.current[i] = value
        return True

    def jog(self, direction: float, dt: float, index: Optional[int] = None) -> GuardState:
        """Move one joint by direction * rate * dt, rolling back on collision."""
        if index is not None:
            self.select_joint(index)
        if len(self.current) == 0:
            self.logger.warning("No joints to jog")
            return self.state

        i = self.selected_index
        joint = self.frame_store.joints[i]
        delta = float(direction) * self.rate * float(dt)

        self.previous = self.current.copy()
        self.state = GuardState.SPECULATIVE_MOVE
        target = wrap_angle(self.current[i] + delta)
        if not self.frame_store.is_continuous(i):
            clamped = self._clamp(i, target)
            if clamped != target:
                self.logger.debug(f"Jog on {joint.name} held at limit {clamped:.4f}")
                delta = clamped - self.previous[i]
            target = clamped
        self.current[i] = target
        if joint.supports_absolute:
            joint.set_position(self.current[i])
        else:
            joint.apply_delta(delta)

        if self.collision_monitor.any_colliding():
            self.current = self.previous.copy()
            if joint.supports_absolute:
                joint.set_position(self.previous[i])
            else:
                joint.apply_delta(-delta)
            self.state = GuardState.ROLLED_BACK
            self.logger.warning(
                f"Collision on {self.collision_monitor.colliding_links()}; rolled back {joint.name}"
            )
            return self.state

        self.state = GuardState.COMMITTED
        if self.config.auto_publish:
            now = self.clock()
            if now - self._last_publish_time > 1.0 / self.config.publish_frequency:
                if self.publish():
                    self._last_publish_time = now
        return self.state

    def jog_velocity(self, index: int, direction: float) -> bool:
        """Send a joint velocity command instead of moving the model."""
        if self.jog_publisher is None:
            return False
        index = self.select_joint(index)
        names = self.frame_store.joint_names
        if not names:
            return False
        self.jog_publisher.publish_jog(names[index], float(direction) * self.rate)
        return True

    def publish(self) -> bool:
        if self.joint_publisher is None:
            self.logger.debug("No joint command publisher configured")
            return False
        names = self.frame_store.joint_names
        if len(names) != len(self.current):
            self.logger.error(f"Joint angle count mismatch! Expected {len(names)}, got {len(self.current)}")
            return False
        self.joint_publisher.publish_joints(names, self.current.tolist())
        return True
