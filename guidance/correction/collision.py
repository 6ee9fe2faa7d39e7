"""Per-link contact flags fed by the scene's enter/stay/exit callbacks."""

import logging
import threading
from typing import Dict, Iterable, List, Sequence

from .scene import ROBOT_LINK_TAG


class LinkCollisionSensor:
    """Contact state of one robot link.

    Callbacks arrive on the physics callback stream; readers on the control
    thread. Contacts with other robot links are ignored.
    """

    def __init__(self, link_name: str):
        self.link_name = link_name
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._colliding = False
        self._collided_with = ""

    def on_contact_enter(self, other_name: str, tags: Iterable[str] = ()):
        if ROBOT_LINK_TAG in tags:
            return
        with self._lock:
            self._colliding = True
            self._collided_with = other_name
        self.logger.debug(f"{self.link_name} touched {other_name}")

    def on_contact_stay(self, other_name: str, tags: Iterable[str] = ()):
        if ROBOT_LINK_TAG in tags:
            return
        with self._lock:
            self._colliding = True

    def on_contact_exit(self, other_name: str, tags: Iterable[str] = ()):
        with self._lock:
            self._colliding = False
            self._collided_with = ""

    @property
    def is_colliding(self) -> bool:
        with self._lock:
            return self._colliding

    @property
    def collided_with(self) -> str:
        with self._lock:
            return self._collided_with


class CollisionMonitor:
    def __init__(self, sensors: Sequence[LinkCollisionSensor] = ()):
        self._sensors: Dict[str, LinkCollisionSensor] = {s.link_name: s for s in sensors}

    def add_sensor(self, sensor: LinkCollisionSensor) -> LinkCollisionSensor:
        self._sensors[sensor.link_name] = sensor
        return sensor

    def sensor(self, link_name: str) -> LinkCollisionSensor:
        return self._sensors[link_name]

    def any_colliding(self) -> bool:
        return any(s.is_colliding for s in self._sensors.values())

    def colliding_links(self) -> List[str]:
        return [name for name, s in self._sensors.items() if s.is_colliding]
