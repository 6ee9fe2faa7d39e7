"""Discrete I/O (PLC) signal access and edge detection."""

import logging
from abc import ABC, abstractmethod


class DiscreteIOClient(ABC):
    """Read-only bit/register access to a PLC; the transport lives elsewhere."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def read_bit(self, address: int) -> bool:
        pass

    @abstractmethod
    def read_register(self, address: int) -> int:
        pass


class SignalWatcher:
    """Polled once per tick; reports rising edges of one bit."""

    def __init__(self, client: DiscreteIOClient, address: int = 0):
        self.client = client
        self.address = address
        self.logger = logging.getLogger(__name__)
        self._last_state = False

    @property
    def state(self) -> bool:
        return self._last_state

    def poll(self) -> bool:
        if self.client is None or not self.client.is_connected:
            current = False
        else:
            try:
                current = bool(self.client.read_bit(self.address))
            except Exception as e:
                self.logger.error(f"Failed to read bit {self.address}: {e}")
                current = False

        rising = current and not self._last_state
        self._last_state = current
        if rising:
            self.logger.info(f"Rising edge on bit {self.address}")
        return rising
