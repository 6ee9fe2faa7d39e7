"""Cross-thread call queue drained by the control thread."""

import logging
from queue import Empty, Queue
from typing import Callable


class ControlQueue:
    """Calls posted from any thread run on the control thread at drain()."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._queue: Queue = Queue()

    def post(self, fn: Callable, *args, **kwargs):
        self._queue.put((fn, args, kwargs))

    def drain(self) -> int:
        count = 0
        while True:
            try:
                fn, args, kwargs = self._queue.get_nowait()
            except Empty:
                break
            count += 1
            try:
                fn(*args, **kwargs)
            except Exception as e:
                self.logger.error(f"Queued call {getattr(fn, '__name__', fn)} failed: {e}")
        return count

    def pending(self) -> int:
        return self._queue.qsize()
