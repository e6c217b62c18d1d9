"""
Event Log
=========

Bounded list of the most recent human-readable status lines, shown by the
rendering layer's status overlay.
"""

import logging
import threading
from collections import deque

logger = logging.getLogger(__name__)


class EventLog:
    """Sliding window of recent events.

    An event identical to the newest entry is dropped, so a condition that
    repeats on every pass shows up once.

    Args:
        size: Number of recent lines to keep.
    """

    def __init__(self, size: int = 5):
        self._lines: deque[str] = deque(maxlen=size)
        self._lock = threading.Lock()

    def log(self, message: str) -> bool:
        """Append a line.

        Returns:
            False if the line repeated the newest entry and was dropped.
        """
        with self._lock:
            if self._lines and self._lines[-1] == message:
                return False
            self._lines.append(message)
        logger.info(message)
        return True

    def lines(self) -> list[str]:
        """Oldest-first copy of the current lines."""
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def __str__(self) -> str:
        return " | ".join(self.lines())
