"""Attempt throttling for credential endpoints.

Each client key keeps the times of its recent attempts; once ``max_attempts``
fall inside the window further attempts are refused until the oldest one
ages out.  State is per process.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from errors import RateLimitError

logger = logging.getLogger("oodoo.throttling")

LOGIN_THROTTLED_MESSAGE = "Too many login attempts. Please try again later."


class AttemptThrottle:
    def __init__(self, max_attempts: int, window_seconds: float,
                 message: str = LOGIN_THROTTLED_MESSAGE,
                 timer: Callable[[], float] = time.monotonic):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.message = message
        self.timer = timer
        self._history: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> None:
        """Record an attempt for ``key`` or raise :class:`RateLimitError`."""
        now = self.timer()
        with self._lock:
            self._expire(now)
            history = self._history.setdefault(key, deque())
            if len(history) >= self.max_attempts:
                logger.warning("Throttled %s: %d attempts within %ds", key, len(history), self.window_seconds)
                raise RateLimitError(self.message)
            history.append(now)

    def _expire(self, now: float) -> None:
        cutoff = now - self.window_seconds
        for key in list(self._history):
            history = self._history[key]
            while history and history[0] <= cutoff:
                history.popleft()
            if not history:
                del self._history[key]
