"""Request budget for the cost source's per-minute rate ceiling."""

import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Sliding one-minute window holding at most ``requests_per_minute * margin`` calls."""

    def __init__(
        self,
        requests_per_minute: int = 150,
        margin: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        if not 0 < margin <= 1:
            raise ValueError("margin must be in (0, 1]")
        self.budget = max(1, int(requests_per_minute * margin))
        self.clock = clock
        self.sleep = sleep
        self._calls: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= WINDOW_SECONDS:
            self._calls.popleft()

    def remaining(self) -> int:
        """Requests still allowed in the current window."""
        self._prune(self.clock())
        return self.budget - len(self._calls)

    def try_acquire(self) -> bool:
        """Take one request slot if available, without waiting."""
        now = self.clock()
        self._prune(now)
        if len(self._calls) >= self.budget:
            return False
        self._calls.append(now)
        return True

    def acquire(self) -> None:
        """Take one request slot, sleeping until the window frees one."""
        while not self.try_acquire():
            wait = WINDOW_SECONDS - (self.clock() - self._calls[0])
            logger.info("Rate budget spent; waiting %.1fs", wait)
            self.sleep(max(wait, 0.01))
