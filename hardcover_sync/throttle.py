import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque

from .config import RATE_LIMIT_HARD_CAP

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
SAFETY_MARGIN_SECONDS = 0.1


class RequestThrottle:
    """Sliding one-minute window. Delays callers, never rejects them."""

    def __init__(
        self,
        budget: int = 50,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.budget = max(1, min(budget, RATE_LIMIT_HARD_CAP))
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float):
        while self._timestamps and now - self._timestamps[0] >= WINDOW_SECONDS:
            self._timestamps.popleft()

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._timestamps)

    async def acquire(self):
        async with self._lock:
            now = self._clock()
            self._prune(now)
            while len(self._timestamps) >= self.budget:
                wait = WINDOW_SECONDS - (now - self._timestamps[0]) + SAFETY_MARGIN_SECONDS
                logger.debug(f"Hardcover rate limit approaching, waiting {wait:.1f}s")
                await self._sleep(wait)
                now = self._clock()
                self._prune(now)
            self._timestamps.append(now)
