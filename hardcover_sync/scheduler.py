import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[object]]


class DebouncedScheduler:
    """
    Single pending slot, latest intent wins.
    Scheduling again while waiting replaces the task and restarts the delay.
    """

    def __init__(self, delay: float):
        self.delay = delay
        self._pending: Optional[Task] = None
        self._timer: Optional[asyncio.Task] = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def schedule(self, task: Task):
        self._pending = task
        self._stop_timer()
        self._timer = asyncio.create_task(self._fire_later())

    async def flush_now(self):
        """Run the pending task right away and wait for it."""
        self._stop_timer()
        await self._run_pending()

    def cancel_pending(self):
        self._stop_timer()
        self._pending = None

    def _stop_timer(self):
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _fire_later(self):
        await asyncio.sleep(self.delay)
        # Detach before running so a new schedule() cannot cancel a task mid-write
        self._timer = None
        try:
            await self._run_pending()
        except Exception as e:
            logger.error(f"Debounced task failed: {e}", exc_info=True)

    async def _run_pending(self):
        task, self._pending = self._pending, None
        if task is not None:
            await task()
