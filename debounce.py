import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    """Coalesce bursts of triggers into one call after a quiet period.

    A trigger arriving while the timer is pending restarts the wait instead of
    queuing another run. A run already in progress is never cancelled.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]):
        self.delay = delay
        self.callback = callback
        self._timer: Optional[asyncio.TimerHandle] = None
        self._running: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def trigger(self):
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._fire)

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self):
        self._timer = None
        self._running = asyncio.create_task(self._run())

    async def _run(self):
        try:
            await self.callback()
        except Exception:
            logger.exception("Debounced callback failed")

    async def wait(self):
        """Wait for the run started by the last quiet period, if any."""
        if self._running is not None:
            await self._running
