import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs an async job right away and then every `interval` seconds until
    cancelled. A failing run is logged and the schedule keeps going.

    Runs start at a fixed rate measured from the first start, not a fixed
    delay after the previous run. A run that overruns its slot is followed
    immediately by the next one and the schedule restarts from there.
    """

    def __init__(self, job: Callable[[], Awaitable[object]], interval: float, name: str = "periodic"):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.job = job
        self.interval = interval
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._task = asyncio.create_task(self._loop(), name=self.name)
        return self

    async def stop(self) -> None:
        """Cancel the schedule and wait until the running job has unwound."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time()
        while True:
            try:
                await self.job()
            except Exception:
                logger.exception("Periodic job %s failed", self.name)

            next_run += self.interval
            delay = next_run - loop.time()
            if delay < 0:
                logger.debug("Periodic job %s overran its interval by %.3fs", self.name, -delay)
                next_run = loop.time()
                delay = 0
            await asyncio.sleep(delay)
