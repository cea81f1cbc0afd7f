"""Repeating background jobs on the running event loop."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run a coroutine factory every `interval_seconds` until stopped.

    A failing iteration is logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self.iterations = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            self.stop()
        logger.info(f"Starting {self.name} every {self.interval_seconds:g}s")
        self._task = asyncio.create_task(self._loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info(f"Stopped {self.name}")

    async def wait(self) -> None:
        """Block until the task is stopped or cancelled."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            try:
                logger.info(f"Running scheduled {self.name}")
                await self.job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled {self.name} failed: {e}")
            self.iterations += 1
            await asyncio.sleep(self.interval_seconds)
