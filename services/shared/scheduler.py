"""Periodic background jobs owned by the application lifespan."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


Job = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """
    Run an async job on a fixed period inside the running event loop.

    Example:
        task = PeriodicTask("subscription-renewal", renew, interval=3600, initial_delay=30)
        task.start()
        ...
        await task.stop()

    A failing run is logged and the schedule continues; only cancellation stops
    the loop.
    """

    def __init__(
        self,
        name: str,
        job: Job,
        *,
        interval: float,
        initial_delay: float = 0.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._name = name
        self._job = job
        self._interval = interval
        self._initial_delay = max(initial_delay, 0.0)
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.runs = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        if self.running:
            logger.warning("Periodic task '%s' already running", self._name)
            return self._task
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self._name)
        logger.info(
            "Periodic task '%s' started (interval=%ss, first run in %ss)",
            self._name,
            self._interval,
            self._initial_delay,
        )
        return self._task

    async def run_once(self) -> Any:
        result = await self._job()
        self.runs += 1
        return result

    async def _loop(self) -> None:
        try:
            if self._initial_delay:
                await asyncio.sleep(self._initial_delay)
            while self._running:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("Periodic task '%s' failed: %s", self._name, exc, exc_info=True)
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.info("Periodic task '%s' cancelled", self._name)
        finally:
            self._running = False

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and wait for it to finish."""
        self._running = False
        task, self._task = self._task, None
        await cancel_task(task, logger, timeout=timeout)
        logger.info("Periodic task '%s' stopped", self._name)


async def cancel_task(
    task: Optional[asyncio.Task],
    log: logging.Logger,
    timeout: float = 5.0,
) -> None:
    """Cancel a background task and wait up to ``timeout`` seconds for it."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except asyncio.CancelledError:
        pass
    except asyncio.TimeoutError:
        log.warning("Background task did not stop within %ss", timeout)
