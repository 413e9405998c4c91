"""Periodic background workers."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from ..core.observability import MetricsCollector

logger = logging.getLogger(__name__)


class BaseWorker(ABC):
    """
    A task that calls ``process`` every ``interval_seconds``.

    The interval is measured from the start of one pass to the start of the
    next. A pass that raises is logged and counted as an error; the loop keeps
    going and tries again after a full interval.
    """

    def __init__(self, name: str, interval_seconds: int = 60):
        self.name = name
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    @abstractmethod
    async def process(self) -> None:
        """One pass over the due work."""

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("Worker already running", extra={"worker": self.name})
            return

        self._task = asyncio.create_task(self._loop(), name=f"worker:{self.name}")
        logger.info("Worker started", extra={"worker": self.name, "interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            logger.warning("Worker not running", extra={"worker": self.name})
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Worker stopped", extra={"worker": self.name})

    async def _run_once(self) -> float:
        """Run a pass, returning how long to wait before the next one."""
        started = time.monotonic()
        try:
            await self.process()
        except Exception:
            elapsed = time.monotonic() - started
            MetricsCollector.record_worker_iteration(self.name, "error", elapsed)
            logger.error("Worker pass failed", extra={"worker": self.name}, exc_info=True)
            return self.interval_seconds

        elapsed = time.monotonic() - started
        MetricsCollector.record_worker_iteration(self.name, "ok", elapsed)
        logger.debug("Worker pass finished", extra={"worker": self.name, "duration_seconds": round(elapsed, 3)})
        return max(0.0, self.interval_seconds - elapsed)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(await self._run_once())
