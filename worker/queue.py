"""
Bounded concurrency for video processing jobs.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from worker.config import Settings
from worker.utils.errors import QueueFullError, QueueTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")


class VideoProcessingQueue:
    """Runs at most ``max_concurrent`` jobs at once; others wait in FIFO order.

    ``timeout`` (seconds) applies to each job once it starts running. A job
    that exceeds it is cancelled and its caller gets ``QueueTimeoutError``.
    """

    def __init__(self, max_concurrent: int = 1, timeout: float = 600, max_queue_size: int = 20):
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.max_queue_size = max_queue_size
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._running = 0
        self._waiting = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "VideoProcessingQueue":
        return cls(
            max_concurrent=settings.MAX_CONCURRENT_JOBS,
            timeout=settings.JOB_TIMEOUT,
            max_queue_size=settings.MAX_QUEUE_SIZE,
        )

    async def process(self, task: Callable[[], Awaitable[T]], name: Optional[str] = None) -> T:
        if self._waiting >= self.max_queue_size:
            logger.warning("Processing queue full", waiting=self._waiting, max_queue_size=self.max_queue_size)
            raise QueueFullError(self.max_queue_size)

        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._running += 1
        logger.debug("Job started", job=name, running=self._running, waiting=self._waiting)
        try:
            return await asyncio.wait_for(task(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Job timed out", job=name, timeout=self.timeout)
            raise QueueTimeoutError(self.timeout) from e
        finally:
            self._running -= 1
            self._semaphore.release()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "waiting": self._waiting,
            "max_concurrent": self.max_concurrent,
            "queue_full": self._waiting >= self.max_queue_size,
        }
