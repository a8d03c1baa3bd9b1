import asyncio
import threading
from contextlib import asynccontextmanager

from config import settings
from exceptions import BackpressureError, CompressionCancelledError


class CompressionGate:
    """Controls concurrent compression pipelines with backpressure.

    - Semaphore limits active pipelines to CPU count (configurable)
    - Queue depth limit prevents unbounded waiting attempts
    - When queue is full, raises BackpressureError immediately
    """

    def __init__(self, size: int | None = None, max_queue: int | None = None):
        self._size = size or settings.compression_semaphore_size
        self._semaphore = asyncio.Semaphore(self._size)
        self._queue_depth = 0
        self._max_queue = max_queue or settings.max_queue_depth
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Acquire a compression slot.

        Raises BackpressureError (503) if queue is full.
        """
        async with self._lock:
            if self._queue_depth >= self._max_queue:
                raise BackpressureError(
                    "Compression queue full. Try again shortly.",
                    retry_after=5,
                )
            self._queue_depth += 1

        try:
            await self._semaphore.acquire()
        except asyncio.CancelledError:
            self._queue_depth -= 1
            raise

    def release(self):
        """Release a compression slot."""
        self._semaphore.release()
        self._queue_depth -= 1

    @asynccontextmanager
    async def slot(self):
        """Hold a compression slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def active_jobs(self) -> int:
        return self._size - self._semaphore._value

    @property
    def queued_jobs(self) -> int:
        return max(0, self._queue_depth - self.active_jobs)


# Module-level singleton
compression_gate = CompressionGate()


def raise_if_cancelled(cancel: threading.Event | None) -> None:
    """Abort a worker-thread pipeline between encoder calls."""
    if cancel is not None and cancel.is_set():
        raise CompressionCancelledError("Compression cancelled")
