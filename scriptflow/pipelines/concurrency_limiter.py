"""
Scriptflow Concurrency Limiter

Bounds the number of text-completion calls in flight at once. Waiters are
served strictly in the order they asked for a slot; a released slot is
handed directly to the next waiter so a late arrival can never jump the
queue.
"""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Deque, Dict, TypeVar

from scriptflow.core.exceptions import InvalidConfigError
from scriptflow.core.logging_config import get_logger

logger = get_logger("pipelines.concurrency")

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    FIFO semaphore of fixed capacity.

    Usage:
        limiter = ConcurrencyLimiter(capacity=2)
        result = await limiter.run(lambda: client.generate_text(prompt))

        async with limiter.acquire():
            await do_work()
    """

    def __init__(self, capacity: int = 1, name: str = "completion"):
        if capacity < 1:
            raise InvalidConfigError("Concurrency capacity must be at least 1", {"capacity": capacity})
        self.capacity = capacity
        self.name = name
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()

        # Stats
        self._max_observed = 0
        self._total_runs = 0
        self._total_wait = 0.0

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def _acquire(self) -> None:
        if self._running < self.capacity and not self._waiters:
            self._running += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # A slot was handed over just before the cancel landed
                self._release()
            else:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot over; the running count stays the same
                waiter.set_result(None)
                return
        self._running -= 1

    @asynccontextmanager
    async def acquire(self):
        """
        Hold one slot for the duration of the block.

        Usage:
            async with limiter.acquire():
                await do_work()
        """
        start_wait = time.monotonic()
        await self._acquire()

        wait_time = time.monotonic() - start_wait
        self._total_runs += 1
        self._total_wait += wait_time
        self._max_observed = max(self._max_observed, self._running)
        if wait_time > 0.1:
            logger.debug(
                f"Acquired {self.name} slot after {wait_time:.2f}s wait "
                f"(running: {self._running}/{self.capacity}, waiting: {self.waiting})"
            )

        try:
            yield
        finally:
            self._release()

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``task()`` once a slot is free.

        The slot is released whether the task succeeds or raises.

        Args:
            task: Zero-argument callable returning an awaitable

        Returns:
            The task's result
        """
        async with self.acquire():
            return await task()

    def get_stats(self) -> Dict[str, Any]:
        """Get limiter statistics."""
        return {
            "name": self.name,
            "capacity": self.capacity,
            "running": self._running,
            "waiting": self.waiting,
            "max_observed": self._max_observed,
            "total_runs": self._total_runs,
            "avg_wait": self._total_wait / self._total_runs if self._total_runs else 0.0,
        }
