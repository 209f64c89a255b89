"""
Cooperative cancellation for long-running parse sessions.

A :class:`CancellationToken` is passed into every suspendable call. Calls
wrapped with :meth:`CancellationToken.run` are aborted as soon as the token
is cancelled, and can carry a wall-clock timeout of their own.
"""

import asyncio
from typing import Awaitable, Optional, Set, TypeVar

from scriptflow.core.exceptions import CompletionTimeoutError, PipelineCancelledError

T = TypeVar("T")


class CancellationToken:
    """Shared cancel flag that in-flight awaits can race against."""

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._waiters: Set[asyncio.Future] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel the token and wake every pending :meth:`run`."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_result(None)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise PipelineCancelledError(self._reason)

    async def run(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await ``awaitable`` unless the token is cancelled or ``timeout`` elapses.

        Raises:
            PipelineCancelledError: The token was cancelled first.
            CompletionTimeoutError: The timeout elapsed first.
        """
        if self._cancelled:
            # Never started, so close the coroutine instead of leaking it
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise PipelineCancelledError(self._reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._waiters.discard(waiter)
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if waiter in done:
            raise PipelineCancelledError(self._reason)
        raise CompletionTimeoutError(timeout)

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early with an error on cancel."""
        await self.run(asyncio.sleep(delay))
