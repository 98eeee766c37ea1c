"""
Cooperative Cancellation

One CancellationToken per job episode. cancel() may be called from any
thread; awaiting code observes it through run() and sleep(), worker threads
through `cancelled` / raise_if_cancelled().
"""

import asyncio
import threading
from typing import Awaitable, List, Optional, Tuple, TypeVar

from cutout.core.exceptions import TransformCancelled

T = TypeVar("T")


def _resolve(future: asyncio.Future):
    if not future.done():
        future.set_result(None)


class CancellationToken:
    """Single-use cancellation signal. Once cancelled it stays cancelled."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            waiters, self._waiters = self._waiters, []

        for loop, future in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, future)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise TransformCancelled(self.reason or "cancelled")

    async def wait(self):
        """Suspend until the token is cancelled."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._lock:
            if self._event.is_set():
                return
            entry = (loop, future)
            self._waiters.append(entry)
        try:
            await future
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token is cancelled first.

        Raises TransformCancelled if the token is already cancelled, or gets
        cancelled before the awaitable finishes. A result that arrives after
        cancellation is discarded.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
            if not task.done():
                task.cancel()

        if self._event.is_set():
            if task.done() and not task.cancelled():
                task.exception()  # retrieved and dropped
            self.raise_if_cancelled()
        return task.result()

    async def sleep(self, delay: float):
        """Backoff delay that aborts as soon as the token is cancelled."""
        await self.run(asyncio.sleep(delay))
