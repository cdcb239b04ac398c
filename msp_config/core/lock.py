"""Single-flight lock serializing configuration operations."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Set, Tuple, TypeVar

from .msp import TransportClosedError

log = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigLock:
    """Re-entrant, FIFO lock owned by one asyncio task at a time.

    Domain writes that read back what they wrote run the whole sequence under
    this lock so no other caller can slip a request in between.
    """

    def __init__(self, settle: float = 0.0) -> None:
        self.settle = settle
        self._owner: Optional[asyncio.Task] = None
        self._depth = 0
        self._waiters: Deque[Tuple[asyncio.Task, asyncio.Future]] = deque()
        self._orphans: Set[asyncio.Task] = set()
        self._release_exc: Optional[BaseException] = None

    @property
    def locked(self) -> bool:
        return self._owner is not None

    @property
    def waiting(self) -> int:
        return sum(1 for _, fut in self._waiters if not fut.done())

    async def acquire(self) -> None:
        task = asyncio.current_task()
        if task is None:
            raise RuntimeError("ConfigLock must be used from a task")
        if self._owner is task:
            self._depth += 1
            return
        if self._owner is None and not self.waiting:
            self._owner = task
            self._depth = 1
            if self.settle > 0:
                try:
                    await asyncio.sleep(self.settle)
                except asyncio.CancelledError:
                    # the caller never gets to release, so hand the lock on here
                    if self._owner is task:
                        self._depth = 1
                        self.release()
                    self._orphans.discard(task)
                    raise
                if self._owner is not task:
                    self._orphans.discard(task)
                    raise self._release_exc or TransportClosedError("lock released during settle")
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((task, fut))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled() and fut.exception() is None and self._owner is task:
                # ownership was handed over just before the cancellation landed
                self._depth = 1
                self.release()
            raise

    def release(self) -> None:
        task = asyncio.current_task()
        if self._owner is not task:
            if task in self._orphans:
                self._orphans.discard(task)
                return
            raise RuntimeError("ConfigLock released by a task that does not hold it")
        self._depth -= 1
        if self._depth > 0:
            return
        self._owner = None
        self._wake_next()

    def _wake_next(self) -> None:
        while self._waiters:
            task, fut = self._waiters.popleft()
            if fut.done():
                continue
            self._owner = task
            self._depth = 1
            fut.set_result(None)
            return

    def force_release(self, exc: BaseException) -> None:
        """Drop ownership and fail every waiter with *exc*."""

        if self._owner is not None:
            log.debug("force releasing config lock")
            self._orphans.add(self._owner)
        self._owner = None
        self._depth = 0
        self._release_exc = exc
        waiters = list(self._waiters)
        self._waiters.clear()
        for _, fut in waiters:
            if not fut.done():
                fut.set_exception(exc)

    async def with_lock(self, operation: Callable[[], Awaitable[T]]) -> T:
        async with self:
            return await operation()

    async def __aenter__(self) -> "ConfigLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
