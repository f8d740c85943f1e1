"""
Bounded admission for asynchronous directory operations.

Every physical search goes through :py:class:`ConcurrencyLimiter`, which
keeps one :py:class:`ConcurrencyPool` per key for the lifetime of the
process.  All callers sharing a key share its slots, so the key acts as a
global ceiling on outstanding directory operations::

    results = await ConcurrencyLimiter.map(
        "adsearch.membership", 5, chunks, search_chunk, FailurePolicy(retries=1)
    )

Pools hold plain counters and futures rather than :py:class:`asyncio.Semaphore`
objects so that they stay usable across separate :py:func:`asyncio.run`
calls.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

from .exceptions import DirectoryConnectionError, DirectoryTimeout

logger = logging.getLogger("adsearch")

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class FailurePolicy:
    """
    What to do when an admitted operation fails.

    Attributes:
        retries: how many extra attempts to make after a failure matching
            ``retry_on``; 0 surfaces the first failure
        timeout: seconds an attempt may run before it fails with
            :py:class:`~adsearch.exceptions.DirectoryTimeout`
        retry_on: exception classes worth retrying

    """

    retries: int = 0
    timeout: float | None = None
    retry_on: tuple[type[BaseException], ...] = field(
        default=(DirectoryConnectionError,)
    )

    @classmethod
    def retry(cls, retries: int, timeout: float | None = None) -> "FailurePolicy":
        return cls(retries=max(retries, 0), timeout=timeout)


NO_RETRY = FailurePolicy()


class ConcurrencyPool:
    """
    A named bound on outstanding operations with a FIFO queue of waiters.

    A released slot is handed straight to the oldest waiter, so the running
    count never exceeds ``max_running`` however settlements interleave.

    Pools are shared by every thread in the process.  Each thread may run its
    own event loop (``asyncio.run`` per call under a threaded WSGI server), so
    the counters are guarded by a lock and a waiter is always woken on the
    loop it is waiting in.
    """

    def __init__(self, key: str, max_running: int) -> None:
        self.key = key
        self.max_running = max(max_running, 1)
        self.running = 0
        #: The most operations ever running at once
        self.high_water = 0
        self._waiters: deque[asyncio.Future] = deque()
        self._lock = threading.Lock()

    @property
    def waiting(self) -> int:
        with self._lock:
            return self._waiting()

    def _waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def _admit(self) -> None:
        self.running += 1
        self.high_water = max(self.high_water, self.running)

    async def acquire(self) -> None:
        with self._lock:
            if self.running < self.max_running and not self._waiting():
                self._admit()
                return
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # We were handed a slot just before being cancelled
                self.release()
            else:
                with self._lock:
                    if waiter in self._waiters:
                        self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        with self._lock:
            self.running -= 1
            while self._waiters:
                waiter = self._waiters.popleft()
                if waiter.done():
                    continue
                try:
                    waiter.get_loop().call_soon_threadsafe(self._wake, waiter)
                except RuntimeError:
                    # The waiter's event loop has been closed
                    continue
                self._admit()
                break

    def _wake(self, waiter: asyncio.Future) -> None:
        # Runs on the waiter's own loop
        if waiter.done():
            # Cancelled after the slot was handed over
            self.release()
        else:
            waiter.set_result(None)

    def __repr__(self) -> str:
        return (
            f"<ConcurrencyPool {self.key}: {self.running}/{self.max_running} "
            f"running, {self.waiting} waiting>"
        )


class ConcurrencyLimiter:
    """
    Process-wide registry of :py:class:`ConcurrencyPool` objects.

    The first caller to use a key decides its maximum; later callers with a
    different maximum share the existing pool.
    """

    _pools: ClassVar[dict[str, ConcurrencyPool]] = {}
    _lock: ClassVar[threading.Lock] = threading.Lock()

    @classmethod
    def pool(cls, key: str, max_running: int = 1) -> ConcurrencyPool:
        with cls._lock:
            if key not in cls._pools:
                cls._pools[key] = ConcurrencyPool(key, max_running)
            return cls._pools[key]

    @classmethod
    def clear(cls) -> None:
        """Forget every pool.  Only safe when nothing is running."""
        with cls._lock:
            cls._pools.clear()

    @classmethod
    async def _attempt(
        cls, pool: ConcurrencyPool, op: Callable[[], Awaitable[R]], policy: FailurePolicy
    ) -> R:
        await pool.acquire()
        started = time.monotonic()
        try:
            if policy.timeout is None:
                return await op()
            return await asyncio.wait_for(op(), policy.timeout)
        except asyncio.TimeoutError as e:
            elapsed = time.monotonic() - started
            msg = f"Operation on pool {pool.key} timed out after {elapsed:.3f}s"
            raise DirectoryTimeout(msg, elapsed=elapsed) from e
        finally:
            pool.release()

    @classmethod
    async def run(
        cls,
        key: str,
        max_running: int,
        op: Callable[[], Awaitable[R]],
        policy: FailurePolicy = NO_RETRY,
    ) -> R:
        """
        Run ``op()`` once a slot in pool ``key`` is free.

        Args:
            key: the pool to admit through
            max_running: the pool's maximum, if this call creates it
            op: a zero-argument coroutine function
            policy: retry and timeout policy

        Raises:
            Exception: whatever the last attempt raised

        Returns:
            The result of ``op()``.

        """
        pool = cls.pool(key, max_running)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await cls._attempt(pool, op, policy)
            except policy.retry_on as e:
                if attempt > policy.retries:
                    raise
                logger.warning(
                    "limiter.retry pool=%s attempt=%d error=%s", key, attempt, e
                )

    @classmethod
    def submit(
        cls,
        key: str,
        max_running: int,
        items: Iterable[T],
        op: Callable[[T], Awaitable[R]],
        policy: FailurePolicy = NO_RETRY,
    ) -> list["asyncio.Task[R]"]:
        """
        Schedule ``op(item)`` for every item through pool ``key``.

        Returns:
            One task per item, in item order.  Each settles exactly once.

        """

        def bind(item: T) -> Callable[[], Awaitable[R]]:
            return lambda: op(item)

        return [
            asyncio.ensure_future(cls.run(key, max_running, bind(item), policy))
            for item in items
        ]

    @classmethod
    async def map(
        cls,
        key: str,
        max_running: int,
        items: Iterable[T],
        op: Callable[[T], Awaitable[R]],
        policy: FailurePolicy = NO_RETRY,
    ) -> list[R]:
        """
        Like :py:meth:`submit`, but wait for every item to settle and return
        the results in item order.  If any item failed, the first failure (in
        item order) is raised once all of them have settled.
        """
        tasks = cls.submit(key, max_running, items, op, policy)
        if not tasks:
            return []
        return await settle(tasks)


async def settle(aws: Iterable[Awaitable[Any]]) -> list[Any]:
    """
    Await ``aws`` concurrently, let all of them finish, then raise the first
    failure or return the results.
    """
    outcomes = await asyncio.gather(*aws, return_exceptions=True)
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return outcomes
