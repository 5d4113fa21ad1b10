"""Bounded worker pool used for provider dispatch and parallel-safe tasks.

The pool is a counting semaphore with slot identities. Callers suspend while
all slots are busy, which is the backpressure mechanism for outbound provider
calls and for CPU bound task partitions alike. Each slot remembers when it last
finished so an optional inter-dispatch delay can smooth load per worker.

Thread Safety:
    - Designed for a single asyncio event loop. Counters and the free-slot
      list are only mutated between suspension points, which gives exclusive
      access without an additional lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TypeVar

import structlog

from Memory_KG.observability.metrics import set_pool_in_flight

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(slots=True)
class PoolStats:
    """Point-in-time view of a pool's counters."""

    name: str
    limit: int
    in_flight: int
    high_water: int
    completed: int
    waiting: int


class BoundedWorkerPool:
    """Run coroutines with at most ``limit`` of them in flight at once."""

    def __init__(
        self,
        limit: int,
        *,
        name: str = "pool",
        inter_dispatch_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError("worker pool limit must be at least 1")
        if inter_dispatch_delay < 0:
            raise ValueError("inter_dispatch_delay must be non-negative")
        self.name = name
        self.limit = limit
        self.inter_dispatch_delay = inter_dispatch_delay
        self._sleep = sleep or asyncio.sleep
        self._semaphore = asyncio.Semaphore(limit)
        self._free_slots: list[int] = list(range(limit - 1, -1, -1))
        self._last_finished: dict[int, float] = {}
        self._in_flight = 0
        self._high_water = 0
        self._completed = 0
        self._waiting = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def high_water(self) -> int:
        return self._high_water

    def stats(self) -> PoolStats:
        return PoolStats(
            name=self.name,
            limit=self.limit,
            in_flight=self._in_flight,
            high_water=self._high_water,
            completed=self._completed,
            waiting=self._waiting,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def run(self, func: Callable[[], Awaitable[R]]) -> R:
        """Run ``func`` once a slot is free and return its result."""
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        slot = self._free_slots.pop()
        loop = asyncio.get_running_loop()
        try:
            last = self._last_finished.get(slot)
            if self.inter_dispatch_delay and last is not None:
                remaining = self.inter_dispatch_delay - (loop.time() - last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._in_flight += 1
            self._high_water = max(self._high_water, self._in_flight)
            set_pool_in_flight(self.name, self._in_flight)
            try:
                return await func()
            finally:
                self._in_flight -= 1
                self._completed += 1
                set_pool_in_flight(self.name, self._in_flight)
        finally:
            self._last_finished[slot] = loop.time()
            self._free_slots.append(slot)
            self._semaphore.release()

    async def map(
        self,
        func: Callable[[T], Awaitable[R]],
        items: Iterable[T],
    ) -> list[R]:
        """Apply ``func`` to every item through the pool, preserving order.

        Exceptions propagate after every scheduled call has settled so no work
        is left running in the background.
        """
        materialised: Sequence[T] = list(items)
        if not materialised:
            return []
        logger.debug(
            "resilience.pool.map",
            pool=self.name,
            items=len(materialised),
            limit=self.limit,
        )
        results = await asyncio.gather(
            *(self.run(_bind(func, item)) for item in materialised),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)  # type: ignore[arg-type]


def _bind(func: Callable[[T], Awaitable[R]], item: T) -> Callable[[], Awaitable[R]]:
    def _call() -> Awaitable[R]:
        return func(item)

    return _call


__all__ = ["BoundedWorkerPool", "PoolStats"]
