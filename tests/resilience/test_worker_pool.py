from __future__ import annotations

import asyncio
import random

import pytest

from Memory_KG.resilience.worker_pool import BoundedWorkerPool


def test_limit_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BoundedWorkerPool(0)
    with pytest.raises(ValueError):
        BoundedWorkerPool(1, inter_dispatch_delay=-1.0)


@pytest.mark.asyncio
async def test_map_preserves_order_and_bounds_concurrency() -> None:
    pool = BoundedWorkerPool(2, name="test")

    async def _work(value: int) -> int:
        await asyncio.sleep(0.01 * (5 - value))
        return value * 10

    results = await pool.map(_work, range(5))

    assert results == [0, 10, 20, 30, 40]
    assert pool.high_water == 2
    assert pool.in_flight == 0
    assert pool.stats().completed == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(6))
async def test_in_flight_never_exceeds_limit(seed: int) -> None:
    rng = random.Random(seed)
    limit = rng.randint(1, 4)
    pool = BoundedWorkerPool(limit, name=f"seed-{seed}")
    observed: list[int] = []
    durations = [rng.uniform(0.0, 0.01) for _ in range(rng.randint(5, 25))]

    async def _work(duration: float) -> float:
        observed.append(pool.in_flight)
        await asyncio.sleep(duration)
        return duration

    results = await pool.map(_work, durations)

    assert results == durations
    assert max(observed) <= limit
    assert pool.high_water <= limit


@pytest.mark.asyncio
async def test_map_raises_after_all_calls_settle() -> None:
    pool = BoundedWorkerPool(3)
    finished: list[int] = []

    async def _work(value: int) -> int:
        await asyncio.sleep(0.001 * value)
        if value == 1:
            raise RuntimeError("boom")
        finished.append(value)
        return value

    with pytest.raises(RuntimeError, match="boom"):
        await pool.map(_work, range(4))

    assert sorted(finished) == [0, 2, 3]
    assert pool.in_flight == 0


@pytest.mark.asyncio
async def test_inter_dispatch_delay_applies_per_slot(sleep) -> None:
    pool = BoundedWorkerPool(1, inter_dispatch_delay=0.1, sleep=sleep)

    async def _work(value: int) -> int:
        return value

    await pool.map(_work, range(3))

    assert len(sleep.delays) == 2
    assert all(0 < delay <= 0.1 for delay in sleep.delays)


@pytest.mark.asyncio
async def test_waiting_callers_are_counted() -> None:
    pool = BoundedWorkerPool(1)
    gate = asyncio.Event()

    async def _blocked() -> None:
        await gate.wait()

    first = asyncio.create_task(pool.run(_blocked))
    second = asyncio.create_task(pool.run(_blocked))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert pool.in_flight == 1
    assert pool.stats().waiting == 1

    gate.set()
    await asyncio.gather(first, second)
    assert pool.stats().completed == 2
