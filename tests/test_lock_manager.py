"""
Tests for per-key serialization of reconciliations.
"""
import asyncio

import pytest

from kubedb_operator.core.lock_manager import KeyedLockManager


@pytest.mark.asyncio
async def test_same_key_runs_one_at_a_time_in_order():
    locks = KeyedLockManager(max_concurrent=5)
    trace = []

    async def work(label: str):
        async with locks.hold("default/demo"):
            trace.append(f"{label}:start")
            await asyncio.sleep(0.01)
            trace.append(f"{label}:end")

    await asyncio.gather(work("a"), work("b"), work("c"))

    assert trace == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]


@pytest.mark.asyncio
async def test_different_keys_run_in_parallel():
    locks = KeyedLockManager(max_concurrent=5)
    inside = asyncio.Event()
    release = asyncio.Event()

    async def first():
        async with locks.hold("default/one"):
            inside.set()
            await release.wait()

    async def second():
        await inside.wait()
        async with locks.hold("default/two"):
            release.set()

    await asyncio.wait_for(asyncio.gather(first(), second()), timeout=1)


@pytest.mark.asyncio
async def test_global_concurrency_bound():
    locks = KeyedLockManager(max_concurrent=2)
    running = 0
    peak = 0

    async def work(key: str):
        nonlocal running, peak
        async with locks.hold(key):
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

    await asyncio.gather(*(work(f"default/db-{i}") for i in range(6)))

    assert peak == 2


@pytest.mark.asyncio
async def test_locks_are_released_and_forgotten():
    locks = KeyedLockManager()

    async with locks.hold("default/demo"):
        assert locks.is_locked("default/demo")
        assert locks.tracked_keys == 1

    assert not locks.is_locked("default/demo")
    assert locks.tracked_keys == 0


@pytest.mark.asyncio
async def test_lock_is_released_when_work_fails():
    locks = KeyedLockManager()

    with pytest.raises(RuntimeError):
        async with locks.hold("default/demo"):
            raise RuntimeError("boom")

    assert locks.tracked_keys == 0
