import asyncio

import pytest

from coderunner.core.errors import QueueFullError
from coderunner.services.limiter import ExecutionLimiter


async def test_acquires_up_to_limit_immediately():
    limiter = ExecutionLimiter(max_concurrent=2, max_waiting=1)
    await limiter.acquire()
    await limiter.acquire()
    assert limiter.stats() == {"active": 2, "waiting": 0, "max_concurrent": 2}


async def test_waiters_are_served_in_order():
    limiter = ExecutionLimiter(max_concurrent=1, max_waiting=5)
    await limiter.acquire()
    order = []

    async def worker(n):
        async with limiter:
            order.append(n)

    tasks = [asyncio.create_task(worker(n)) for n in range(3)]
    await asyncio.sleep(0)
    assert limiter.waiting == 3

    limiter.release()
    await asyncio.gather(*tasks)
    assert order == [0, 1, 2]
    assert limiter.active == 0


async def test_full_queue_rejects():
    limiter = ExecutionLimiter(max_concurrent=1, max_waiting=1)
    await limiter.acquire()
    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)

    with pytest.raises(QueueFullError):
        await limiter.acquire()

    limiter.release()
    await waiter
    assert limiter.active == 1


async def test_cancelled_waiter_does_not_leak_slot():
    limiter = ExecutionLimiter(max_concurrent=1, max_waiting=5)
    await limiter.acquire()
    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    limiter.release()
    assert limiter.active == 0
    assert limiter.waiting == 0


async def test_slot_granted_then_cancelled_is_passed_on():
    limiter = ExecutionLimiter(max_concurrent=1, max_waiting=5)
    await limiter.acquire()
    first = asyncio.create_task(limiter.acquire())
    second = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)

    limiter.release()
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    await second
    assert limiter.active == 1
