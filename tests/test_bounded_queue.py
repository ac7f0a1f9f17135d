from __future__ import annotations

import asyncio

import pytest

from callrelay.bounded_queue import BoundedDequeQueue, QueueClosed


def test_put_refuses_when_full_unless_a_victim_is_evictable() -> None:
    async def _run() -> None:
        q: BoundedDequeQueue[str] = BoundedDequeQueue(maxsize=2)
        assert await q.put("bad-frame") is True
        assert await q.put("prompt") is True
        assert await q.put("overflow") is False

        assert await q.put("interrupt", evict=lambda x: x.startswith("bad")) is True
        assert [await q.get(), await q.get()] == ["prompt", "interrupt"]

    asyncio.run(_run())


def test_get_prefer_pulls_urgent_item_first() -> None:
    async def _run() -> None:
        q: BoundedDequeQueue[str] = BoundedDequeQueue(maxsize=8)
        for item in ("prompt-1", "prompt-2", "interrupt"):
            await q.put(item)
        assert await q.get_prefer(lambda x: x == "interrupt") == "interrupt"
        assert await q.get_prefer(lambda x: x == "interrupt") == "prompt-1"
        assert q.qsize() == 1

    asyncio.run(_run())


def test_close_drains_then_raises() -> None:
    async def _run() -> None:
        q: BoundedDequeQueue[int] = BoundedDequeQueue(maxsize=4)
        await q.put(1)
        await q.close()
        assert q.closed() is True
        assert await q.put(2) is False
        assert await q.get() == 1
        with pytest.raises(QueueClosed):
            await q.get()
        with pytest.raises(QueueClosed):
            await q.get_prefer(lambda _x: True)

    asyncio.run(_run())


def test_close_wakes_blocked_consumer() -> None:
    async def _run() -> None:
        q: BoundedDequeQueue[int] = BoundedDequeQueue(maxsize=4)
        waiter = asyncio.create_task(q.get())
        await asyncio.sleep(0)
        await q.close()
        with pytest.raises(QueueClosed):
            await waiter

    asyncio.run(_run())


def test_maxsize_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BoundedDequeQueue(maxsize=0)


def test_overflow_admits_control_items_past_maxsize() -> None:
    async def _run() -> None:
        q: BoundedDequeQueue[str] = BoundedDequeQueue(maxsize=1)
        assert await q.put("prompt") is True
        assert await q.put("prompt-2") is False
        assert await q.put("timer", overflow=True) is True
        assert q.qsize() == 2
        assert [await q.get(), await q.get()] == ["prompt", "timer"]

        await q.close()
        assert await q.put("timer", overflow=True) is False

    asyncio.run(_run())


def test_cancelled_consumer_does_not_strand_an_item() -> None:
    async def _run() -> None:
        q: BoundedDequeQueue[int] = BoundedDequeQueue(maxsize=4)
        first = asyncio.create_task(q.get())
        second = asyncio.create_task(q.get())
        await asyncio.sleep(0)

        await q.put(7)
        first.cancel()
        await asyncio.gather(first, return_exceptions=True)
        assert await asyncio.wait_for(second, timeout=1.0) == 7

    asyncio.run(_run())
