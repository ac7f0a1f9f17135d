from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, Generic, Optional, TypeVar


T = TypeVar("T")


class QueueClosed(Exception):
    pass


Predicate = Callable[[T], bool]


class BoundedDequeQueue(Generic[T]):
    """
    Mailbox between one call's producers (socket reader, timers, router) and its consumer.

    put() never waits. On a full queue the `evict` predicate may free a slot by removing the
    oldest matching item; otherwise the item is refused and put() returns False. Items put with
    overflow=True are always admitted while the queue is open, even past maxsize.

    After close(), put() refuses everything and consumers drain what is left before QueueClosed.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._maxsize = int(maxsize)
        self._items: Deque[T] = deque()
        self._getters: Deque[asyncio.Future[None]] = deque()
        self._closed = False

    @property
    def maxsize(self) -> int:
        return self._maxsize

    def qsize(self) -> int:
        return len(self._items)

    def closed(self) -> bool:
        return self._closed

    def _wake_one(self) -> None:
        while self._getters:
            fut = self._getters.popleft()
            if not fut.done():
                fut.set_result(None)
                return

    def _evict_one(self, evict: Predicate[T]) -> bool:
        for i, existing in enumerate(self._items):
            if evict(existing):
                del self._items[i]
                return True
        return False

    async def put(self, item: T, *, evict: Optional[Predicate[T]] = None, overflow: bool = False) -> bool:
        if self._closed:
            return False
        full = len(self._items) >= self._maxsize
        if full and not overflow:
            if evict is None or not self._evict_one(evict):
                return False
        self._items.append(item)
        self._wake_one()
        return True

    async def _wait_for_item(self) -> None:
        while not self._items:
            if self._closed:
                raise QueueClosed()
            fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._getters.append(fut)
            try:
                await fut
            except asyncio.CancelledError:
                # Pass a wakeup this getter consumed on to the next one.
                if fut.done() and not fut.cancelled() and self._items:
                    self._wake_one()
                raise

    async def get(self) -> T:
        await self._wait_for_item()
        return self._items.popleft()

    async def get_prefer(self, pred: Predicate[T]) -> T:
        """Dequeue the oldest item matching pred, else the oldest item."""
        await self._wait_for_item()
        for i, existing in enumerate(self._items):
            if pred(existing):
                del self._items[i]
                return existing
        return self._items.popleft()

    async def close(self) -> None:
        self._closed = True
        while self._getters:
            fut = self._getters.popleft()
            if not fut.done():
                fut.set_result(None)
