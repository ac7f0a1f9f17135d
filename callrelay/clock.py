from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol, TypeVar


T = TypeVar("T")


class Clock(Protocol):
    """Time source for everything call-scoped: timers, speaking waits, write and tool deadlines."""

    def now_ms(self) -> int: ...

    def wall_iso(self) -> str: ...

    async def sleep_ms(self, ms: int) -> None: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


async def _cancel_and_wait(*tasks: "asyncio.Future[object]") -> None:
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def schedule(
    clock: Clock,
    delay_ms: int,
    callback: Callable[[], Awaitable[object]],
    *,
    name: Optional[str] = None,
) -> "asyncio.Task[None]":
    """
    Run callback once delay_ms of clock time has passed.

    Cancelling the returned task at any point, including while callback runs, ends it quietly.
    """

    async def _fire() -> None:
        try:
            await clock.sleep_ms(delay_ms)
            await callback()
        except asyncio.CancelledError:
            return

    return asyncio.create_task(_fire(), name=name)


class RealClock:
    __slots__ = ()

    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    def wall_iso(self) -> str:
        return _iso(time.time())

    async def sleep_ms(self, ms: int) -> None:
        await asyncio.sleep(max(0, ms) / 1000.0)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            # Distinct from the builtin before Python 3.11.
            raise TimeoutError(f"timed out after {timeout_ms}ms") from e


class FakeClock:
    """
    Manually driven clock for call tests.

    Time stands still until advance(); every sleeper whose wake time has been reached is
    released in wake order. wall_iso() counts from a fixed epoch so frame timestamps are stable.
    """

    def __init__(self, start_ms: int = 0, *, epoch_s: float = 1_760_000_000.0) -> None:
        self._now_ms = int(start_ms)
        self._epoch_s = float(epoch_s)
        self._seq = itertools.count()
        # (wake_at_ms, seq, future); seq keeps equal wake times in arrival order.
        self._wakeups: list[tuple[int, int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self._now_ms

    def wall_iso(self) -> str:
        return _iso(self._epoch_s + self._now_ms / 1000.0)

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._wakeups, (self._now_ms + int(ms), next(self._seq), fut))
        await fut

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        deadline = asyncio.ensure_future(self.sleep_ms(timeout_ms))
        try:
            await asyncio.wait((work, deadline), return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _cancel_and_wait(work, deadline)
            raise

        if not work.done():
            await _cancel_and_wait(work, deadline)
            raise TimeoutError(f"timed out after {timeout_ms}ms")
        await _cancel_and_wait(deadline)
        return work.result()

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")

        # Sleepers created in this tick register before time moves.
        await asyncio.sleep(0)
        self._now_ms += int(ms)
        while self._wakeups and self._wakeups[0][0] <= self._now_ms:
            _, _, fut = heapq.heappop(self._wakeups)
            if not fut.done():
                fut.set_result(None)
        await asyncio.sleep(0)
