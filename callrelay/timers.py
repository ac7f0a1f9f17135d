from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Literal, Optional

from .clock import Clock, schedule

if TYPE_CHECKING:
    from .session_store import Session


TimerKind = Literal["inactivity", "greeting"]


class TimerHandle:
    """
    One armed timer.

    cancel() is idempotent: cancelling a fired or already-cancelled timer does nothing and never re-arms.
    """

    def __init__(self, *, kind: TimerKind, call_id: str, due_ms: int) -> None:
        self.kind: TimerKind = kind
        self.call_id = call_id
        self.due_ms = due_ms
        self._task: Optional[asyncio.Task[None]] = None
        self._fired = False
        self._cancelled = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not (self._fired or self._cancelled)

    def cancel(self) -> None:
        if not self.active:
            return
        self._cancelled = True
        task = self._task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def _attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def _mark_fired(self) -> bool:
        if not self.active:
            return False
        self._fired = True
        return True


def _current_task() -> Optional[asyncio.Task[object]]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


@dataclass(frozen=True, slots=True)
class TimerFired:
    kind: TimerKind
    handle: TimerHandle

    @property
    def call_id(self) -> str:
        return self.handle.call_id


Post = Callable[[TimerFired], Awaitable[object]]


class TimeoutManager:
    """
    Arms the per-call inactivity and greeting timers on the injected Clock.

    A firing timer never touches the session; it posts TimerFired into the call's inbound
    queue and the router decides (via is_current) whether it still applies.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        post: Post,
        inactivity_timeout_ms: int,
        greeting_delay_ms: int,
    ) -> None:
        self._clock = clock
        self._post = post
        self._inactivity_timeout_ms = int(inactivity_timeout_ms)
        self._greeting_delay_ms = int(greeting_delay_ms)

    def arm_inactivity(self, session: "Session") -> TimerHandle:
        if session.inactivity_timer is not None:
            session.inactivity_timer.cancel()
        handle = self._start("inactivity", session.call_id, self._inactivity_timeout_ms)
        session.inactivity_timer = handle
        return handle

    def arm_greeting(self, session: "Session") -> TimerHandle:
        if session.greeting_timer is not None:
            session.greeting_timer.cancel()
        handle = self._start("greeting", session.call_id, self._greeting_delay_ms)
        session.greeting_timer = handle
        return handle

    def cancel_greeting(self, session: "Session") -> None:
        if session.greeting_timer is not None:
            session.greeting_timer.cancel()
            session.greeting_timer = None

    def cancel_all(self, session: "Session") -> None:
        session.cancel_timers()

    @staticmethod
    def is_current(session: "Session", fired: TimerFired) -> bool:
        if fired.kind == "inactivity":
            return session.inactivity_timer is fired.handle
        return session.greeting_timer is fired.handle

    def _start(self, kind: TimerKind, call_id: str, delay_ms: int) -> TimerHandle:
        handle = TimerHandle(kind=kind, call_id=call_id, due_ms=self._clock.now_ms() + delay_ms)

        async def _fire() -> None:
            if handle._mark_fired():
                await self._post(TimerFired(kind=handle.kind, handle=handle))

        handle._attach(schedule(self._clock, delay_ms, _fire, name=f"{kind}-timer:{call_id}"))
        return handle
