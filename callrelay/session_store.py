from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal, Optional, TypeVar

from .clock import Clock
from .directory import StudentRecord
from .log import log_event
from .timers import TimerHandle


R = TypeVar("R")

Role = Literal["system", "user", "assistant"]


class SessionState(str, Enum):
    INIT = "INIT"
    GREETING_PENDING = "GREETING_PENDING"
    ACTIVE = "ACTIVE"
    ENDING = "ENDING"
    TERMINATED = "TERMINATED"


_STATE_ORDER = {
    SessionState.INIT: 0,
    SessionState.GREETING_PENDING: 1,
    SessionState.ACTIVE: 2,
    SessionState.ENDING: 3,
    SessionState.TERMINATED: 4,
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(slots=True)
class Turn:
    role: Role
    content: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class ToolCallEntry:
    tool_name: str
    args: dict[str, Any]
    timestamp_ms: int


@dataclass(slots=True)
class Session:
    call_id: str
    conversation: list[Turn]
    created_at_ms: int
    last_activity_ms: int
    tool_call_history: deque[ToolCallEntry]
    state: SessionState = SessionState.INIT
    callee_number: Optional[str] = None
    student_context: Optional[StudentRecord] = None
    inactivity_timer: Optional[TimerHandle] = None
    greeting_timer: Optional[TimerHandle] = None
    consecutive_tool_calls: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    info_requests: list[dict[str, Any]] = field(default_factory=list)
    outcome: Optional[dict[str, Any]] = None
    end_info: Optional[dict[str, Any]] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def terminal(self) -> bool:
        return self.state in (SessionState.ENDING, SessionState.TERMINATED)

    def transition(self, new_state: SessionState) -> None:
        # Forward-only; timeout/hangup paths may jump from any non-terminal state straight to ENDING.
        if new_state == self.state:
            return
        if _STATE_ORDER[new_state] < _STATE_ORDER[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.state = new_state

    def cancel_timers(self) -> None:
        for handle in (self.inactivity_timer, self.greeting_timer):
            if handle is not None:
                handle.cancel()
        self.inactivity_timer = None
        self.greeting_timer = None


class SessionStore:
    """
    Owns every live Session, keyed by call id.

    Map operations are serialized by one store lock; per-call mutation is serialized by Session.lock.
    Injected wherever it is needed, so tests can run isolated stores side by side.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        system_prompt: str,
        tool_history_size: int = 10,
        structured_logs: bool = False,
    ) -> None:
        self._clock = clock
        self._system_prompt = system_prompt
        self._tool_history_size = max(1, int(tool_history_size))
        self._structured_logs = structured_logs
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def _log(self, event: str, **payload: object) -> None:
        log_event(self._structured_logs, "session_store", event, **payload)

    async def create(self, call_id: str) -> Session:
        async with self._lock:
            existing = self._sessions.get(call_id)
            if existing is not None:
                self._log("create_existing", call_id=call_id)
                return existing
            now = self._clock.now_ms()
            session = Session(
                call_id=call_id,
                conversation=[Turn(role="system", content=self._system_prompt)],
                created_at_ms=now,
                last_activity_ms=now,
                tool_call_history=deque(maxlen=self._tool_history_size),
            )
            self._sessions[call_id] = session
            self._log("created", call_id=call_id)
            return session

    async def get(self, call_id: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(call_id)

    async def update(self, call_id: str, mutator: Callable[[Session], R]) -> Optional[R]:
        session = await self.get(call_id)
        if session is None:
            return None
        async with session.lock:
            # The session may have been deleted while we waited for its lock.
            if await self.get(call_id) is not session:
                return None
            result = mutator(session)
            session.last_activity_ms = self._clock.now_ms()
            return result

    async def delete(self, call_id: str) -> Optional[Session]:
        async with self._lock:
            session = self._sessions.pop(call_id, None)
            if session is None:
                return None
            session.cancel_timers()
            if session.state != SessionState.TERMINATED:
                session.state = SessionState.TERMINATED
        self._log(
            "deleted",
            call_id=call_id,
            turns=len(session.conversation),
            errors=len(session.errors),
        )
        return session

    async def list_all(self) -> list[Session]:
        async with self._lock:
            return list(self._sessions.values())

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)

    async def sweep_expired(self, max_age_ms: int) -> int:
        now = self._clock.now_ms()
        async with self._lock:
            expired = [
                s
                for s in self._sessions.values()
                if now - s.last_activity_ms > max_age_ms and not s.lock.locked()
            ]
            for s in expired:
                s.cancel_timers()
                s.state = SessionState.TERMINATED
                del self._sessions[s.call_id]
        for s in expired:
            self._log("swept", call_id=s.call_id, idle_ms=now - s.last_activity_ms)
        return len(expired)

    def append_turn(self, session: Session, role: Role, content: str) -> None:
        session.conversation.append(Turn(role=role, content=content))
        session.last_activity_ms = self._clock.now_ms()

    def touch(self, session: Session) -> None:
        session.last_activity_ms = self._clock.now_ms()

    def record_error(self, session: Session, error: dict[str, Any]) -> None:
        entry = dict(error)
        entry.setdefault("timestamp", self._clock.wall_iso())
        session.errors.append(entry)
