from __future__ import annotations

import asyncio
import json
from typing import Any, Literal, Optional

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .config import RelayConfig
from .directory import Directory, StudentRecord
from .interrupts import apply_interrupt
from .intent import estimate_speaking_ms, should_ai_end_call, should_end_call
from .log import log_event
from .metrics import RELAY
from .prompts import (
    APOLOGY_MESSAGE,
    FALLBACK_GOODBYE,
    TOO_EARLY_MESSAGE,
    TOOL_HOLD_NOTICE,
    critical_error_message,
    generic_greeting_instruction,
    personalized_greeting_instruction,
    student_context,
    timeout_message,
    welcome_greeting,
)
from .protocol import (
    InboundDtmf,
    InboundError,
    InboundHangup,
    InboundInterrupt,
    InboundPrompt,
    InboundSetup,
    OriginalError,
    OutboundError,
    OutboundErrorAcknowledged,
    OutboundEvent,
    OutboundHangup,
    OutboundHangupConfirmed,
    OutboundHangupError,
    OutboundText,
)
from .session_store import Session, SessionState, SessionStore
from .telephony import Telephony
from .timers import TimeoutManager, TimerFired
from .tools import ReviewDecision, ToolContext, ToolDispatcher
from .transport_ws import InboundItem, MalformedFrame, TransportClosed, UnknownFrame, is_urgent
from .turn_generator import TurnGenerator, TurnResult


SESSION_NOT_FOUND = "Session not found"
FAILED_TO_PROCESS = "Failed to process message"


class CallOrchestrator:
    """
    Message router and state machine for one transport connection.

    Single consumer of the connection's inbound queue, so every handler for the call runs
    serialized; handlers additionally hold Session.lock so the store sweep leaves them alone.
    Outbound frames go to the bounded outbound queue drained by socket_writer.
    """

    def __init__(
        self,
        *,
        config: RelayConfig,
        clock: Clock,
        store: SessionStore,
        inbound_q: BoundedDequeQueue[InboundItem],
        outbound_q: BoundedDequeQueue[OutboundEvent],
        generator: TurnGenerator,
        tools: ToolDispatcher,
        telephony: Telephony,
        directory: Directory,
        metrics: Any,
        shutdown_evt: Optional[asyncio.Event] = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._store = store
        self._inbound_q = inbound_q
        self._outbound_q = outbound_q
        self._generator = generator
        self._tools = tools
        self._telephony = telephony
        self._directory = directory
        self._metrics = metrics
        self._shutdown_evt = shutdown_evt or asyncio.Event()
        self._timeouts = TimeoutManager(
            clock=clock,
            post=self._post_timer,
            inactivity_timeout_ms=config.inactivity_timeout_ms,
            greeting_delay_ms=config.greeting_delay_ms,
        )
        self._call_id: Optional[str] = None
        self._stopped = False

    @property
    def call_id(self) -> Optional[str]:
        return self._call_id

    # ---------------------------------------------------------------------
    # Plumbing
    # ---------------------------------------------------------------------

    def _log(self, event: str, **payload: object) -> None:
        log_event(
            self._config.structured_logging,
            "orchestrator",
            event,
            call_id=str(self._call_id or ""),
            **payload,
        )

    def _inc(self, key: str, suffix: str = "") -> None:
        name = RELAY[key] if not suffix else f"{RELAY[key]}.{suffix}"
        self._metrics.inc(name, 1)

    async def _post_timer(self, item: TimerFired) -> None:
        # Admitted past maxsize: the handle is already spent.
        ok = await self._inbound_q.put(item, overflow=True)
        if not ok:
            self._log("timer_dropped", kind=item.kind, reason="queue_closed")

    async def _send(self, msg: OutboundEvent) -> None:
        ok = await self._outbound_q.put(msg)
        if not ok:
            self._inc("outbound_queue_dropped_total")
            self._log("outbound_dropped", message_type=msg.type)

    async def _speak(self, text: str) -> None:
        await self._send(OutboundText(type="text", token=text, last=True))

    async def _send_token(self, token: str) -> None:
        await self._send(OutboundText(type="text", token=token, last=False))

    async def _send_error(self, message: str, details: Optional[str] = None) -> None:
        await self._send(
            OutboundError(type="error", message=message, details=details, timestamp=self._clock.wall_iso())
        )

    # ---------------------------------------------------------------------
    # Loop
    # ---------------------------------------------------------------------

    async def run(self) -> None:
        try:
            while not self._stopped and not self._shutdown_evt.is_set():
                try:
                    item = await self._inbound_q.get_prefer(is_urgent)
                except QueueClosed:
                    break
                await self._dispatch(item)
        finally:
            await self._close()

    async def _close(self) -> None:
        if self._call_id is not None:
            session = await self._store.delete(self._call_id)
            if session is not None:
                self._log("session_closed_with_transport", state=session.state.value)
        await self._inbound_q.close()
        await self._outbound_q.close()
        self._shutdown_evt.set()

    async def _dispatch(self, item: InboundItem) -> None:
        if isinstance(item, TransportClosed):
            self._log("transport_closed", reason=item.reason)
            self._stopped = True
            return
        if isinstance(item, MalformedFrame):
            await self._send_error(FAILED_TO_PROCESS, details=item.reason)
            return
        if isinstance(item, UnknownFrame):
            await self._send_error(f"Unknown message type: {item.message_type}")
            return
        if isinstance(item, TimerFired):
            await self._on_timer(item)
            return
        if isinstance(item, InboundSetup):
            await self._on_setup(item)
            return

        session = await self._store.get(self._call_id) if self._call_id is not None else None
        if session is None or session.terminal:
            self._inc("session_not_found_total")
            await self._send_error(SESSION_NOT_FOUND)
            return

        async with session.lock:
            # A sweep may have removed the session while we waited for its lock.
            if await self._store.get(session.call_id) is not session or session.terminal:
                self._inc("session_not_found_total")
                await self._send_error(SESSION_NOT_FOUND)
                return
            if isinstance(item, InboundPrompt):
                await self._on_prompt(session, item)
            elif isinstance(item, InboundInterrupt):
                self._on_interrupt(session, item)
            elif isinstance(item, InboundHangup):
                await self._hangup_flow(
                    session,
                    reason=item.reason or "client_initiated",
                    final_message=item.final_message,
                )
            elif isinstance(item, InboundError):
                await self._on_error(session, item)
            elif isinstance(item, InboundDtmf):
                self._store.touch(session)
                self._log("dtmf_received", digit=item.digit)

    # ---------------------------------------------------------------------
    # Handlers
    # ---------------------------------------------------------------------

    async def _on_setup(self, ev: InboundSetup) -> None:
        if self._call_id is not None:
            self._log("setup_duplicate", received_call_id=ev.call_id)
            return
        if await self._store.get(ev.call_id) is not None:
            self._log("setup_duplicate", received_call_id=ev.call_id, live_elsewhere=True)
            return

        session = await self._store.create(ev.call_id)
        self._call_id = ev.call_id
        self._inc("sessions_created_total")

        async with session.lock:
            session.callee_number = ev.callee_number
            session.transition(SessionState.GREETING_PENDING)
            student = await self._lookup_student(ev.callee_number)
            if student is not None:
                session.student_context = student
                self._store.append_turn(session, "system", student_context(student))
            self._timeouts.arm_greeting(session)
            self._timeouts.arm_inactivity(session)
        self._log("setup", callee_number=ev.callee_number, student_found=student is not None)

    async def _lookup_student(self, number: Optional[str]) -> Optional[StudentRecord]:
        if not number:
            return None
        try:
            return await self._directory.find_by_phone_number(number)
        except Exception as e:
            self._log("student_lookup_failed", error=f"{type(e).__name__}: {e}")
            return None

    async def _on_timer(self, fired: TimerFired) -> None:
        session = await self._store.get(fired.call_id)
        if session is None:
            return
        async with session.lock:
            stale = session.terminal or await self._store.get(fired.call_id) is not session
            if stale or not TimeoutManager.is_current(session, fired):
                self._log("timer_stale", kind=fired.kind)
                return
            if fired.kind == "greeting":
                session.greeting_timer = None
                if session.state != SessionState.GREETING_PENDING:
                    return
                await self._greet(session)
            else:
                session.inactivity_timer = None
                await self._timeout_flow(session)

    async def _greet(self, session: Session) -> None:
        session.transition(SessionState.ACTIVE)
        self._inc("greetings_total")
        if session.student_context is not None:
            instruction = personalized_greeting_instruction(session.student_context)
        else:
            instruction = generic_greeting_instruction(
                agent_name=self._config.agent_name, org_name=self._config.org_name
            )
        await self._generate_turn(
            session,
            instruction=instruction,
            fallback_text=welcome_greeting(agent_name=self._config.agent_name, org_name=self._config.org_name),
        )

    async def _on_prompt(self, session: Session, ev: InboundPrompt) -> None:
        if session.state == SessionState.GREETING_PENDING:
            self._timeouts.cancel_greeting(session)
            session.transition(SessionState.ACTIVE)
        self._timeouts.arm_inactivity(session)
        session.consecutive_tool_calls = 0
        self._store.append_turn(session, "user", ev.voice_text)

        if should_end_call(ev.voice_text):
            await self._end_flow(session, reason="conversation_complete")
            return
        await self._generate_turn(session)

    def _on_interrupt(self, session: Session, ev: InboundInterrupt) -> None:
        changed = apply_interrupt(session.conversation, ev.heard_prefix)
        if changed:
            self._inc("interrupts_applied_total")
        self._log("interrupt", changed=changed, heard_chars=len(ev.heard_prefix))

    async def _on_error(self, session: Session, ev: InboundError) -> None:
        self._store.record_error(
            session,
            {
                "type": ev.error_type or "unknown",
                "message": ev.message or "No error message provided",
                "code": ev.code,
                "timestamp": ev.timestamp or self._clock.wall_iso(),
            },
        )
        await self._send(
            OutboundErrorAcknowledged(
                type="error_acknowledged",
                call_id=session.call_id,
                original_error=OriginalError(type=ev.error_type, message=ev.message, code=ev.code),
                timestamp=self._clock.wall_iso(),
            )
        )
        self._log("client_error", error_type=ev.error_type, fatal=ev.is_fatal)
        if ev.is_fatal:
            await self._hangup_flow(
                session,
                reason="critical_error",
                final_message=critical_error_message(org_name=self._config.org_name),
            )

    # ---------------------------------------------------------------------
    # Turn generation
    # ---------------------------------------------------------------------

    async def _generate_turn(
        self,
        session: Session,
        *,
        instruction: Optional[str] = None,
        fallback_text: str = APOLOGY_MESSAGE,
    ) -> None:
        try:
            result = await self._generator.complete(session.conversation, instruction)
        except Exception as e:
            self._inc("generation_fallback_stream_total")
            self._log("complete_failed", error=f"{type(e).__name__}: {e}")
            await self._stream_turn(session, instruction=instruction, fallback_text=fallback_text)
            return

        if result.tool_call is not None:
            await self._handle_tool_call(session, result)
            return

        text = (result.text or "").strip()
        if not text:
            await self._stream_turn(session, instruction=instruction, fallback_text=fallback_text)
            return

        await self._speak(text)
        await self._finish_assistant_turn(session, text)

    async def _stream_turn(self, session: Session, *, instruction: Optional[str], fallback_text: str) -> None:
        sent: list[str] = []

        async def _relay(token: str) -> None:
            sent.append(token)
            await self._send_token(token)

        try:
            text = await self._generator.stream(session.conversation, _relay, instruction)
        except Exception as e:
            self._inc("generation_apology_total")
            self._log("stream_failed", error=f"{type(e).__name__}: {e}", tokens_sent=len(sent))
            await self._speak(fallback_text)
            # The callee already heard the partial tokens; the record keeps them.
            partial = "".join(sent).strip()
            self._store.append_turn(session, "assistant", f"{partial} {fallback_text}" if partial else fallback_text)
            return

        await self._send(OutboundText(type="text", token="", last=True))
        if text.strip():
            await self._finish_assistant_turn(session, text)

    async def _finish_assistant_turn(self, session: Session, text: str) -> None:
        self._store.append_turn(session, "assistant", text)
        session.consecutive_tool_calls = 0
        if should_ai_end_call(text):
            await self._end_flow(session, reason="ai_initiated")

    async def _handle_tool_call(self, session: Session, result: TurnResult) -> None:
        assert result.tool_call is not None
        call = result.tool_call
        review = self._tools.review(session, call.name, call.arguments)
        self._log("tool_review", tool=call.name, decision=review.decision.value, error=review.error)

        if review.decision == ReviewDecision.LOOP:
            await self._end_flow(session, reason="tool_loop_prevented")
            return
        if review.decision in (ReviewDecision.TOO_EARLY, ReviewDecision.INVALID):
            message = review.message or TOO_EARLY_MESSAGE
            await self._speak(message)
            self._store.append_turn(session, "assistant", message)
            return

        self._tools.mark_called(session, call.name, call.arguments)
        ctx = ToolContext(session=session, telephony=self._telephony, directory=self._directory)

        if call.name == "end_call":
            await self._tools.execute(call.name, call.arguments, ctx)
            await self._end_flow(session, reason="ai_tool_call", spoken=result.text)
            return

        if self._config.tool_hold_notice_enabled:
            await self._speak(TOOL_HOLD_NOTICE)
            await self._clock.sleep_ms(self._config.tool_hold_delay_ms)

        outcome = await self._tools.execute(call.name, call.arguments, ctx)
        if not outcome.success:
            await self._speak(outcome.response_text)
            self._store.append_turn(session, "assistant", outcome.response_text)
            return

        detailed = json.dumps(outcome.detailed_info, indent=2, default=str)
        self._store.append_turn(
            session,
            "system",
            f'Tool "{call.name}" executed successfully with the following information:\n{detailed}',
        )
        await self._generate_turn(session, fallback_text=outcome.response_text)

    # ---------------------------------------------------------------------
    # End flows
    # ---------------------------------------------------------------------

    def _enter_ending(self, session: Session, reason: str) -> None:
        self._timeouts.cancel_all(session)
        session.transition(SessionState.ENDING)
        self._inc("call_end_reason_total", reason)
        self._log("call_ending", reason=reason)

    async def _end_flow(self, session: Session, *, reason: str, spoken: Optional[str] = None) -> None:
        self._enter_ending(session, reason)

        if spoken and spoken.strip():
            text = spoken.strip()
            floor_ms = self._config.short_closing_min_speaking_ms
        else:
            try:
                text = await self._generator.closing(session.conversation)
                floor_ms = self._config.closing_min_speaking_ms
            except Exception as e:
                self._log("closing_failed", error=f"{type(e).__name__}: {e}")
                text = FALLBACK_GOODBYE
                floor_ms = self._config.short_closing_min_speaking_ms

        await self._speak(text)
        self._store.append_turn(session, "assistant", text)
        wait_ms = estimate_speaking_ms(
            text,
            words_per_minute=self._config.speaking_words_per_minute,
            floor_ms=floor_ms,
        )
        await self._clock.sleep_ms(wait_ms)
        await self._terminate(session, reason=reason, on_failure="hangup")

    async def _timeout_flow(self, session: Session) -> None:
        self._inc("inactivity_timeouts_total")
        self._enter_ending(session, "timeout")
        notice = timeout_message(org_name=self._config.org_name)
        await self._speak(notice)
        self._store.append_turn(session, "assistant", notice)
        await self._clock.sleep_ms(self._config.timeout_grace_ms)
        await self._terminate(session, reason="timeout", on_failure="hangup")

    async def _hangup_flow(self, session: Session, *, reason: str, final_message: Optional[str]) -> None:
        self._enter_ending(session, reason)
        if final_message:
            await self._speak(final_message)
            self._store.append_turn(session, "assistant", final_message)
            await self._clock.sleep_ms(self._config.hangup_delay_ms)
        await self._terminate(session, reason=reason, on_failure="hangup_error")

    async def _terminate(
        self,
        session: Session,
        *,
        reason: str,
        on_failure: Literal["hangup", "hangup_error"],
    ) -> None:
        # Exactly one attempt; the local frame is sent either way.
        error: Optional[str] = None
        try:
            ok = await self._telephony.terminate_call_leg(session.call_id)
            if not ok:
                error = "call termination was rejected"
        except Exception as e:
            ok = False
            error = str(e) or type(e).__name__

        if ok:
            await self._send(
                OutboundHangupConfirmed(
                    type="hangup_confirmed",
                    call_id=session.call_id,
                    reason=reason,
                    timestamp=self._clock.wall_iso(),
                )
            )
        else:
            self._inc("termination_failures_total")
            self._log("termination_failed", reason=reason, error=error)
            if on_failure == "hangup_error":
                await self._send(
                    OutboundHangupError(
                        type="hangup_error",
                        call_id=session.call_id,
                        error=error or "termination failed",
                        reason=reason,
                    )
                )
            else:
                await self._send(OutboundHangup(type="hangup", reason=reason))

        session.transition(SessionState.TERMINATED)
        await self._store.delete(session.call_id)
        self._log("call_terminated", reason=reason, confirmed=ok, turns=len(session.conversation))
