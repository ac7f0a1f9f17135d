from __future__ import annotations

import asyncio

from callrelay.llm_client import Completion
from callrelay.metrics import RELAY
from callrelay.prompts import critical_error_message, timeout_message
from callrelay.protocol import OutboundErrorAcknowledged, OutboundHangupError
from callrelay.session_store import SessionState
from callrelay.telephony import FakeTelephony

from tests.harness.transport_harness import HarnessSession, final_texts, harness_config


def test_inactivity_timeout_speaks_notice_then_terminates() -> None:
    async def _run() -> None:
        h = await HarnessSession.start(cfg=harness_config(inactivity_timeout_ms=10_000, timeout_grace_ms=3000))
        try:
            await h.setup_call("CA20")
            session = await h.store.get("CA20")
            assert session is not None

            await h.advance(7000)
            out = await h.drain_outbound()
            assert final_texts(out) == [timeout_message()]
            assert session.state == SessionState.ENDING
            assert h.metrics.get(RELAY["inactivity_timeouts_total"]) == 1

            await h.advance(3000)
            out = await h.drain_outbound()
            assert [e.type for e in out] == ["hangup_confirmed"]
            assert out[0].reason == "timeout"
            assert await h.store.get("CA20") is None
        finally:
            await h.stop()

    asyncio.run(_run())


def test_prompt_rearms_inactivity_timer() -> None:
    async def _run() -> None:
        h = await HarnessSession.start(cfg=harness_config(inactivity_timeout_ms=10_000))
        try:
            await h.setup_call("CA21")
            session = await h.store.get("CA21")
            assert session is not None
            first = session.inactivity_timer
            assert first is not None

            await h.prompt("Sorry, I was driving")
            assert first.cancelled is True
            assert session.inactivity_timer is not first

            # The original deadline passes without effect.
            await h.advance(7000)
            assert await h.drain_outbound() == []
            assert session.state == SessionState.ACTIVE

            await h.advance(3000)
            out = await h.drain_outbound()
            assert final_texts(out) == [timeout_message()]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_client_hangup_without_final_message_terminates_immediately() -> None:
    async def _run() -> None:
        h = await HarnessSession.start()
        try:
            await h.setup_call("CA22")
            await h.send_obj({"type": "hangup"})
            out = await h.drain_outbound()
            assert [e.type for e in out] == ["hangup_confirmed"]
            assert out[0].reason == "client_initiated"
            assert h.telephony.terminated == ["CA22"]
            assert h.metrics.get(f"{RELAY['call_end_reason_total']}.client_initiated") == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_client_hangup_with_final_message_waits_before_terminating() -> None:
    async def _run() -> None:
        h = await HarnessSession.start()
        try:
            await h.setup_call("CA23")
            await h.send_obj({"type": "hangup", "reason": "operator", "finalMessage": "Sorry, we have to go."})
            out = await h.drain_outbound()
            assert final_texts(out) == ["Sorry, we have to go."]
            assert h.telephony.terminated == []

            await h.advance(h.cfg.hangup_delay_ms)
            out = await h.drain_outbound()
            assert [e.type for e in out] == ["hangup_confirmed"]
            assert out[0].reason == "operator"
        finally:
            await h.stop()

    asyncio.run(_run())


def test_failed_termination_on_client_hangup_reports_hangup_error() -> None:
    async def _run() -> None:
        h = await HarnessSession.start(telephony=FakeTelephony(succeed=False))
        try:
            await h.setup_call("CA24")
            await h.send_obj({"type": "hangup"})
            out = await h.drain_outbound()
            assert len(out) == 1
            assert isinstance(out[0], OutboundHangupError)
            assert out[0].call_id == "CA24"
            assert out[0].reason == "client_initiated"
            assert h.metrics.get(RELAY["termination_failures_total"]) == 1
            assert await h.store.get("CA24") is None
        finally:
            await h.stop()

    asyncio.run(_run())


def test_failed_termination_after_closing_sends_local_hangup() -> None:
    async def _run() -> None:
        h = await HarnessSession.start(telephony=FakeTelephony(raise_error=True))
        try:
            await h.setup_call("CA25")
            await h.prompt("goodbye")
            await h.advance_until(lambda: bool(h.telephony.terminated))
            out = await h.drain_outbound()
            assert [e.type for e in out] == ["hangup"]
            assert out[0].reason == "conversation_complete"
            assert h.telephony.terminated == ["CA25"]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_non_fatal_client_error_is_recorded_and_acknowledged() -> None:
    async def _run() -> None:
        h = await HarnessSession.start()
        try:
            await h.setup_call("CA26")
            await h.send_obj({"type": "error", "description": "tts hiccup", "code": 64101})
            out = await h.drain_outbound()
            assert len(out) == 1
            ack = out[0]
            assert isinstance(ack, OutboundErrorAcknowledged)
            assert ack.call_id == "CA26"
            assert ack.original_error.message == "tts hiccup"
            assert ack.original_error.code == 64101

            session = await h.store.get("CA26")
            assert session is not None
            assert session.state == SessionState.ACTIVE
            assert session.errors[0]["type"] == "unknown"
            assert session.errors[0]["message"] == "tts hiccup"
            assert session.errors[0]["timestamp"].endswith("Z")
        finally:
            await h.stop()

    asyncio.run(_run())


def test_fatal_client_error_ends_call_with_apology() -> None:
    async def _run() -> None:
        h = await HarnessSession.start()
        try:
            await h.setup_call("CA27")
            await h.send_obj({"type": "error", "errorType": "fatal"})
            out = await h.drain_outbound()
            assert [e.type for e in out] == ["error_acknowledged", "text"]
            assert final_texts(out) == [critical_error_message()]

            session = await h.store.get("CA27")
            assert session is not None
            assert session.errors[0]["message"] == "No error message provided"

            await h.advance(h.cfg.hangup_delay_ms)
            out = await h.drain_outbound()
            assert [e.type for e in out] == ["hangup_confirmed"]
            assert out[0].reason == "critical_error"
        finally:
            await h.stop()

    asyncio.run(_run())


def test_messages_after_termination_get_session_not_found() -> None:
    async def _run() -> None:
        h = await HarnessSession.start()
        try:
            await h.setup_call("CA28")
            await h.send_obj({"type": "hangup"})
            await h.drain_outbound()

            out = await h.prompt("hello?")
            assert [e.type for e in out] == ["error"]
            assert out[0].message == "Session not found"
            assert h.metrics.get(RELAY["session_not_found_total"]) == 1

            # A fresh setup on the same connection does not resurrect the call.
            await h.send_obj({"type": "setup", "callSid": "CA28"})
            assert await h.store.get("CA28") is None
        finally:
            await h.stop()

    asyncio.run(_run())


def test_transport_close_deletes_session_and_cancels_timers() -> None:
    async def _run() -> None:
        h = await HarnessSession.start(completions=[Completion(text="Hi!")])
        try:
            await h.setup_call("CA29")
            session = await h.store.get("CA29")
            assert session is not None
            inactivity = session.inactivity_timer
            assert inactivity is not None

            await h.transport.close()
            await h.pump()
            assert h.shutdown_evt.is_set()
            assert await h.store.get("CA29") is None
            assert inactivity.cancelled is True
            assert session.state == SessionState.TERMINATED
            assert h.telephony.terminated == []
        finally:
            await h.stop()

    asyncio.run(_run())


def test_inactivity_timeout_survives_a_full_inbound_queue() -> None:
    async def _run() -> None:
        cfg = harness_config(inbound_queue_max=2, inactivity_timeout_ms=10_000, timeout_grace_ms=3000)
        h = await HarnessSession.start(cfg=cfg, completions=[Completion(text="Hi!")])
        try:
            await h.setup_call("CA50")
            session = await h.store.get("CA50")
            assert session is not None

            # Router blocked on the session; two bad frames fill the queue behind it.
            await session.lock.acquire()
            await h.send_obj({"type": "dtmf", "digit": "5"})
            await h.send_raw("{not json")
            await h.send_raw("{not json")
            assert h.inbound_q.qsize() == 2

            await h.advance(10_000)
            assert h.inbound_q.qsize() == 3
            session.lock.release()

            await h.pump()
            out = await h.drain_outbound()
            assert final_texts(out) == [timeout_message()]
            assert session.state == SessionState.ENDING

            await h.advance(3000)
            assert h.telephony.terminated == ["CA50"]
        finally:
            await h.stop()

    asyncio.run(_run())
