from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from callrelay.clock import FakeClock, RealClock
from callrelay.config import RelayConfig
from callrelay.llm_client import Completion, FakeCompletionClient
from callrelay.metrics import RELAY, Metrics
from callrelay.server import _sweep_loop, create_app
from callrelay.session_store import SessionStore
from callrelay.telephony import FakeTelephony


def _app(telephony: FakeTelephony):
    cfg = RelayConfig(structured_logging=False, greeting_delay_ms=10)
    return create_app(
        cfg,
        completion_factory=lambda: FakeCompletionClient(clock=RealClock(), completions=[Completion(text="Hi!")]),
        telephony=telephony,
        start_sweeper=False,
    )


def test_healthz_and_metrics_routes() -> None:
    app = _app(FakeTelephony())
    with TestClient(app) as client:
        assert client.get("/healthz").json() == {"ok": True, "sessions": 0}
        body = client.get("/metrics").json()
        assert body == {"counters": {}, "histograms": {}}


def test_websocket_call_greets_and_hangs_up() -> None:
    telephony = FakeTelephony()
    app = _app(telephony)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "setup", "callSid": "CA1", "to": "+15550104477"})
            assert ws.receive_json() == {"type": "text", "token": "Hi!", "last": True}
            assert client.get("/healthz").json()["sessions"] == 1

            ws.send_json({"type": "hangup"})
            msg = ws.receive_json()
            assert msg["type"] == "hangup_confirmed"
            assert msg["callSid"] == "CA1"
            assert msg["reason"] == "client_initiated"

        assert telephony.terminated == ["CA1"]
        assert client.get("/healthz").json()["sessions"] == 0
        counters = client.get("/metrics").json()["counters"]
        assert counters[RELAY["sessions_created_total"]] == 1
        assert counters[f"{RELAY['call_end_reason_total']}.client_initiated"] == 1


def test_sweep_loop_removes_stale_sessions() -> None:
    async def _run() -> None:
        clock = FakeClock()
        store = SessionStore(clock=clock, system_prompt="sys")
        metrics = Metrics()
        cfg = RelayConfig(structured_logging=False, session_max_age_ms=1000, sweep_interval_ms=500)
        await store.create("old")

        task = asyncio.create_task(_sweep_loop(store=store, cfg=cfg, clock=clock, metrics=metrics))
        for _ in range(10):
            await asyncio.sleep(0)
        for _ in range(3):
            await clock.advance(500)
            for _ in range(10):
                await asyncio.sleep(0)

        assert await store.count() == 0
        assert metrics.get(RELAY["sessions_swept_total"]) == 1
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(_run())
