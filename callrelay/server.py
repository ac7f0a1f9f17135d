from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse

from .bounded_queue import BoundedDequeQueue
from .clock import Clock, RealClock
from .config import RelayConfig
from .directory import Directory
from .llm_client import CompletionClient
from .log import log_event
from .metrics import RELAY, CompositeMetrics, Metrics
from .orchestrator import CallOrchestrator
from .prompts import build_system_prompt
from .provider import build_completion_client, build_directory, build_telephony
from .session_store import SessionStore
from .telephony import Telephony
from .tools import ToolDispatcher
from .transport_ws import Transport, socket_reader, socket_writer
from .turn_generator import TurnGenerator


class StarletteTransport(Transport):
    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def recv_text(self) -> str:
        return await self._ws.receive_text()

    async def send_text(self, text: str) -> None:
        await self._ws.send_text(text)

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except RuntimeError:
            # Already closed by the peer.
            return


CompletionFactory = Callable[[], CompletionClient]


async def _sweep_loop(*, store: SessionStore, cfg: RelayConfig, clock: Clock, metrics: Metrics) -> None:
    try:
        while True:
            await clock.sleep_ms(cfg.sweep_interval_ms)
            swept = await store.sweep_expired(cfg.session_max_age_ms)
            if swept:
                metrics.inc(RELAY["sessions_swept_total"], swept)
                log_event(cfg.structured_logging, "server", "sessions_swept", count=swept)
    except asyncio.CancelledError:
        return


def create_app(
    config: Optional[RelayConfig] = None,
    *,
    clock: Optional[Clock] = None,
    completion_factory: Optional[CompletionFactory] = None,
    telephony: Optional[Telephony] = None,
    directory: Optional[Directory] = None,
    start_sweeper: bool = True,
) -> FastAPI:
    cfg = config or RelayConfig.from_env()
    clk: Clock = clock or RealClock()
    global_metrics = Metrics()
    store = SessionStore(
        clock=clk,
        system_prompt=build_system_prompt(agent_name=cfg.agent_name, org_name=cfg.org_name),
        tool_history_size=cfg.tool_history_size,
        structured_logs=cfg.structured_logging,
    )
    tel = telephony or build_telephony(cfg)
    dirx = directory or build_directory(cfg)
    make_client: CompletionFactory = completion_factory or (lambda: build_completion_client(cfg, clock=clk))

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        sweeper: Optional[asyncio.Task[None]] = None
        if start_sweeper:
            sweeper = asyncio.create_task(_sweep_loop(store=store, cfg=cfg, clock=clk, metrics=global_metrics))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                await asyncio.gather(sweeper, return_exceptions=True)

    app = FastAPI(lifespan=lifespan)
    app.state.config = cfg
    app.state.store = store
    app.state.metrics = global_metrics

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"ok": True, "sessions": await store.count()}

    @app.get("/metrics")
    async def metrics() -> JSONResponse:
        return JSONResponse(global_metrics.snapshot())

    @app.websocket("/ws")
    async def relay_websocket(ws: WebSocket) -> None:
        await ws.accept()
        log_event(cfg.structured_logging, "ws_session", "connect")
        await _run_session(
            StarletteTransport(ws),
            cfg=cfg,
            clock=clk,
            store=store,
            global_metrics=global_metrics,
            completion_client=make_client(),
            telephony=tel,
            directory=dirx,
        )

    return app


async def _run_session(
    transport: Transport,
    *,
    cfg: RelayConfig,
    clock: Clock,
    store: SessionStore,
    global_metrics: Metrics,
    completion_client: CompletionClient,
    telephony: Telephony,
    directory: Directory,
) -> None:
    session_metrics = Metrics()
    metrics = CompositeMetrics(session_metrics, global_metrics)

    inbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.inbound_queue_max)
    outbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.outbound_queue_max)
    shutdown_evt = asyncio.Event()

    dispatcher = ToolDispatcher.from_config(cfg, clock=clock, metrics=metrics)
    generator = TurnGenerator(
        client=completion_client,
        clock=clock,
        tools=dispatcher.schemas(),
        closing_max_tokens=cfg.closing_max_tokens,
        closing_temperature=cfg.closing_temperature,
        metrics=metrics,
    )
    orch = CallOrchestrator(
        config=cfg,
        clock=clock,
        store=store,
        inbound_q=inbound_q,
        outbound_q=outbound_q,
        generator=generator,
        tools=dispatcher,
        telephony=telephony,
        directory=directory,
        metrics=metrics,
        shutdown_evt=shutdown_evt,
    )

    reader_task = asyncio.create_task(
        socket_reader(
            transport=transport,
            inbound_q=inbound_q,
            metrics=metrics,
            shutdown_evt=shutdown_evt,
            max_frame_bytes=cfg.ws_max_frame_bytes,
            structured_logs=cfg.structured_logging,
        )
    )
    writer_task = asyncio.create_task(
        socket_writer(
            transport=transport,
            outbound_q=outbound_q,
            metrics=metrics,
            clock=clock,
            inbound_q=inbound_q,
            ws_write_timeout_ms=cfg.ws_write_timeout_ms,
            structured_logs=cfg.structured_logging,
        )
    )
    orch_task = asyncio.create_task(orch.run())

    try:
        await orch_task
    finally:
        shutdown_evt.set()
        reader_task.cancel()
        writer_task.cancel()
        await asyncio.gather(reader_task, writer_task, return_exceptions=True)
        await completion_client.aclose()
        await transport.close(code=1000, reason="session_end")
        log_event(
            cfg.structured_logging,
            "ws_session",
            "disconnect",
            call_id=str(orch.call_id or ""),
            counters=session_metrics.snapshot()["counters"],
        )


app = create_app()
