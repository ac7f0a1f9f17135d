from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from callrelay.bounded_queue import BoundedDequeQueue
from callrelay.clock import FakeClock
from callrelay.config import RelayConfig
from callrelay.directory import InMemoryDirectory, StudentRecord
from callrelay.llm_client import FakeCompletionClient
from callrelay.metrics import Metrics
from callrelay.orchestrator import CallOrchestrator
from callrelay.prompts import build_system_prompt
from callrelay.protocol import OutboundEvent, OutboundText, parse_outbound_json
from callrelay.session_store import SessionStore
from callrelay.telephony import FakeTelephony
from callrelay.tools import ToolDispatcher
from callrelay.transport_ws import Transport, socket_reader, socket_writer
from callrelay.turn_generator import TurnGenerator


STUDENT = StudentRecord(
    student_id="stu-1",
    name="Priya",
    phone_number="+1 (555) 010-4477",
    class_name="Programming Proficiency",
    class_date="2025-11-03",
    class_time="6:00 PM",
)


class InMemoryTransport(Transport):
    def __init__(self) -> None:
        self._in: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._out: asyncio.Queue[str] = asyncio.Queue()
        self.closed = asyncio.Event()
        # Test-only latch to deterministically pause/resume writer output.
        self.send_allowed = asyncio.Event()
        self.send_allowed.set()

    async def recv_text(self) -> str:
        raw = await self._in.get()
        if raw is None:
            raise ConnectionError("peer closed")
        return raw

    async def send_text(self, text: str) -> None:
        await self.send_allowed.wait()
        await self._out.put(text)

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        if self.closed.is_set():
            return
        self.closed.set()
        self.send_allowed.set()
        # Unblock recv.
        await self._in.put(None)

    async def push_inbound(self, raw_text: str) -> None:
        await self._in.put(raw_text)

    async def pop_outbound(self) -> str:
        return await self._out.get()

    def pop_outbound_nowait(self) -> str:
        return self._out.get_nowait()

    def outbound_qsize(self) -> int:
        return self._out.qsize()


def harness_config(**overrides: Any) -> RelayConfig:
    base: dict[str, Any] = {"structured_logging": False, "tool_hold_notice_enabled": False}
    base.update(overrides)
    return RelayConfig(**base)


@dataclass
class HarnessSession:
    cfg: RelayConfig
    clock: FakeClock
    metrics: Metrics
    store: SessionStore
    llm: FakeCompletionClient
    telephony: FakeTelephony
    directory: InMemoryDirectory
    transport: InMemoryTransport
    inbound_q: BoundedDequeQueue
    outbound_q: BoundedDequeQueue
    shutdown_evt: asyncio.Event
    orch: CallOrchestrator
    tasks: list[asyncio.Task[Any]]

    @staticmethod
    async def start(
        *,
        cfg: Optional[RelayConfig] = None,
        llm: Optional[FakeCompletionClient] = None,
        completions: Iterable[Any] = (),
        streams: Iterable[Any] = (),
        closings: Iterable[Any] = (),
        telephony: Optional[FakeTelephony] = None,
        directory: Optional[InMemoryDirectory] = None,
        students: Iterable[StudentRecord] = (),
        store: Optional[SessionStore] = None,
        clock: Optional[FakeClock] = None,
    ) -> "HarnessSession":
        cfg = cfg or harness_config()
        clock = clock or FakeClock(start_ms=0)
        metrics = Metrics()
        store = store or SessionStore(
            clock=clock,
            system_prompt=build_system_prompt(agent_name=cfg.agent_name, org_name=cfg.org_name),
            tool_history_size=cfg.tool_history_size,
        )
        llm = llm or FakeCompletionClient(
            clock=clock,
            completions=list(completions),
            streams=list(streams),
            closings=list(closings),
        )
        telephony = telephony or FakeTelephony()
        directory = directory or InMemoryDirectory(students)
        transport = InMemoryTransport()
        inbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.inbound_queue_max)
        outbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.outbound_queue_max)
        shutdown_evt = asyncio.Event()

        dispatcher = ToolDispatcher.from_config(cfg, clock=clock, metrics=metrics)
        generator = TurnGenerator(
            client=llm,
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

        tasks: list[asyncio.Task[Any]] = [
            asyncio.create_task(
                socket_reader(
                    transport=transport,
                    inbound_q=inbound_q,
                    metrics=metrics,
                    shutdown_evt=shutdown_evt,
                    max_frame_bytes=cfg.ws_max_frame_bytes,
                )
            ),
            asyncio.create_task(
                socket_writer(
                    transport=transport,
                    outbound_q=outbound_q,
                    metrics=metrics,
                    clock=clock,
                    inbound_q=inbound_q,
                    ws_write_timeout_ms=cfg.ws_write_timeout_ms,
                )
            ),
            asyncio.create_task(orch.run()),
        ]
        await asyncio.sleep(0)

        return HarnessSession(
            cfg=cfg,
            clock=clock,
            metrics=metrics,
            store=store,
            llm=llm,
            telephony=telephony,
            directory=directory,
            transport=transport,
            inbound_q=inbound_q,
            outbound_q=outbound_q,
            shutdown_evt=shutdown_evt,
            orch=orch,
            tasks=tasks,
        )

    async def stop(self) -> None:
        await self.transport.close(code=1000, reason="harness_stop")
        await self.pump()
        for t in self.tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def pump(self, rounds: int = 500) -> None:
        # Enough event-loop turns for reader -> router -> writer to settle on FakeClock.
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def send_obj(self, obj: dict[str, Any]) -> None:
        await self.transport.push_inbound(json.dumps(obj, separators=(",", ":"), sort_keys=True))
        await self.pump()

    async def send_raw(self, raw: str) -> None:
        await self.transport.push_inbound(raw)
        await self.pump()

    async def advance(self, ms: int) -> None:
        await self.clock.advance(ms)
        await self.pump()

    async def advance_until(
        self, pred: Callable[[], bool], *, step_ms: int = 500, max_ms: int = 120_000
    ) -> None:
        elapsed = 0
        while not pred():
            if elapsed >= max_ms:
                raise AssertionError(f"condition not reached within {max_ms}ms of fake time")
            await self.advance(step_ms)
            elapsed += step_ms

    async def recv_outbound(self) -> OutboundEvent:
        raw = await asyncio.wait_for(self.transport.pop_outbound(), timeout=1.0)
        return parse_outbound_json(raw)

    async def drain_outbound(self) -> list[OutboundEvent]:
        await self.pump()
        out: list[OutboundEvent] = []
        while self.transport.outbound_qsize() > 0:
            out.append(parse_outbound_json(self.transport.pop_outbound_nowait()))
        return out

    async def setup_call(self, call_id: str = "CA100", *, to: Optional[str] = None) -> list[OutboundEvent]:
        """Sends setup, lets the greeting timer fire and returns the greeting frames."""
        frame: dict[str, Any] = {"type": "setup", "callSid": call_id}
        if to is not None:
            frame["to"] = to
        await self.send_obj(frame)
        await self.advance(self.cfg.greeting_delay_ms)
        return await self.drain_outbound()

    async def prompt(self, text: str) -> list[OutboundEvent]:
        await self.send_obj({"type": "prompt", "voicePrompt": text, "last": True})
        return await self.drain_outbound()


def final_texts(events: Iterable[OutboundEvent]) -> list[str]:
    return [e.token for e in events if isinstance(e, OutboundText) and e.last]
