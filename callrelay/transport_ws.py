from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any, Protocol, Union

from pydantic import ValidationError

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .log import log_event
from .metrics import RELAY
from .protocol import (
    InboundEvent,
    InboundHangup,
    InboundInterrupt,
    OutboundEvent,
    UnknownMessageType,
    dumps_outbound,
    parse_inbound_obj,
)
from .timers import TimerFired


class Transport(Protocol):
    async def recv_text(self) -> str: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, *, code: int = 1000, reason: str = "") -> None: ...


@dataclass(frozen=True, slots=True)
class TransportClosed:
    reason: str


@dataclass(frozen=True, slots=True)
class MalformedFrame:
    reason: str
    details: str = ""


@dataclass(frozen=True, slots=True)
class UnknownFrame:
    message_type: str


InboundItem = Union[InboundEvent, TransportClosed, MalformedFrame, UnknownFrame, TimerFired]


def is_urgent(item: Any) -> bool:
    """Items the router pulls ahead of FIFO order."""
    return isinstance(item, (TransportClosed, InboundInterrupt))


def _is_droppable(item: Any) -> bool:
    return isinstance(item, (MalformedFrame, UnknownFrame))


async def socket_reader(
    *,
    transport: Transport,
    inbound_q: BoundedDequeQueue[InboundItem],
    metrics: Any,
    shutdown_evt: asyncio.Event,
    max_frame_bytes: int = 262_144,
    structured_logs: bool = False,
) -> None:
    """
    Reads WS frames -> JSON decode -> protocol validation -> inbound bounded queue.

    Bad frames are forwarded as MalformedFrame/UnknownFrame so the router can answer them;
    they never tear down the call. Transport failure is forwarded as TransportClosed.
    """

    def _log(event: str, **payload: object) -> None:
        log_event(structured_logs, "ws_inbound", event, **payload)

    async def _put(item: InboundItem) -> None:
        if isinstance(item, (InboundHangup, InboundInterrupt)):
            ok = await inbound_q.put(item, evict=_is_droppable)
        else:
            ok = await inbound_q.put(item)
        if not ok:
            metrics.inc(RELAY["inbound_queue_dropped_total"], 1)
            _log("frame_dropped", reason="queue_full", item=type(item).__name__)

    try:
        while not shutdown_evt.is_set():
            raw = await transport.recv_text()
            size_bytes = len(raw.encode("utf-8"))
            if int(max_frame_bytes) > 0 and size_bytes > int(max_frame_bytes):
                _log("frame_dropped", reason="frame_too_large", size_bytes=size_bytes)
                metrics.inc(RELAY["inbound_bad_frame_total"], 1)
                await _put(MalformedFrame(reason="frame_too_large"))
                continue

            try:
                obj = json.loads(raw)
            except JSONDecodeError as e:
                _log("frame_dropped", reason="bad_json")
                metrics.inc(RELAY["inbound_bad_frame_total"], 1)
                await _put(MalformedFrame(reason="bad_json", details=str(e)))
                continue

            try:
                ev = parse_inbound_obj(obj)
            except UnknownMessageType as e:
                _log("frame_unknown_type", message_type=e.message_type)
                metrics.inc(RELAY["inbound_unknown_type_total"], 1)
                await _put(UnknownFrame(message_type=e.message_type))
                continue
            except ValidationError as e:
                mtype = str(obj.get("type", "")) if isinstance(obj, dict) else ""
                _log("frame_dropped", reason="bad_schema", message_type=mtype)
                metrics.inc(RELAY["inbound_bad_frame_total"], 1)
                await _put(MalformedFrame(reason="bad_schema", details=str(e.error_count())))
                continue

            _log("frame_accepted", message_type=ev.type, size_bytes=size_bytes)
            await _put(ev)
    except Exception as e:
        _log("read_failed", error=type(e).__name__)
        await inbound_q.put(TransportClosed(reason="transport_read_error"), overflow=True)


async def socket_writer(
    *,
    transport: Transport,
    outbound_q: BoundedDequeQueue[OutboundEvent],
    metrics: Any,
    clock: Clock,
    inbound_q: BoundedDequeQueue[InboundItem] | None = None,
    ws_write_timeout_ms: int = 2000,
    ws_max_consecutive_write_timeouts: int = 2,
    structured_logs: bool = False,
) -> None:
    """
    Single-writer rule: the only task that writes to the WS.

    Drains whatever is still queued after the outbound queue is closed, then returns.
    """
    consecutive_write_timeouts = 0

    while True:
        try:
            msg = await outbound_q.get()
        except QueueClosed:
            return

        payload = dumps_outbound(msg)
        try:
            await clock.run_with_timeout(
                transport.send_text(payload),
                timeout_ms=max(1, int(ws_write_timeout_ms)),
            )
            consecutive_write_timeouts = 0
        except TimeoutError:
            metrics.inc(RELAY["ws_write_timeout_total"], 1)
            consecutive_write_timeouts += 1
            log_event(structured_logs, "ws_outbound", "write_timeout", message_type=msg.type)
            if consecutive_write_timeouts >= max(1, int(ws_max_consecutive_write_timeouts)):
                if inbound_q is not None:
                    await inbound_q.put(TransportClosed(reason="write_timeout"), overflow=True)
                return
        except Exception as e:
            log_event(structured_logs, "ws_outbound", "write_failed", error=type(e).__name__)
            if inbound_q is not None:
                await inbound_q.put(TransportClosed(reason="transport_write_error"), overflow=True)
            return
