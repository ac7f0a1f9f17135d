from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        self.histograms.setdefault(name, []).append(int(value))

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: list(v) for k, v in self.histograms.items()},
        }


class CompositeMetrics:
    """
    Write-only metrics fanout.

    The server feeds both a per-call Metrics and the process-level one exported at /metrics.
    """

    def __init__(self, *sinks: Any) -> None:
        self._sinks = [s for s in sinks if s is not None]

    def inc(self, name: str, value: int = 1) -> None:
        for s in self._sinks:
            s.inc(name, value)

    def observe(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.observe(name, value)


RELAY = {
    # Sessions
    "sessions_created_total": "session.created_total",
    "sessions_swept_total": "session.swept_total",
    "session_not_found_total": "session.not_found_total",
    # Protocol
    "inbound_bad_frame_total": "inbound.bad_frame_total",
    "inbound_unknown_type_total": "inbound.unknown_type_total",
    "inbound_queue_dropped_total": "inbound.queue_dropped_total",
    "outbound_queue_dropped_total": "outbound.queue_dropped_total",
    "ws_write_timeout_total": "ws.write_timeout_total",
    # Turns
    "greetings_total": "turn.greetings_total",
    "interrupts_applied_total": "turn.interrupts_applied_total",
    "generation_fallback_stream_total": "turn.generation_fallback_stream_total",
    "generation_apology_total": "turn.generation_apology_total",
    "completion_latency_ms": "turn.completion_latency_ms",
    # Tools
    "tool_accepted_total": "tool.accepted_total",
    "tool_loop_blocked_total": "tool.loop_blocked_total",
    "tool_too_early_total": "tool.too_early_total",
    "tool_invalid_total": "tool.invalid_total",
    "tool_failures_total": "tool.failures_total",
    # Termination
    "inactivity_timeouts_total": "call.inactivity_timeouts_total",
    "call_end_reason_total": "call.end_reason_total",
    "termination_failures_total": "call.termination_failures_total",
}
