from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from .clock import Clock
from .llm_client import CompletionClient, CompletionError, Message
from .metrics import RELAY
from .prompts import CLOSING_PROMPT
from .session_store import Turn


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TurnResult:
    text: Optional[str]
    tool_call: Optional[ToolCall] = None


TokenSink = Callable[[str], Awaitable[None]]


class TurnGenerator:
    """
    Thin policy layer over the completion client.

    - complete(): function-calling mode; only the first tool call is honored.
    - stream(): plain streaming, each token forwarded to on_token.
    - closing(): one short sign-off.
    Errors surface as exceptions so the caller can walk its fallback chain.
    """

    def __init__(
        self,
        *,
        client: CompletionClient,
        clock: Clock,
        tools: list[dict[str, Any]],
        closing_max_tokens: int = 50,
        closing_temperature: float = 0.7,
        metrics: Any | None = None,
    ) -> None:
        self._client = client
        self._clock = clock
        self._tools = tools
        self._closing_max_tokens = int(closing_max_tokens)
        self._closing_temperature = float(closing_temperature)
        self._metrics = metrics

    @staticmethod
    def build_messages(conversation: Sequence[Turn], instruction: Optional[str] = None) -> list[Message]:
        msgs = [t.as_message() for t in conversation]
        if instruction:
            # Transient: sent to the model, never stored in the conversation.
            msgs.append({"role": "system", "content": instruction})
        return msgs

    def _observe_latency(self, started_ms: int) -> None:
        if self._metrics is not None:
            self._metrics.observe(RELAY["completion_latency_ms"], self._clock.now_ms() - started_ms)

    async def complete(self, conversation: Sequence[Turn], instruction: Optional[str] = None) -> TurnResult:
        started = self._clock.now_ms()
        completion = await self._client.complete(self.build_messages(conversation, instruction), tools=self._tools)
        self._observe_latency(started)

        if not completion.tool_calls:
            return TurnResult(text=completion.text)

        first = completion.tool_calls[0]
        try:
            args = json.loads(first.arguments) if first.arguments.strip() else {}
        except (json.JSONDecodeError, AttributeError) as e:
            raise CompletionError(f"undecodable tool arguments for {first.name}") from e
        if not isinstance(args, dict):
            raise CompletionError(f"tool arguments for {first.name} are not an object")
        return TurnResult(text=completion.text, tool_call=ToolCall(id=first.id, name=first.name, arguments=args))

    async def stream(
        self,
        conversation: Sequence[Turn],
        on_token: TokenSink,
        instruction: Optional[str] = None,
    ) -> str:
        parts: list[str] = []
        async for tok in self._client.stream_text(self.build_messages(conversation, instruction)):
            if not tok:
                continue
            parts.append(tok)
            await on_token(tok)
        return "".join(parts)

    async def closing(self, conversation: Sequence[Turn]) -> str:
        msgs = self.build_messages(conversation, CLOSING_PROMPT)
        completion = await self._client.complete(
            msgs,
            max_tokens=self._closing_max_tokens,
            temperature=self._closing_temperature,
        )
        text = (completion.text or "").strip()
        if not text:
            raise CompletionError("empty closing")
        return text
