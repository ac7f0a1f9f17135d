from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Sequence, Union

from .clock import Clock


Message = dict[str, str]


class CompletionError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: str  # raw JSON text as produced by the model


@dataclass(frozen=True, slots=True)
class Completion:
    text: Optional[str] = None
    tool_calls: tuple[ToolCallRequest, ...] = ()


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: Sequence[Message],
        *,
        tools: Optional[list[dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Completion:
        ...

    def stream_text(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


Scripted = Union[Completion, Exception]
ScriptedStream = Union[list[Union[str, Exception]], Exception]


@dataclass
class FakeCompletionClient:
    """
    Deterministic scripted client for tests.

    - complete() with tools pops `completions`; without tools (closing requests) pops `closings`.
    - stream_text() pops `streams`; tokens are spaced by token_delay_ms on the injected clock.
    - Scripted Exception entries are raised in place of a result; inside a stream they are
      raised after the tokens before them have been yielded.
    - Every request is recorded in `calls`.
    """

    clock: Clock
    completions: list[Scripted] = field(default_factory=list)
    streams: list[ScriptedStream] = field(default_factory=list)
    closings: list[Union[str, Exception]] = field(default_factory=list)
    complete_delay_ms: int = 0
    token_delay_ms: int = 0
    default_text: str = "Okay."
    default_closing: str = "Thanks so much, see you in class. Goodbye!"
    calls: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False

    def __post_init__(self) -> None:
        self._completions: deque[Scripted] = deque(self.completions)
        self._streams: deque[ScriptedStream] = deque(self.streams)
        self._closings: deque[Union[str, Exception]] = deque(self.closings)

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        tools: Optional[list[dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Completion:
        self.calls.append(
            {
                "mode": "complete" if tools is not None else "closing",
                "messages": [dict(m) for m in messages],
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if self.complete_delay_ms > 0:
            await self.clock.sleep_ms(self.complete_delay_ms)

        if tools is None:
            item: Union[str, Exception] = (
                self._closings.popleft() if self._closings else self.default_closing
            )
            if isinstance(item, Exception):
                raise item
            return Completion(text=item)

        scripted: Scripted = (
            self._completions.popleft() if self._completions else Completion(text=self.default_text)
        )
        if isinstance(scripted, Exception):
            raise scripted
        return scripted

    async def stream_text(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        self.calls.append({"mode": "stream", "messages": [dict(m) for m in messages]})
        scripted: ScriptedStream = self._streams.popleft() if self._streams else [self.default_text]
        if isinstance(scripted, Exception):
            raise scripted
        for tok in scripted:
            if self.token_delay_ms > 0:
                await self.clock.sleep_ms(self.token_delay_ms)
            if isinstance(tok, Exception):
                raise tok
            yield tok

    async def aclose(self) -> None:
        self.closed = True


class OpenAICompletionClient:
    """
    OpenAI Chat Completions adapter.

    Notes:
    - Lazy-imports the `openai` package so deterministic tests can run without credentials.
    - Function calling uses tool_choice="auto"; only the raw tool call is returned, decoding is the caller's job.
    - Streaming emits content deltas only.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout_ms: int = 15000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "OpenAICompletionClient requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def _get(obj: Any, key: str) -> Any:
        if isinstance(obj, dict):
            return obj.get(key)
        return getattr(obj, key, None)

    @classmethod
    def _to_completion(cls, response: Any) -> Completion:
        choices = cls._get(response, "choices") or []
        if not choices:
            raise CompletionError("completion returned no choices")
        message = cls._get(choices[0], "message")
        text = cls._get(message, "content")
        calls: list[ToolCallRequest] = []
        for tc in cls._get(message, "tool_calls") or []:
            fn = cls._get(tc, "function")
            calls.append(
                ToolCallRequest(
                    id=str(cls._get(tc, "id") or ""),
                    name=str(cls._get(fn, "name") or ""),
                    arguments=str(cls._get(fn, "arguments") or ""),
                )
            )
        return Completion(text=(str(text) if text is not None else None), tool_calls=tuple(calls))

    @classmethod
    def _iter_deltas(cls, chunk: Any) -> list[str]:
        out: list[str] = []
        for choice in cls._get(chunk, "choices") or []:
            delta = cls._get(choice, "delta")
            content = cls._get(delta, "content") if delta is not None else None
            if isinstance(content, str) and content:
                out.append(content)
        return out

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        tools: Optional[list[dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Completion:
        client = self._ensure_client()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "timeout": max(1.0, self.timeout_ms / 1000.0),
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if max_tokens is not None:
            kwargs["max_tokens"] = int(max_tokens)
        if temperature is not None:
            kwargs["temperature"] = float(temperature)
        response = await client.chat.completions.create(**kwargs)
        return self._to_completion(response)

    async def stream_text(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        client = self._ensure_client()
        stream = await client.chat.completions.create(
            model=self.model,
            messages=list(messages),
            stream=True,
            timeout=max(1.0, self.timeout_ms / 1000.0),
        )
        async for chunk in stream:
            for delta in self._iter_deltas(chunk):
                yield delta

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None
