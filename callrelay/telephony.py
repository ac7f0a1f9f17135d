from __future__ import annotations

import asyncio
from typing import Any, Protocol


class Telephony(Protocol):
    async def terminate_call_leg(self, call_id: str) -> bool:
        ...


class FakeTelephony:
    """Records termination requests; `succeed=False` simulates a carrier-side failure."""

    def __init__(self, *, succeed: bool = True, raise_error: bool = False) -> None:
        self.succeed = succeed
        self.raise_error = raise_error
        self.terminated: list[str] = []

    async def terminate_call_leg(self, call_id: str) -> bool:
        self.terminated.append(call_id)
        if self.raise_error:
            raise RuntimeError("telephony unavailable")
        return self.succeed


class TwilioTelephony:
    """
    Ends a live call leg through the Twilio REST API.

    Lazily imports `twilio` so deterministic tests run without the dependency. The SDK is
    synchronous, so the request runs in a worker thread.
    """

    def __init__(self, *, account_sid: str, auth_token: str) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from twilio.rest import Client  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "TwilioTelephony requires the optional dependency 'twilio'. "
                "Install with: python3 -m pip install -e '.[twilio]'"
            ) from e
        self._client = Client(self._account_sid, self._auth_token)
        return self._client

    def _complete_call(self, call_id: str) -> bool:
        client = self._ensure_client()
        call = client.calls(call_id).update(status="completed")
        status = str(getattr(call, "status", "completed") or "completed")
        return status in {"completed", "canceled"}

    async def terminate_call_leg(self, call_id: str) -> bool:
        return await asyncio.to_thread(self._complete_call, call_id)
