from __future__ import annotations

from .clock import Clock
from .config import RelayConfig
from .directory import InMemoryDirectory
from .llm_client import CompletionClient, FakeCompletionClient, OpenAICompletionClient
from .telephony import FakeTelephony, Telephony, TwilioTelephony


def build_completion_client(cfg: RelayConfig, *, clock: Clock) -> CompletionClient:
    if cfg.llm_provider == "openai":
        return OpenAICompletionClient(
            api_key=cfg.openai_api_key or None,
            model=cfg.openai_model,
            timeout_ms=cfg.openai_timeout_ms,
        )
    return FakeCompletionClient(clock=clock)


def build_telephony(cfg: RelayConfig) -> Telephony:
    if cfg.telephony_provider == "twilio":
        return TwilioTelephony(account_sid=cfg.twilio_account_sid, auth_token=cfg.twilio_auth_token)
    return FakeTelephony()


def build_directory(cfg: RelayConfig) -> InMemoryDirectory:
    if cfg.directory_csv_path:
        return InMemoryDirectory.from_csv(cfg.directory_csv_path)
    return InMemoryDirectory()
