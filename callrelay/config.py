from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class RelayConfig:
    # Persona
    agent_name: str = "Anmol"
    org_name: str = "EA Bootcamp"

    # Logging
    structured_logging: bool = True

    # Transport
    inbound_queue_max: int = 256
    outbound_queue_max: int = 256
    ws_max_frame_bytes: int = 262_144
    ws_write_timeout_ms: int = 2000

    # Timers
    inactivity_timeout_ms: int = 5 * 60 * 1000
    timeout_grace_ms: int = 3000
    greeting_delay_ms: int = 3000
    hangup_delay_ms: int = 7000

    # Closing speech pacing (~150 words per minute)
    speaking_words_per_minute: int = 150
    closing_min_speaking_ms: int = 4000
    short_closing_min_speaking_ms: int = 3000

    # Tool dispatch
    tool_hold_notice_enabled: bool = True
    tool_hold_delay_ms: int = 1500
    tool_timeout_ms: int = 8000
    tool_history_size: int = 10
    # Loop prevention and premature-side-effect guards are product tuning values.
    max_consecutive_tool_calls: int = 1
    max_duplicate_tool_calls: int = 2
    duplicate_tool_window_ms: int = 2 * 60 * 1000
    min_turns_for_tools: int = 3

    # Administrative sweep
    session_max_age_ms: int = 24 * 60 * 60 * 1000
    sweep_interval_ms: int = 10 * 60 * 1000

    # Completion service
    llm_provider: str = "fake"  # fake | openai
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_ms: int = 15000
    closing_max_tokens: int = 50
    closing_temperature: float = 0.7

    # Telephony
    telephony_provider: str = "fake"  # fake | twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Directory
    directory_csv_path: str = ""

    @staticmethod
    def from_env() -> "RelayConfig":
        llm_provider = _getenv_str("LLM_PROVIDER", "fake").strip().lower()
        if llm_provider not in {"fake", "openai"}:
            llm_provider = "fake"
        telephony_provider = _getenv_str("TELEPHONY_PROVIDER", "fake").strip().lower()
        if telephony_provider not in {"fake", "twilio"}:
            telephony_provider = "fake"

        return RelayConfig(
            agent_name=_getenv_str("AGENT_NAME", "Anmol"),
            org_name=_getenv_str("ORG_NAME", "EA Bootcamp"),
            structured_logging=_getenv_bool("STRUCTURED_LOGGING", True),
            inbound_queue_max=_getenv_int("RELAY_INBOUND_QUEUE_MAX", 256),
            outbound_queue_max=_getenv_int("RELAY_OUTBOUND_QUEUE_MAX", 256),
            ws_max_frame_bytes=_getenv_int("WS_MAX_FRAME_BYTES", 262_144),
            ws_write_timeout_ms=_getenv_int("WS_WRITE_TIMEOUT_MS", 2000),
            inactivity_timeout_ms=_getenv_int("CALL_INACTIVITY_TIMEOUT_MS", 5 * 60 * 1000),
            timeout_grace_ms=_getenv_int("CALL_TIMEOUT_GRACE_MS", 3000),
            greeting_delay_ms=_getenv_int("CALL_GREETING_DELAY_MS", 3000),
            hangup_delay_ms=_getenv_int("CALL_HANGUP_DELAY_MS", 7000),
            speaking_words_per_minute=max(1, _getenv_int("SPEAKING_WORDS_PER_MINUTE", 150)),
            closing_min_speaking_ms=_getenv_int("CLOSING_MIN_SPEAKING_MS", 4000),
            short_closing_min_speaking_ms=_getenv_int("SHORT_CLOSING_MIN_SPEAKING_MS", 3000),
            tool_hold_notice_enabled=_getenv_bool("TOOL_HOLD_NOTICE_ENABLED", True),
            tool_hold_delay_ms=_getenv_int("TOOL_HOLD_DELAY_MS", 1500),
            tool_timeout_ms=_getenv_int("TOOL_TIMEOUT_MS", 8000),
            tool_history_size=max(1, _getenv_int("TOOL_HISTORY_SIZE", 10)),
            max_consecutive_tool_calls=max(1, _getenv_int("MAX_CONSECUTIVE_TOOL_CALLS", 1)),
            max_duplicate_tool_calls=max(1, _getenv_int("MAX_DUPLICATE_TOOL_CALLS", 2)),
            duplicate_tool_window_ms=_getenv_int("DUPLICATE_TOOL_WINDOW_MS", 2 * 60 * 1000),
            min_turns_for_tools=_getenv_int("MIN_TURNS_FOR_TOOLS", 3),
            session_max_age_ms=_getenv_int("SESSION_MAX_AGE_MS", 24 * 60 * 60 * 1000),
            sweep_interval_ms=_getenv_int("SESSION_SWEEP_INTERVAL_MS", 10 * 60 * 1000),
            llm_provider=llm_provider,
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-4o-mini"),
            openai_timeout_ms=_getenv_int("OPENAI_TIMEOUT_MS", 15000),
            closing_max_tokens=_getenv_int("CLOSING_MAX_TOKENS", 50),
            closing_temperature=_getenv_float("CLOSING_TEMPERATURE", 0.7),
            telephony_provider=telephony_provider,
            twilio_account_sid=_getenv_str("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=_getenv_str("TWILIO_AUTH_TOKEN", ""),
            directory_csv_path=_getenv_str("DIRECTORY_CSV_PATH", ""),
        )
