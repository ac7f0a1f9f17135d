from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


# Inbound field names follow Twilio ConversationRelay; the transport-neutral names are accepted too.

class InboundSetup(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    type: Literal["setup"]
    call_id: str = Field(min_length=1, validation_alias=AliasChoices("callSid", "callId", "call_id"))
    callee_number: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("to", "calleeNumber", "callee_number")
    )
    caller_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "callerNumber"))


class InboundPrompt(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    type: Literal["prompt"]
    voice_text: str = Field(validation_alias=AliasChoices("voicePrompt", "voiceText", "voice_text"))
    lang: Optional[str] = None
    last: Optional[bool] = None


class InboundInterrupt(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    type: Literal["interrupt"]
    heard_prefix: str = Field(
        validation_alias=AliasChoices("utteranceUntilInterrupt", "heardPrefix", "heard_prefix")
    )
    duration_until_interrupt_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("durationUntilInterruptMs",)
    )


class InboundHangup(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    type: Literal["hangup"]
    reason: Optional[str] = None
    final_message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("finalMessage", "final_message")
    )


class InboundError(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    type: Literal["error"]
    error_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("errorType", "error_type"))
    message: Optional[str] = Field(default=None, validation_alias=AliasChoices("message", "description"))
    code: Optional[Union[int, str]] = None
    critical: Optional[bool] = None
    timestamp: Optional[str] = None

    @property
    def is_fatal(self) -> bool:
        return self.critical is True or (self.error_type or "") == "fatal"


class InboundDtmf(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["dtmf"]
    digit: str


InboundEvent = Annotated[
    Union[
        InboundSetup,
        InboundPrompt,
        InboundInterrupt,
        InboundHangup,
        InboundError,
        InboundDtmf,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES = frozenset({"setup", "prompt", "interrupt", "hangup", "error", "dtmf"})

_inbound_adapter = TypeAdapter(InboundEvent)


class UnknownMessageType(ValueError):
    def __init__(self, message_type: str) -> None:
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type


class OutboundText(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["text"]
    token: str
    last: bool


class OutboundHangupConfirmed(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    type: Literal["hangup_confirmed"]
    call_id: str = Field(alias="callSid")
    reason: str
    timestamp: str


class OutboundHangupError(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    type: Literal["hangup_error"]
    call_id: str = Field(alias="callSid")
    error: str
    reason: str


class OutboundHangup(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["hangup"]
    reason: str


class OriginalError(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Optional[str] = None
    message: Optional[str] = None
    code: Optional[Union[int, str]] = None


class OutboundErrorAcknowledged(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    type: Literal["error_acknowledged"]
    call_id: str = Field(alias="callSid")
    original_error: OriginalError = Field(alias="originalError")
    timestamp: str


class OutboundError(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["error"]
    message: str
    details: Optional[str] = None
    timestamp: str


OutboundEvent = Annotated[
    Union[
        OutboundText,
        OutboundHangupConfirmed,
        OutboundHangupError,
        OutboundHangup,
        OutboundErrorAcknowledged,
        OutboundError,
    ],
    Field(discriminator="type"),
]

_outbound_adapter = TypeAdapter(OutboundEvent)


def parse_inbound_json(raw_text: str) -> InboundEvent:
    return parse_inbound_obj(json.loads(raw_text))


def parse_inbound_obj(obj: Any) -> InboundEvent:
    """
    Validates one inbound frame.

    Raises UnknownMessageType for a well-formed object with an unrecognized `type`,
    and pydantic.ValidationError for anything else that does not fit the schema.
    """
    if isinstance(obj, dict):
        mtype = obj.get("type")
        if isinstance(mtype, str) and mtype not in INBOUND_TYPES:
            raise UnknownMessageType(mtype)
    return _inbound_adapter.validate_python(obj)


def parse_outbound_json(raw_text: str) -> OutboundEvent:
    return _outbound_adapter.validate_python(json.loads(raw_text))


def dumps_outbound(event: OutboundEvent) -> str:
    return json.dumps(
        event.model_dump(by_alias=True, exclude_none=True),
        separators=(",", ":"),
        sort_keys=True,
    )
