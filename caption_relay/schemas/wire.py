"""
Wire protocol between the transport agent and the session coordinator.

JSON text frames tagged by ``type``:
  agent -> coordinator: REGISTER, CREATE_SESSION, CAPTION_DATA, END_SESSION, PING
  coordinator -> agent: REGISTERED, SESSION_CREATED, CAPTURE_STATUS, ERROR, SESSION_ENDED, PONG
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError

from caption_relay.errors import MalformedMessageError
from caption_relay.schemas.captions import CamelModel, CaptionEvent, unix_ms


# --- outbound (agent -> coordinator) ---


class Register(CamelModel):
    type: Literal["REGISTER"] = "REGISTER"
    client_type: str
    version: str


class CreateSession(CamelModel):
    type: Literal["CREATE_SESSION"] = "CREATE_SESSION"
    session_id: str
    title: str = ""
    platform: str
    tab_id: int | str | None = None


class CaptionBatch(CamelModel):
    type: Literal["CAPTION_DATA"] = "CAPTION_DATA"
    session_id: str
    platform: str
    captions: list[CaptionEvent]
    timestamp: int = Field(default_factory=unix_ms)


class EndSession(CamelModel):
    type: Literal["END_SESSION"] = "END_SESSION"
    session_id: str


class Ping(CamelModel):
    type: Literal["PING"] = "PING"


OutboundMessage = Annotated[
    Union[Register, CreateSession, CaptionBatch, EndSession, Ping],
    Field(discriminator="type"),
]


# --- inbound (coordinator -> agent) ---


class Registered(CamelModel):
    type: Literal["REGISTERED"] = "REGISTERED"
    client_id: str


class SessionCreated(CamelModel):
    type: Literal["SESSION_CREATED"] = "SESSION_CREATED"
    session_id: str
    session: dict[str, Any] = Field(default_factory=dict)


class CaptureStatus(CamelModel):
    type: Literal["CAPTURE_STATUS"] = "CAPTURE_STATUS"
    status: Any = None


class ErrorMessage(CamelModel):
    type: Literal["ERROR"] = "ERROR"
    error: str


class SessionEnded(CamelModel):
    type: Literal["SESSION_ENDED"] = "SESSION_ENDED"
    session_id: str


class Pong(CamelModel):
    type: Literal["PONG"] = "PONG"


InboundMessage = Annotated[
    Union[Registered, SessionCreated, CaptureStatus, ErrorMessage, SessionEnded, Pong],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)
_outbound_adapter: TypeAdapter = TypeAdapter(OutboundMessage)


def encode(message: CamelModel) -> str:
    return json.dumps(message.to_wire())


def _decode(raw: str | bytes, adapter: TypeAdapter):
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"invalid JSON: {e}", kind="format") from e
    if not isinstance(data, dict):
        raise MalformedMessageError("message must be a JSON object", kind="format")
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedMessageError(f"unknown or invalid message (type={data.get('type')!r})") from e


def parse_inbound(raw: str | bytes):
    """Coordinator -> agent frame. Raises MalformedMessageError on bad JSON or unknown kinds."""
    return _decode(raw, _inbound_adapter)


def parse_outbound(raw: str | bytes):
    """Agent -> coordinator frame (coordinator side). Raises MalformedMessageError."""
    return _decode(raw, _outbound_adapter)
