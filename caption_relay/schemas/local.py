"""
Local command channel between the extractor and the transport agent host,
plus the notifications the agent pushes to the UI layer.

Every message carries an ``action`` tag; LocalMessage is a closed
discriminated union so handler tables can be checked for exhaustiveness.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union, get_args

from pydantic import Field, TypeAdapter

from caption_relay.schemas.captions import CamelModel, CaptionEvent


# --- agent -> extractor ---


class StartCapture(CamelModel):
    action: Literal["START_CAPTURE"] = "START_CAPTURE"
    session_id: str


class StopCapture(CamelModel):
    action: Literal["STOP_CAPTURE"] = "STOP_CAPTURE"


class GetStatus(CamelModel):
    action: Literal["GET_STATUS"] = "GET_STATUS"


# --- extractor -> agent ---


class MeetingDetected(CamelModel):
    action: Literal["MEETING_DETECTED"] = "MEETING_DETECTED"
    platform: str
    url: str


class CaptureStarted(CamelModel):
    action: Literal["CAPTURE_STARTED"] = "CAPTURE_STARTED"
    session_id: str | None
    platform: str


class CaptureStopped(CamelModel):
    action: Literal["CAPTURE_STOPPED"] = "CAPTURE_STOPPED"
    session_id: str | None
    platform: str


class CaptionData(CamelModel):
    action: Literal["CAPTION_DATA"] = "CAPTION_DATA"
    session_id: str | None
    platform: str
    captions: list[CaptionEvent]


ExtractorCommand = Annotated[
    Union[StartCapture, StopCapture, GetStatus],
    Field(discriminator="action"),
]

ExtractorEvent = Annotated[
    Union[MeetingDetected, CaptureStarted, CaptureStopped, CaptionData],
    Field(discriminator="action"),
]

LocalMessage = Annotated[
    Union[StartCapture, StopCapture, GetStatus, MeetingDetected, CaptureStarted, CaptureStopped, CaptionData],
    Field(discriminator="action"),
]

_local_adapter: TypeAdapter = TypeAdapter(LocalMessage)


def parse_local(payload: dict[str, Any]):
    """Validate a raw local-channel dict into its LocalMessage variant (raises pydantic.ValidationError)."""
    return _local_adapter.validate_python(payload)


def message_variants(union: Any) -> tuple[type, ...]:
    """Member classes of an Annotated discriminated union."""
    inner = get_args(union)[0]
    return get_args(inner)


def require_exhaustive(handlers: dict[type, Any], union: Any, owner: str) -> None:
    """Fail at import time when a handler table misses (or over-covers) a union variant."""
    expected = set(message_variants(union))
    missing = expected - set(handlers)
    extra = set(handlers) - expected
    if missing or extra:
        raise TypeError(
            f"{owner}: handler table mismatch; missing={sorted(c.__name__ for c in missing)} "
            f"extra={sorted(c.__name__ for c in extra)}"
        )


# --- agent -> UI ---

UiAction = Literal[
    "CONNECTION_STATUS",
    "REGISTERED",
    "SESSION_CREATED",
    "SESSION_ENDED",
    "CAPTURE_STATUS",
    "ERROR",
    "MEETING_DETECTED",
    "CAPTURE_STARTED",
    "CAPTURE_STOPPED",
    "CAPTION_COUNT_UPDATE",
]


class UiNotification(CamelModel):
    """One notification to the UI layer. Payload keys are already camelCase."""

    action: UiAction
    payload: dict[str, Any] = Field(default_factory=dict)
