"""Pydantic schemas: caption records, local channel, wire protocol."""
from caption_relay.schemas.captions import (
    CaptionEvent,
    Session,
    SessionState,
    generate_session_id,
)
from caption_relay.schemas.local import (
    CaptionData,
    CaptureStarted,
    CaptureStopped,
    GetStatus,
    MeetingDetected,
    StartCapture,
    StopCapture,
    UiNotification,
)
from caption_relay.schemas.wire import parse_inbound, parse_outbound

__all__ = [
    "CaptionEvent",
    "Session",
    "SessionState",
    "generate_session_id",
    "CaptionData",
    "CaptureStarted",
    "CaptureStopped",
    "GetStatus",
    "MeetingDetected",
    "StartCapture",
    "StopCapture",
    "UiNotification",
    "parse_inbound",
    "parse_outbound",
]
