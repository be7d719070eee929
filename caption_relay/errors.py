"""Error taxonomy for the capture pipeline.

Only user-triggered failures and exhausted reconnects reach the caller/UI.
Everything else (missing caption container, one malformed inbound message,
one failed send) is absorbed at the component boundary and logged.
"""
from __future__ import annotations


class CaptureRelayError(Exception):
    """Base for all caption-relay errors."""


class MalformedMessageError(CaptureRelayError):
    """Inbound payload is not valid JSON (kind="format") or not a known message kind (kind="type")."""

    def __init__(self, message: str, kind: str = "type") -> None:
        super().__init__(message)
        self.kind = kind


class SendFailure(CaptureRelayError):
    """Send attempted while disconnected. Used as a logged reason; never raised to callers."""


class ReconnectExhaustedError(CaptureRelayError):
    """Max consecutive reconnect attempts reached; manual restart required."""
