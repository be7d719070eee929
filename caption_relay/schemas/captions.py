"""
Core records of the capture pipeline.

CaptionEvent: one extracted caption line. Immutable; produced only by the extractor.
Session: one bounded capture activity, owned by the transport agent's registry
(the coordinator holds the authoritative copy).

JSON field names are camelCase on both the local channel and the wire.
"""
from __future__ import annotations

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase


class CamelModel(BaseModel):
    """Base for all messages: snake_case in Python, camelCase on the wire."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def utc_now_iso() -> str:
    """Capture timestamp: ISO-8601 UTC with milliseconds, e.g. 2026-01-01T12:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def unix_ms() -> int:
    return int(time.time() * 1000)


def generate_session_id() -> str:
    """session-<epoch ms>-<9 base36 chars>. Timestamp + random suffix keeps ids globally unique."""
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=9))
    return f"session-{unix_ms()}-{suffix}"


class CaptionEvent(CamelModel):
    """One caption line. Speaker is optional (not every platform renders one)."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True

    timestamp: str = Field(default_factory=utc_now_iso)
    speaker: str | None = None
    text: str
    platform: str
    session_id: str | None = None


class SessionState(str, Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class Session(CamelModel):
    """Local mirror of one capture session."""

    session_id: str
    title: str = ""
    platform: str
    tab_id: int | str
    started_at: int = Field(default_factory=unix_ms)  # unix_ms
    caption_count: int = 0
    state: SessionState = SessionState.CREATED
