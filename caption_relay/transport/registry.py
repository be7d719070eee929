"""
SessionRegistry: the transport agent's local mirror of capture sessions.

sessionId -> Session, plus the set of active session ids (created, not yet ended).
Only the agent writes to it, from its own event-loop handlers. Callers get
copies; the underlying dict/set are never handed out.
"""
from __future__ import annotations

from typing import Any

from caption_relay.schemas.captions import Session, SessionState


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._active: set[str] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def upsert(self, session: Session, active: bool = False) -> Session:
        """Store (or overwrite) a session; active=True also adds it to the active set."""
        self._sessions[session.session_id] = session.model_copy()
        if active:
            self._active.add(session.session_id)
        return session.model_copy()

    def get(self, session_id: str) -> Session | None:
        s = self._sessions.get(session_id)
        return s.model_copy() if s is not None else None

    def mark(self, session_id: str, state: SessionState) -> Session | None:
        """Set state. ENDED sessions never go back."""
        s = self._sessions.get(session_id)
        if s is None:
            return None
        if s.state != SessionState.ENDED:
            s = s.model_copy(update={"state": state})
            self._sessions[session_id] = s
        return s.model_copy()

    def add_caption_count(self, session_id: str, n: int) -> Session | None:
        s = self._sessions.get(session_id)
        if s is None:
            return None
        s = s.model_copy(update={"caption_count": s.caption_count + max(0, n)})
        self._sessions[session_id] = s
        return s.model_copy()

    def end(self, session_id: str) -> Session | None:
        """Drop from the active set and mark ENDED. Unknown ids are a no-op (returns None)."""
        self._active.discard(session_id)
        return self.mark(session_id, SessionState.ENDED)

    def active_ids(self) -> frozenset[str]:
        return frozenset(self._active)

    def active_for_tab(self, tab_id: int | str) -> Session | None:
        for session_id in self._active:
            s = self._sessions.get(session_id)
            if s is not None and s.tab_id == tab_id:
                return s.model_copy()
        return None

    def snapshot(self) -> dict[str, Any]:
        """GET_SESSIONS reply: every known session plus active ids."""
        return {
            "sessions": [s.to_wire() for s in self._sessions.values()],
            "activeSessions": sorted(self._active),
        }
