"""Connection phase machine and fixed-interval, bounded reconnect policy."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ConnectionPhase(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    EXHAUSTED = "EXHAUSTED"  # terminal DISCONNECTED: no automatic attempts until restart()


@dataclass(frozen=True)
class ReconnectPolicy:
    interval: float = 5.0
    max_attempts: int = 10

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass
class ConnectionState:
    """One per agent. reconnect_attempts counts scheduled retries since the last successful connect."""

    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    reconnect_attempts: int = 0

    @property
    def is_connected(self) -> bool:
        return self.phase == ConnectionPhase.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "isConnected": self.is_connected,
            "reconnectAttempts": self.reconnect_attempts,
            "phase": self.phase.value,
        }
