"""Application configuration. Loads from env vars."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Transport agent: persistent WebSocket to the session coordinator (local trust boundary)
    COORDINATOR_URL: str = "ws://localhost:3000/realtime-capture"
    CLIENT_TYPE: str = "python-agent"
    CLIENT_VERSION: str = "1.0.0"

    # Reconnect: fixed interval, bounded attempts; exhausted = wait for restart()
    RECONNECT_INTERVAL_SECONDS: float = 5.0
    MAX_RECONNECT_ATTEMPTS: int = 10
    # Keepalive PING every N seconds while connected (0 = disabled)
    KEEPALIVE_SECONDS: float = 0.0

    # Extractor buffer: flush at N captions or every N seconds, whichever first
    FLUSH_THRESHOLD: int = 10
    FLUSH_INTERVAL_SECONDS: float = 5.0
    # Captions shorter than this (after trim) are dropped
    MIN_CAPTION_CHARS: int = 3
    DEFAULT_PLATFORM: str = "teams"

    # Reference coordinator: bind address for run() and JSON persistence of sessions and events
    COORDINATOR_HOST: str = "127.0.0.1"
    COORDINATOR_PORT: int = 3000
    CAPTURE_STORAGE_DIR: str = "./capture-sessions"
    COORDINATOR_BUFFER_LIMIT: int = 50  # auto-flush a session buffer at this many events
    COORDINATOR_FLUSH_SECONDS: float = 10.0  # periodic flush of active sessions

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path = also log to file (empty = console only).
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
