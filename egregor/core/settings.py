"""Application settings and configuration."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    APP_NAME: str = "Egregor Room Sync"
    LOG_LEVEL: str = "INFO"

    # HTTP server
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Redis configuration (change-feed fan-out across processes)
    REDIS_URL: str | None = None

    # Database configuration; empty means the in-memory backend
    DATABASE_URL: str | None = None

    # Channel namespace for table change feeds
    CHANGE_CHANNEL_PREFIX: str = "changes:"

    # Presence configuration
    # NOTE: ACTIVE_WINDOW_SEC must cover several heartbeats so that one or two
    # missed beats (backgrounding, network blip) do not flip a user to "recent".
    ACTIVE_WINDOW_SEC: int = 90
    HEARTBEAT_SEC: int = 10

    # Periodic full resyncs that heal missed change-feed deliveries
    PRESENCE_RESYNC_SEC: int = 60
    CHAT_RESYNC_SEC: int = 60
    RUN_STATE_RESYNC_SEC: int = 60

    # Local display tick; only recomputes derived values, never writes
    DISPLAY_TICK_SEC: float = 0.5

    # Backoff between change-feed reconnect attempts
    FEED_RECONNECT_SEC: float = 2.0

    # Delay before a failed auto-advance is requested again
    AUTO_ADVANCE_RETRY_SEC: float = 5.0

    # Server-side check that only the host/creator writes run state
    RUN_STATE_ENFORCE_HOST: bool = True

    # Chat configuration
    CHAT_MAX_CHARS: int = 1000
    CHAT_RECENT_SNAPSHOT_SIZE: int = 200
    CHAT_MAX_ROWS: int = 1000
    CHAT_LOAD_EARLIER_PAGE_SIZE: int = 50
    CHAT_BOTTOM_THRESHOLD_PX: int = 120

    # Dev identity shim for the HTTP layer when no X-User-Id header is sent
    DEV_USER_ID: str | None = None

    # Pydantic v2 settings: ignore unknown/extra env vars coming from .env
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


# Global settings instance
settings = Settings()

# Misconfigured presence timing makes users flap between active and recent,
# so fail fast at import time.
if settings.HEARTBEAT_SEC * 2 >= settings.ACTIVE_WINDOW_SEC:
    raise ValueError(
        f"Invalid presence timing: HEARTBEAT_SEC={settings.HEARTBEAT_SEC} must be < ACTIVE_WINDOW_SEC/2={settings.ACTIVE_WINDOW_SEC/2}"
    )
