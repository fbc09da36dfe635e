"""Configuration management for the short-link service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache │
    │ (lru_cache) │
    └──────┬──────┘
    HIT?   │
    ┌──────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from shortlink.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    db_url = settings.DATABASE_URL

**Step 3 — Build an isolated instance (tests)**::
    settings = Settings(DATABASE_URL="sqlite+aiosqlite:///./test.db", RATE_LIMIT_MAX=3)

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- List values (LOG_WATCHER_SOURCES, LOG_WATCHER_CACHE_STATUSES) are read as JSON.
- An empty REDIS_URL disables the link lookup cache.
- An empty EDGE_PURGE_URL disables edge cache purging.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "shortlink"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8000"
    LOG_LEVEL: str = "INFO"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://shortlink:shortlink@db:5432/shortlink"
    DATABASE_ECHO: bool = False

    # Redis link cache (optional)
    REDIS_URL: str = ""
    LINK_CACHE_TTL_SECONDS: int = 300
    LINK_CACHE_TOMBSTONE_SECONDS: int = 30

    # Edge proxy cache purge (optional, "{code}" is replaced by the short code)
    EDGE_PURGE_URL: str = ""
    EDGE_PURGE_TIMEOUT_SECONDS: float = 2.0

    # Short code allocation
    SHORT_CODE_LENGTH: int = 6
    SHORT_CODE_MAX_ATTEMPTS: int = 10
    SHORT_CODE_WIDEN_STEPS: int = 2

    # Redirect
    QR_MARKER_PARAM: str = "qr"

    # Fixed-window rate limiting (per process)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_MAX: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    PASSWORD_RATE_LIMIT_MAX: int = 5

    # Click event ingestion
    CLICK_QUEUE_MAXSIZE: int = 10000
    CLICK_WRITER_BATCH_SIZE: int = 100
    CLICK_WRITE_MAX_ATTEMPTS: int = 5
    CLICK_WRITE_BACKOFF_SECONDS: float = 0.5
    CLICK_WRITE_BACKOFF_MAX_SECONDS: float = 10.0

    # Edge access-log tailing
    LOG_WATCHER_ENABLED: bool = False
    LOG_WATCHER_SOURCES: list[str] = []
    LOG_WATCHER_CACHE_STATUSES: list[str] = ["HIT"]
    LOG_WATCHER_POLL_INTERVAL_SECONDS: float = 1.0
    LOG_WATCHER_MAX_BACKOFF_SECONDS: float = 30.0
    LOG_WATCHER_READ_CHUNK_BYTES: int = 64 * 1024
    LOG_WATCHER_ENQUEUE_TIMEOUT_SECONDS: float = 5.0

    # Stats
    STATS_DEFAULT_DAYS: int = 30
    STATS_MAX_DAYS: int = 366

    AUDIT_LOG_ENABLED: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
