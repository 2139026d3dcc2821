"""
Application settings loaded from environment variables.

Uses pydantic-settings so that every config value is validated at startup.
Variables are prefixed with ``PRESENCE_``, e.g. ``PRESENCE_STORE_BACKEND=redis``.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the presence relay service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PRESENCE_",
        extra="ignore",
    )

    app_name: str = "Breathe Together"
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # ── Storage ─────────────────────────────────────────────
    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # ── Origin policy ───────────────────────────────────────
    # Origins containing this substring are allowed in addition to localhost
    allowed_origin_substring: str = "breathe-together"

    # ── Presence & rate limits ──────────────────────────────
    presence_ttl_seconds: int = Field(60, gt=0)
    heartbeat_max_requests: int = Field(10, gt=0)
    heartbeat_window_seconds: int = Field(60, gt=0)
    ratelimit_grace_seconds: int = Field(10, ge=0)
    heartbeat_interval_ms: int = Field(30_000, gt=0)  # advertised to clients via /api/config

    # ── Aggregation ─────────────────────────────────────────
    scan_page_size: int = Field(1000, gt=0)
    fetch_batch_size: int = Field(100, gt=0)
