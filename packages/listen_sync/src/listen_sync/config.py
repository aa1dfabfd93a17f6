"""Configuration for the synchronized playback engine."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment configuration shared by every sync client."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection string for the directory and the event channel.",
    )

    # Drift correction
    drift_threshold_seconds: float = Field(
        0.5,
        ge=0.1,
        le=0.5,
        alias="DRIFT_THRESHOLD_SECONDS",
        description="Drift tolerated before a corrective seek is issued.",
    )
    max_seek_adjustment_seconds: float = Field(
        2.0,
        gt=0.0,
        le=30.0,
        alias="MAX_SEEK_ADJUSTMENT_SECONDS",
        description="Largest position change a single correction cycle may apply.",
    )
    drift_check_interval_seconds: float = Field(
        2.0,
        gt=0.0,
        alias="DRIFT_CHECK_INTERVAL_SECONDS",
        description="Period of the drift correction task.",
    )

    # Heartbeat and latency
    heartbeat_interval_seconds: float = Field(
        3.0,
        gt=0.0,
        alias="HEARTBEAT_INTERVAL_SECONDS",
        description="Period of liveness reports and latency re-measurement.",
    )
    stale_heartbeat_factor: int = Field(
        3,
        ge=1,
        description="Missed heartbeat intervals before a peer is shown as disconnected.",
    )
    latency_probe_count: int = Field(
        5,
        ge=3,
        le=20,
        description="Round-trip probes per latency measurement (min and max are trimmed).",
    )
    latency_window: int = Field(
        10,
        ge=1,
        description="Number of per-measurement medians kept for the rolling mean.",
    )
    default_latency_ms: float = Field(
        50.0,
        ge=0.0,
        description="Latency assumed before the first successful measurement.",
    )

    # Session rules
    max_participants: int = Field(
        30,
        ge=1,
        le=500,
        alias="MAX_PARTICIPANTS",
        description="Capacity limit per session, enforced at join.",
    )
    chat_history_limit: int = Field(
        100,
        ge=1,
        description="Chat messages retained per client.",
    )
    sync_key_prefix: str = Field(
        "XT",
        min_length=2,
        max_length=2,
        pattern="^[A-Z]{2}$",
        alias="SYNC_KEY_PREFIX",
        description="Two-letter prefix of generated sync keys.",
    )
    sync_key_attempts: int = Field(
        5,
        ge=1,
        description="Attempts to find an unused sync key before giving up.",
    )
    session_ttl_seconds: int = Field(
        6 * 3600,
        ge=60,
        alias="SESSION_TTL_SECONDS",
        description="Lifetime of directory records for a session.",
    )
    event_history_limit: int = Field(
        200,
        ge=0,
        description="Events kept per session in the directory event log.",
    )
    share_base_url: str = Field(
        "https://listen.example.com",
        alias="SHARE_BASE_URL",
        description="Base URL used to build shareable join links.",
    )

    @model_validator(mode="after")
    def validate_drift_bounds(self) -> "Settings":
        if self.max_seek_adjustment_seconds < self.drift_threshold_seconds:
            raise ValueError("max_seek_adjustment_seconds must not be smaller than drift_threshold_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance.

    Returns:
        Settings: Loaded environment settings.
    """

    return Settings()
