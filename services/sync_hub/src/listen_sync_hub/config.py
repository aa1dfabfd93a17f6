"""Configuration for the Listen Sync relay hub."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    api_version: str = Field("1.0.0", description="Semantic version returned by health endpoints.")
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection string shared with sync clients.",
    )
    ws_api_key: str | None = Field(
        default=None,
        alias="WS_API_KEY",
        description="Static bearer token for WebSocket authentication.",
    )
    max_connections_per_session: int = Field(
        30,
        ge=1,
        le=500,
        description="Cap for simultaneous websocket connections per listening session.",
    )
    max_sessions: int = Field(
        1000,
        ge=1,
        description="Max number of sessions with live websocket rooms on this node.",
    )
    session_ttl_seconds: int = Field(
        6 * 3600,
        ge=60,
        alias="SESSION_TTL_SECONDS",
        description="Lifetime of directory records written through the hub.",
    )
    event_history_limit: int = Field(
        200,
        ge=0,
        description="Events kept per session in the directory event log.",
    )
    max_event_page: int = Field(
        200,
        ge=1,
        description="Upper bound for the `limit` query parameter of the event log endpoint.",
    )

    # Optional in-app rate limit (dev/staging)
    rate_limit_enabled: bool = Field(
        False,
        description="Enable in-app rate limit for the publish endpoint",
        alias="RATE_LIMIT_ENABLED",
    )
    rate_limit_rps: float = Field(
        5.0,
        ge=0.1,
        description="Requests per second per key",
        alias="RATE_LIMIT_RPS",
    )
    rate_limit_burst: int = Field(
        10,
        ge=1,
        description="Burst capacity for token bucket",
        alias="RATE_LIMIT_BURST",
    )


class HealthPayload(BaseModel):
    """Health-check response payload."""

    status: Literal["ok"]
    api_version: str


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance.

    Returns:
        Settings: Loaded environment settings.
    """

    return Settings()
