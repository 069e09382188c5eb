"""Configuration for the OAuth client core using Pydantic Settings.

All settings are loaded from `MCP_OAUTH_`-prefixed environment variables
(or a `.env` file) with automatic type conversion and validation. Durations
are in seconds.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OAuthSettings(BaseSettings):
    """Central configuration for discovery, registration, PKCE and refresh."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_OAUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True,
    )

    # ========================================
    # Storage
    # ========================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./mcp_oauth.db",
        description="SQLAlchemy async database URL",
    )

    # ========================================
    # Outbound HTTP
    # ========================================
    http_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for discovery and registration requests",
    )

    # ========================================
    # Client identity used for dynamic registration
    # ========================================
    redirect_uri: str = Field(default="http://localhost:12005/api/oauth/callback")
    client_name: str = Field(default="MCP OAuth Client")
    client_uri: str | None = Field(default="http://localhost:12005")

    # ========================================
    # Token refresh scheduler
    # ========================================
    refresh_interval: float = Field(default=10 * 60, gt=0)
    refresh_expiry_buffer: float = Field(
        default=15 * 60,
        gt=0,
        description="Refresh tokens expiring within this window",
    )
    refresh_batch_size: int = Field(default=50, ge=1)
    refresh_stale_lock_after: float = Field(
        default=2 * 60,
        gt=0,
        description="A refresh lock older than this is treated as abandoned",
    )
    refresh_concurrency: int = Field(
        default=5,
        ge=1,
        description="Max concurrent refreshes, keeps providers from rate limiting us",
    )

    # ========================================
    # PKCE state
    # ========================================
    pkce_ttl: float = Field(default=5 * 60, gt=0)
    pkce_cleanup_grace: float = Field(default=10 * 60, gt=0)
    pkce_cleanup_interval: float = Field(default=15 * 60, gt=0)
    pkce_cleanup_startup_delay: float = Field(default=2 * 60, ge=0)

    # ========================================
    # OAuth configuration cache
    # ========================================
    config_cache_ttl: float = Field(default=5 * 60, gt=0)
    config_cache_max_size: int = Field(default=500, ge=1)
    config_write_freshness: float = Field(default=60, ge=0)

    skip_schedulers_in_tests: bool = Field(
        default=True,
        description="Refuse to auto-start background schedulers under a test runner",
    )


@lru_cache
def get_settings() -> OAuthSettings:
    """Return the process-wide settings instance."""
    return OAuthSettings()
