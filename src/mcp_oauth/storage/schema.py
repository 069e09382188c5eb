"""Relational schema for OAuth state.

Only the columns the OAuth core reads or writes are declared. Timestamps
are Unix epoch seconds stored as floats so comparisons behave the same on
every backend.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mcp_oauth.config import OAuthSettings

metadata = MetaData()

# Ownership chain: server -> profile -> project -> user
projects = Table(
    "projects",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(255), nullable=False),
)

profiles = Table(
    "profiles",
    metadata,
    Column("id", String(64), primary_key=True),
    Column(
        "project_id",
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    ),
)

mcp_servers = Table(
    "mcp_servers",
    metadata,
    Column("id", String(64), primary_key=True),
    Column(
        "profile_id",
        String(64),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String(255)),
    Column("url", Text),
)

oauth_tokens = Table(
    "mcp_server_oauth_tokens",
    metadata,
    Column(
        "server_id",
        String(64),
        ForeignKey("mcp_servers.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("token_type", String(32), nullable=False, default="Bearer"),
    Column("expires_at", Float),  # NULL = non-expiring
    Column("refresh_locked_at", Float),  # lease timestamp
    Column("refresh_lock_owner", String(128)),
    Column("updated_at", Float),
    Index("idx_oauth_tokens_expires_at", "expires_at"),
)

pkce_states = Table(
    "oauth_pkce_states",
    metadata,
    Column("state", String(128), primary_key=True),
    Column(
        "server_id",
        String(64),
        ForeignKey("mcp_servers.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("owner_id", String(255)),
    Column("code_verifier", String(128), nullable=False),
    Column("redirect_uri", Text),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Index("idx_pkce_states_expires_at", "expires_at"),
    Index("idx_pkce_states_server_id", "server_id"),
)

oauth_configs = Table(
    "mcp_server_oauth_config",
    metadata,
    Column(
        "server_id",
        String(64),
        ForeignKey("mcp_servers.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("authorization_endpoint", Text, nullable=False),
    Column("token_endpoint", Text, nullable=False),
    Column("registration_endpoint", Text),
    Column("authorization_server", Text, nullable=False),
    Column("resource_identifier", Text),
    Column("client_id", String(255)),
    Column("client_secret", Text),
    Column("scopes", JSON),
    Column("supports_pkce", Boolean, nullable=False, default=True),
    Column("discovery_method", String(32), nullable=False),
    Column("updated_at", Float),
)


def create_engine(settings: OAuthSettings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    return create_async_engine(settings.database_url)


async def create_schema(engine: AsyncEngine) -> None:
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
