"""Shared fixtures: a temporary SQLite database, metrics and a fake clock."""

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine

from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.storage.schema import (
    create_schema,
    mcp_servers,
    oauth_tokens,
    profiles,
    projects,
)

NOW = 1_750_000_000.0


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return OAuthMetrics()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'oauth.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def add_server(engine):
    """Insert a server with its profile -> project -> user ownership chain."""

    async def _add(server_id: str, user_id: str = "user-1", name: str | None = None):
        async with engine.begin() as conn:
            await conn.execute(
                insert(projects).values(id=f"project-{server_id}", user_id=user_id)
            )
            await conn.execute(
                insert(profiles).values(
                    id=f"profile-{server_id}", project_id=f"project-{server_id}"
                )
            )
            await conn.execute(
                insert(mcp_servers).values(
                    id=server_id,
                    profile_id=f"profile-{server_id}",
                    name=name,
                    url=f"https://{server_id}.example.com/mcp",
                )
            )

    return _add


@pytest.fixture
def add_token(engine, add_server):
    """Insert a server and a token row for it."""

    async def _add(
        server_id: str,
        expires_at: float | None,
        refresh_locked_at: float | None = None,
        refresh_lock_owner: str | None = None,
        refresh_token: str | None = "refresh-token",
        user_id: str = "user-1",
        name: str | None = None,
    ):
        await add_server(server_id, user_id=user_id, name=name)
        async with engine.begin() as conn:
            await conn.execute(
                insert(oauth_tokens).values(
                    server_id=server_id,
                    access_token=f"access-{server_id}",
                    refresh_token=refresh_token,
                    token_type="Bearer",
                    expires_at=expires_at,
                    refresh_locked_at=refresh_locked_at,
                    refresh_lock_owner=refresh_lock_owner,
                )
            )

    return _add
