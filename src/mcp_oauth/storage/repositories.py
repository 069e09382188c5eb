"""Repositories over the OAuth tables.

Each repository issues SQLAlchemy Core statements on an async engine and
converts driver failures into `StorageError`.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from mcp_oauth.models.discovery import DiscoveryMethod
from mcp_oauth.models.errors import StorageError
from mcp_oauth.models.flow import OAuthServerConfig
from mcp_oauth.models.security import PkceChallenge
from mcp_oauth.models.tokens import OAuthTokenRecord, RefreshCandidate
from mcp_oauth.storage.schema import (
    mcp_servers,
    oauth_configs,
    oauth_tokens,
    pkce_states,
    profiles,
    projects,
)


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to {action}: {e}") from e


class TokenRepository:
    """Access to the per-server OAuth token rows."""

    def __init__(self, engine: AsyncEngine, clock: Callable[[], float] = time.time):
        self._engine = engine
        self._clock = clock

    async def find_refresh_candidates(
        self, *, expiring_before: float, locked_before: float, limit: int
    ) -> list[RefreshCandidate]:
        """Find tokens due for refresh whose lease is absent or stale.

        Ownership is resolved through server -> profile -> project -> user.

        Args:
            expiring_before: Select tokens with expires_at before this time
            locked_before: Locks taken before this time count as abandoned
            limit: Maximum number of rows

        Returns:
            Candidates ordered by soonest expiry
        """
        locked_at = oauth_tokens.c.refresh_locked_at
        stmt = (
            select(
                oauth_tokens.c.server_id,
                oauth_tokens.c.expires_at,
                locked_at,
                projects.c.user_id.label("owner_id"),
                mcp_servers.c.name.label("server_name"),
            )
            .select_from(
                oauth_tokens.join(
                    mcp_servers, mcp_servers.c.id == oauth_tokens.c.server_id
                )
                .join(profiles, profiles.c.id == mcp_servers.c.profile_id)
                .join(projects, projects.c.id == profiles.c.project_id)
            )
            .where(
                oauth_tokens.c.expires_at.is_not(None),
                oauth_tokens.c.expires_at < expiring_before,
                or_(locked_at.is_(None), locked_at < locked_before),
            )
            .order_by(oauth_tokens.c.expires_at)
            .limit(limit)
        )

        with _storage_errors("query refresh candidates"):
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()

        return [
            RefreshCandidate(
                server_id=row["server_id"],
                owner_id=row["owner_id"],
                expires_at=row["expires_at"],
                refresh_locked_at=row["refresh_locked_at"],
                server_name=row["server_name"],
            )
            for row in rows
        ]

    async def get(self, server_id: str) -> OAuthTokenRecord | None:
        stmt = select(oauth_tokens).where(oauth_tokens.c.server_id == server_id)
        with _storage_errors("load token"):
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()

        if row is None:
            return None
        return OAuthTokenRecord(
            server_id=row["server_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_type=row["token_type"],
            expires_at=row["expires_at"],
            refresh_locked_at=row["refresh_locked_at"],
            refresh_lock_owner=row["refresh_lock_owner"],
        )

    async def upsert(self, record: OAuthTokenRecord) -> None:
        """Store tokens from a completed authorization code exchange."""
        values = {
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "token_type": record.token_type,
            "expires_at": record.expires_at,
            "refresh_locked_at": record.refresh_locked_at,
            "refresh_lock_owner": record.refresh_lock_owner,
            "updated_at": self._clock(),
        }
        with _storage_errors("store token"):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    update(oauth_tokens)
                    .where(oauth_tokens.c.server_id == record.server_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    await conn.execute(
                        insert(oauth_tokens).values(
                            server_id=record.server_id, **values
                        )
                    )

    async def save_refreshed(
        self,
        server_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        token_type: str,
        expires_at: float | None,
    ) -> bool:
        """Persist a refreshed token. Returns False if the row is gone."""
        stmt = (
            update(oauth_tokens)
            .where(oauth_tokens.c.server_id == server_id)
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                token_type=token_type,
                expires_at=expires_at,
                updated_at=self._clock(),
            )
        )
        with _storage_errors("save refreshed token"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                updated = result.rowcount
        return updated == 1

    async def delete_for_server(self, server_id: str) -> int:
        stmt = delete(oauth_tokens).where(oauth_tokens.c.server_id == server_id)
        with _storage_errors("delete tokens"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                removed = result.rowcount
        return removed


class PkceRepository:
    """Access to stored PKCE challenges."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    async def insert(self, challenge: PkceChallenge) -> None:
        stmt = insert(pkce_states).values(
            state=challenge.state,
            server_id=challenge.server_id,
            owner_id=challenge.owner_id,
            code_verifier=challenge.code_verifier,
            redirect_uri=challenge.redirect_uri,
            created_at=challenge.created_at,
            expires_at=challenge.expires_at,
        )
        with _storage_errors("store PKCE state"):
            async with self._engine.begin() as conn:
                await conn.execute(stmt)

    async def get(self, state: str) -> PkceChallenge | None:
        stmt = select(pkce_states).where(pkce_states.c.state == state)
        with _storage_errors("load PKCE state"):
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()

        if row is None:
            return None
        return PkceChallenge(
            state=row["state"],
            code_verifier=row["code_verifier"],
            server_id=row["server_id"],
            owner_id=row["owner_id"],
            redirect_uri=row["redirect_uri"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    async def delete_state(self, state: str) -> int:
        stmt = delete(pkce_states).where(pkce_states.c.state == state)
        with _storage_errors("delete PKCE state"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                removed = result.rowcount
        return removed

    async def delete_expired_before(self, cutoff: float) -> int:
        stmt = delete(pkce_states).where(pkce_states.c.expires_at < cutoff)
        with _storage_errors("delete expired PKCE states"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                removed = result.rowcount
        return removed

    async def delete_for_server(self, server_id: str) -> int:
        stmt = delete(pkce_states).where(pkce_states.c.server_id == server_id)
        with _storage_errors("delete server PKCE states"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                removed = result.rowcount
        return removed

    async def count(self) -> int:
        stmt = select(func.count()).select_from(pkce_states)
        with _storage_errors("count PKCE states"):
            async with self._engine.connect() as conn:
                return (await conn.execute(stmt)).scalar_one()


class OAuthConfigRepository:
    """Access to per-server discovered OAuth configuration."""

    def __init__(self, engine: AsyncEngine, clock: Callable[[], float] = time.time):
        self._engine = engine
        self._clock = clock

    async def get(self, server_id: str) -> OAuthServerConfig | None:
        stmt = select(oauth_configs).where(oauth_configs.c.server_id == server_id)
        with _storage_errors("load OAuth config"):
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()

        if row is None:
            return None
        data: dict[str, Any] = dict(row)
        data.pop("updated_at", None)
        data["discovery_method"] = DiscoveryMethod(data["discovery_method"])
        return OAuthServerConfig(**data)

    async def upsert(self, config: OAuthServerConfig) -> bool:
        """Insert or replace a server's configuration.

        Returns:
            True if an existing row was updated, False if one was inserted
        """
        values = config.model_dump(exclude={"server_id"})
        values["discovery_method"] = config.discovery_method.value
        values["updated_at"] = self._clock()

        with _storage_errors("store OAuth config"):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    update(oauth_configs)
                    .where(oauth_configs.c.server_id == config.server_id)
                    .values(**values)
                )
                if result.rowcount:
                    return True
                await conn.execute(
                    insert(oauth_configs).values(server_id=config.server_id, **values)
                )
                return False

    async def update_client(
        self, server_id: str, client_id: str | None, client_secret: str | None
    ) -> bool:
        stmt = (
            update(oauth_configs)
            .where(oauth_configs.c.server_id == server_id)
            .values(
                client_id=client_id,
                client_secret=client_secret,
                updated_at=self._clock(),
            )
        )
        with _storage_errors("store OAuth client"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                updated = result.rowcount
        return updated == 1

    async def delete(self, server_id: str) -> int:
        stmt = delete(oauth_configs).where(oauth_configs.c.server_id == server_id)
        with _storage_errors("delete OAuth config"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                removed = result.rowcount
        return removed
