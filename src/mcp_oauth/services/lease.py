"""Timestamp lease over token rows.

The `refresh_locked_at` column is the only synchronization primitive shared
between scheduler replicas. A lease is taken with one conditional UPDATE and
is considered abandoned once it is older than `stale_after`; nothing else
ever needs to unlock a crashed worker's lease.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from mcp_oauth.models.errors import StorageError
from mcp_oauth.storage.schema import oauth_tokens

logger = logging.getLogger(__name__)


class RefreshLease:
    """Acquire and release the per-token refresh lease."""

    def __init__(
        self,
        engine: AsyncEngine,
        stale_after: float = 2 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self.stale_after = stale_after
        self._clock = clock

    async def acquire(
        self,
        server_id: str,
        owner: str,
        now: float | None = None,
        expiring_before: float | None = None,
    ) -> bool:
        """Take the lease if it is free or stale.

        Args:
            server_id: Token row to lease
            owner: Identifier of the worker taking the lease
            now: Lease timestamp, defaults to the clock
            expiring_before: Only lease a token that still expires before this
                time, so a token another worker just refreshed is left alone

        Returns:
            True if exactly this call changed the row

        Raises:
            StorageError: If the update fails
        """
        now = self._clock() if now is None else now
        locked_at = oauth_tokens.c.refresh_locked_at
        conditions = [
            oauth_tokens.c.server_id == server_id,
            or_(locked_at.is_(None), locked_at < now - self.stale_after),
        ]
        if expiring_before is not None:
            conditions.append(oauth_tokens.c.expires_at < expiring_before)

        stmt = (
            update(oauth_tokens)
            .where(*conditions)
            .values(refresh_locked_at=now, refresh_lock_owner=owner)
        )

        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                acquired = result.rowcount == 1
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to acquire refresh lease: {e}") from e

        if not acquired:
            logger.debug(
                f"Refresh lease for server {server_id} is held elsewhere "
                "or the token is no longer due"
            )
        return acquired

    async def release(self, server_id: str, owner: str) -> bool:
        """Clear the lease if `owner` still holds it.

        Returns:
            False if the lease was lost (taken over after going stale)
        """
        stmt = (
            update(oauth_tokens)
            .where(
                and_(
                    oauth_tokens.c.server_id == server_id,
                    oauth_tokens.c.refresh_lock_owner == owner,
                )
            )
            .values(refresh_locked_at=None, refresh_lock_owner=None)
        )

        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                released = result.rowcount == 1
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to release refresh lease: {e}") from e

        if not released:
            logger.warning(f"Refresh lease for server {server_id} was lost by {owner}")
        return released
