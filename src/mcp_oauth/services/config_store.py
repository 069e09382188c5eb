"""Cached access to per-server OAuth configuration.

Reads go through a small in-process LRU with a TTL. Right after a write (or
an explicit invalidation) reads bypass the cache for a short window so a
freshly registered client is never hidden behind a stale entry.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable

from mcp_oauth.models.discovery import DiscoveryMethod, DiscoveryResult
from mcp_oauth.models.errors import StorageError
from mcp_oauth.models.flow import OAuthServerConfig
from mcp_oauth.storage.repositories import OAuthConfigRepository

logger = logging.getLogger(__name__)


class OAuthConfigStore:
    """Read-through cache over `OAuthConfigRepository`."""

    def __init__(
        self,
        repository: OAuthConfigRepository,
        ttl: float = 300.0,
        max_size: int = 500,
        write_freshness: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._repository = repository
        self.ttl = ttl
        self.max_size = max_size
        self.write_freshness = write_freshness
        self._clock = clock
        self._cache: OrderedDict[str, tuple[float, OAuthServerConfig]] = OrderedDict()
        # Insertion order is write order, so expired marks sit at the front
        self._written_at: OrderedDict[str, float] = OrderedDict()

    async def get(self, server_id: str) -> OAuthServerConfig | None:
        """Load a server's configuration.

        Returns:
            The configuration, or None if absent or storage is unavailable
        """
        now = self._clock()
        if not self._recently_written(server_id, now):
            cached = self._cache.get(server_id)
            if cached is not None and now - cached[0] < self.ttl:
                self._cache.move_to_end(server_id)
                return cached[1]

        try:
            config = await self._repository.get(server_id)
        except StorageError as e:
            logger.error(f"Failed to load OAuth config for server {server_id}: {e}")
            return None

        if config is None:
            self._cache.pop(server_id, None)
        else:
            self._put(server_id, config, now)
        return config

    async def store(self, config: OAuthServerConfig) -> None:
        await self._repository.upsert(config)
        self._mark_written(config.server_id)

    async def store_discovered(
        self, server_id: str, discovery: DiscoveryResult
    ) -> OAuthServerConfig:
        """Persist a discovery result, keeping any client already registered.

        Raises:
            ValueError: If the discovery result holds no metadata
        """
        if discovery.metadata is None or discovery.auth_server is None:
            raise ValueError("Discovery result has no metadata to store")

        existing = await self.get(server_id)
        metadata = discovery.metadata
        config = OAuthServerConfig(
            server_id=server_id,
            authorization_endpoint=metadata.authorization_endpoint,
            token_endpoint=metadata.token_endpoint,
            registration_endpoint=metadata.registration_endpoint,
            authorization_server=discovery.auth_server,
            resource_identifier=discovery.resource_id,
            client_id=existing.client_id if existing else None,
            client_secret=existing.client_secret if existing else None,
            scopes=metadata.scopes_supported,
            supports_pkce=metadata.supports_pkce,
            discovery_method=discovery.method or DiscoveryMethod.RFC9728,
        )
        await self.store(config)
        return config

    async def save_client(
        self, server_id: str, client_id: str, client_secret: str | None
    ) -> bool:
        updated = await self._repository.update_client(
            server_id, client_id, client_secret
        )
        self._mark_written(server_id)
        return updated

    async def clear_client(self, server_id: str) -> bool:
        """Forget the registered client so the next flow re-registers."""
        updated = await self._repository.update_client(server_id, None, None)
        self._mark_written(server_id)
        return updated

    def invalidate(self, server_id: str) -> None:
        self._mark_written(server_id)

    async def delete(self, server_id: str) -> int:
        removed = await self._repository.delete(server_id)
        self._mark_written(server_id)
        return removed

    def _recently_written(self, server_id: str, now: float) -> bool:
        written_at = self._written_at.get(server_id)
        if written_at is None:
            return False
        if now - written_at < self.write_freshness:
            return True
        del self._written_at[server_id]
        return False

    def _mark_written(self, server_id: str) -> None:
        now = self._clock()
        self._cache.pop(server_id, None)
        self._written_at.pop(server_id, None)
        self._written_at[server_id] = now
        while self._written_at:
            oldest_id, written_at = next(iter(self._written_at.items()))
            if now - written_at < self.write_freshness:
                break
            del self._written_at[oldest_id]

    def _put(self, server_id: str, config: OAuthServerConfig, now: float) -> None:
        self._cache[server_id] = (now, config)
        self._cache.move_to_end(server_id)
        while len(self._cache) > self.max_size:
            self._cache.popitem(last=False)

