"""Wiring and lifecycle for the OAuth client core.

`OAuthRuntime` builds every component from `OAuthSettings` and owns the
background schedulers. Nothing runs until `start()` is awaited; the host
application calls it from its own startup hook and `stop()` on shutdown.
"""

from __future__ import annotations

import logging

from mcp_oauth.config import OAuthSettings, get_settings
from mcp_oauth.models.tokens import RefreshCycleSummary
from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.services.authorization import AuthorizationStarter
from mcp_oauth.services.config_store import OAuthConfigStore
from mcp_oauth.services.discovery import MetadataDiscoverer
from mcp_oauth.services.lease import RefreshLease
from mcp_oauth.services.pkce_store import PkceCleanupScheduler, PkceStateStore
from mcp_oauth.services.registration import ClientRegistrar
from mcp_oauth.services.token_refresh import RefreshExecutor, TokenRefreshScheduler
from mcp_oauth.services.tokens import HttpRefreshExecutor, OAuth2TokenClient
from mcp_oauth.storage.repositories import (
    OAuthConfigRepository,
    PkceRepository,
    TokenRepository,
)
from mcp_oauth.storage.schema import create_engine, create_schema

logger = logging.getLogger(__name__)


class OAuthRuntime:
    """Owns the engine, HTTP clients and schedulers of one process."""

    def __init__(
        self,
        settings: OAuthSettings | None = None,
        executor: RefreshExecutor | None = None,
        metrics: OAuthMetrics | None = None,
    ):
        """Build all components.

        Args:
            settings: Configuration, defaults to the process settings
            executor: Refresh capability, defaults to the HTTP token client
            metrics: Metrics collector, defaults to a fresh registry
        """
        self.settings = settings or get_settings()
        s = self.settings

        self.metrics = metrics or OAuthMetrics()
        self.engine = create_engine(s)

        self.tokens = TokenRepository(self.engine)
        self.config_store = OAuthConfigStore(
            OAuthConfigRepository(self.engine),
            ttl=s.config_cache_ttl,
            max_size=s.config_cache_max_size,
            write_freshness=s.config_write_freshness,
        )
        self.pkce_store = PkceStateStore(
            PkceRepository(self.engine), self.metrics, ttl=s.pkce_ttl
        )

        self.discoverer = MetadataDiscoverer(self.metrics, timeout=s.http_timeout)
        self.registrar = ClientRegistrar(
            self.config_store,
            self.metrics,
            timeout=s.http_timeout,
            client_name=s.client_name,
            client_uri=s.client_uri,
        )
        self.token_client = OAuth2TokenClient(timeout=s.http_timeout)
        self.authorization = AuthorizationStarter(
            self.discoverer,
            self.registrar,
            self.config_store,
            self.pkce_store,
            self.token_client,
            self.tokens,
            redirect_uri=s.redirect_uri,
        )

        self.executor = executor or HttpRefreshExecutor(
            self.tokens,
            self.config_store,
            self.token_client,
            self.metrics,
            expiry_buffer=s.refresh_expiry_buffer,
        )
        self.token_scheduler = TokenRefreshScheduler(
            self.tokens,
            RefreshLease(self.engine, stale_after=s.refresh_stale_lock_after),
            self.executor,
            self.metrics,
            interval=s.refresh_interval,
            expiry_buffer=s.refresh_expiry_buffer,
            batch_size=s.refresh_batch_size,
            concurrency=s.refresh_concurrency,
            skip_in_test_env=s.skip_schedulers_in_tests,
        )
        self.pkce_scheduler = PkceCleanupScheduler(
            self.pkce_store,
            interval=s.pkce_cleanup_interval,
            initial_delay=s.pkce_cleanup_startup_delay,
            grace=s.pkce_cleanup_grace,
            skip_in_test_env=s.skip_schedulers_in_tests,
        )

    async def start(self) -> None:
        """Create missing tables and start the background schedulers."""
        await create_schema(self.engine)
        await self.token_scheduler.start()
        await self.pkce_scheduler.start()
        logger.info("OAuth runtime started")

    async def stop(self) -> None:
        """Stop schedulers and release connections. Safe to call twice."""
        await self.token_scheduler.stop()
        await self.pkce_scheduler.stop()
        await self.discoverer.close()
        await self.registrar.close()
        await self.token_client.close()
        await self.engine.dispose()
        logger.debug("OAuth runtime stopped")

    async def trigger_token_refresh(self) -> RefreshCycleSummary:
        """Run exactly one refresh cycle now, e.g. from an external cron."""
        return await self.token_scheduler.run_cycle()

    async def __aenter__(self) -> OAuthRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
