"""Persistent PKCE challenge state.

Challenges are stored as rows keyed by `state` so an authorization started on
one replica (or before a restart) can be completed on another. Each challenge
is valid for a short window and can be consumed exactly once.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from mcp_oauth.models.errors import (
    PkceStateExpiredError,
    PkceStateNotFoundError,
    StorageError,
)
from mcp_oauth.models.security import PkceChallenge
from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.primitives.pkce import PKCEManager
from mcp_oauth.shared.periodic import PeriodicTask, is_test_environment
from mcp_oauth.storage.repositories import PkceRepository

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60
DEFAULT_CLEANUP_GRACE = 10 * 60


class PkceStateStore:
    """Creates, validates, consumes and garbage-collects PKCE challenges."""

    def __init__(
        self,
        repository: PkceRepository,
        metrics: OAuthMetrics,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
        pkce_manager: PKCEManager | None = None,
    ):
        self._repository = repository
        self._metrics = metrics
        self.ttl = ttl
        self._clock = clock
        self._pkce = pkce_manager or PKCEManager()

    async def create(
        self,
        server_id: str,
        owner_id: str | None = None,
        redirect_uri: str | None = None,
    ) -> PkceChallenge:
        """Issue and persist a new challenge for an authorization flow.

        Args:
            server_id: MCP server being authorized
            owner_id: User starting the flow
            redirect_uri: Redirect URI the authorization request will use

        Returns:
            The stored challenge, including the S256 code challenge

        Raises:
            PKCEError: If parameter generation fails
            StorageError: If the challenge cannot be persisted
        """
        params = self._pkce.generate_parameters()
        now = self._clock()
        challenge = PkceChallenge(
            state=params.state,
            code_verifier=params.code_verifier,
            server_id=server_id,
            created_at=now,
            expires_at=now + self.ttl,
            owner_id=owner_id,
            redirect_uri=redirect_uri,
            code_challenge=params.code_challenge,
        )
        await self._repository.insert(challenge)
        self._metrics.record_pkce_created()

        logger.debug(f"Created PKCE state for server {server_id}")
        return challenge

    async def validate(self, state: str) -> PkceChallenge:
        """Look up a challenge without consuming it.

        Raises:
            PkceStateNotFoundError: If no challenge exists for the state
            PkceStateExpiredError: If the challenge is past its expiry
        """
        challenge = await self._repository.get(state)
        if challenge is None:
            self._metrics.record_pkce_validation(False, "not_found")
            raise PkceStateNotFoundError("Unknown or already used OAuth state")

        if challenge.is_expired(self._clock()):
            self._metrics.record_pkce_validation(False, "expired")
            raise PkceStateExpiredError("OAuth state has expired")

        self._metrics.record_pkce_validation(True)
        return challenge

    async def consume(self, state: str, owner_id: str | None = None) -> PkceChallenge:
        """Take a challenge for the callback, deleting it.

        Only the caller whose delete actually removed the row receives the
        challenge, so a replayed or concurrent callback fails. A challenge
        issued to another user is deleted and reported as unknown, which
        stops a leaked state from being completed in someone else's session.

        Args:
            state: State returned by the authorization server
            owner_id: User completing the flow

        Raises:
            PkceStateNotFoundError: If the state is unknown, already consumed
                or belongs to another user
            PkceStateExpiredError: If the challenge is past its expiry
        """
        challenge = await self._repository.get(state)
        if challenge is not None and challenge.owner_id != owner_id:
            await self._repository.delete_state(state)
            logger.warning(
                f"PKCE state for server {challenge.server_id} presented by "
                "a different user, discarded"
            )
            self._metrics.record_pkce_validation(False, "owner_mismatch")
            raise PkceStateNotFoundError("Unknown or already used OAuth state")

        if challenge is None or await self._repository.delete_state(state) != 1:
            self._metrics.record_pkce_validation(False, "not_found")
            raise PkceStateNotFoundError("Unknown or already used OAuth state")

        if challenge.is_expired(self._clock()):
            self._metrics.record_pkce_validation(False, "expired")
            raise PkceStateExpiredError("OAuth state has expired")

        self._metrics.record_pkce_validation(True)
        return challenge

    async def cleanup_expired(self, grace: float = DEFAULT_CLEANUP_GRACE) -> int:
        """Delete challenges that expired more than `grace` seconds ago.

        Challenges merely past their expiry are kept, so a callback delayed
        by clock skew or latency can still complete.

        Returns:
            Number of removed challenges (0 if storage failed)
        """
        cutoff = self._clock() - grace
        try:
            removed = await self._repository.delete_expired_before(cutoff)
        except StorageError as e:
            logger.error(f"Failed to clean up expired PKCE states: {e}")
            return 0

        if removed > 0:
            self._metrics.record_pkce_cleanup(removed, "expired")
            logger.info(
                "pkce_cleanup_completed",
                extra={"event": "pkce_cleanup_completed", "removed": removed},
            )
        return removed

    async def cleanup_for_server(self, server_id: str) -> int:
        """Delete every challenge for a deleted or reset server.

        Returns:
            Number of removed challenges (0 if storage failed)
        """
        try:
            removed = await self._repository.delete_for_server(server_id)
        except StorageError as e:
            logger.error(f"Failed to clean up PKCE states for server {server_id}: {e}")
            return 0

        if removed > 0:
            self._metrics.record_pkce_cleanup(removed, "server_deleted")
            logger.info(
                "pkce_server_cleanup_completed",
                extra={
                    "event": "pkce_server_cleanup_completed",
                    "server_id": server_id,
                    "removed": removed,
                },
            )
        return removed


class PkceCleanupScheduler:
    """Periodically sweeps expired PKCE challenges.

    The first sweep is deferred after startup so it cannot race callbacks for
    challenges issued by a predecessor process just before a restart.
    """

    def __init__(
        self,
        store: PkceStateStore,
        *,
        interval: float = 15 * 60,
        initial_delay: float = 2 * 60,
        grace: float = DEFAULT_CLEANUP_GRACE,
        skip_in_test_env: bool = True,
    ):
        self._store = store
        self.grace = grace
        self.skip_in_test_env = skip_in_test_env
        self._task = PeriodicTask(
            "pkce-cleanup", self._sweep, interval, initial_delay=initial_delay
        )

    @property
    def running(self) -> bool:
        return self._task.running

    async def start(self) -> bool:
        """Start sweeping. Returns False if already running or under tests."""
        if self.skip_in_test_env and is_test_environment():
            logger.info("Skipping PKCE cleanup scheduler in test environment")
            return False
        started = self._task.start()
        if started:
            logger.info(
                f"PKCE cleanup scheduler started (every {self._task.interval}s, "
                f"first run in {self._task.initial_delay}s)"
            )
        return started

    async def stop(self) -> None:
        await self._task.stop()

    async def _sweep(self) -> None:
        await self._store.cleanup_expired(self.grace)
