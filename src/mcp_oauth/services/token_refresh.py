"""Proactive OAuth token refresh.

Periodically selects tokens about to expire and refreshes them before users
notice. Designed to run in several replicas at once:

- Candidate selection skips tokens whose refresh lease is fresh.
- Each refresh runs under a lease taken with a single conditional UPDATE,
  which also rechecks that the token is still due. A token refreshed by
  another replica after this one selected it is skipped.
- A crashed worker's lease simply goes stale and the token is picked up
  again on a later cycle.

The actual token endpoint call is delegated to an injected `RefreshExecutor`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from typing import Protocol

from mcp_oauth.models.errors import RefreshFailureReason, StorageError
from mcp_oauth.models.tokens import (
    RefreshAttempt,
    RefreshCandidate,
    RefreshCycleSummary,
    RefreshOutcome,
)
from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.services.lease import RefreshLease
from mcp_oauth.shared.periodic import PeriodicTask, is_test_environment
from mcp_oauth.storage.repositories import TokenRepository

logger = logging.getLogger(__name__)

REFRESH_INTERVAL = 10 * 60
EXPIRY_BUFFER = 15 * 60
BATCH_SIZE = 50
REFRESH_CONCURRENCY = 5


class RefreshExecutor(Protocol):
    """Performs the token endpoint call for one server connection."""

    async def refresh(self, server_id: str, owner_id: str) -> bool:
        """Refresh and persist the token.

        Returns:
            True on success, False if the provider rejected the refresh
        """
        ...


def default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class TokenRefreshScheduler:
    """Finds expiring tokens and refreshes them with bounded concurrency."""

    def __init__(
        self,
        tokens: TokenRepository,
        lease: RefreshLease,
        executor: RefreshExecutor,
        metrics: OAuthMetrics,
        *,
        interval: float = REFRESH_INTERVAL,
        expiry_buffer: float = EXPIRY_BUFFER,
        batch_size: int = BATCH_SIZE,
        concurrency: int = REFRESH_CONCURRENCY,
        skip_in_test_env: bool = True,
        clock: Callable[[], float] = time.time,
        instance_id: str | None = None,
    ):
        """Initialize the scheduler.

        Args:
            tokens: Token repository used for candidate selection
            lease: Lease taken around each refresh, also the source of the
                stale-lock threshold used for candidate selection
            executor: Performs the actual refresh
            metrics: Collector for cycle and per-token metrics
            interval: Seconds between cycles
            expiry_buffer: Refresh tokens expiring within this many seconds
            batch_size: Maximum candidates per cycle
            concurrency: Maximum refreshes in flight at once
            skip_in_test_env: Refuse to start under a test runner
            clock: Wall clock returning epoch seconds
            instance_id: Lease owner name for this worker
        """
        self._tokens = tokens
        self._lease = lease
        self._executor = executor
        self._metrics = metrics
        self.interval = interval
        self.expiry_buffer = expiry_buffer
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.skip_in_test_env = skip_in_test_env
        self._clock = clock
        self.instance_id = instance_id or default_instance_id()
        self._task = PeriodicTask("oauth-token-refresh", self._run_scheduled, interval)

    @property
    def running(self) -> bool:
        return self._task.running

    async def start(self) -> bool:
        """Start periodic refresh, running the first cycle immediately.

        Safe to call multiple times - subsequent calls are ignored if already
        running.

        Returns:
            True if the scheduler was started by this call
        """
        if self.skip_in_test_env and is_test_environment():
            logger.info("Skipping token refresh scheduler in test environment")
            return False

        started = self._task.start()
        if started:
            logger.info(
                f"Token refresh scheduler started (every {self.interval}s, "
                f"buffer {self.expiry_buffer}s, concurrency {self.concurrency})"
            )
        else:
            logger.debug("Token refresh scheduler already running")
        return started

    async def stop(self) -> None:
        """Stop periodic refresh. Safe to call multiple times."""
        was_running = self.running
        await self._task.stop()
        if was_running:
            logger.info("Token refresh scheduler stopped")

    async def run_cycle(self) -> RefreshCycleSummary:
        """Run one refresh cycle.

        Individual refresh failures are counted, never raised. Only a failure
        to query candidates marks the whole cycle as failed.

        Returns:
            Counters for this cycle
        """
        started = time.perf_counter()
        now = self._clock()
        summary = RefreshCycleSummary()

        try:
            candidates = await self._tokens.find_refresh_candidates(
                expiring_before=now + self.expiry_buffer,
                locked_before=now - self._lease.stale_after,
                limit=self.batch_size,
            )
        except Exception as e:
            summary.failed = 1
            summary.errors.append(str(e) or type(e).__name__)
            summary.duration_seconds = time.perf_counter() - started
            logger.exception(
                f"Scheduled token refresh cycle failed: {e}",
                extra={"event": "scheduled_refresh_failed"},
            )
            self._metrics.record_scheduled_refresh(
                False, summary.duration_seconds, 0, 0, 1
            )
            self._metrics.record_scheduled_refresh_error(
                RefreshFailureReason.EXCEPTION.value
            )
            return summary

        summary.candidates = len(candidates)
        self._metrics.set_tokens_expiring_soon(len(candidates))
        logger.info(
            "scheduled_refresh_started",
            extra={
                "event": "scheduled_refresh_started",
                "tokens_found": len(candidates),
                "expiry_buffer_seconds": self.expiry_buffer,
            },
        )

        if candidates:
            semaphore = asyncio.Semaphore(self.concurrency)
            attempts = await asyncio.gather(
                *(self._bounded_refresh(semaphore, c) for c in candidates),
                return_exceptions=True,
            )
            for candidate, attempt in zip(candidates, attempts):
                if isinstance(attempt, BaseException):
                    # _refresh_one classifies its own errors; this is a safety net
                    attempt = RefreshAttempt(
                        candidate,
                        RefreshOutcome.FAILED,
                        RefreshFailureReason.EXCEPTION,
                        f"Error refreshing token for {candidate.label}: {attempt}",
                    )
                summary.add(attempt)

        summary.duration_seconds = time.perf_counter() - started
        self._metrics.record_scheduled_refresh(
            summary.success,
            summary.duration_seconds,
            summary.candidates,
            summary.refreshed,
            summary.failed,
        )
        logger.info(
            "scheduled_refresh_completed",
            extra={
                "event": "scheduled_refresh_completed",
                "tokens_checked": summary.candidates,
                "tokens_refreshed": summary.refreshed,
                "tokens_failed": summary.failed,
                "tokens_skipped": summary.skipped,
                "duration_seconds": summary.duration_seconds,
                "success": summary.success,
            },
        )
        return summary

    async def _run_scheduled(self) -> None:
        await self.run_cycle()

    async def _bounded_refresh(
        self, semaphore: asyncio.Semaphore, candidate: RefreshCandidate
    ) -> RefreshAttempt:
        async with semaphore:
            return await self._refresh_one(candidate)

    async def _refresh_one(self, candidate: RefreshCandidate) -> RefreshAttempt:
        try:
            acquired = await self._lease.acquire(
                candidate.server_id,
                self.instance_id,
                expiring_before=self._clock() + self.expiry_buffer,
            )
        except StorageError as e:
            return self._exception_attempt(candidate, e)

        if not acquired:
            return RefreshAttempt(candidate, RefreshOutcome.SKIPPED)

        try:
            success = await self._executor.refresh(
                candidate.server_id, candidate.owner_id
            )
        except Exception as e:
            return self._exception_attempt(candidate, e)
        finally:
            await self._release(candidate)

        if success:
            logger.info(
                "scheduled_token_refreshed",
                extra={
                    "event": "scheduled_token_refreshed",
                    "server_id": candidate.server_id,
                    "server_name": candidate.server_name,
                    "expires_at": candidate.expires_at,
                },
            )
            return RefreshAttempt(candidate, RefreshOutcome.REFRESHED)

        logger.error(
            "scheduled_token_refresh_failed",
            extra={
                "event": "scheduled_token_refresh_failed",
                "server_id": candidate.server_id,
                "server_name": candidate.server_name,
                "expires_at": candidate.expires_at,
                "reason": RefreshFailureReason.ENDPOINT_ERROR.value,
            },
        )
        self._metrics.record_scheduled_refresh_error(
            RefreshFailureReason.ENDPOINT_ERROR.value
        )
        return RefreshAttempt(
            candidate,
            RefreshOutcome.FAILED,
            RefreshFailureReason.ENDPOINT_ERROR,
            f"Failed to refresh token for {candidate.label}",
        )

    def _exception_attempt(
        self, candidate: RefreshCandidate, error: Exception
    ) -> RefreshAttempt:
        logger.error(
            f"Exception refreshing token for {candidate.label}: {error}",
            exc_info=error,
            extra={
                "event": "scheduled_token_refresh_failed",
                "server_id": candidate.server_id,
                "reason": RefreshFailureReason.EXCEPTION.value,
            },
        )
        self._metrics.record_scheduled_refresh_error(
            RefreshFailureReason.EXCEPTION.value
        )
        return RefreshAttempt(
            candidate,
            RefreshOutcome.FAILED,
            RefreshFailureReason.EXCEPTION,
            f"Error refreshing token for {candidate.label}: {error}",
        )

    async def _release(self, candidate: RefreshCandidate) -> None:
        try:
            await self._lease.release(candidate.server_id, self.instance_id)
        except StorageError as e:
            # The lease goes stale on its own
            logger.warning(
                f"Could not release refresh lease for {candidate.label}: {e}"
            )
