"""Prometheus metrics for OAuth discovery, registration, PKCE and refresh.

All collectors live on a per-instance registry so several runtimes (and
tests) can coexist in one process. Expose `render()` from whatever HTTP
surface the host application already has.
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_FAST_BUCKETS = (0.1, 0.5, 1, 2, 5, 10)
_SLOW_BUCKETS = (0.5, 1, 2, 5, 10, 30, 60)


def _status(success: bool) -> str:
    return "success" if success else "failure"


class OAuthMetrics:
    """Owns the OAuth collectors and the helpers that update them."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        # Discovery
        self.discovery_attempts = Counter(
            "oauth_discovery_attempts_total",
            "Total number of OAuth metadata discovery attempts",
            ["method", "status"],
            registry=self.registry,
        )
        self.discovery_duration = Histogram(
            "oauth_discovery_duration_seconds",
            "OAuth discovery operation duration in seconds",
            ["method", "status"],
            buckets=_FAST_BUCKETS,
            registry=self.registry,
        )

        # Dynamic client registration
        self.client_registrations = Counter(
            "oauth_client_registrations_total",
            "Total number of dynamic client registrations",
            ["status"],
            registry=self.registry,
        )
        self.client_registration_duration = Histogram(
            "oauth_client_registration_duration_seconds",
            "Client registration operation duration in seconds",
            ["status"],
            buckets=_FAST_BUCKETS,
            registry=self.registry,
        )

        # PKCE
        self.pkce_states_created = Counter(
            "oauth_pkce_states_created_total",
            "Total number of PKCE states created",
            registry=self.registry,
        )
        self.pkce_validations = Counter(
            "oauth_pkce_validations_total",
            "Total number of PKCE state validations",
            ["status", "reason"],
            registry=self.registry,
        )
        self.pkce_states_cleaned = Counter(
            "oauth_pkce_states_cleaned_total",
            "Total number of PKCE states cleaned up",
            ["reason"],
            registry=self.registry,
        )

        # Individual token refreshes
        self.token_refresh = Counter(
            "oauth_token_refresh_total",
            "Total number of OAuth token refresh attempts",
            ["status", "reason"],
            registry=self.registry,
        )
        self.token_refresh_duration = Histogram(
            "oauth_token_refresh_duration_seconds",
            "Token refresh operation duration in seconds",
            ["status"],
            buckets=_FAST_BUCKETS,
            registry=self.registry,
        )

        # Scheduled refresh cycles
        self.scheduled_refresh_runs = Counter(
            "oauth_scheduled_refresh_runs_total",
            "Total number of scheduled token refresh cycles",
            ["status"],
            registry=self.registry,
        )
        self.scheduled_refresh_duration = Histogram(
            "oauth_scheduled_refresh_duration_seconds",
            "Scheduled token refresh cycle duration in seconds",
            ["status"],
            buckets=_SLOW_BUCKETS,
            registry=self.registry,
        )
        self.scheduled_refresh_tokens = Counter(
            "oauth_scheduled_refresh_tokens_total",
            "Tokens processed by scheduled refresh cycles",
            ["result"],
            registry=self.registry,
        )
        self.scheduled_refresh_errors = Counter(
            "oauth_scheduled_refresh_errors_total",
            "Scheduled token refresh failures by classification",
            ["reason"],
            registry=self.registry,
        )
        self.tokens_expiring_soon = Gauge(
            "oauth_tokens_expiring_soon",
            "Tokens found expiring within the refresh buffer in the last cycle",
            registry=self.registry,
        )

    def record_discovery(
        self, method: str, success: bool, duration_seconds: float
    ) -> None:
        status = _status(success)
        self.discovery_attempts.labels(method=method, status=status).inc()
        self.discovery_duration.labels(method=method, status=status).observe(
            duration_seconds
        )

    def record_client_registration(
        self, success: bool, duration_seconds: float
    ) -> None:
        status = _status(success)
        self.client_registrations.labels(status=status).inc()
        self.client_registration_duration.labels(status=status).observe(
            duration_seconds
        )

    def record_pkce_created(self) -> None:
        self.pkce_states_created.inc()

    def record_pkce_validation(self, success: bool, reason: str = "valid") -> None:
        self.pkce_validations.labels(status=_status(success), reason=reason).inc()

    def record_pkce_cleanup(self, count: int, reason: str) -> None:
        """Record removed PKCE states. reason: expired, manual or server_deleted."""
        self.pkce_states_cleaned.labels(reason=reason).inc(count)

    def record_token_refresh(
        self, success: bool, duration_seconds: float, reason: str = "normal"
    ) -> None:
        status = _status(success)
        self.token_refresh.labels(status=status, reason=reason).inc()
        self.token_refresh_duration.labels(status=status).observe(duration_seconds)

    def record_scheduled_refresh(
        self,
        success: bool,
        duration_seconds: float,
        checked: int,
        refreshed: int,
        failed: int,
    ) -> None:
        status = _status(success)
        self.scheduled_refresh_runs.labels(status=status).inc()
        self.scheduled_refresh_duration.labels(status=status).observe(
            duration_seconds
        )
        self.scheduled_refresh_tokens.labels(result="checked").inc(checked)
        self.scheduled_refresh_tokens.labels(result="refreshed").inc(refreshed)
        self.scheduled_refresh_tokens.labels(result="failed").inc(failed)

    def record_scheduled_refresh_error(self, reason: str) -> None:
        self.scheduled_refresh_errors.labels(reason=reason).inc()

    def set_tokens_expiring_soon(self, count: int) -> None:
        self.tokens_expiring_soon.set(count)

    def render(self) -> bytes:
        """Text exposition of every collector on this registry."""
        return generate_latest(self.registry)
