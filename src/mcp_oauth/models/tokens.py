"""Token records, token endpoint messages and refresh-cycle results.

Contains the persisted token record, the refresh request/response exchanged
with a token endpoint, and the per-token and per-cycle results produced by
the refresh scheduler.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from mcp_oauth.models.errors import RefreshFailureReason


@dataclass(frozen=True)
class OAuthTokenRecord:
    """Stored OAuth tokens for one MCP server connection."""

    server_id: str
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp, None = non-expiring
    refresh_locked_at: float | None = None
    refresh_lock_owner: str | None = None

    def expires_within(self, seconds: float, now: float | None = None) -> bool:
        """Check if the access token expires within the given window."""
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return self.expires_at < now + seconds

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


@dataclass(frozen=True)
class RefreshCandidate:
    """A token selected for refresh in one scheduler cycle."""

    server_id: str
    owner_id: str
    expires_at: float | None
    refresh_locked_at: float | None = None
    server_name: str | None = None

    @property
    def label(self) -> str:
        return self.server_name or self.server_id


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3)."""

    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str  # RFC 7636 PKCE

    client_secret: str | None = None
    grant_type: str = "authorization_code"
    resource: str | None = None  # RFC 8707 Resource Indicators

    def to_form_data(self) -> dict[str, str]:
        """Token requests must use form encoding, not JSON."""
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.resource:
            data["resource"] = self.resource
        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """OAuth 2.1 refresh token request parameters (RFC 6749 Section 6)."""

    # Required fields first
    token_endpoint: str
    refresh_token: str
    client_id: str

    # Optional fields with defaults last
    client_secret: str | None = None
    grant_type: str = "refresh_token"
    resource: str | None = None  # RFC 8707 Resource Indicators
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }

        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.resource:
            data["resource"] = self.resource
        if self.scope:
            data["scope"] = self.scope

        return data


class TokenResponse(BaseModel):
    """OAuth 2.1 token response (RFC 6749 Section 5).

    Represents the response from a token endpoint, including both
    successful responses (Section 5.1) and error responses (Section 5.2).
    """

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        """Check if token response indicates success."""
        return self.error is None and self.access_token is not None

    def calculate_expires_at(self, now: float | None = None) -> float | None:
        """Calculate absolute expiry timestamp from expires_in.

        Returns:
            Unix timestamp when token expires, or None if no expiry
        """
        if self.expires_in is None:
            return None
        return (time.time() if now is None else now) + self.expires_in


class RefreshOutcome(str, Enum):
    """Result of one candidate's refresh attempt."""

    REFRESHED = "refreshed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Lease held by another worker


@dataclass(frozen=True)
class RefreshAttempt:
    candidate: RefreshCandidate
    outcome: RefreshOutcome
    reason: RefreshFailureReason | None = None
    error: str | None = None


@dataclass
class RefreshCycleSummary:
    """Aggregated counters for one scheduler cycle."""

    refreshed: int = 0
    failed: int = 0
    skipped: int = 0
    candidates: int = 0
    duration_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def add(self, attempt: RefreshAttempt) -> None:
        if attempt.outcome is RefreshOutcome.REFRESHED:
            self.refreshed += 1
        elif attempt.outcome is RefreshOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            if attempt.error:
                self.errors.append(attempt.error)

    def to_dict(self) -> dict[str, Any]:
        """The summary shape shared by the timer and the manual trigger."""
        return {
            "refreshed": self.refreshed,
            "failed": self.failed,
            "errors": list(self.errors),
        }
