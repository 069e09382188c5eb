"""PKCE models for OAuth 2.1 authentication.

Contains the generated PKCE parameters and the persisted challenge record
that ties a `state` value to its verifier until the callback arrives.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE (Proof Key for Code Exchange) parameters (RFC 7636).

    Immutable parameters generated for each authorization flow to prevent
    authorization code interception attacks.
    """

    code_verifier: str = field()
    code_challenge: str = field()
    state: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not (43 <= len(self.code_challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")
        if len(self.state) < 32:
            raise ValueError("state must be at least 32 characters")


@dataclass(frozen=True)
class PkceChallenge:
    """A persisted PKCE challenge, looked up by `state` at callback time."""

    state: str
    code_verifier: str
    server_id: str
    created_at: float
    expires_at: float
    owner_id: str | None = None
    redirect_uri: str | None = None
    code_challenge: str | None = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at
