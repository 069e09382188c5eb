"""Exception hierarchy for the OAuth 2.1 client core.

Provides specific exception types for each failure mode so callers in the
interactive connection flow can present a precise reason, while the
background schedulers can classify failures for metrics.
"""

from __future__ import annotations

from enum import Enum


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.1 related errors."""

    pass


class DiscoveryError(OAuth2Error):
    """Raised when no usable authorization server metadata can be found."""

    pass


class RegistrationError(OAuth2Error):
    """Raised when dynamic client registration fails.

    Carries the HTTP status and response body when the authorization server
    answered, so the caller can surface the server's own reason.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PKCEError(OAuth2Error):
    """Raised when PKCE parameter generation or validation fails."""

    pass


class PkceStateNotFoundError(PKCEError):
    """Raised when a callback presents a state we never issued or already used."""

    pass


class PkceStateExpiredError(PKCEError):
    """Raised when a callback presents a state past its expiry."""

    pass


class TokenError(OAuth2Error):
    """Raised when token operations fail."""

    pass


class TokenRefreshError(TokenError):
    """Raised when token refresh fails."""

    pass


class StorageError(OAuth2Error):
    """Raised when the persistence layer cannot complete an operation."""

    pass


class RefreshFailureReason(str, Enum):
    """Classification of a failed scheduled refresh."""

    ENDPOINT_ERROR = "endpoint_error"
    EXCEPTION = "exception"
