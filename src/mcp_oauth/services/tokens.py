"""Token endpoint client and the default refresh executor.

Implements RFC 6749 token endpoint interactions with PKCE (RFC 7636)
and Resource Indicators (RFC 8707).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx
from pydantic import ValidationError

from mcp_oauth.models.errors import TokenError, TokenRefreshError
from mcp_oauth.models.tokens import RefreshTokenRequest, TokenRequest, TokenResponse
from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.services.config_store import OAuthConfigStore
from mcp_oauth.storage.repositories import TokenRepository

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_BUFFER = 15 * 60

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenClient:
    """Talks to OAuth 2.1 token endpoints.

    Handles:
    - Authorization code to access token exchange (RFC 6749 Section 4.1.3)
    - Access token refresh (RFC 6749 Section 6)

    Uses application/x-www-form-urlencoded encoding as required by OAuth 2.1.
    Error responses from the endpoint are returned, not raised.
    """

    def __init__(self, timeout: float = 10.0):
        """Initialize the token client.

        Args:
            timeout: HTTP request timeout in seconds
        """
        self.timeout = timeout
        self._http_client = httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(
        self, token_request: TokenRequest
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            TokenError: If the request fails or the response is unreadable
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")

        try:
            response = await self._http_client.post(
                token_request.token_endpoint,
                data=token_request.to_form_data(),
                headers=_FORM_HEADERS,
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during token exchange: {e}") from e

        return self._parse_token_response(response, TokenError)

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Refresh an access token using a refresh token.

        Args:
            refresh_request: Refresh token request parameters

        Returns:
            TokenResponse: New token response (success or error)

        Raises:
            TokenRefreshError: If the request fails or the response is unreadable
        """
        form_data = refresh_request.to_form_data()
        logger.debug(
            f"Refreshing access token at {refresh_request.token_endpoint}: "
            f"client_id={form_data['client_id']}, "
            f"resource={form_data.get('resource', 'none')}"
        )

        try:
            response = await self._http_client.post(
                refresh_request.token_endpoint,
                data=form_data,
                headers=_FORM_HEADERS,
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"HTTP error during token refresh: {e}") from e

        return self._parse_token_response(response, TokenRefreshError)

    @staticmethod
    def _parse_token_response(
        response: httpx.Response, error_type: type[TokenError]
    ) -> TokenResponse:
        """Parse both successful (5.1) and error (5.2) token responses."""
        try:
            response_data = response.json()
            if not isinstance(response_data, dict):
                raise ValueError("token response is not a JSON object")

            if response.status_code == 200:
                if "access_token" not in response_data:
                    raise error_type("Token response missing required access_token")
                return TokenResponse(**response_data)

            error_code = response_data.get("error", "unknown_error")
            error_description = response_data.get(
                "error_description", "No description provided"
            )
            logger.warning(
                f"Token endpoint returned {response.status_code}: "
                f"{error_code} - {error_description}"
            )
            response_data.setdefault("error", error_code)
            return TokenResponse(**response_data)

        except (ValueError, ValidationError) as e:
            raise error_type(
                f"Invalid token response format (HTTP {response.status_code}): {e}"
            ) from e

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()


class HttpRefreshExecutor:
    """Refreshes a server's token through its token endpoint and stores it."""

    def __init__(
        self,
        tokens: TokenRepository,
        config_store: OAuthConfigStore,
        token_client: OAuth2TokenClient,
        metrics: OAuthMetrics,
        clock: Callable[[], float] = time.time,
        expiry_buffer: float = DEFAULT_EXPIRY_BUFFER,
    ):
        self._tokens = tokens
        self._config_store = config_store
        self._token_client = token_client
        self._metrics = metrics
        self._clock = clock
        self.expiry_buffer = expiry_buffer

    async def refresh(self, server_id: str, owner_id: str) -> bool:
        """Refresh the token for one server connection.

        Returns:
            True if a new access token was stored or the stored one is not
            due yet, False if there was nothing to refresh with or the
            provider rejected the refresh

        Raises:
            TokenRefreshError: If the token endpoint could not be reached
        """
        started = time.perf_counter()

        record = await self._tokens.get(server_id)
        if record is None or not record.can_refresh():
            logger.warning(f"No refresh token stored for server {server_id}")
            self._record(False, started, "no_refresh_token")
            return False

        if record.expires_at is not None and not record.expires_within(
            self.expiry_buffer, self._clock()
        ):
            logger.debug(
                f"Token for server {server_id} is still valid, no refresh needed"
            )
            return True

        config = await self._config_store.get(server_id)
        if config is None or not config.client_id:
            logger.warning(f"No OAuth client configured for server {server_id}")
            self._record(False, started, "no_config")
            return False

        request = RefreshTokenRequest(
            token_endpoint=config.token_endpoint,
            refresh_token=record.refresh_token,
            client_id=config.client_id,
            client_secret=config.client_secret,
            resource=config.resource_identifier,
        )

        try:
            response = await self._token_client.refresh_access_token(request)
        except TokenRefreshError:
            self._record(False, started, "exception")
            raise

        if not response.is_success():
            logger.warning(
                f"Token refresh for server {server_id} (user {owner_id}) rejected: "
                f"{response.error}"
            )
            self._record(False, started, "provider_rejected")
            return False

        saved = await self._tokens.save_refreshed(
            server_id,
            access_token=response.access_token,
            # Providers that don't rotate keep the old refresh token valid
            refresh_token=response.refresh_token or record.refresh_token,
            token_type=response.token_type,
            expires_at=response.calculate_expires_at(self._clock()),
        )
        if not saved:
            logger.warning(f"Token row for server {server_id} vanished during refresh")
            self._record(False, started, "token_deleted")
            return False

        self._record(True, started)
        return True

    def _record(self, success: bool, started: float, reason: str = "normal") -> None:
        self._metrics.record_token_refresh(
            success, time.perf_counter() - started, reason
        )
