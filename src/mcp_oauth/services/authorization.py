"""OAuth 2.1 authorization flow orchestration for MCP servers.

Coordinates discovery, registration, PKCE state and token exchange. The
HTTP redirect and callback handlers live in the host application; they call
`begin` when an MCP server answers 401 and `complete` when the
authorization server redirects back.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx

from mcp_oauth.models.errors import (
    DiscoveryError,
    PKCEError,
    RegistrationError,
    TokenError,
)
from mcp_oauth.models.flow import AuthorizationRequest, AuthorizationStart
from mcp_oauth.models.tokens import OAuthTokenRecord, TokenRequest
from mcp_oauth.services.config_store import OAuthConfigStore
from mcp_oauth.services.discovery import MetadataDiscoverer
from mcp_oauth.services.pkce_store import PkceStateStore
from mcp_oauth.services.registration import ClientRegistrar
from mcp_oauth.services.tokens import OAuth2TokenClient
from mcp_oauth.storage.repositories import TokenRepository

logger = logging.getLogger(__name__)


class AuthorizationStarter:
    """Drives an MCP server connection from a 401 to stored tokens."""

    def __init__(
        self,
        discoverer: MetadataDiscoverer,
        registrar: ClientRegistrar,
        config_store: OAuthConfigStore,
        pkce_store: PkceStateStore,
        token_client: OAuth2TokenClient,
        tokens: TokenRepository,
        redirect_uri: str,
        clock: Callable[[], float] = time.time,
    ):
        self.redirect_uri = redirect_uri
        self._discoverer = discoverer
        self._registrar = registrar
        self._config_store = config_store
        self._pkce_store = pkce_store
        self._token_client = token_client
        self._tokens = tokens
        self._clock = clock

    async def begin(
        self,
        server_id: str,
        server_url: str,
        response: httpx.Response,
        owner_id: str | None = None,
        scope: str | None = None,
    ) -> AuthorizationStart:
        """Start authorization after an MCP server rejected a request.

        1. Discover the authorization server from the 401 response
        2. Persist the discovered configuration
        3. Reuse the stored client or register a new one
        4. Issue a PKCE challenge
        5. Build the authorization URL

        Args:
            server_id: MCP server being connected
            server_url: URL of the MCP server
            response: The 401 response from the MCP server
            owner_id: User starting the flow
            scope: Scope to request, defaults to the server's supported scopes

        Returns:
            The authorization URL and the state that identifies the flow

        Raises:
            DiscoveryError: If no authorization server metadata was found
            RegistrationError: If no client could be obtained
        """
        logger.info(f"Starting OAuth authorization for server {server_id}")

        discovery = await self._discoverer.discover_from_challenge_response(
            response, server_url
        )
        if not discovery.found:
            raise DiscoveryError(f"Cannot authorize {server_url}: no OAuth metadata")

        config = await self._config_store.store_discovered(server_id, discovery)

        if not config.client_id and not config.registration_endpoint:
            raise RegistrationError(
                "Server does not support dynamic client registration"
            )

        client = await self._registrar.get_or_register(
            server_id,
            config.registration_endpoint or "",
            self.redirect_uri,
            existing_client_id=config.client_id,
        )

        challenge = await self._pkce_store.create(
            server_id, owner_id=owner_id, redirect_uri=self.redirect_uri
        )

        if scope is None and config.scopes:
            scope = " ".join(config.scopes)

        request = AuthorizationRequest(
            authorization_endpoint=config.authorization_endpoint,
            client_id=client.client_id,
            redirect_uri=self.redirect_uri,
            state=challenge.state,
            code_challenge=challenge.code_challenge,
            resource=config.resource_identifier,
            scope=scope,
        )

        return AuthorizationStart(
            server_id=server_id,
            authorization_url=request.build_authorization_url(),
            state=challenge.state,
            client_id=client.client_id,
            expires_at=challenge.expires_at,
        )

    async def complete(
        self, state: str, code: str, owner_id: str | None = None
    ) -> OAuthTokenRecord:
        """Exchange the callback's authorization code for stored tokens.

        Args:
            state: State returned by the authorization server
            code: Authorization code from the callback
            owner_id: User completing the flow, must match the one that began it

        Raises:
            PKCEError: If the state is unknown, replayed, expired, issued to
                another user or bound to a different redirect URI
            TokenError: If the exchange fails or is rejected
        """
        challenge = await self._pkce_store.consume(state, owner_id=owner_id)

        if challenge.redirect_uri and challenge.redirect_uri != self.redirect_uri:
            logger.error(
                f"Redirect URI mismatch for server {challenge.server_id}: "
                f"expected {challenge.redirect_uri}, got {self.redirect_uri}"
            )
            raise PKCEError("Redirect URI does not match the authorization request")

        config = await self._config_store.get(challenge.server_id)
        if config is None or not config.client_id:
            raise TokenError(
                f"No OAuth client configured for server {challenge.server_id}"
            )

        response = await self._token_client.exchange_code_for_token(
            TokenRequest(
                token_endpoint=config.token_endpoint,
                code=code,
                redirect_uri=self.redirect_uri,
                client_id=config.client_id,
                code_verifier=challenge.code_verifier,
                client_secret=config.client_secret,
                resource=config.resource_identifier,
            )
        )
        if not response.is_success():
            raise TokenError(f"Token exchange failed: {response.error}")

        record = OAuthTokenRecord(
            server_id=challenge.server_id,
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            token_type=response.token_type,
            expires_at=response.calculate_expires_at(self._clock()),
        )
        await self._tokens.upsert(record)

        logger.info(f"Stored OAuth tokens for server {challenge.server_id}")
        return record

    async def forget_server(self, server_id: str) -> None:
        """Remove all OAuth state for a deleted or reset server."""
        removed_states = await self._pkce_store.cleanup_for_server(server_id)
        removed_tokens = await self._tokens.delete_for_server(server_id)
        await self._config_store.delete(server_id)
        logger.info(
            f"Cleared OAuth state for server {server_id} "
            f"({removed_states} PKCE states, {removed_tokens} tokens)"
        )
