"""OAuth 2.1 authorization server discovery.

Implements RFC 8414 (Authorization Server Metadata) lookup, driven either by
a WWW-Authenticate challenge that names the authorization server (RFC 9728
style) or by the MCP server's own origin.

Foreign servers are untrusted and frequently non-conformant, so discovery
never raises: every failure degrades to "no metadata".
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from mcp_oauth.models.discovery import (
    DiscoveryMethod,
    DiscoveryResult,
    OAuthServerMetadata,
    ParsedChallenge,
)
from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.primitives.challenge import parse_challenge_header

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"


class MetadataDiscoverer:
    """Resolves authorization server metadata for MCP servers.

    Supports discovery from 401 responses (WWW-Authenticate header) with a
    fallback to the MCP server's own origin.
    """

    def __init__(
        self,
        metrics: OAuthMetrics,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.perf_counter,
    ):
        """Initialize OAuth discovery.

        Args:
            metrics: Collector for discovery outcome and duration
            timeout: HTTP request timeout in seconds
            clock: Monotonic clock used for durations
        """
        self.timeout = timeout
        self._metrics = metrics
        self._clock = clock
        self._http_client = httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def parse_challenge_header(header: str | None) -> ParsedChallenge | None:
        return parse_challenge_header(header)

    async def discover_metadata(
        self, auth_server_url: str
    ) -> OAuthServerMetadata | None:
        """Fetch and validate metadata from an authorization server.

        GETs `{base}/.well-known/oauth-authorization-server`. Non-2xx
        responses, network errors, timeouts and documents missing a required
        endpoint all yield None.

        Args:
            auth_server_url: Authorization server base URL

        Returns:
            Validated metadata, or None if discovery failed
        """
        started = self._clock()
        metadata: OAuthServerMetadata | None = None
        metadata_url = f"{str(auth_server_url).rstrip('/')}{WELL_KNOWN_PATH}"

        logger.info(
            "oauth_discovery_initiated",
            extra={"event": "oauth_discovery_initiated", "metadata_url": metadata_url},
        )

        try:
            response = await self._http_client.get(
                metadata_url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )

            if not 200 <= response.status_code < 300:
                logger.warning(
                    f"Metadata endpoint {metadata_url} returned {response.status_code}"
                )
            else:
                metadata = OAuthServerMetadata.model_validate(response.json())

        except ValidationError as e:
            logger.warning(
                f"Invalid authorization server metadata from {metadata_url}: "
                f"{e.error_count()} validation errors"
            )
        except httpx.TimeoutException:
            logger.warning(f"Timed out discovering OAuth metadata at {metadata_url}")
        except Exception as e:
            logger.warning(f"Error discovering OAuth metadata at {metadata_url}: {e}")

        self._metrics.record_discovery(
            DiscoveryMethod.RFC9728.value,
            metadata is not None,
            self._clock() - started,
        )

        if metadata is not None:
            logger.info(
                "oauth_discovery_success",
                extra={
                    "event": "oauth_discovery_success",
                    "metadata_url": metadata_url,
                    "authorization_endpoint": metadata.authorization_endpoint,
                    "token_endpoint": metadata.token_endpoint,
                    "registration_endpoint": metadata.registration_endpoint,
                },
            )

        return metadata

    async def discover_from_challenge_response(
        self, response: httpx.Response, server_url: str
    ) -> DiscoveryResult:
        """Discover OAuth configuration from a 401 Unauthorized response.

        1. If the WWW-Authenticate challenge names an authorization server,
           try that server.
        2. Otherwise, or if that fails, try the MCP server's own origin.
        3. If both fail, return an empty result.

        Args:
            response: 401 response from the MCP server
            server_url: URL of the MCP server

        Returns:
            Discovery result; `result.found` is False when OAuth is not usable
        """
        challenge = parse_challenge_header(response.headers.get("WWW-Authenticate"))

        if challenge is not None and challenge.authorization_server:
            logger.debug(
                "Found authorization_server in WWW-Authenticate: "
                f"{challenge.authorization_server}"
            )
            metadata = await self.discover_metadata(challenge.authorization_server)
            if metadata is not None:
                return DiscoveryResult(
                    metadata=metadata,
                    auth_server=challenge.authorization_server,
                    resource_id=challenge.resource_identifier,
                    method=DiscoveryMethod.RFC9728,
                )

        origin = self._origin(server_url)
        if origin is not None:
            metadata = await self.discover_metadata(origin)
            if metadata is not None:
                logger.debug(f"Discovered OAuth metadata from server origin {origin}")
                return DiscoveryResult(
                    metadata=metadata,
                    auth_server=origin,
                    resource_id=server_url,
                    method=DiscoveryMethod.RFC9728,
                )

        logger.info(f"No OAuth metadata discoverable for {server_url}")
        return DiscoveryResult()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._http_client.aclose()

    @staticmethod
    def _origin(server_url: str) -> str | None:
        try:
            parsed = urlparse(server_url)
        except (TypeError, ValueError):
            return None
        if not parsed.scheme or not parsed.netloc:
            return None
        return f"{parsed.scheme}://{parsed.netloc}"
