"""OAuth 2.1 dynamic client registration service.

Implements RFC 7591 (OAuth 2.0 Dynamic Client Registration Protocol)
to automatically register the platform as a public client with the
authorization servers of MCP servers.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx
from pydantic import ValidationError

from mcp_oauth.models.errors import RegistrationError
from mcp_oauth.models.registration import (
    ClientMetadata,
    ClientRegistrationResult,
    RegisteredClient,
)
from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.services.config_store import OAuthConfigStore

logger = logging.getLogger(__name__)


class ClientRegistrar:
    """Handles OAuth 2.1 dynamic client registration for MCP servers.

    A registration is a one-time operation per server: once a client_id is
    stored it is reused until explicitly cleared.
    """

    def __init__(
        self,
        config_store: OAuthConfigStore,
        metrics: OAuthMetrics,
        timeout: float = 10.0,
        client_name: str = "MCP OAuth Client",
        client_uri: str | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        """Initialize OAuth registration.

        Args:
            config_store: Store that keeps the registered client per server
            metrics: Collector for registration outcome and duration
            timeout: HTTP request timeout in seconds
            client_name: Human readable client name sent to the server
            client_uri: Client home page sent to the server
            clock: Monotonic clock used for durations
        """
        self.timeout = timeout
        self.client_name = client_name
        self.client_uri = client_uri
        self._config_store = config_store
        self._metrics = metrics
        self._clock = clock
        self._http_client = httpx.AsyncClient(timeout=timeout)

    async def register(
        self, registration_endpoint: str, redirect_uri: str
    ) -> ClientRegistrationResult:
        """Register a new public OAuth client with the authorization server.

        Args:
            registration_endpoint: Client registration endpoint URL
            redirect_uri: Redirect URI to register

        Returns:
            Credentials issued by the authorization server

        Raises:
            RegistrationError: If registration fails. Carries the HTTP status
                and response body when the server answered.
        """
        started = self._clock()
        success = False

        logger.info(
            "oauth_dynamic_registration_initiated",
            extra={
                "event": "oauth_dynamic_registration_initiated",
                "registration_endpoint": registration_endpoint,
            },
        )

        try:
            client_metadata = ClientMetadata(
                redirect_uris=[redirect_uri],
                client_name=self.client_name,
                client_uri=self.client_uri,
            )
            response = await self._http_client.post(
                registration_endpoint,
                json=client_metadata.model_dump(exclude_none=True, mode="json"),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )

            if not 200 <= response.status_code < 300:
                logger.error(
                    f"Client registration at {registration_endpoint} failed "
                    f"with {response.status_code}"
                )
                raise RegistrationError(
                    f"Registration failed with HTTP {response.status_code}: "
                    f"{response.text}",
                    status_code=response.status_code,
                    body=response.text,
                )

            result = self._parse_registration_response(response)
            success = True

        except RegistrationError:
            raise
        except ValidationError as e:
            raise RegistrationError(f"Invalid client metadata: {e}") from e
        except httpx.HTTPError as e:
            raise RegistrationError(f"HTTP error during registration: {e}") from e
        except Exception as e:
            raise RegistrationError(f"Unexpected error during registration: {e}") from e
        finally:
            self._metrics.record_client_registration(
                success, self._clock() - started
            )

        logger.info(
            "oauth_dynamic_registration_success",
            extra={
                "event": "oauth_dynamic_registration_success",
                "registration_endpoint": registration_endpoint,
                "client_id": result.client_id,
            },
        )
        return result

    async def get_or_register(
        self,
        server_id: str,
        registration_endpoint: str,
        redirect_uri: str,
        existing_client_id: str | None = None,
    ) -> RegisteredClient:
        """Return the server's client, registering one if none exists yet.

        Args:
            server_id: MCP server the client belongs to
            registration_endpoint: Client registration endpoint URL
            redirect_uri: Redirect URI to register
            existing_client_id: Previously registered client_id, if any

        Returns:
            Client credentials to use for the authorization flow

        Raises:
            RegistrationError: If a new registration fails
        """
        if existing_client_id:
            logger.info(
                "oauth_using_existing_client",
                extra={
                    "event": "oauth_using_existing_client",
                    "server_id": server_id,
                    "client_id": existing_client_id,
                },
            )
            return RegisteredClient(client_id=existing_client_id)

        result = await self.register(registration_endpoint, redirect_uri)

        saved = await self._config_store.save_client(
            server_id, result.client_id, result.client_secret
        )
        if not saved:
            logger.warning(
                f"No OAuth config row for server {server_id}; "
                f"client {result.client_id} was not persisted"
            )
        # Drop any configuration read before the new client existed
        self._config_store.invalidate(server_id)

        return RegisteredClient(
            client_id=result.client_id, client_secret=result.client_secret
        )

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()

    @staticmethod
    def _parse_registration_response(
        response: httpx.Response,
    ) -> ClientRegistrationResult:
        try:
            return ClientRegistrationResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RegistrationError(
                f"Invalid registration response format: {e}",
                status_code=response.status_code,
                body=response.text,
            ) from e
