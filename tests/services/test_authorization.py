"""End-to-end tests for starting and completing an authorization flow.

The stores run against SQLite; only the HTTP clients are mocked.
"""

from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mcp_oauth.models.errors import (
    DiscoveryError,
    PKCEError,
    PkceStateNotFoundError,
    RegistrationError,
    TokenError,
)
from mcp_oauth.models.flow import OAuthServerConfig
from mcp_oauth.primitives.pkce import PKCEManager
from mcp_oauth.services.authorization import AuthorizationStarter
from mcp_oauth.services.config_store import OAuthConfigStore
from mcp_oauth.services.discovery import MetadataDiscoverer
from mcp_oauth.services.pkce_store import PkceStateStore
from mcp_oauth.services.registration import ClientRegistrar
from mcp_oauth.services.tokens import OAuth2TokenClient
from mcp_oauth.storage.repositories import (
    OAuthConfigRepository,
    PkceRepository,
    TokenRepository,
)

REDIRECT_URI = "https://app.example.com/api/oauth/callback"
SERVER_URL = "https://mcp.example.com/mcp"


def json_response(status_code, body):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    response.text = str(body)
    return response


def metadata(registration=True, scopes=("mcp:read", "mcp:write")):
    body = {
        "authorization_endpoint": "https://auth.example.com/authorize",
        "token_endpoint": "https://auth.example.com/token",
        "scopes_supported": list(scopes),
    }
    if registration:
        body["registration_endpoint"] = "https://auth.example.com/register"
    return json_response(200, body)


def unauthorized():
    return httpx.Response(
        401,
        headers={
            "WWW-Authenticate": 'Bearer authorization_server="https://auth.example.com", '
            'resource_identifier="https://mcp.example.com"'
        },
    )


@pytest.fixture
def components(engine, metrics, clock):
    config_store = OAuthConfigStore(OAuthConfigRepository(engine, clock), clock=clock)
    pkce_store = PkceStateStore(PkceRepository(engine), metrics, clock=clock)
    discoverer = MetadataDiscoverer(metrics)
    discoverer._http_client = AsyncMock()
    registrar = ClientRegistrar(config_store, metrics)
    registrar._http_client = AsyncMock()
    token_client = OAuth2TokenClient()
    token_client._http_client = AsyncMock()
    tokens = TokenRepository(engine, clock)
    starter = AuthorizationStarter(
        discoverer,
        registrar,
        config_store,
        pkce_store,
        token_client,
        tokens,
        redirect_uri=REDIRECT_URI,
        clock=clock,
    )
    return {
        "starter": starter,
        "discoverer": discoverer,
        "registrar": registrar,
        "token_client": token_client,
        "config_store": config_store,
        "pkce_store": pkce_store,
        "tokens": tokens,
    }


class TestBegin:
    async def test_registers_and_builds_authorization_url(self, components, add_server):
        # Arrange
        await add_server("server-1")
        components["discoverer"]._http_client.get.return_value = metadata()
        components["registrar"]._http_client.post.return_value = json_response(
            201, {"client_id": "client-new"}
        )

        # Act
        start = await components["starter"].begin(
            "server-1", SERVER_URL, unauthorized(), owner_id="user-1"
        )

        # Assert
        assert start.client_id == "client-new"
        url = urlparse(start.authorization_url)
        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://auth.example.com/authorize"
        params = {k: v[0] for k, v in parse_qs(url.query).items()}
        assert params["response_type"] == "code"
        assert params["client_id"] == "client-new"
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["state"] == start.state
        assert params["code_challenge_method"] == "S256"
        assert params["resource"] == "https://mcp.example.com"
        assert params["scope"] == "mcp:read mcp:write"

        challenge = await components["pkce_store"].validate(start.state)
        assert params["code_challenge"] == PKCEManager.compute_challenge(
            challenge.code_verifier
        )
        assert challenge.owner_id == "user-1"

        stored = await components["config_store"].get("server-1")
        assert stored.client_id == "client-new"

    async def test_reuses_stored_client(self, components, add_server):
        # Arrange
        await add_server("server-1")
        await components["config_store"].store(
            OAuthServerConfig(
                server_id="server-1",
                authorization_endpoint="https://auth.example.com/authorize",
                token_endpoint="https://auth.example.com/token",
                authorization_server="https://auth.example.com",
                client_id="client-existing",
            )
        )
        components["discoverer"]._http_client.get.return_value = metadata()

        # Act
        start = await components["starter"].begin(
            "server-1", SERVER_URL, unauthorized(), scope="mcp:read"
        )

        # Assert
        assert start.client_id == "client-existing"
        components["registrar"]._http_client.post.assert_not_called()
        assert "scope=mcp%3Aread" in start.authorization_url

    async def test_no_metadata_raises_discovery_error(self, components):
        # Arrange
        components["discoverer"]._http_client.get.return_value = json_response(404, {})

        # Act / Assert
        with pytest.raises(DiscoveryError):
            await components["starter"].begin("server-1", SERVER_URL, unauthorized())

    async def test_no_registration_endpoint_raises(self, components, add_server):
        # Arrange
        await add_server("server-1")
        components["discoverer"]._http_client.get.return_value = metadata(
            registration=False
        )

        # Act / Assert
        with pytest.raises(RegistrationError, match="dynamic client registration"):
            await components["starter"].begin("server-1", SERVER_URL, unauthorized())


class TestComplete:
    async def start_flow(self, components, add_server, owner_id=None):
        await add_server("server-1")
        components["discoverer"]._http_client.get.return_value = metadata()
        components["registrar"]._http_client.post.return_value = json_response(
            201, {"client_id": "client-new"}
        )
        return await components["starter"].begin(
            "server-1", SERVER_URL, unauthorized(), owner_id=owner_id
        )

    async def test_exchanges_code_and_stores_tokens(self, components, add_server, clock):
        # Arrange
        start = await self.start_flow(components, add_server)
        components["token_client"]._http_client.post.return_value = json_response(
            200, {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600}
        )

        # Act
        record = await components["starter"].complete(start.state, "auth-code")

        # Assert
        assert record.expires_at == clock.now + 3600
        stored = await components["tokens"].get("server-1")
        assert stored.access_token == "access-1"
        assert stored.refresh_token == "refresh-1"

        data = components["token_client"]._http_client.post.call_args[1]["data"]
        assert data["code"] == "auth-code"
        assert data["client_id"] == "client-new"
        assert data["redirect_uri"] == REDIRECT_URI
        assert data["resource"] == "https://mcp.example.com"

    async def test_replayed_state_is_rejected(self, components, add_server):
        # Arrange
        start = await self.start_flow(components, add_server)
        components["token_client"]._http_client.post.return_value = json_response(
            200, {"access_token": "access-1"}
        )
        await components["starter"].complete(start.state, "auth-code")

        # Act / Assert
        with pytest.raises(PkceStateNotFoundError):
            await components["starter"].complete(start.state, "auth-code")

    async def test_rejected_exchange_raises(self, components, add_server):
        # Arrange
        start = await self.start_flow(components, add_server)
        components["token_client"]._http_client.post.return_value = json_response(
            400, {"error": "invalid_grant"}
        )

        # Act / Assert
        with pytest.raises(TokenError, match="invalid_grant"):
            await components["starter"].complete(start.state, "bad-code")


    async def test_owner_completes_own_flow(self, components, add_server):
        # Arrange
        start = await self.start_flow(components, add_server, owner_id="alice")
        components["token_client"]._http_client.post.return_value = json_response(
            200, {"access_token": "access-1"}
        )

        # Act
        record = await components["starter"].complete(
            start.state, "auth-code", owner_id="alice"
        )

        # Assert
        assert record.access_token == "access-1"

    async def test_other_user_cannot_complete_flow(self, components, add_server):
        # Arrange
        start = await self.start_flow(components, add_server, owner_id="alice")

        # Act / Assert
        with pytest.raises(PkceStateNotFoundError):
            await components["starter"].complete(
                start.state, "injected-code", owner_id="mallory"
            )
        components["token_client"]._http_client.post.assert_not_called()
        assert await components["tokens"].get("server-1") is None

        with pytest.raises(PkceStateNotFoundError):
            await components["starter"].complete(
                start.state, "auth-code", owner_id="alice"
            )

    async def test_redirect_uri_mismatch_is_rejected(self, components, add_server, clock):
        # Arrange
        start = await self.start_flow(components, add_server)
        other_starter = AuthorizationStarter(
            components["discoverer"],
            components["registrar"],
            components["config_store"],
            components["pkce_store"],
            components["token_client"],
            components["tokens"],
            redirect_uri="https://other.example.com/callback",
            clock=clock,
        )

        # Act / Assert
        with pytest.raises(PKCEError, match="Redirect URI"):
            await other_starter.complete(start.state, "auth-code")
        components["token_client"]._http_client.post.assert_not_called()

class TestForgetServer:
    async def test_removes_all_oauth_state(self, components, add_token, metrics, clock):
        # Arrange
        await add_token("server-1", clock.now + 3600)
        await components["config_store"].store(
            OAuthServerConfig(
                server_id="server-1",
                authorization_endpoint="https://auth.example.com/authorize",
                token_endpoint="https://auth.example.com/token",
                authorization_server="https://auth.example.com",
            )
        )
        await components["pkce_store"].create("server-1")

        # Act
        await components["starter"].forget_server("server-1")

        # Assert
        assert await components["tokens"].get("server-1") is None
        assert await components["config_store"].get("server-1") is None
        assert (
            metrics.registry.get_sample_value(
                "oauth_pkce_states_cleaned_total", {"reason": "server_deleted"}
            )
            == 1
        )
