"""Tests for authorization server metadata discovery.

Covers:
- Well-known URL construction and request headers
- Graceful degradation: non-2xx, network errors, incomplete documents
- Challenge-driven discovery with origin fallback
- Discovery metrics on every path
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mcp_oauth.models.discovery import DiscoveryMethod, DiscoveryResult
from mcp_oauth.observability.metrics import OAuthMetrics
from mcp_oauth.services.discovery import MetadataDiscoverer

VALID_METADATA = {
    "issuer": "https://auth.example.com",
    "authorization_endpoint": "https://auth.example.com/authorize",
    "token_endpoint": "https://auth.example.com/token",
    "registration_endpoint": "https://auth.example.com/register",
    "scopes_supported": ["mcp:read", "mcp:write"],
    "code_challenge_methods_supported": ["S256"],
}


def metadata_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = VALID_METADATA if body is None else body
    return response


def attempts(metrics: OAuthMetrics, status: str) -> float:
    value = metrics.registry.get_sample_value(
        "oauth_discovery_attempts_total", {"method": "rfc9728", "status": status}
    )
    return value or 0.0


class TestDiscoverMetadata:
    def setup_method(self):
        # Arrange
        self.metrics = OAuthMetrics()
        self.discoverer = MetadataDiscoverer(self.metrics)
        self.discoverer._http_client = AsyncMock()

    async def test_fetches_well_known_document(self):
        # Arrange
        self.discoverer._http_client.get.return_value = metadata_response()

        # Act
        metadata = await self.discoverer.discover_metadata("https://auth.example.com/")

        # Assert
        assert metadata is not None
        assert metadata.authorization_endpoint == "https://auth.example.com/authorize"
        assert metadata.token_endpoint == "https://auth.example.com/token"
        assert metadata.registration_endpoint == "https://auth.example.com/register"

        call_args = self.discoverer._http_client.get.call_args
        assert (
            call_args[0][0]
            == "https://auth.example.com/.well-known/oauth-authorization-server"
        )
        assert call_args[1]["headers"]["Accept"] == "application/json"
        assert call_args[1]["timeout"] == 10.0

    async def test_unknown_fields_are_ignored(self):
        # Arrange
        body = {**VALID_METADATA, "vendor_extension": {"nested": True}}
        self.discoverer._http_client.get.return_value = metadata_response(body=body)

        # Act
        metadata = await self.discoverer.discover_metadata("https://auth.example.com")

        # Assert
        assert metadata is not None
        assert metadata.scopes_supported == ["mcp:read", "mcp:write"]

    @pytest.mark.parametrize(
        "missing", ["authorization_endpoint", "token_endpoint"]
    )
    async def test_missing_required_endpoint_returns_none(self, missing):
        # Arrange
        body = {k: v for k, v in VALID_METADATA.items() if k != missing}
        self.discoverer._http_client.get.return_value = metadata_response(body=body)

        # Act
        metadata = await self.discoverer.discover_metadata("https://auth.example.com")

        # Assert
        assert metadata is None
        assert attempts(self.metrics, "failure") == 1

    async def test_empty_endpoint_returns_none(self):
        # Arrange
        body = {**VALID_METADATA, "token_endpoint": ""}
        self.discoverer._http_client.get.return_value = metadata_response(body=body)

        # Act / Assert
        assert await self.discoverer.discover_metadata("https://auth.example.com") is None

    @pytest.mark.parametrize("status_code", [301, 404, 500])
    async def test_non_2xx_returns_none(self, status_code):
        # Arrange
        self.discoverer._http_client.get.return_value = metadata_response(status_code)

        # Act
        metadata = await self.discoverer.discover_metadata("https://auth.example.com")

        # Assert
        assert metadata is None
        assert attempts(self.metrics, "failure") == 1

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            ValueError("not json"),
        ],
    )
    async def test_errors_never_raise(self, error):
        # Arrange
        self.discoverer._http_client.get.side_effect = error

        # Act
        metadata = await self.discoverer.discover_metadata("https://auth.example.com")

        # Assert
        assert metadata is None
        assert attempts(self.metrics, "failure") == 1

    async def test_non_object_body_returns_none(self):
        # Arrange
        self.discoverer._http_client.get.return_value = metadata_response(
            body=["not", "an", "object"]
        )

        # Act / Assert
        assert await self.discoverer.discover_metadata("https://auth.example.com") is None

    async def test_success_records_metric(self):
        # Arrange
        self.discoverer._http_client.get.return_value = metadata_response()

        # Act
        await self.discoverer.discover_metadata("https://auth.example.com")

        # Assert
        assert attempts(self.metrics, "success") == 1
        assert attempts(self.metrics, "failure") == 0
        assert (
            self.metrics.registry.get_sample_value(
                "oauth_discovery_duration_seconds_count",
                {"method": "rfc9728", "status": "success"},
            )
            == 1
        )


class TestDiscoverFromChallengeResponse:
    def setup_method(self):
        # Arrange
        self.metrics = OAuthMetrics()
        self.discoverer = MetadataDiscoverer(self.metrics)
        self.discoverer._http_client = AsyncMock()

    def requested_urls(self):
        return [c[0][0] for c in self.discoverer._http_client.get.call_args_list]

    async def test_uses_authorization_server_from_challenge(self):
        # Arrange
        response = httpx.Response(
            401,
            headers={
                "WWW-Authenticate": 'Bearer authorization_server="https://auth.example.com", '
                'resource_identifier="https://mcp.example.com"'
            },
        )
        self.discoverer._http_client.get.return_value = metadata_response()

        # Act
        result = await self.discoverer.discover_from_challenge_response(
            response, "https://mcp.example.com/v1/mcp"
        )

        # Assert
        assert result.found
        assert result.auth_server == "https://auth.example.com"
        assert result.resource_id == "https://mcp.example.com"
        assert result.method is DiscoveryMethod.RFC9728
        assert self.requested_urls() == [
            "https://auth.example.com/.well-known/oauth-authorization-server"
        ]

    async def test_falls_back_to_server_origin_without_challenge(self):
        # Arrange
        response = httpx.Response(401)
        self.discoverer._http_client.get.return_value = metadata_response()

        # Act
        result = await self.discoverer.discover_from_challenge_response(
            response, "https://mcp.example.com/v1/mcp"
        )

        # Assert
        assert result.found
        assert result.auth_server == "https://mcp.example.com"
        assert result.resource_id == "https://mcp.example.com/v1/mcp"
        assert self.requested_urls() == [
            "https://mcp.example.com/.well-known/oauth-authorization-server"
        ]

    async def test_falls_back_to_origin_when_named_server_fails(self):
        # Arrange
        response = httpx.Response(
            401,
            headers={
                "WWW-Authenticate": 'Bearer authorization_server="https://broken.example.com"'
            },
        )
        self.discoverer._http_client.get.side_effect = [
            metadata_response(404),
            metadata_response(),
        ]

        # Act
        result = await self.discoverer.discover_from_challenge_response(
            response, "https://mcp.example.com/mcp"
        )

        # Assert
        assert result.auth_server == "https://mcp.example.com"
        assert self.requested_urls() == [
            "https://broken.example.com/.well-known/oauth-authorization-server",
            "https://mcp.example.com/.well-known/oauth-authorization-server",
        ]
        assert attempts(self.metrics, "failure") == 1
        assert attempts(self.metrics, "success") == 1

    async def test_both_failing_returns_empty_result(self):
        # Arrange
        response = httpx.Response(
            401,
            headers={"WWW-Authenticate": 'Bearer authorization_server="https://a.example.com"'},
        )
        self.discoverer._http_client.get.side_effect = httpx.ConnectError("down")

        # Act
        result = await self.discoverer.discover_from_challenge_response(
            response, "https://mcp.example.com/mcp"
        )

        # Assert
        assert result == DiscoveryResult()
        assert not result.found
        assert result.method is None

    async def test_invalid_server_url_returns_empty_result(self):
        # Act
        result = await self.discoverer.discover_from_challenge_response(
            httpx.Response(401), "not a url"
        )

        # Assert
        assert not result.found
        self.discoverer._http_client.get.assert_not_called()
