"""Authorization flow models for OAuth 2.1.

Contains the persisted per-server OAuth configuration and the authorization
request handed to the user's browser.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlencode

from pydantic import BaseModel

from mcp_oauth.models.discovery import DiscoveryMethod


class OAuthServerConfig(BaseModel):
    """Discovered endpoints and registered client for one MCP server."""

    server_id: str
    authorization_endpoint: str
    token_endpoint: str
    authorization_server: str
    registration_endpoint: str | None = None
    resource_identifier: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] | None = None
    supports_pkce: bool = True
    discovery_method: DiscoveryMethod = DiscoveryMethod.RFC9728


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for OAuth 2.1 flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    state: str
    code_challenge: str | None = None
    code_challenge_method: str = "S256"
    resource: str | None = None  # RFC 8707
    scope: str | None = None

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": self.state,
        }

        if self.code_challenge:
            params["code_challenge"] = self.code_challenge
            params["code_challenge_method"] = self.code_challenge_method
        if self.resource:
            params["resource"] = self.resource
        if self.scope:
            params["scope"] = self.scope

        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(params)}"


@dataclass(frozen=True)
class AuthorizationStart:
    """What the caller needs to send the user to the authorization server."""

    server_id: str
    authorization_url: str
    state: str
    client_id: str
    expires_at: float
