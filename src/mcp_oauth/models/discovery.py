"""Discovery-related models for OAuth 2.1 server metadata.

Contains the Authorization Server Metadata model (RFC 8414), the parsed
form of a WWW-Authenticate challenge, and the combined discovery result.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DiscoveryMethod(str, Enum):
    """How an authorization server's metadata was located."""

    RFC9728 = "rfc9728"
    WWW_AUTHENTICATE = "www-authenticate"
    MANUAL = "manual"


class OAuthServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414).

    Only the two endpoints needed for the authorization code flow are
    required. A document missing either one fails validation and is
    discarded as a whole.
    """

    model_config = ConfigDict(extra="ignore")

    # Required for authorization code flow (our use case)
    authorization_endpoint: str = Field(min_length=1)
    token_endpoint: str = Field(min_length=1)

    issuer: str | None = None

    # Dynamic registration (RFC 7591)
    registration_endpoint: str | None = None

    scopes_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    grant_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None

    @property
    def supports_pkce(self) -> bool:
        """Whether S256 PKCE can be used. Absent metadata assumes yes."""
        if self.code_challenge_methods_supported is None:
            return True
        return "S256" in self.code_challenge_methods_supported


@dataclass(frozen=True)
class ParsedChallenge:
    """Parameters of a WWW-Authenticate challenge we care about."""

    scheme: str
    realm: str | None = None
    authorization_server: str | None = None
    resource_identifier: str | None = None
    scope: str | None = None
    error: str | None = None
    error_description: str | None = None


@dataclass(frozen=True)
class DiscoveryResult:
    """Outcome of discovery for an MCP server.

    All fields are None when OAuth is not usable for the server. Callers
    must treat that as a normal outcome rather than an exception.
    """

    metadata: OAuthServerMetadata | None = None
    auth_server: str | None = None
    resource_id: str | None = None
    method: DiscoveryMethod | None = None

    @property
    def found(self) -> bool:
        return self.metadata is not None
