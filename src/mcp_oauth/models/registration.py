"""Client registration models for OAuth 2.0 Dynamic Client Registration.

Contains models for client metadata (RFC 7591), the registration response,
and the credentials handed back to the connection flow.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator


class ClientMetadata(BaseModel):
    """OAuth 2.0 Client Metadata for dynamic registration (RFC 7591).

    The defaults describe a public client that relies on PKCE and asks for
    refresh tokens, which is the only kind of client we register.
    """

    redirect_uris: list[str] = Field(min_length=1)
    client_name: str
    client_uri: str | None = None

    grant_types: list[str] = Field(default=["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default=["code"])
    token_endpoint_auth_method: str = "none"  # Public client, PKCE only

    # Populated later from server capabilities
    scope: str = ""

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: list[str]) -> list[str]:
        """Validate redirect URIs meet OAuth 2.1 security requirements."""
        for uri in v:
            parsed = urlparse(uri)
            if parsed.scheme == "https":
                continue
            if parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1"):
                continue
            raise ValueError(f"Redirect URI must use HTTPS or localhost: {uri}")
        return v


class ClientRegistrationResult(BaseModel):
    """Registration response from the authorization server.

    Servers echo the submitted metadata back; only the credential fields are
    kept.
    """

    client_id: str = Field(min_length=1)
    client_secret: str | None = None  # None for public clients
    client_secret_expires_at: int | None = None
    client_id_issued_at: int | None = None
    registration_access_token: str | None = None
    registration_client_uri: str | None = None


@dataclass(frozen=True)
class RegisteredClient:
    """Client credentials to use for a server's authorization flows."""

    client_id: str
    client_secret: str | None = None
