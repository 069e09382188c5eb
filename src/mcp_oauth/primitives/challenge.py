"""WWW-Authenticate challenge parsing.

MCP servers answer unauthenticated requests with a 401 whose challenge may
name the authorization server to use (RFC 9728 style), e.g.::

    Bearer realm="https://mcp.example.com", authorization_server="https://auth.example.com"
"""

from __future__ import annotations

import re

from mcp_oauth.models.discovery import ParsedChallenge

_PARAM_PATTERN = re.compile(r'(\w+)="([^"]*)"')

_KNOWN_KEYS = frozenset(
    {
        "realm",
        "authorization_server",
        "resource_identifier",
        "scope",
        "error",
        "error_description",
    }
)


def parse_challenge_header(header: str | None) -> ParsedChallenge | None:
    """Parse a WWW-Authenticate header into its scheme and known parameters.

    Unknown parameters are ignored. Never raises.

    Args:
        header: Raw header value

    Returns:
        Parsed challenge, or None for an empty or missing header
    """
    if not header or not isinstance(header, str):
        return None

    parts = header.strip().split(None, 1)
    if not parts:
        return None

    scheme = parts[0]
    params: dict[str, str] = {}
    if len(parts) > 1:
        for key, value in _PARAM_PATTERN.findall(parts[1]):
            if key in _KNOWN_KEYS and value:
                params[key] = value

    return ParsedChallenge(scheme=scheme, **params)
