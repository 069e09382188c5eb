"""PKCE (Proof Key for Code Exchange) parameter generation for OAuth 2.1.

Implements RFC 7636 parameter generation to prevent authorization code
interception attacks. This is required for OAuth 2.1.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from mcp_oauth.models.errors import PKCEError
from mcp_oauth.models.security import PKCEParameters


class PKCEManager:
    """Generates PKCE parameters and opaque state values.

    This implementation follows RFC 7636 requirements:
    - Uses S256 code challenge method (SHA256 + base64url)
    - Generates cryptographically secure code verifiers
    - Generates unguessable, URL-safe state values that double as the
      lookup key of the stored challenge
    """

    def generate_parameters(self) -> PKCEParameters:
        """Generate new PKCE parameters for an authorization flow.

        Returns:
            PKCEParameters: Immutable parameters for the authorization flow

        Raises:
            PKCEError: If parameter generation fails
        """
        try:
            code_verifier = self._generate_code_verifier()
            return PKCEParameters(
                code_verifier=code_verifier,
                code_challenge=self.compute_challenge(code_verifier),
                code_challenge_method="S256",
                state=self._generate_state(),
            )

        except Exception as e:
            raise PKCEError(f"Failed to generate PKCE parameters: {e}") from e

    @staticmethod
    def compute_challenge(code_verifier: str) -> str:
        """Derive the S256 code challenge for a verifier.

        RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))
        """
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def _generate_code_verifier(self) -> str:
        """Generate a cryptographically secure code verifier.

        RFC 7636 Section 4.1: code verifier must be 43-128 characters long
        and use only unreserved characters:
            [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"

        Returns:
            A 128-character code verifier (maximum length for best security)
        """
        alphabet = string.ascii_letters + string.digits + "-._~"
        return "".join(secrets.choice(alphabet) for _ in range(128))

    def _generate_state(self) -> str:
        """Generate the opaque state value.

        Restricted to [A-Za-z0-9_-] so it is safe in URLs and as a primary key.

        Returns:
            A 43-character random state value
        """
        return secrets.token_urlsafe(32)
