import pytest
from pydantic import ValidationError

from mcp_oauth.config import OAuthSettings


class TestOAuthSettings:
    def test_defaults(self, monkeypatch):
        # Arrange
        for name in ("MCP_OAUTH_DATABASE_URL", "MCP_OAUTH_REFRESH_CONCURRENCY"):
            monkeypatch.delenv(name, raising=False)

        # Act
        settings = OAuthSettings(_env_file=None)

        # Assert
        assert settings.http_timeout == 10.0
        assert settings.refresh_interval == 600
        assert settings.refresh_expiry_buffer == 900
        assert settings.refresh_batch_size == 50
        assert settings.refresh_stale_lock_after == 120
        assert settings.refresh_concurrency == 5
        assert settings.pkce_ttl == 300
        assert settings.pkce_cleanup_grace == 600
        assert settings.pkce_cleanup_interval == 900
        assert settings.pkce_cleanup_startup_delay == 120
        assert settings.config_cache_ttl == 300
        assert settings.config_cache_max_size == 500

    def test_reads_prefixed_environment(self, monkeypatch):
        # Arrange
        monkeypatch.setenv("MCP_OAUTH_REFRESH_CONCURRENCY", "3")
        monkeypatch.setenv("MCP_OAUTH_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

        # Act
        settings = OAuthSettings(_env_file=None)

        # Assert
        assert settings.refresh_concurrency == 3
        assert settings.database_url == "sqlite+aiosqlite:///:memory:"

    @pytest.mark.parametrize(
        "field, value",
        [("refresh_concurrency", 0), ("refresh_batch_size", 0), ("pkce_ttl", -1)],
    )
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            OAuthSettings(_env_file=None, **{field: value})
