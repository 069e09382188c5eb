from mcp_oauth.observability.metrics import OAuthMetrics


class TestOAuthMetrics:
    def test_instances_do_not_share_registries(self):
        # Arrange
        first = OAuthMetrics()
        second = OAuthMetrics()

        # Act
        first.record_pkce_created()

        # Assert
        assert first.registry.get_sample_value("oauth_pkce_states_created_total") == 1
        assert second.registry.get_sample_value("oauth_pkce_states_created_total") == 0

    def test_scheduled_refresh_records_counts(self):
        # Arrange
        metrics = OAuthMetrics()

        # Act
        metrics.record_scheduled_refresh(False, 1.5, checked=4, refreshed=3, failed=1)

        # Assert
        get = metrics.registry.get_sample_value
        assert get("oauth_scheduled_refresh_runs_total", {"status": "failure"}) == 1
        assert get("oauth_scheduled_refresh_tokens_total", {"result": "checked"}) == 4
        assert get("oauth_scheduled_refresh_tokens_total", {"result": "refreshed"}) == 3
        assert get("oauth_scheduled_refresh_tokens_total", {"result": "failed"}) == 1
        assert (
            get("oauth_scheduled_refresh_duration_seconds_sum", {"status": "failure"})
            == 1.5
        )

    def test_render_exposes_all_families(self):
        # Arrange
        metrics = OAuthMetrics()
        metrics.record_discovery("rfc9728", True, 0.2)
        metrics.set_tokens_expiring_soon(3)

        # Act
        text = metrics.render().decode()

        # Assert
        assert 'oauth_discovery_attempts_total{method="rfc9728",status="success"} 1.0' in text
        assert "oauth_tokens_expiring_soon 3.0" in text
