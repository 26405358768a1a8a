"""
Unit tests for engine configuration.

Tests cover:
- Defaults
- Loading from environment variables
- Validation of numeric bounds and log format
- Backoff delay computation
"""

import pytest

from tagdb.config import (
    EngineConfig,
    ObservabilityConfig,
    SubscriptionConfig,
    WebhookQueueConfig,
)


class TestDefaults:
    """Tests for default configuration."""

    def test_defaults_are_valid(self):
        config = EngineConfig()
        config.validate()
        assert config.store.db_path == ":memory:"
        assert config.subscriptions.smart_invalidation is True
        assert config.webhooks.max_attempts == 3
        assert config.observability.log_format == "json"


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("TAGDB_DB_PATH", "/tmp/tagdb/test.sqlite")
        monkeypatch.setenv("TAGDB_SMART_INVALIDATION", "FALSE")
        monkeypatch.setenv("TAGDB_EVALUATION_WORKERS", "4")
        monkeypatch.setenv("WEBHOOK_CONCURRENCY", "8")
        monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("WEBHOOK_BACKOFF_BASE_SECONDS", "0.5")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = EngineConfig.from_env()

        assert config.store.db_path == "/tmp/tagdb/test.sqlite"
        assert config.subscriptions.smart_invalidation is False
        assert config.subscriptions.evaluation_workers == 4
        assert config.webhooks.concurrency == 8
        assert config.webhooks.max_attempts == 5
        assert config.webhooks.backoff_base_seconds == 0.5
        assert config.observability.log_format == "text"

    def test_invalid_environment_raises(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "0")
        with pytest.raises(ValueError, match="WEBHOOK_MAX_ATTEMPTS"):
            EngineConfig.from_env()


class TestValidate:
    """Tests for EngineConfig.validate()."""

    @pytest.mark.parametrize(
        "webhooks",
        [
            WebhookQueueConfig(concurrency=0),
            WebhookQueueConfig(backlog_capacity=0),
            WebhookQueueConfig(backoff_base_seconds=-1),
            WebhookQueueConfig(backoff_multiplier=0.5),
            WebhookQueueConfig(backoff_jitter=1.5),
            WebhookQueueConfig(attempt_timeout_seconds=0),
        ],
    )
    def test_rejects_bad_webhook_settings(self, webhooks):
        with pytest.raises(ValueError):
            EngineConfig(webhooks=webhooks).validate()

    def test_rejects_zero_workers(self):
        with pytest.raises(ValueError):
            EngineConfig(subscriptions=SubscriptionConfig(evaluation_workers=0)).validate()

    def test_rejects_unknown_log_format(self):
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            EngineConfig(observability=ObservabilityConfig(log_format="xml")).validate()


class TestBackoffDelay:
    """Tests for WebhookQueueConfig.backoff_delay()."""

    def test_grows_and_caps(self):
        config = WebhookQueueConfig(backoff_base_seconds=0.5, backoff_multiplier=3.0, backoff_max_seconds=10.0)
        assert config.backoff_delay(1) == 0.5
        assert config.backoff_delay(2) == 1.5
        assert config.backoff_delay(3) == 4.5
        assert config.backoff_delay(4) == 10.0
