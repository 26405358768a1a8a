"""
Configuration management for tagdb.

All configuration is done via environment variables; every setting has a
default suitable for an embedded, single-process engine.

Invariants:
    - All settings have sensible defaults for local development
    - Config objects are immutable once constructed
    - Webhook target URLs and headers are part of automation bindings,
      never of engine configuration

How to change safely:
    - Add new settings with defaults that keep existing behavior
    - Extend validate() for any new numeric bound
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreConfig:
    """Node store configuration.

    Attributes:
        db_path: SQLite database path (":memory:" for an in-process store)
        busy_timeout_ms: SQLite busy timeout
    """

    db_path: str = ":memory:"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("TAGDB_DB_PATH", ":memory:"),
            busy_timeout_ms=int(os.getenv("TAGDB_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class SubscriptionConfig:
    """Query subscription configuration.

    Attributes:
        smart_invalidation: Re-evaluate only subscriptions whose dependencies
            intersect a mutation (False re-evaluates every subscription)
        evaluation_workers: Thread pool size for evaluating affected
            subscriptions (1 evaluates inline)
    """

    smart_invalidation: bool = True
    evaluation_workers: int = 1

    @classmethod
    def from_env(cls) -> SubscriptionConfig:
        """Load configuration from environment variables."""
        return cls(
            smart_invalidation=os.getenv("TAGDB_SMART_INVALIDATION", "true").lower() == "true",
            evaluation_workers=int(os.getenv("TAGDB_EVALUATION_WORKERS", "1")),
        )


@dataclass(frozen=True)
class WebhookQueueConfig:
    """Webhook queue configuration.

    Attributes:
        concurrency: Number of delivery workers
        backlog_capacity: Maximum jobs accepted but not yet delivered or failed
        max_attempts: Delivery attempts before a job is marked failed
        backoff_base_seconds: Delay before the first retry
        backoff_multiplier: Growth factor per further retry
        backoff_max_seconds: Upper bound on any single retry delay
        backoff_jitter: Random extra delay as a fraction of the computed delay
        attempt_timeout_seconds: Timeout for a single delivery attempt
    """

    concurrency: int = 4
    backlog_capacity: int = 1000
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 30.0
    backoff_jitter: float = 0.0
    attempt_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> WebhookQueueConfig:
        """Load configuration from environment variables."""
        return cls(
            concurrency=int(os.getenv("WEBHOOK_CONCURRENCY", "4")),
            backlog_capacity=int(os.getenv("WEBHOOK_BACKLOG_CAPACITY", "1000")),
            max_attempts=int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3")),
            backoff_base_seconds=float(os.getenv("WEBHOOK_BACKOFF_BASE_SECONDS", "1.0")),
            backoff_multiplier=float(os.getenv("WEBHOOK_BACKOFF_MULTIPLIER", "2.0")),
            backoff_max_seconds=float(os.getenv("WEBHOOK_BACKOFF_MAX_SECONDS", "30.0")),
            backoff_jitter=float(os.getenv("WEBHOOK_BACKOFF_JITTER", "0.0")),
            attempt_timeout_seconds=float(os.getenv("WEBHOOK_ATTEMPT_TIMEOUT_SECONDS", "10.0")),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = self.backoff_base_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.backoff_max_seconds)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        metrics_namespace: Prefix for Prometheus metric names
    """

    log_level: str = "INFO"
    log_format: str = "json"
    metrics_namespace: str = "tagdb"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            metrics_namespace=os.getenv("METRICS_NAMESPACE", "tagdb"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        store: Node store configuration
        subscriptions: Subscription service configuration
        webhooks: Webhook queue configuration
        observability: Observability configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    subscriptions: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    webhooks: WebhookQueueConfig = field(default_factory=WebhookQueueConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            subscriptions=SubscriptionConfig.from_env(),
            webhooks=WebhookQueueConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        webhooks = self.webhooks
        if webhooks.concurrency < 1:
            raise ValueError("WEBHOOK_CONCURRENCY must be at least 1")
        if webhooks.backlog_capacity < 1:
            raise ValueError("WEBHOOK_BACKLOG_CAPACITY must be at least 1")
        if webhooks.max_attempts < 1:
            raise ValueError("WEBHOOK_MAX_ATTEMPTS must be at least 1")
        if webhooks.backoff_base_seconds < 0 or webhooks.backoff_max_seconds < 0:
            raise ValueError("Webhook backoff delays must not be negative")
        if webhooks.backoff_multiplier < 1:
            raise ValueError("WEBHOOK_BACKOFF_MULTIPLIER must be >= 1")
        if not 0 <= webhooks.backoff_jitter <= 1:
            raise ValueError("WEBHOOK_BACKOFF_JITTER must be between 0 and 1")
        if webhooks.attempt_timeout_seconds <= 0:
            raise ValueError("WEBHOOK_ATTEMPT_TIMEOUT_SECONDS must be positive")

        if self.subscriptions.evaluation_workers < 1:
            raise ValueError("TAGDB_EVALUATION_WORKERS must be at least 1")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "db_path": self.store.db_path,
                "smart_invalidation": self.subscriptions.smart_invalidation,
                "evaluation_workers": self.subscriptions.evaluation_workers,
                "webhook_concurrency": self.webhooks.concurrency,
                "webhook_backlog_capacity": self.webhooks.backlog_capacity,
                "webhook_max_attempts": self.webhooks.max_attempts,
                "webhook_attempt_timeout": self.webhooks.attempt_timeout_seconds,
                "log_level": self.observability.log_level,
            },
        )
