"""
tagdb engine - explicit construction and wiring of every component.

Components, in construction order:
- EngineMetrics (prometheus_client, private registry)
- EventBus
- NodeStore (SQLite)
- SubscriptionService + SavedQueryStore + DependencyTracker
- ComputedFieldService
- WebhookQueue (asyncio workers, httpx)
- AutomationService (re-registers persisted #automation bindings)

Usage:
    async with Engine(EngineConfig.from_env()) as engine:
        engine.store.define_supertag("task")
        ...

Invariants:
    - No module-level singletons; every component is owned by one Engine
    - Teardown runs in reverse construction order
    - The webhook workers run only between start() and stop(); jobs
      enqueued earlier wait for start()

How to change safely:
    - Wire new components here, passing dependencies explicitly
    - Test start/stop sequencing whenever the order changes
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any

import httpx
import json_log_formatter

from .config import EngineConfig
from .events import EventBus
from .metrics import EngineMetrics
from .query import DependencyTracker
from .reactive import (
    AutomationService,
    ComputedFieldService,
    SavedQueryStore,
    SubscriptionService,
)
from .store import NodeStore
from .webhook import WebhookQueue

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure root logging from the observability config.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Engine:
    """Owns and wires the tagdb components.

    Attributes:
        config: Engine configuration
        metrics: Engine metrics
        bus: Event bus
        store: Node store
        saved_queries: Saved query store
        subscriptions: Subscription service
        computed: Computed field service
        webhook_queue: Webhook queue
        automations: Automation service

    Example:
        >>> engine = Engine()
        >>> await engine.start()
        >>> engine.store.create_node("hello")
        >>> await engine.stop()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Construct every component.

        Args:
            config: Engine configuration (loaded from env if not provided)
            http_client: HTTP client for webhook delivery (default: one
                owned by the webhook queue)
        """
        self.config = config or EngineConfig.from_env()
        self.config.validate()
        self._running = False
        self._closed = False

        self.metrics = EngineMetrics(namespace=self.config.observability.metrics_namespace)
        self.bus = EventBus(metrics=self.metrics)
        self.store = NodeStore(
            self.bus,
            db_path=self.config.store.db_path,
            busy_timeout_ms=self.config.store.busy_timeout_ms,
        )
        self.saved_queries = SavedQueryStore(self.store)
        self.subscriptions = SubscriptionService(
            self.store,
            self.bus,
            tracker=DependencyTracker(),
            saved_queries=self.saved_queries,
            metrics=self.metrics,
            smart_invalidation=self.config.subscriptions.smart_invalidation,
            evaluation_workers=self.config.subscriptions.evaluation_workers,
        )
        self.computed = ComputedFieldService(self.store, self.subscriptions, metrics=self.metrics)
        self.webhook_queue = WebhookQueue(
            self.config.webhooks,
            client=http_client,
            metrics=self.metrics,
        )
        self.automations = AutomationService(
            self.store,
            self.subscriptions,
            self.webhook_queue,
            computed=self.computed,
            metrics=self.metrics,
        )
        self.automations.load()

    async def start(self) -> None:
        """Start the background webhook workers."""
        if self._running:
            logger.warning("Engine already running")
            return

        logger.info("Starting tagdb engine")
        self.config.log_config()
        await self.webhook_queue.start()
        self._running = True
        logger.info("tagdb engine started", extra={"sequence": self.store.sequence})

    async def stop(self) -> None:
        """Stop workers and release every component."""
        if self._closed:
            return

        logger.info("Stopping tagdb engine")
        self.automations.close()
        self.computed.close()
        self.subscriptions.close()
        await self.webhook_queue.stop()
        self.store.close()
        self._running = False
        self._closed = True
        logger.info("tagdb engine stopped")

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        """Statistics of every component."""
        return {
            "store": self.store.stats,
            "bus": self.bus.stats,
            "subscriptions": self.subscriptions.stats,
            "computed": self.computed.stats,
            "automations": self.automations.stats,
            "webhooks": self.webhook_queue.stats,
            "metrics": self.metrics.snapshot().to_dict(),
        }
