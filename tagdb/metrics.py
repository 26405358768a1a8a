"""
Prometheus metrics for tagdb.

EngineMetrics instruments the reactive pipeline: events emitted, query
evaluations (count and latency), evaluations skipped by dependency
tracking, evaluation errors, active subscriptions, computed-field
recomputations, automation fires and webhook delivery.

Metrics Collected (namespace prefix omitted):
    - events_total: Mutation events by kind
    - evaluations_total: Query evaluations run
    - evaluation_duration_seconds: Evaluation latency histogram
    - evaluations_skipped_total: Subscriptions left untouched by an event
    - evaluation_errors_total: Evaluations that raised EvaluationError
    - active_subscriptions: Live subscriptions gauge
    - computed_recomputations_total: Computed field recomputations
    - automation_fires_total: Automation fires by trigger
    - webhook_attempts_total: Delivery attempts
    - webhook_jobs_total: Terminal jobs by outcome (delivered, failed)
    - webhook_queue_depth: Jobs accepted but not yet terminal

Invariants:
    - Each instance owns its own CollectorRegistry, so several engines can
      live in one process
    - Metrics never influence control flow

How to change safely:
    - Add new collectors in _build() and a matching MetricsSnapshot field
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time view of the engine metrics."""

    event_count: int
    evaluation_count: int
    evaluation_time_ms: float
    average_evaluation_ms: float
    skipped_evaluations: int
    evaluation_errors: int
    active_subscriptions: int
    computed_recomputations: int
    automation_fires: int
    webhook_attempts: int
    webhooks_delivered: int
    webhooks_failed: int
    queue_depth: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EngineMetrics:
    """Counters, gauges and histograms for the reactive pipeline.

    Example:
        >>> metrics = EngineMetrics(namespace="tagdb")
        >>> metrics.record_event("node:created")
        >>> metrics.snapshot().event_count
        1
    """

    def __init__(self, namespace: str = "tagdb", registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics.

        Args:
            namespace: Metrics namespace prefix
            registry: Prometheus registry (default: a new private registry)
        """
        self.namespace = namespace
        self._build(registry or CollectorRegistry())

    def _build(self, registry: CollectorRegistry) -> None:
        ns = self.namespace
        self.registry = registry

        self.events = Counter(
            f"{ns}_events_total",
            "Mutation events emitted",
            ["kind"],
            registry=registry,
        )
        self.evaluations = Counter(
            f"{ns}_evaluations_total",
            "Query evaluations run",
            registry=registry,
        )
        self.evaluation_duration = Histogram(
            f"{ns}_evaluation_duration_seconds",
            "Query evaluation latency",
            buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
            registry=registry,
        )
        self.skipped = Counter(
            f"{ns}_evaluations_skipped_total",
            "Subscriptions not re-evaluated because no dependency was affected",
            registry=registry,
        )
        self.evaluation_errors = Counter(
            f"{ns}_evaluation_errors_total",
            "Query evaluations that failed on malformed data",
            registry=registry,
        )
        self.active_subscriptions = Gauge(
            f"{ns}_active_subscriptions",
            "Live query subscriptions",
            registry=registry,
        )
        self.recomputations = Counter(
            f"{ns}_computed_recomputations_total",
            "Computed field recomputations",
            registry=registry,
        )
        self.automation_fires = Counter(
            f"{ns}_automation_fires_total",
            "Automation fires",
            ["trigger"],
            registry=registry,
        )
        self.webhook_attempts = Counter(
            f"{ns}_webhook_attempts_total",
            "Webhook delivery attempts",
            registry=registry,
        )
        self.webhook_jobs = Counter(
            f"{ns}_webhook_jobs_total",
            "Webhook jobs reaching a terminal state",
            ["outcome"],
            registry=registry,
        )
        self.queue_depth = Gauge(
            f"{ns}_webhook_queue_depth",
            "Webhook jobs accepted but not yet terminal",
            registry=registry,
        )

    # Recording

    def record_event(self, kind: str) -> None:
        self.events.labels(kind=kind).inc()

    def record_evaluation(self, duration_seconds: float) -> None:
        self.evaluations.inc()
        self.evaluation_duration.observe(duration_seconds)

    def record_skipped(self, count: int) -> None:
        if count > 0:
            self.skipped.inc(count)

    def record_evaluation_error(self) -> None:
        self.evaluation_errors.inc()

    def set_active_subscriptions(self, count: int) -> None:
        self.active_subscriptions.set(count)

    def record_recomputation(self) -> None:
        self.recomputations.inc()

    def record_automation_fire(self, trigger: str) -> None:
        self.automation_fires.labels(trigger=trigger).inc()

    def record_webhook_attempt(self) -> None:
        self.webhook_attempts.inc()

    def record_webhook_outcome(self, outcome: str) -> None:
        self.webhook_jobs.labels(outcome=outcome).inc()

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    # Reading

    def _sample_total(self, name: str, labels: dict[str, str] | None = None) -> float:
        total = 0.0
        for metric in self.registry.collect():
            for sample in metric.samples:
                if sample.name != name:
                    continue
                if labels and any(sample.labels.get(k) != v for k, v in labels.items()):
                    continue
                total += sample.value
        return total

    def snapshot(self) -> MetricsSnapshot:
        """Read every metric into a MetricsSnapshot."""
        ns = self.namespace
        evaluation_count = int(self._sample_total(f"{ns}_evaluations_total"))
        evaluation_time_ms = self._sample_total(f"{ns}_evaluation_duration_seconds_sum") * 1000
        return MetricsSnapshot(
            event_count=int(self._sample_total(f"{ns}_events_total")),
            evaluation_count=evaluation_count,
            evaluation_time_ms=evaluation_time_ms,
            average_evaluation_ms=evaluation_time_ms / evaluation_count if evaluation_count else 0.0,
            skipped_evaluations=int(self._sample_total(f"{ns}_evaluations_skipped_total")),
            evaluation_errors=int(self._sample_total(f"{ns}_evaluation_errors_total")),
            active_subscriptions=int(self._sample_total(f"{ns}_active_subscriptions")),
            computed_recomputations=int(self._sample_total(f"{ns}_computed_recomputations_total")),
            automation_fires=int(self._sample_total(f"{ns}_automation_fires_total")),
            webhook_attempts=int(self._sample_total(f"{ns}_webhook_attempts_total")),
            webhooks_delivered=int(
                self._sample_total(f"{ns}_webhook_jobs_total", {"outcome": "delivered"})
            ),
            webhooks_failed=int(self._sample_total(f"{ns}_webhook_jobs_total", {"outcome": "failed"})),
            queue_depth=int(self._sample_total(f"{ns}_webhook_queue_depth")),
        )

    def exposition(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)

    def reset(self) -> None:
        """Start over on a fresh registry."""
        logger.debug("Resetting metrics", extra={"namespace": self.namespace})
        self._build(CollectorRegistry())
