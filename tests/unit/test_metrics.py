"""
Unit tests for engine metrics.

Tests cover:
- Recording and reading back every metric through snapshot()
- Private registries per instance
- Prometheus exposition and reset
"""

import pytest

from tagdb.metrics import EngineMetrics


class TestEngineMetrics:
    """Tests for EngineMetrics."""

    @pytest.fixture
    def metrics(self):
        return EngineMetrics(namespace="test")

    def test_empty_snapshot(self, metrics):
        snapshot = metrics.snapshot()
        assert snapshot.event_count == 0
        assert snapshot.evaluation_count == 0
        assert snapshot.average_evaluation_ms == 0.0

    def test_events_by_kind_are_summed(self, metrics):
        metrics.record_event("node:created")
        metrics.record_event("node:created")
        metrics.record_event("property:set")
        assert metrics.snapshot().event_count == 3

    def test_evaluation_timing(self, metrics):
        """Average latency is total time over evaluation count."""
        metrics.record_evaluation(0.002)
        metrics.record_evaluation(0.004)
        snapshot = metrics.snapshot()
        assert snapshot.evaluation_count == 2
        assert snapshot.evaluation_time_ms == pytest.approx(6.0)
        assert snapshot.average_evaluation_ms == pytest.approx(3.0)

    def test_skipped_ignores_zero(self, metrics):
        metrics.record_skipped(0)
        metrics.record_skipped(4)
        assert metrics.snapshot().skipped_evaluations == 4

    def test_gauges_and_counters(self, metrics):
        metrics.set_active_subscriptions(5)
        metrics.set_active_subscriptions(3)
        metrics.record_evaluation_error()
        metrics.record_recomputation()
        metrics.record_automation_fire("membership")
        metrics.record_automation_fire("threshold")
        metrics.record_webhook_attempt()
        metrics.record_webhook_outcome("delivered")
        metrics.record_webhook_outcome("failed")
        metrics.record_webhook_outcome("failed")
        metrics.set_queue_depth(7)

        snapshot = metrics.snapshot()
        assert snapshot.active_subscriptions == 3
        assert snapshot.evaluation_errors == 1
        assert snapshot.computed_recomputations == 1
        assert snapshot.automation_fires == 2
        assert snapshot.webhook_attempts == 1
        assert snapshot.webhooks_delivered == 1
        assert snapshot.webhooks_failed == 2
        assert snapshot.queue_depth == 7
        assert snapshot.to_dict()["queue_depth"] == 7

    def test_instances_are_independent(self):
        """Two engines in one process do not share counters."""
        first = EngineMetrics()
        second = EngineMetrics()
        first.record_event("node:created")
        assert first.snapshot().event_count == 1
        assert second.snapshot().event_count == 0

    def test_exposition(self, metrics):
        metrics.record_event("node:created")
        text = metrics.exposition().decode()
        assert 'test_events_total{kind="node:created"} 1.0' in text

    def test_reset(self, metrics):
        metrics.record_event("node:created")
        metrics.reset()
        assert metrics.snapshot().event_count == 0
