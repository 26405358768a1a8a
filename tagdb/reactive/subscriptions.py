"""
Live query subscriptions for tagdb.

The SubscriptionService keeps QueryDefinitions live: each subscription is
evaluated once on subscribe, then re-evaluated after every committed
mutation whose affected dependencies intersect its own. Callbacks receive
the new ordered result plus a diff against the previous delivery.

Flow per mutation event:
    1. get_mutation_affected_dependencies(event)
    2. DependencyTracker lookup (or every subscription, if smart
       invalidation is off)
    3. One snapshot, one evaluate_query() per affected subscription
    4. Diff against the last delivered result, callback if non-empty

Invariants:
    - Callbacks for one subscription are delivered in event-sequence order
    - A result is never delivered to a subscription after unsubscribe
    - Delivered results always equal a fresh evaluation at the time of the
      snapshot, so incremental results never drift
    - An EvaluationError affects only the subscription that raised it
    - A failing callback never affects other subscriptions

How to change safely:
    - Any path that updates Subscription.results must go through _deliver()
    - The no-drift property tests must stay green after changes here
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from ..errors import EvaluationError, NotFoundError
from ..events import EventBus, MutationEvent
from ..query import (
    DependencySet,
    DependencyTracker,
    QueryDefinition,
    evaluate_query,
    extract_query_dependencies,
    get_mutation_affected_dependencies,
)
from ..store import GraphSnapshot, NodeStore
from .saved_queries import SavedQueryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResultDiff:
    """Difference between two deliveries of one subscription.

    Attributes:
        added: Ids present now but not before, in result order
        removed: Ids present before but not now, in previous order
        reordered: Ids present in both changed relative order
        touched: Ids present in both whose node was the subject of the
            mutation (only for subscriptions asking for it)
    """

    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    reordered: bool = False
    touched: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.reordered or self.touched)


def diff_results(
    previous: Sequence[str],
    current: Sequence[str],
    touched: Iterable[str] = (),
) -> ResultDiff:
    """Compute the diff between two ordered results."""
    previous_set = set(previous)
    current_set = set(current)
    kept_before = [node_id for node_id in previous if node_id in current_set]
    kept_after = [node_id for node_id in current if node_id in previous_set]
    return ResultDiff(
        added=tuple(node_id for node_id in current if node_id not in previous_set),
        removed=tuple(node_id for node_id in previous if node_id not in current_set),
        reordered=kept_before != kept_after,
        touched=tuple(
            node_id for node_id in touched if node_id in current_set and node_id in previous_set
        ),
    )


@dataclass(frozen=True)
class QueryResultChange:
    """One callback delivery.

    Attributes:
        subscription_id: Subscription receiving the change
        results: Full ordered result
        diff: Difference to the previous delivery
        initial: True for the delivery made on subscribe
        sequence: Store sequence the result reflects
        evaluated_at: Snapshot time (Unix ms)
    """

    subscription_id: str
    results: tuple[str, ...]
    diff: ResultDiff
    initial: bool
    sequence: int
    evaluated_at: int


SubscriptionCallback = Callable[[QueryResultChange], Any]


@dataclass
class _Subscription:
    id: str
    definition: QueryDefinition
    callback: SubscriptionCallback
    dependencies: DependencySet
    include_touched: bool = False
    saved_query_id: str | None = None
    results: tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)
    last_evaluated_at: int | None = None
    evaluation_count: int = 0
    delivery_count: int = 0


@dataclass(frozen=True)
class SubscriptionInfo:
    """Read-only description of a live subscription."""

    id: str
    definition: QueryDefinition
    dependencies: DependencySet
    result_count: int
    saved_query_id: str | None
    evaluation_count: int
    delivery_count: int
    last_evaluated_at: int | None


class SubscriptionHandle:
    """Handle returned by subscribe()."""

    def __init__(self, service: SubscriptionService, subscription_id: str) -> None:
        self._service = service
        self.id = subscription_id

    @property
    def active(self) -> bool:
        return self._service.is_subscribed(self.id)

    @property
    def results(self) -> tuple[str, ...]:
        """Last delivered result (empty once unsubscribed)."""
        return self._service.current_results(self.id)

    def unsubscribe(self) -> bool:
        return self._service.unsubscribe(self.id)

    def __repr__(self) -> str:
        return f"SubscriptionHandle(id={self.id!r}, active={self.active})"


class SubscriptionService:
    """Keeps query results live as the store changes.

    Thread safety:
        Mutation events arrive on the writer thread while the store's lock
        is held. subscribe() takes the same lock, so a subscription never
        misses or double-counts a mutation committed around its baseline.

    Example:
        >>> service = SubscriptionService(store, bus)
        >>> handle = service.subscribe(
        ...     QueryDefinition.from_json({"filters": [{"type": "supertag", "supertag": "task"}]}),
        ...     lambda change: print(change.diff.added),
        ... )
        >>> handle.unsubscribe()
    """

    def __init__(
        self,
        store: NodeStore,
        bus: EventBus,
        *,
        tracker: DependencyTracker | None = None,
        saved_queries: SavedQueryStore | None = None,
        metrics: Any | None = None,
        smart_invalidation: bool = True,
        evaluation_workers: int = 1,
    ) -> None:
        """Initialize the service.

        Args:
            store: Node store to evaluate against
            bus: Event bus carrying the store's mutation events
            tracker: Dependency tracker (default: a new one)
            saved_queries: Saved query store for subscribe_saved()
            metrics: Optional EngineMetrics
            smart_invalidation: Re-evaluate only affected subscriptions
            evaluation_workers: Threads used to evaluate affected
                subscriptions in parallel (1 evaluates inline)
        """
        self.store = store
        self.bus = bus
        self.tracker = tracker or DependencyTracker()
        self.saved_queries = saved_queries or SavedQueryStore(store)
        self.metrics = metrics
        self.smart_invalidation = smart_invalidation

        self._subscriptions: dict[str, _Subscription] = {}
        self._lock = threading.RLock()
        self._unsubscribe_bus: Callable[[], None] | None = None
        self._executor: ThreadPoolExecutor | None = None
        if evaluation_workers > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=evaluation_workers, thread_name_prefix="tagdb-eval"
            )

        self._events_seen = 0
        self._evaluations = 0
        self._skipped = 0
        self._errors = 0

    # ------------------------------------------------------------------
    # Subscribe / unsubscribe
    # ------------------------------------------------------------------

    def subscribe(
        self,
        definition: QueryDefinition | dict[str, Any],
        callback: SubscriptionCallback,
        *,
        extra_dependencies: Iterable[str] = (),
        include_touched: bool = False,
        saved_query_id: str | None = None,
    ) -> SubscriptionHandle:
        """Register a live query and deliver its initial result.

        The callback is invoked synchronously before this returns, with
        initial=True and every current result listed as added.

        Args:
            definition: Query to keep live
            callback: Receives a QueryResultChange per delivery
            extra_dependencies: Markers to depend on beyond the query's own
                (e.g. the field an aggregate reads)
            include_touched: Also call back when a current member is the
                subject of a mutation without entering or leaving
            saved_query_id: Saved query whose result cache to maintain

        Returns:
            SubscriptionHandle
        """
        if isinstance(definition, dict):
            definition = QueryDefinition.from_json(definition)

        subscription = _Subscription(
            id=f"sub_{uuid.uuid4().hex[:12]}",
            definition=definition,
            callback=callback,
            dependencies=extract_query_dependencies(definition) | frozenset(extra_dependencies),
            include_touched=include_touched,
            saved_query_id=saved_query_id,
        )

        with self.store.exclusive():
            snapshot = self.store.snapshot()
            results = self._evaluate(subscription, snapshot)
            if results is None:
                results = ()

            with self._lock:
                self._subscriptions[subscription.id] = subscription
                self.tracker.register(subscription.id, subscription.dependencies)
                subscription.results = results
                subscription.last_evaluated_at = snapshot.taken_at
                if self._unsubscribe_bus is None:
                    self._unsubscribe_bus = self.bus.subscribe(self._on_event)
                count = len(self._subscriptions)

            if self.metrics is not None:
                self.metrics.set_active_subscriptions(count)
            logger.debug(
                "Subscription registered",
                extra={
                    "subscription_id": subscription.id,
                    "dependencies": sorted(subscription.dependencies),
                    "result_count": len(results),
                },
            )

            change = QueryResultChange(
                subscription_id=subscription.id,
                results=results,
                diff=ResultDiff(added=results),
                initial=True,
                sequence=snapshot.sequence,
                evaluated_at=snapshot.taken_at,
            )
            self._invoke(subscription, change)

        return SubscriptionHandle(self, subscription.id)

    def subscribe_saved(
        self,
        saved_query_id: str,
        callback: SubscriptionCallback,
        *,
        extra_dependencies: Iterable[str] = (),
        include_touched: bool = False,
    ) -> SubscriptionHandle:
        """Subscribe to a saved query, keeping its result cache current.

        Raises:
            NotFoundError: If the saved query does not exist
        """
        saved = self.saved_queries.get(saved_query_id)
        return self.subscribe(
            saved.definition,
            callback,
            extra_dependencies=extra_dependencies,
            include_touched=include_touched,
            saved_query_id=saved.id,
        )

    def unsubscribe(self, subscription: SubscriptionHandle | str) -> bool:
        """Remove a subscription. Returns False if it was not registered."""
        subscription_id = subscription.id if isinstance(subscription, SubscriptionHandle) else subscription
        with self._lock:
            removed = self._subscriptions.pop(subscription_id, None)
            if removed is None:
                return False
            self.tracker.unregister(subscription_id)
            count = len(self._subscriptions)
            if count == 0 and self._unsubscribe_bus is not None:
                self._unsubscribe_bus()
                self._unsubscribe_bus = None

        if self.metrics is not None:
            self.metrics.set_active_subscriptions(count)
        logger.debug("Subscription removed", extra={"subscription_id": subscription_id})
        return True

    def is_subscribed(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def current_results(self, subscription_id: str) -> tuple[str, ...]:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            return subscription.results if subscription is not None else ()

    def active_subscriptions(self) -> list[SubscriptionInfo]:
        with self._lock:
            return [
                SubscriptionInfo(
                    id=s.id,
                    definition=s.definition,
                    dependencies=s.dependencies,
                    result_count=len(s.results),
                    saved_query_id=s.saved_query_id,
                    evaluation_count=s.evaluation_count,
                    delivery_count=s.delivery_count,
                    last_evaluated_at=s.last_evaluated_at,
                )
                for s in self._subscriptions.values()
            ]

    def set_smart_invalidation(self, enabled: bool) -> None:
        """Toggle dependency-based invalidation.

        Disabling it re-evaluates every subscription on every event, which
        yields the same deliveries at a higher cost.
        """
        self.smart_invalidation = enabled
        logger.info("Smart invalidation changed", extra={"enabled": enabled})

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _on_event(self, event: MutationEvent) -> None:
        self._events_seen += 1
        affected = get_mutation_affected_dependencies(event)

        with self._lock:
            total = len(self._subscriptions)
            if self.smart_invalidation:
                ids = self.tracker.get_affected_subscriptions(affected)
                targets = [s for s in self._subscriptions.values() if s.id in ids]
            else:
                targets = list(self._subscriptions.values())

        skipped = total - len(targets)
        self._skipped += skipped
        if self.metrics is not None:
            self.metrics.record_skipped(skipped)
        if not targets:
            return

        snapshot = self.store.snapshot()
        for subscription, results in self._evaluate_all(targets, snapshot):
            if results is not None:
                self._deliver(subscription, results, snapshot, event.node_id)

    def _evaluate_all(
        self,
        targets: list[_Subscription],
        snapshot: GraphSnapshot,
    ) -> list[tuple[_Subscription, tuple[str, ...] | None]]:
        if self._executor is None or len(targets) == 1:
            return [(s, self._evaluate(s, snapshot)) for s in targets]
        futures = [(s, self._executor.submit(self._evaluate, s, snapshot)) for s in targets]
        return [(s, future.result()) for s, future in futures]

    def _evaluate(self, subscription: _Subscription, snapshot: GraphSnapshot) -> tuple[str, ...] | None:
        start = time.perf_counter()
        try:
            return tuple(evaluate_query(subscription.definition, snapshot))
        except EvaluationError as e:
            with self._lock:
                self._errors += 1
            if self.metrics is not None:
                self.metrics.record_evaluation_error()
            logger.warning(
                f"Query evaluation failed: {e.message}",
                extra={"subscription_id": subscription.id, **e.details},
            )
            return None
        finally:
            # Runs on evaluation workers when evaluation_workers > 1
            with self._lock:
                subscription.evaluation_count += 1
                self._evaluations += 1
            if self.metrics is not None:
                self.metrics.record_evaluation(time.perf_counter() - start)

    def _deliver(
        self,
        subscription: _Subscription,
        results: tuple[str, ...],
        snapshot: GraphSnapshot,
        subject_id: str | None,
    ) -> None:
        with self._lock:
            if subscription.id not in self._subscriptions:
                return
            touched = (subject_id,) if subscription.include_touched and subject_id else ()
            diff = diff_results(subscription.results, results, touched)
            subscription.last_evaluated_at = snapshot.taken_at
            if diff.is_empty:
                return
            subscription.results = results

        change = QueryResultChange(
            subscription_id=subscription.id,
            results=results,
            diff=diff,
            initial=False,
            sequence=snapshot.sequence,
            evaluated_at=snapshot.taken_at,
        )
        self._invoke(subscription, change)

    def _invoke(self, subscription: _Subscription, change: QueryResultChange) -> None:
        subscription.delivery_count += 1
        try:
            outcome = subscription.callback(change)
            if inspect.isawaitable(outcome):
                self._schedule(subscription, outcome)
        except Exception as e:
            logger.error(
                f"Subscription callback failed: {e}",
                exc_info=True,
                extra={"subscription_id": subscription.id},
            )

        # After the callback: the cache write may be dispatched right away
        if subscription.saved_query_id is not None:
            try:
                self.saved_queries.record_results(
                    subscription.saved_query_id, change.results, change.evaluated_at
                )
            except NotFoundError:
                logger.debug(
                    "Saved query vanished before cache write",
                    extra={"saved_query_id": subscription.saved_query_id},
                )

    def _schedule(self, subscription: _Subscription, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Async subscription callback outside an event loop, dropped",
                extra={"subscription_id": subscription.id},
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        loop.create_task(awaitable)

    def refresh_all(self) -> int:
        """Re-evaluate every subscription now.

        Useful after wall-clock time moves relative "within" windows.

        Returns:
            Number of subscriptions that received a callback
        """
        with self.store.exclusive():
            with self._lock:
                targets = list(self._subscriptions.values())
            if not targets:
                return 0
            snapshot = self.store.snapshot()
            delivered = 0
            for subscription, results in self._evaluate_all(targets, snapshot):
                if results is None:
                    continue
                before = subscription.delivery_count
                self._deliver(subscription, results, snapshot, None)
                if subscription.delivery_count != before:
                    delivered += 1
            return delivered

    def close(self) -> None:
        """Drop every subscription and detach from the bus."""
        with self._lock:
            self._subscriptions.clear()
            self.tracker.clear()
            if self._unsubscribe_bus is not None:
                self._unsubscribe_bus()
                self._unsubscribe_bus = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self.metrics is not None:
            self.metrics.set_active_subscriptions(0)

    @property
    def stats(self) -> dict[str, Any]:
        """Get subscription statistics."""
        with self._lock:
            count = len(self._subscriptions)
        return {
            "subscription_count": count,
            "events_seen": self._events_seen,
            "evaluations": self._evaluations,
            "skipped_evaluations": self._skipped,
            "evaluation_errors": self._errors,
            "smart_invalidation": self.smart_invalidation,
            "tracker": self.tracker.stats,
        }
