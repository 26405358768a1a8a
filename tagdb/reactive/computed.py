"""
Computed fields and aggregates for tagdb.

A computed field derives one property from others on the same node. It is a
subscription over "nodes that carry any input field" (optionally narrowed to
a supertag) that recomputes the formula for added and touched nodes and
writes the result back through NodeStore.set_property(), which emits a new
mutation event of its own.

An aggregate reduces a query result to one number (COUNT/SUM/AVG/MIN/MAX)
stored on a #computed_field node in its computed_value property.

Invariants:
    - A computed field never lists its own target as an input
    - The graph of computed fields (input -> target) stays acyclic
    - A value is written only when it differs from the stored one, so
      recomputation always settles
    - Listeners see (node_id, old_value, new_value) after each write

How to change safely:
    - Validate before subscribing; a rejected registration must leave no
      subscription behind
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ConfigurationError, NotFoundError
from ..query import (
    AndFilter,
    HasFieldFilter,
    OrFilter,
    QueryDefinition,
    SupertagFilter,
    field_marker,
)
from ..store import Node, NodeStore, field_name
from .subscriptions import QueryResultChange, SubscriptionHandle, SubscriptionService

logger = logging.getLogger(__name__)

COMPUTED_SUPERTAG = "supertag:computed_field"
COMPUTED_VALUE_FIELD = "computed_value"

Formula = Callable[[Node], Any]
ValueListener = Callable[[str, Any, Any], Any]


class Aggregation(str, Enum):
    """Reduction applied by an aggregate."""

    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


@dataclass
class ComputedField:
    """A registered computed field.

    Attributes:
        id: Registration id
        target_field: Field the formula writes
        input_fields: Fields the formula reads
        supertag: Optional supertag narrowing the nodes in scope
    """

    id: str
    target_field: str
    input_fields: tuple[str, ...]
    formula: Formula
    supertag: str | None = None
    handle: SubscriptionHandle | None = None
    listeners: list[ValueListener] = field(default_factory=list)
    recomputations: int = 0


@dataclass
class Aggregate:
    """A registered aggregate; id is the #computed_field node id."""

    id: str
    name: str
    definition: QueryDefinition
    aggregation: Aggregation
    source_field: str | None = None
    value: Any = None
    handle: SubscriptionHandle | None = None
    listeners: list[ValueListener] = field(default_factory=list)


def _numbers(values: Iterable[Any]) -> list[float]:
    result: list[float] = []
    for value in values:
        if isinstance(value, list):
            result.extend(_numbers(value))
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            result.append(value)
    return result


def aggregate_values(aggregation: Aggregation, member_count: int, values: list[Any]) -> Any:
    """Reduce values per aggregation; None when there is nothing to reduce."""
    if aggregation is Aggregation.COUNT:
        return member_count
    numbers = _numbers(values)
    if aggregation is Aggregation.SUM:
        return sum(numbers)
    if not numbers:
        return None
    if aggregation is Aggregation.AVG:
        return sum(numbers) / len(numbers)
    if aggregation is Aggregation.MIN:
        return min(numbers)
    return max(numbers)


class ComputedFieldService:
    """Registers computed fields and aggregates on top of subscriptions.

    Example:
        >>> computed = ComputedFieldService(store, subscriptions)
        >>> computed.register_computed_field(
        ...     "total",
        ...     lambda node: (node.get_value("price") or 0) * (node.get_value("qty") or 0),
        ...     ["price", "qty"],
        ... )
    """

    def __init__(
        self,
        store: NodeStore,
        subscriptions: SubscriptionService,
        metrics: Any | None = None,
    ) -> None:
        self.store = store
        self.subscriptions = subscriptions
        self.metrics = metrics
        self._fields: dict[str, ComputedField] = {}
        self._aggregates: dict[str, Aggregate] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Computed fields
    # ------------------------------------------------------------------

    def register_computed_field(
        self,
        target_field: str,
        formula: Formula,
        input_dependencies: Iterable[str],
        *,
        supertag: str | None = None,
    ) -> ComputedField:
        """Register a formula that keeps target_field up to date.

        Args:
            target_field: Field to write
            formula: Callable(node) -> value; None clears the target
            input_dependencies: Field names the formula reads
            supertag: Only compute on nodes carrying this supertag

        Returns:
            The registered ComputedField

        Raises:
            ConfigurationError: Self-input, undefined fields, a target
                already computed, or a cycle among computed fields
        """
        target = field_name(target_field)
        inputs = tuple(dict.fromkeys(field_name(name) for name in input_dependencies))
        self._validate(target, inputs)

        filters: list[Any] = [OrFilter(filters=tuple(HasFieldFilter(field=name) for name in inputs))]
        if supertag is not None:
            filters.append(SupertagFilter(supertag=supertag))
        definition = QueryDefinition(filters=(AndFilter(filters=tuple(filters)),), limit=None)

        computed = ComputedField(
            id=f"cf_{uuid.uuid4().hex[:12]}",
            target_field=target,
            input_fields=inputs,
            formula=formula,
            supertag=supertag,
        )
        with self._lock:
            self._fields[computed.id] = computed

        computed.handle = self.subscriptions.subscribe(
            definition,
            lambda change: self._on_field_change(computed, change),
            include_touched=True,
        )
        logger.info(
            "Computed field registered",
            extra={"computed_id": computed.id, "target_field": target, "inputs": list(inputs)},
        )
        return computed

    def _validate(self, target: str, inputs: tuple[str, ...]) -> None:
        errors: list[str] = []
        if not inputs:
            errors.append("at least one input field is required")
        if target in inputs:
            errors.append(f"'{target}' cannot depend on itself")
        for name in (target, *inputs):
            definition_node = self.store.find_node(f"field:{name}")
            if definition_node is None or definition_node.is_deleted:
                errors.append(f"field '{name}' is not defined")

        with self._lock:
            existing = list(self._fields.values())
        if any(c.target_field == target for c in existing):
            errors.append(f"'{target}' is already computed")

        # Walk from the target through fields computed from it
        dependents: dict[str, set[str]] = {}
        for c in existing:
            for name in c.input_fields:
                dependents.setdefault(name, set()).add(c.target_field)
        stack, seen = [target], set()
        while stack:
            current = stack.pop()
            if current in inputs and current != target:
                errors.append(f"'{target}' would form a cycle through '{current}'")
                break
            if current in seen:
                continue
            seen.add(current)
            stack.extend(dependents.get(current, ()))

        if errors:
            raise ConfigurationError(
                f"Invalid computed field '{target}': {'; '.join(errors)}",
                component="computed_field",
                errors=errors,
            )

    def _on_field_change(self, computed: ComputedField, change: QueryResultChange) -> None:
        if change.initial:
            targets: Iterable[str] = change.results
        else:
            targets = (*change.diff.added, *change.diff.touched)
        for node_id in targets:
            self._recompute(computed, node_id)

        if not change.initial:
            for node_id in change.diff.removed:
                self._clear(computed, node_id)

    def _recompute(self, computed: ComputedField, node_id: str) -> None:
        node = self.store.find_node(node_id)
        if node is None or node.is_deleted:
            return
        try:
            new_value = computed.formula(node)
        except Exception as e:
            logger.error(
                f"Computed field formula failed: {e}",
                exc_info=True,
                extra={"computed_id": computed.id, "node_id": node_id},
            )
            return

        computed.recomputations += 1
        if self.metrics is not None:
            self.metrics.record_recomputation()

        old_value = node.get_value(computed.target_field)
        if new_value == old_value:
            return
        if new_value is None:
            self.store.clear_property(node_id, computed.target_field)
        else:
            self.store.set_property(node_id, computed.target_field, new_value)
        self._notify(computed.listeners, node_id, old_value, new_value)

    def _clear(self, computed: ComputedField, node_id: str) -> None:
        node = self.store.find_node(node_id)
        if node is None or node.is_deleted:
            return
        old_value = node.get_value(computed.target_field)
        if old_value is None:
            return
        self.store.clear_property(node_id, computed.target_field)
        self._notify(computed.listeners, node_id, old_value, None)

    def add_value_listener(self, computed_id: str, listener: ValueListener) -> Callable[[], None]:
        """Listen for (node_id, old, new) writes of a computed field.

        Returns:
            A callable that removes the listener
        """
        computed = self._get_field(computed_id)
        computed.listeners.append(listener)

        def remove() -> None:
            if listener in computed.listeners:
                computed.listeners.remove(listener)

        return remove

    def _get_field(self, computed_id: str) -> ComputedField:
        with self._lock:
            computed = self._fields.get(computed_id)
        if computed is None:
            raise NotFoundError(f"Computed field not found: {computed_id}", "computed_field", computed_id)
        return computed

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def register_aggregate(
        self,
        name: str,
        definition: QueryDefinition | dict[str, Any],
        aggregation: Aggregation | str,
        field: str | None = None,
    ) -> Aggregate:
        """Keep an aggregate over a query result up to date.

        Args:
            name: Label of the #computed_field node
            definition: Query whose members are aggregated
            aggregation: count, sum, avg, min or max
            field: Field to aggregate (required except for count)

        Raises:
            ConfigurationError: Unknown aggregation, missing or undefined field
        """
        if isinstance(definition, dict):
            definition = QueryDefinition.from_json(definition)
        try:
            aggregation = Aggregation(aggregation)
        except ValueError:
            raise ConfigurationError(
                f"Unknown aggregation: {aggregation}", component="aggregate"
            ) from None
        if aggregation is not Aggregation.COUNT:
            if field is None:
                raise ConfigurationError(
                    f"Aggregation '{aggregation.value}' requires a field", component="aggregate"
                )
            field = field_name(field)
            if self.store.find_node(f"field:{field}") is None:
                raise ConfigurationError(f"Field '{field}' is not defined", component="aggregate")

        node = self.store.create_node(name, supertags=[COMPUTED_SUPERTAG])
        aggregate = Aggregate(
            id=node.id,
            name=name,
            definition=definition,
            aggregation=aggregation,
            source_field=field,
        )
        with self._lock:
            self._aggregates[aggregate.id] = aggregate

        aggregate.handle = self.subscriptions.subscribe(
            definition,
            lambda change: self._on_aggregate_change(aggregate, change),
            extra_dependencies={field_marker(field)} if field else (),
            include_touched=field is not None,
        )
        logger.info(
            "Aggregate registered",
            extra={"aggregate_id": aggregate.id, "aggregation": aggregation.value, "field": field},
        )
        return aggregate

    def _on_aggregate_change(self, aggregate: Aggregate, change: QueryResultChange) -> None:
        values: list[Any] = []
        if aggregate.source_field is not None:
            for node_id in change.results:
                node = self.store.find_node(node_id)
                if node is not None and not node.is_deleted:
                    values.extend(node.get_values(aggregate.source_field))

        new_value = aggregate_values(aggregate.aggregation, len(change.results), values)
        if self.metrics is not None:
            self.metrics.record_recomputation()
        old_value = aggregate.value
        if new_value == old_value and not change.initial:
            return

        aggregate.value = new_value
        if self.store.find_node(aggregate.id) is not None:
            self.store.set_property(aggregate.id, COMPUTED_VALUE_FIELD, new_value)
        if not change.initial:
            self._notify(aggregate.listeners, aggregate.id, old_value, new_value)

    def add_aggregate_listener(self, aggregate_id: str, listener: ValueListener) -> Callable[[], None]:
        """Listen for (aggregate_id, old, new) value changes."""
        aggregate = self._get_aggregate(aggregate_id)
        aggregate.listeners.append(listener)

        def remove() -> None:
            if listener in aggregate.listeners:
                aggregate.listeners.remove(listener)

        return remove

    def _get_aggregate(self, aggregate_id: str) -> Aggregate:
        with self._lock:
            aggregate = self._aggregates.get(aggregate_id)
        if aggregate is None:
            raise NotFoundError(f"Aggregate not found: {aggregate_id}", "aggregate", aggregate_id)
        return aggregate

    def get_value(self, aggregate_id: str) -> Any:
        """Current value of an aggregate."""
        return self._get_aggregate(aggregate_id).value

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def unregister(self, registration_id: str) -> bool:
        """Remove a computed field or aggregate. Stored values are kept."""
        with self._lock:
            registration: ComputedField | Aggregate | None = self._fields.pop(registration_id, None)
            if registration is None:
                registration = self._aggregates.pop(registration_id, None)
        if registration is None:
            return False
        if registration.handle is not None:
            registration.handle.unsubscribe()
        registration.listeners.clear()
        logger.info("Computed registration removed", extra={"registration_id": registration_id})
        return True

    def close(self) -> None:
        with self._lock:
            ids = [*self._fields, *self._aggregates]
        for registration_id in ids:
            self.unregister(registration_id)

    def _notify(self, listeners: list[ValueListener], subject_id: str, old: Any, new: Any) -> None:
        for listener in list(listeners):
            try:
                listener(subject_id, old, new)
            except Exception as e:
                logger.error(
                    f"Computed value listener failed: {e}",
                    exc_info=True,
                    extra={"subject_id": subject_id},
                )

    @property
    def stats(self) -> dict[str, Any]:
        """Get computed field statistics."""
        with self._lock:
            return {
                "computed_field_count": len(self._fields),
                "aggregate_count": len(self._aggregates),
                "recomputations": sum(c.recomputations for c in self._fields.values()),
            }
