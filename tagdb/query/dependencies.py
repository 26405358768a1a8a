"""
Dependency tracking for live queries.

Re-evaluating every live query on every mutation does not scale; instead
each query is reduced to a set of coarse dependency markers, each mutation
event is reduced to the markers it could affect, and only subscriptions
whose sets intersect are re-evaluated.

Markers:
    supertag:<name>        supertag assignment (and inherited membership)
    field:<name>           values of a field
    relationType:<type>    relations of one type ("relationType:*" for any)
    content / created_at / updated_at
                           node columns
    membership             a node appearing or disappearing, for filters a
                           brand-new node can satisfy without any of its own
                           markers (NOT, is_empty, negated has_field or
                           relation, incoming relations, empty AND)
    *                      wildcard; matches everything

Invariants:
    - Over-approximation is acceptable, a missed marker is a correctness bug
    - Unknown filter kinds depend on the wildcard
    - A supertag mutation affects the supertag and every ancestor
    - Relation markers are keyed by relation type only, never by target

How to change safely:
    - When adding a filter kind, add its markers here and make sure every
      store mutation that can change its result emits one of them
    - Property tests comparing incremental results with fresh evaluation
      catch missing markers; extend them with the new kind
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from ..events import MutationEvent, MutationKind
from ..store.types import field_name, supertag_system_id
from .definition import (
    CONTENT_KEY,
    CREATED_AT_KEY,
    UPDATED_AT_KEY,
    AndFilter,
    ContentFilter,
    FilterOp,
    HasFieldFilter,
    NotFilter,
    OrFilter,
    PropertyFilter,
    QueryDefinition,
    RelationDirection,
    RelationFilter,
    SupertagFilter,
    TemporalFilter,
)

logger = logging.getLogger(__name__)

DependencySet = frozenset[str]

WILDCARD = "*"
MEMBERSHIP = "membership"
CONTENT = "content"
CREATED_AT = "created_at"
UPDATED_AT = "updated_at"
ANY_RELATION = "relationType:*"

_COLUMN_MARKERS = {
    CONTENT_KEY: CONTENT,
    CREATED_AT_KEY: CREATED_AT,
    UPDATED_AT_KEY: UPDATED_AT,
}


def supertag_marker(supertag: str) -> str:
    return supertag_system_id(supertag)


def field_marker(name: str) -> str:
    return f"field:{field_name(name)}"


def relation_marker(relation_type: str) -> str:
    return f"relationType:{relation_type}"


def extract_filter_dependencies(query_filter: Any) -> DependencySet:
    """Markers a filter subtree reads.

    Args:
        query_filter: Any QueryFilter model

    Returns:
        Dependency set; {"*"} for kinds this function does not know
    """
    if isinstance(query_filter, SupertagFilter):
        return frozenset({supertag_marker(query_filter.supertag)})

    if isinstance(query_filter, PropertyFilter):
        markers = {field_marker(query_filter.field)}
        if query_filter.op is FilterOp.IS_EMPTY:
            markers.add(MEMBERSHIP)
        return frozenset(markers)

    if isinstance(query_filter, ContentFilter):
        return frozenset({CONTENT})

    if isinstance(query_filter, RelationFilter):
        if query_filter.relation_type is None:
            markers = {ANY_RELATION}
        else:
            markers = {relation_marker(query_filter.relation_type)}
        if query_filter.negate or query_filter.direction is RelationDirection.INCOMING:
            markers.add(MEMBERSHIP)
        return frozenset(markers)

    if isinstance(query_filter, TemporalFilter):
        column = _COLUMN_MARKERS.get(query_filter.field)
        return frozenset({column or field_marker(query_filter.field)})

    if isinstance(query_filter, HasFieldFilter):
        markers = {field_marker(query_filter.field)}
        if query_filter.negate:
            markers.add(MEMBERSHIP)
        return frozenset(markers)

    if isinstance(query_filter, AndFilter):
        if not query_filter.filters:
            return frozenset({MEMBERSHIP})
        return _union(extract_filter_dependencies(f) for f in query_filter.filters)

    if isinstance(query_filter, OrFilter):
        return _union(extract_filter_dependencies(f) for f in query_filter.filters)

    if isinstance(query_filter, NotFilter):
        return extract_filter_dependencies(query_filter.filter) | {MEMBERSHIP}

    logger.debug(
        "Unknown filter kind, depending on wildcard",
        extra={"filter_type": getattr(query_filter, "type", type(query_filter).__name__)},
    )
    return frozenset({WILDCARD})


def extract_query_dependencies(definition: QueryDefinition) -> DependencySet:
    """Markers a whole query reads, including its sort key."""
    if definition.filters:
        markers = set(_union(extract_filter_dependencies(f) for f in definition.filters))
    else:
        markers = {MEMBERSHIP}

    if definition.sort is not None:
        key = definition.sort.field
        markers.add(_COLUMN_MARKERS.get(key) or field_marker(key))
    return frozenset(markers)


def get_mutation_affected_dependencies(event: MutationEvent) -> DependencySet:
    """Markers a committed mutation could have affected.

    Args:
        event: Mutation event from the store

    Returns:
        Dependency set; {"*"} when the event affects everything
    """
    if event.affects_all:
        return frozenset({WILDCARD})

    kind = event.kind
    markers: set[str] = set()

    if kind in (MutationKind.NODE_CREATED, MutationKind.NODE_DELETED):
        markers.update({MEMBERSHIP, CONTENT, CREATED_AT, UPDATED_AT})
        markers.update(_supertag_markers(event))
        markers.update(field_marker(name) for name in event.field_names)
        markers.update(_relation_markers(event))
    elif kind is MutationKind.NODE_UPDATED:
        markers.update({CONTENT, UPDATED_AT})
    elif kind in (
        MutationKind.PROPERTY_SET,
        MutationKind.PROPERTY_ADDED,
        MutationKind.PROPERTY_CLEARED,
        MutationKind.RELATION_LINKED,
        MutationKind.RELATION_UNLINKED,
    ):
        markers.add(UPDATED_AT)
        markers.update(field_marker(name) for name in event.field_names)
        markers.update(_relation_markers(event))
    elif kind in (
        MutationKind.SUPERTAG_ADDED,
        MutationKind.SUPERTAG_REMOVED,
        MutationKind.SUPERTAG_PARENT_SET,
    ):
        markers.add(UPDATED_AT)
        markers.update(_supertag_markers(event))
    else:
        markers.add(WILDCARD)

    return frozenset(markers)


def dependencies_intersect(subscription: DependencySet, affected: DependencySet) -> bool:
    """Whether a subscription is possibly affected by a mutation."""
    if WILDCARD in subscription or WILDCARD in affected:
        return True
    return not subscription.isdisjoint(affected)


def _union(sets: Iterable[DependencySet]) -> DependencySet:
    result: set[str] = set()
    for markers in sets:
        result.update(markers)
    return frozenset(result)


def _supertag_markers(event: MutationEvent) -> set[str]:
    return {supertag_marker(s) for s in (*event.supertag_ids, *event.ancestor_supertag_ids)}


def _relation_markers(event: MutationEvent) -> set[str]:
    markers = {relation_marker(r) for r in event.relation_types}
    if markers:
        markers.add(ANY_RELATION)
    return markers


class DependencyTracker:
    """Reverse index from dependency markers to subscription ids.

    Thread safety:
        All methods take an internal lock.

    Example:
        >>> tracker = DependencyTracker()
        >>> tracker.register("sub-1", extract_query_dependencies(definition))
        >>> tracker.get_affected_subscriptions(get_mutation_affected_dependencies(event))
        {'sub-1'}
    """

    def __init__(self) -> None:
        self._dependencies: dict[str, DependencySet] = {}
        self._index: dict[str, set[str]] = {}
        self._wildcard: set[str] = set()
        self._lock = threading.Lock()

    def register(self, subscription_id: str, dependencies: DependencySet) -> None:
        """Index a subscription's dependencies (replacing earlier ones)."""
        with self._lock:
            self._remove(subscription_id)
            self._dependencies[subscription_id] = dependencies
            if WILDCARD in dependencies:
                self._wildcard.add(subscription_id)
            for marker in dependencies:
                self._index.setdefault(marker, set()).add(subscription_id)

    def unregister(self, subscription_id: str) -> None:
        with self._lock:
            self._remove(subscription_id)

    def _remove(self, subscription_id: str) -> None:
        dependencies = self._dependencies.pop(subscription_id, None)
        if dependencies is None:
            return
        self._wildcard.discard(subscription_id)
        for marker in dependencies:
            ids = self._index.get(marker)
            if ids is not None:
                ids.discard(subscription_id)
                if not ids:
                    del self._index[marker]

    def get_dependencies(self, subscription_id: str) -> DependencySet | None:
        with self._lock:
            return self._dependencies.get(subscription_id)

    def get_affected_subscriptions(self, affected: DependencySet) -> set[str]:
        """Subscription ids whose dependencies intersect the affected set."""
        with self._lock:
            if WILDCARD in affected:
                return set(self._dependencies)
            result = set(self._wildcard)
            for marker in affected:
                result.update(self._index.get(marker, ()))
            return result

    def subscription_ids(self) -> list[str]:
        with self._lock:
            return list(self._dependencies)

    def clear(self) -> None:
        with self._lock:
            self._dependencies.clear()
            self._index.clear()
            self._wildcard.clear()

    def __len__(self) -> int:
        return len(self._dependencies)

    @property
    def stats(self) -> dict[str, Any]:
        """Get tracker statistics."""
        with self._lock:
            return {
                "subscription_count": len(self._dependencies),
                "marker_count": len(self._index),
                "wildcard_count": len(self._wildcard),
            }
