"""
Mutation event types for tagdb.

Every mutating Node Store operation emits exactly one MutationEvent after its
transaction commits. Events are immutable and carry everything the
Dependency Tracker needs, so that affected dependencies can be derived from
the event alone without reading the store.

Invariants:
    - sequence is strictly increasing per store
    - supertag_ids and ancestor_supertag_ids hold supertag system ids
      (e.g. "supertag:task"); field_names hold bare field names
    - before_value/after_value are decoded copies, never store-owned objects
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class MutationKind(Enum):
    """Kind of node mutation carried by an event."""

    NODE_CREATED = "node:created"
    NODE_UPDATED = "node:updated"
    NODE_DELETED = "node:deleted"
    PROPERTY_SET = "property:set"
    PROPERTY_ADDED = "property:added"
    PROPERTY_CLEARED = "property:cleared"
    SUPERTAG_ADDED = "supertag:added"
    SUPERTAG_REMOVED = "supertag:removed"
    SUPERTAG_PARENT_SET = "supertag:parent_set"
    RELATION_LINKED = "relation:linked"
    RELATION_UNLINKED = "relation:unlinked"


@dataclass(frozen=True)
class MutationEvent:
    """A committed node mutation.

    Attributes:
        sequence: Monotonic sequence number assigned at commit
        kind: Mutation kind
        node_id: Id of the mutated node
        timestamp_ms: Commit time (Unix ms)
        system_id: System id of the mutated node, if any
        field_names: Field names whose values changed
        supertag_ids: Supertags directly involved (assigned, removed, or
            carried by a created/deleted node)
        ancestor_supertag_ids: Ancestors of supertag_ids at commit time
        relation_types: Relation types whose edges changed
        before_value: Decoded value(s) before the mutation (keyed by field
            name when several fields were written together)
        after_value: Decoded value(s) after the mutation
        affects_all: The mutation can change any query result (for example
            deleting a supertag or field definition)
        depth: Number of enclosing events; a write made by a listener while
            an event of depth n is dispatched gets depth n + 1
    """

    sequence: int
    kind: MutationKind
    node_id: str
    timestamp_ms: int
    system_id: str | None = None
    field_names: tuple[str, ...] = ()
    supertag_ids: tuple[str, ...] = ()
    ancestor_supertag_ids: tuple[str, ...] = ()
    relation_types: tuple[str, ...] = ()
    before_value: Any = None
    after_value: Any = None
    affects_all: bool = False
    depth: int = 0


@dataclass(frozen=True)
class EventFilter:
    """Optional listener-side filter for the event bus.

    Empty tuples match everything; a non-empty tuple requires the event to
    match at least one of its entries.

    Attributes:
        kinds: Mutation kinds to receive
        node_ids: Node ids to receive
        field_names: Field names to receive
        supertag_ids: Supertag system ids to receive
    """

    kinds: tuple[MutationKind, ...] = ()
    node_ids: tuple[str, ...] = ()
    field_names: tuple[str, ...] = ()
    supertag_ids: tuple[str, ...] = ()

    def matches(self, event: MutationEvent) -> bool:
        """Check whether an event passes this filter."""
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.node_ids and event.node_id not in self.node_ids:
            return False
        if self.field_names and not set(self.field_names) & set(event.field_names):
            return False
        if self.supertag_ids and not set(self.supertag_ids) & set(event.supertag_ids):
            return False
        return True
