"""
Core type definitions for the tagdb node store.

This module defines the foundational types of the node graph:
- FieldType: Declared type of a field definition
- ValueKind: Tagged variant of a decoded property value
- PropertyValue: One value attached to a node under a field
- SupertagRef / Node: Assembled node with supertags and properties
- GraphSnapshot: Immutable read-only view used by the query evaluator

Invariants:
    - Node ids are opaque and never reused
    - Property values are multi-valued and order-preserving
    - Supertags are referenced by system id ("supertag:<name>")
    - A GraphSnapshot never changes after construction

How to change safely:
    - Add new FieldType members at the end; stored field_type strings
      must keep decoding
    - Keep infer_value_kind total (every JSON value maps to a kind)
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any

SUPERTAG_PREFIX = "supertag:"
FIELD_PREFIX = "field:"


class FieldType(Enum):
    """Declared field types.

    Comparison operators in property filters are typed by this declaration.
    """

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    SELECT = "select"
    URL = "url"
    EMAIL = "email"
    NODE = "node"  # Single node-id reference
    NODES = "nodes"  # Multiple node-id references
    JSON = "json"

    @classmethod
    def from_str(cls, value: str) -> FieldType:
        """Convert string representation to FieldType.

        Raises:
            ValueError: If value is not a valid field type
        """
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"Invalid field type '{value}'. Valid types: {valid}")

    @property
    def is_reference(self) -> bool:
        """Whether values of this type are node-id references."""
        return self in (FieldType.NODE, FieldType.NODES)

    @property
    def is_textual(self) -> bool:
        """Whether values compare as strings."""
        return self in (FieldType.TEXT, FieldType.SELECT, FieldType.URL, FieldType.EMAIL)


class ValueKind(Enum):
    """Tagged variant of a decoded property value."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    OBJECT = "object"
    ARRAY = "array"


def infer_value_kind(value: Any) -> ValueKind:
    """Map a decoded JSON value to its ValueKind.

    Checks bool before int since bool is a subclass of int.
    """
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.OBJECT


def supertag_system_id(name: str) -> str:
    """Normalize "task" or "supertag:task" to "supertag:task"."""
    return name if name.startswith(SUPERTAG_PREFIX) else f"{SUPERTAG_PREFIX}{name}"


def field_name(name: str) -> str:
    """Normalize "field:status" or "status" to "status"."""
    return name[len(FIELD_PREFIX) :] if name.startswith(FIELD_PREFIX) else name


@dataclass(frozen=True)
class PropertyValue:
    """One value of a node property.

    Attributes:
        value: Decoded value
        raw: JSON-encoded form as stored
        kind: Tagged variant of the decoded value
        field_node_id: Id of the field definition node
        field_name: Field name (e.g. "status")
        field_system_id: Field system id (e.g. "field:status")
        order: Position among the field's values
    """

    value: Any
    raw: str
    kind: ValueKind
    field_node_id: str
    field_name: str
    field_system_id: str
    order: int = 0


@dataclass(frozen=True)
class SupertagRef:
    """Reference to a supertag carried by a node."""

    id: str
    system_id: str
    name: str


@dataclass
class Node:
    """Represents an assembled node.

    Attributes:
        id: Unique node identifier (UUID)
        content: Human-readable content
        system_id: Well-known identifier for built-in and definition nodes
        owner_id: Owner (parent) node id
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
        deleted_at: Soft-delete timestamp (Unix ms)
        properties: Field name -> ordered values
        supertags: Supertags directly assigned to the node
        parent_supertag_id: For supertag definitions, the parent's system id
    """

    id: str
    content: str | None
    system_id: str | None
    owner_id: str | None
    created_at: int
    updated_at: int
    deleted_at: int | None = None
    properties: dict[str, list[PropertyValue]] = dataclass_field(default_factory=dict)
    supertags: list[SupertagRef] = dataclass_field(default_factory=list)
    parent_supertag_id: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def supertag_ids(self) -> list[str]:
        """System ids of directly assigned supertags."""
        return [tag.system_id for tag in self.supertags]

    def get_values(self, name: str) -> list[Any]:
        """Decoded values of a field, in order."""
        return [pv.value for pv in self.properties.get(field_name(name), [])]

    def get_value(self, name: str, default: Any = None) -> Any:
        """First decoded value of a field."""
        values = self.properties.get(field_name(name))
        return values[0].value if values else default

    def to_dict(self) -> dict[str, Any]:
        """Plain-data form used for template rendering and CLI output."""
        properties = {}
        for name, values in self.properties.items():
            decoded = [pv.value for pv in values]
            properties[name] = decoded[0] if len(decoded) == 1 else decoded
        return {
            "id": self.id,
            "content": self.content,
            "system_id": self.system_id,
            "owner_id": self.owner_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deleted_at": self.deleted_at,
            "supertags": self.supertag_ids,
            "properties": properties,
        }


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable read-only view of the store.

    Produced by NodeStore.snapshot() under the store lock; the evaluator
    reads only from this object.

    Attributes:
        nodes: Node id -> assembled node (deleted nodes included)
        order: Ids of live nodes in insertion order
        supertag_parents: Live supertag system id -> parent system id
        field_types: Field name -> declared type
        backlinks: Target node id -> (source node id, relation type) pairs
        sequence: Store sequence number at snapshot time
        taken_at: Snapshot time (Unix ms)
    """

    nodes: Mapping[str, Node]
    order: tuple[str, ...]
    supertag_parents: Mapping[str, str | None]
    field_types: Mapping[str, FieldType]
    backlinks: Mapping[str, tuple[tuple[str, str], ...]]
    sequence: int
    taken_at: int

    def live_nodes(self) -> Iterator[Node]:
        """Non-deleted nodes in insertion order."""
        for node_id in self.order:
            yield self.nodes[node_id]

    def get(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def is_live(self, node_id: str) -> bool:
        node = self.nodes.get(node_id)
        return node is not None and not node.is_deleted

    def ancestors(self, supertag_id: str) -> list[str]:
        """Ancestor system ids of a supertag, nearest first."""
        result = []
        seen = {supertag_id}
        current = self.supertag_parents.get(supertag_id)
        while current and current not in seen and current in self.supertag_parents:
            result.append(current)
            seen.add(current)
            current = self.supertag_parents.get(current)
        return result

    def effective_supertags(self, node: Node) -> set[str]:
        """Live supertags of a node plus all their ancestors."""
        result: set[str] = set()
        for tag in node.supertag_ids:
            if tag not in self.supertag_parents:
                continue
            result.add(tag)
            result.update(self.ancestors(tag))
        return result

    def field_type(self, name: str) -> FieldType | None:
        return self.field_types.get(field_name(name))

    def incoming(self, node_id: str) -> tuple[tuple[str, str], ...]:
        """(source id, relation type) pairs pointing at a node."""
        return self.backlinks.get(node_id, ())
