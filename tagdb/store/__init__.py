"""
Node store module for tagdb.

This module provides the typed, tagged node graph:
- Node, PropertyValue, SupertagRef: assembled read models
- FieldType / ValueKind: declared field types and value variants
- GraphSnapshot: immutable view consumed by the query evaluator
- NodeStore: SQLite-backed read/write primitives that emit one mutation
  event per write

Invariants:
    - Supertag inheritance is a tree and never cyclic
    - Supertags are addressed by system id ("supertag:<name>")
    - Fields must be defined before values are written to them
"""

from .node_store import NodeStore, encode_value
from .schema import CHILD_OF, STRUCTURAL_FIELDS, SYSTEM_FIELDS, SYSTEM_SUPERTAGS
from .types import (
    FIELD_PREFIX,
    SUPERTAG_PREFIX,
    FieldType,
    GraphSnapshot,
    Node,
    PropertyValue,
    SupertagRef,
    ValueKind,
    field_name,
    infer_value_kind,
    supertag_system_id,
)

__all__ = [
    # Types
    "FieldType",
    "ValueKind",
    "PropertyValue",
    "SupertagRef",
    "Node",
    "GraphSnapshot",
    "infer_value_kind",
    "field_name",
    "supertag_system_id",
    "FIELD_PREFIX",
    "SUPERTAG_PREFIX",
    # Schema
    "CHILD_OF",
    "STRUCTURAL_FIELDS",
    "SYSTEM_FIELDS",
    "SYSTEM_SUPERTAGS",
    # Store
    "NodeStore",
    "encode_value",
]
