"""
Query module for tagdb.

This module provides the query language and its analysis:
- Filter models and QueryDefinition (JSON round-trippable)
- evaluate_query: pure evaluation against a GraphSnapshot
- Dependency markers and the DependencyTracker used to decide which live
  queries a mutation can affect

Invariants:
    - Evaluation is deterministic and side-effect free
    - Dependency extraction over-approximates, never under-approximates
"""

from .definition import (
    DEFAULT_LIMIT,
    AndFilter,
    ContentFilter,
    FilterOp,
    HasFieldFilter,
    NotFilter,
    OrFilter,
    PropertyFilter,
    QueryDefinition,
    QueryFilter,
    RelationDirection,
    RelationFilter,
    SortDirection,
    SortSpec,
    SupertagFilter,
    TemporalFilter,
    TemporalOp,
)
from .dependencies import (
    ANY_RELATION,
    CONTENT,
    CREATED_AT,
    MEMBERSHIP,
    UPDATED_AT,
    WILDCARD,
    DependencySet,
    DependencyTracker,
    dependencies_intersect,
    extract_filter_dependencies,
    extract_query_dependencies,
    field_marker,
    get_mutation_affected_dependencies,
    relation_marker,
    supertag_marker,
)
from .evaluator import evaluate_query, to_epoch_ms

__all__ = [
    # Definitions
    "DEFAULT_LIMIT",
    "QueryDefinition",
    "QueryFilter",
    "SupertagFilter",
    "PropertyFilter",
    "ContentFilter",
    "RelationFilter",
    "TemporalFilter",
    "HasFieldFilter",
    "AndFilter",
    "OrFilter",
    "NotFilter",
    "SortSpec",
    "FilterOp",
    "TemporalOp",
    "RelationDirection",
    "SortDirection",
    # Evaluation
    "evaluate_query",
    "to_epoch_ms",
    # Dependencies
    "DependencySet",
    "DependencyTracker",
    "extract_filter_dependencies",
    "extract_query_dependencies",
    "get_mutation_affected_dependencies",
    "dependencies_intersect",
    "supertag_marker",
    "field_marker",
    "relation_marker",
    "WILDCARD",
    "MEMBERSHIP",
    "CONTENT",
    "CREATED_AT",
    "UPDATED_AT",
    "ANY_RELATION",
]
