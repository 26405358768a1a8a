"""
Query definitions for tagdb.

A QueryDefinition is a tree of filters plus an optional sort and limit.
Filter kinds are a closed, discriminated union on the `type` key so that a
definition round-trips through JSON (saved queries store it that way) and
every consumer can match kinds exhaustively.

Invariants:
    - Definitions are immutable (frozen models)
    - Supertag references are normalized to system ids ("supertag:task")
    - Field references are normalized to bare names ("status")

How to change safely:
    - Add a new filter kind as a new model with a new `type` literal, add it
      to QueryFilter, then teach the evaluator and
      extract_filter_dependencies about it (the tracker treats unknown kinds
      as wildcard until then)
    - Never change the meaning of an existing `type` literal; saved queries
      persist them

Example:
    >>> QueryDefinition(
    ...     filters=[
    ...         SupertagFilter(supertag="task"),
    ...         PropertyFilter(field="status", op=FilterOp.EQ, value="open"),
    ...     ],
    ...     sort=SortSpec(field="created_at", direction=SortDirection.DESC),
    ... )
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..store.types import field_name, supertag_system_id

DEFAULT_LIMIT = 500

# Sort keys and temporal fields that read node columns instead of properties
CONTENT_KEY = "content"
CREATED_AT_KEY = "created_at"
UPDATED_AT_KEY = "updated_at"
NODE_COLUMNS = (CONTENT_KEY, CREATED_AT_KEY, UPDATED_AT_KEY)


class FilterOp(str, Enum):
    """Property filter operators."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class TemporalOp(str, Enum):
    """Temporal filter operators."""

    WITHIN = "within"  # Last N days up to now
    BEFORE = "before"
    AFTER = "after"


class RelationDirection(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


def _normalize_field(value: str) -> str:
    if value in NODE_COLUMNS:
        return value
    return field_name(value)


class SupertagFilter(_Model):
    """Match nodes carrying a supertag (or, by default, a descendant of it)."""

    type: Literal["supertag"] = "supertag"
    supertag: str
    include_inherited: bool = True

    @field_validator("supertag")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return supertag_system_id(value)


class PropertyFilter(_Model):
    """Compare a field's values against a target value."""

    type: Literal["property"] = "property"
    field: str
    op: FilterOp = FilterOp.EQ
    value: Any = None

    @field_validator("field")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return field_name(value)


class ContentFilter(_Model):
    """Substring match on node content."""

    type: Literal["content"] = "content"
    query: str
    case_sensitive: bool = False


class RelationFilter(_Model):
    """Match nodes that have (or lack) a relation.

    relation_type None means any relation type; "child-of" follows the
    owner hierarchy.
    """

    type: Literal["relation"] = "relation"
    relation_type: str | None = None
    direction: RelationDirection = RelationDirection.OUTGOING
    target_node_id: str | None = None
    negate: bool = False


class TemporalFilter(_Model):
    """Compare created_at, updated_at or a date field against bounds."""

    type: Literal["temporal"] = "temporal"
    field: str = CREATED_AT_KEY
    op: TemporalOp
    days: float | None = None
    date: datetime | None = None

    @field_validator("field")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_field(value)

    @model_validator(mode="after")
    def _check_bounds(self) -> TemporalFilter:
        if self.op is TemporalOp.WITHIN and self.days is None:
            raise ValueError("'within' temporal filters require 'days'")
        if self.op in (TemporalOp.BEFORE, TemporalOp.AFTER) and self.date is None:
            raise ValueError(f"'{self.op.value}' temporal filters require 'date'")
        return self


class HasFieldFilter(_Model):
    """Match nodes with at least one value for a field (or none, if negated)."""

    type: Literal["has_field"] = "has_field"
    field: str
    negate: bool = False

    @field_validator("field")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return field_name(value)


class AndFilter(_Model):
    type: Literal["and"] = "and"
    filters: tuple[QueryFilter, ...] = ()


class OrFilter(_Model):
    type: Literal["or"] = "or"
    filters: tuple[QueryFilter, ...] = ()


class NotFilter(_Model):
    type: Literal["not"] = "not"
    filter: QueryFilter


QueryFilter = Annotated[
    Union[
        SupertagFilter,
        PropertyFilter,
        ContentFilter,
        RelationFilter,
        TemporalFilter,
        HasFieldFilter,
        AndFilter,
        OrFilter,
        NotFilter,
    ],
    Field(discriminator="type"),
]


class SortSpec(_Model):
    """Sort key: a field name or content / created_at / updated_at."""

    field: str
    direction: SortDirection = SortDirection.ASC

    @field_validator("field")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_field(value)


class QueryDefinition(_Model):
    """A complete query.

    Attributes:
        filters: Top-level filters, combined with AND
        sort: Optional stable sort
        limit: Maximum number of ids returned (None for no limit)
        include_system: Include supertag and field definition nodes
    """

    filters: tuple[QueryFilter, ...] = ()
    sort: SortSpec | None = None
    limit: int | None = Field(default=DEFAULT_LIMIT, ge=1)
    include_system: bool = False

    @classmethod
    def from_json(cls, data: str | bytes | dict[str, Any]) -> QueryDefinition:
        """Parse a definition from JSON text or a decoded dict."""
        if isinstance(data, dict):
            return cls.model_validate(data)
        return cls.model_validate_json(data)

    def to_json(self) -> str:
        return self.model_dump_json()

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


for _model in (AndFilter, OrFilter, NotFilter, QueryDefinition):
    _model.model_rebuild()
