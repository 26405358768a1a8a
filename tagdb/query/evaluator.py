"""
Query evaluator for tagdb.

evaluate_query() is a pure function from (QueryDefinition, GraphSnapshot)
to an ordered list of node ids. It never touches the store.

Invariants:
    - Same snapshot + same definition => same ordered output
    - Base order is node insertion order; sort is stable, nulls last in
      both directions
    - AND/OR short-circuit per node, which changes evaluation order only,
      never the matched set
    - Deleted nodes never match; deleted supertags and relation targets
      stop counting
    - Malformed data for a typed comparison raises EvaluationError

How to change safely:
    - Every filter kind in QueryFilter needs a matcher in _MATCHERS
    - Keep evaluation free of side effects; subscriptions may evaluate on
      worker threads
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import date, datetime, time, timezone
from typing import Any

from ..errors import EvaluationError
from ..store.schema import CHILD_OF
from ..store.types import FIELD_PREFIX, SUPERTAG_PREFIX, FieldType, GraphSnapshot, Node
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
    SortDirection,
    SortSpec,
    SupertagFilter,
    TemporalFilter,
    TemporalOp,
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def to_epoch_ms(value: Any) -> int | None:
    """Convert a date-like value to Unix ms, or None if it isn't one.

    Accepts Unix ms numbers, datetime/date objects and ISO-8601 strings;
    naive datetimes are taken as UTC.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return int(datetime.combine(value, time(), tzinfo=timezone.utc).timestamp() * 1000)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _flatten(values: list[Any]) -> list[Any]:
    result: list[Any] = []
    for value in values:
        if isinstance(value, list):
            result.extend(value)
        else:
            result.append(value)
    return result


class _Evaluation:
    """Matcher state for one evaluate_query() call."""

    def __init__(self, view: GraphSnapshot, now_ms: int) -> None:
        self.view = view
        self.now_ms = now_ms
        self._matchers: dict[type, Callable[[Any, Node], bool]] = {
            SupertagFilter: self._match_supertag,
            PropertyFilter: self._match_property,
            ContentFilter: self._match_content,
            RelationFilter: self._match_relation,
            TemporalFilter: self._match_temporal,
            HasFieldFilter: self._match_has_field,
            AndFilter: self._match_and,
            OrFilter: self._match_or,
            NotFilter: self._match_not,
        }

    def matches(self, query_filter: Any, node: Node) -> bool:
        matcher = self._matchers.get(type(query_filter))
        if matcher is None:
            raise EvaluationError(
                f"Unsupported filter kind: {type(query_filter).__name__}",
                filter_type=getattr(query_filter, "type", None),
                node_id=node.id,
            )
        return matcher(query_filter, node)

    # Logical combinators

    def _match_and(self, f: AndFilter, node: Node) -> bool:
        return all(self.matches(child, node) for child in f.filters)

    def _match_or(self, f: OrFilter, node: Node) -> bool:
        return any(self.matches(child, node) for child in f.filters)

    def _match_not(self, f: NotFilter, node: Node) -> bool:
        return not self.matches(f.filter, node)

    # Leaf filters

    def _match_supertag(self, f: SupertagFilter, node: Node) -> bool:
        if f.include_inherited:
            return f.supertag in self.view.effective_supertags(node)
        return f.supertag in node.supertag_ids and f.supertag in self.view.supertag_parents

    def _match_content(self, f: ContentFilter, node: Node) -> bool:
        content = node.content or ""
        if f.case_sensitive:
            return f.query in content
        return f.query.casefold() in content.casefold()

    def _match_has_field(self, f: HasFieldFilter, node: Node) -> bool:
        has = bool(node.properties.get(f.field))
        return not has if f.negate else has

    def _match_property(self, f: PropertyFilter, node: Node) -> bool:
        values = _flatten(node.get_values(f.field))
        op = f.op

        if op is FilterOp.IS_EMPTY:
            return all(_is_blank(v) for v in values)
        if op is FilterOp.IS_NOT_EMPTY:
            return any(not _is_blank(v) for v in values)
        if not values:
            return False

        field_type = self.view.field_type(f.field)
        if op is FilterOp.EQ:
            return any(self._equals(v, f.value, field_type) for v in values)
        if op is FilterOp.NEQ:
            return not any(self._equals(v, f.value, field_type) for v in values)
        if op is FilterOp.CONTAINS:
            if any(self._equals(v, f.value, field_type) for v in values):
                return True
            needle = str(f.value).casefold()
            return any(isinstance(v, str) and needle in v.casefold() for v in values)
        if op is FilterOp.STARTS_WITH:
            prefix = str(f.value).casefold()
            return any(isinstance(v, str) and v.casefold().startswith(prefix) for v in values)
        if op is FilterOp.ENDS_WITH:
            suffix = str(f.value).casefold()
            return any(isinstance(v, str) and v.casefold().endswith(suffix) for v in values)

        target = self._comparable(f.value, field_type, f, node, is_target=True)
        for value in values:
            current = self._comparable(value, field_type, f, node)
            if op is FilterOp.GT and current > target:
                return True
            if op is FilterOp.GTE and current >= target:
                return True
            if op is FilterOp.LT and current < target:
                return True
            if op is FilterOp.LTE and current <= target:
                return True
        return False

    def _equals(self, value: Any, target: Any, field_type: FieldType | None) -> bool:
        if field_type is FieldType.DATE:
            value_ms, target_ms = to_epoch_ms(value), to_epoch_ms(target)
            if value_ms is not None and target_ms is not None:
                return value_ms == target_ms
        if _is_number(value) and _is_number(target):
            return float(value) == float(target)
        return value == target

    def _comparable(
        self,
        value: Any,
        field_type: FieldType | None,
        f: PropertyFilter,
        node: Node,
        is_target: bool = False,
    ) -> Any:
        """Coerce a value for ordering comparison under the field's type."""
        if field_type is None:
            field_type = FieldType.NUMBER if _is_number(f.value) else FieldType.TEXT

        if field_type is FieldType.NUMBER:
            if _is_number(value):
                return float(value)
            if isinstance(value, str):
                try:
                    return float(value)
                except ValueError:
                    pass
        elif field_type is FieldType.DATE:
            ms = to_epoch_ms(value)
            if ms is not None:
                return ms
        elif field_type.is_textual:
            if isinstance(value, str) or _is_number(value):
                return str(value).casefold()

        which = "filter value" if is_target else "value"
        raise EvaluationError(
            f"Cannot compare {which} {value!r} of field '{f.field}' as {field_type.value}",
            filter_type=f.type,
            node_id=node.id,
            field_name=f.field,
        )

    def _match_relation(self, f: RelationFilter, node: Node) -> bool:
        if f.direction is RelationDirection.OUTGOING:
            related = self._outgoing(node, f.relation_type)
        else:
            related = [
                source
                for source, relation in self.view.incoming(node.id)
                if f.relation_type is None or relation == f.relation_type
            ]
        found = f.target_node_id in related if f.target_node_id else bool(related)
        return not found if f.negate else found

    def _outgoing(self, node: Node, relation_type: str | None) -> list[str]:
        result: list[str] = []
        if relation_type in (None, CHILD_OF):
            if node.owner_id and self.view.is_live(node.owner_id):
                result.append(node.owner_id)
            if relation_type == CHILD_OF:
                return result
        for name, values in node.properties.items():
            if relation_type is not None and name != relation_type:
                continue
            field_type = self.view.field_type(name)
            if field_type is None or not field_type.is_reference:
                continue
            result.extend(
                pv.value for pv in values if isinstance(pv.value, str) and self.view.is_live(pv.value)
            )
        return result

    def _match_temporal(self, f: TemporalFilter, node: Node) -> bool:
        if f.field == CREATED_AT_KEY:
            moment = node.created_at
        elif f.field == UPDATED_AT_KEY:
            moment = node.updated_at
        else:
            raw = node.get_value(f.field)
            if raw is None:
                return False
            moment = to_epoch_ms(raw)
            if moment is None:
                raise EvaluationError(
                    f"Value {raw!r} of field '{f.field}' is not a date",
                    filter_type=f.type,
                    node_id=node.id,
                    field_name=f.field,
                )

        if f.op is TemporalOp.WITHIN:
            return self.now_ms - f.days * DAY_MS <= moment <= self.now_ms
        bound = to_epoch_ms(f.date)
        if f.op is TemporalOp.BEFORE:
            return moment < bound
        return moment > bound

    # Sorting

    def sort_key(self, node: Node, spec: SortSpec) -> tuple[int, Any] | None:
        """Comparable key for a node, or None to sort it last."""
        if spec.field == CONTENT_KEY:
            return (1, node.content.casefold()) if node.content else None
        if spec.field == CREATED_AT_KEY:
            return (0, node.created_at)
        if spec.field == UPDATED_AT_KEY:
            return (0, node.updated_at)

        value = node.get_value(spec.field)
        if value is None:
            return None
        if self.view.field_type(spec.field) is FieldType.DATE:
            ms = to_epoch_ms(value)
            if ms is not None:
                return (0, ms)
        if _is_number(value) or isinstance(value, bool):
            return (0, float(value))
        if isinstance(value, str):
            return (1, value.casefold())
        return (2, json.dumps(value, sort_keys=True, default=str))


def _is_definition(node: Node) -> bool:
    system_id = node.system_id or ""
    return system_id.startswith(SUPERTAG_PREFIX) or system_id.startswith(FIELD_PREFIX)


def evaluate_query(
    definition: QueryDefinition,
    view: GraphSnapshot,
    now: int | None = None,
) -> list[str]:
    """Evaluate a query against a snapshot.

    Args:
        definition: Query to evaluate
        view: Read-only store snapshot
        now: Reference time for relative temporal filters (Unix ms);
            defaults to the snapshot time

    Returns:
        Matching node ids, sorted and limited per the definition

    Raises:
        EvaluationError: If a filter meets malformed data
    """
    evaluation = _Evaluation(view, view.taken_at if now is None else now)

    matched = [
        node
        for node in view.live_nodes()
        if (definition.include_system or not _is_definition(node))
        and all(evaluation.matches(f, node) for f in definition.filters)
    ]

    if definition.sort is not None:
        keyed = [(node, evaluation.sort_key(node, definition.sort)) for node in matched]
        present = [(node, key) for node, key in keyed if key is not None]
        missing = [node for node, key in keyed if key is None]
        present.sort(
            key=lambda item: item[1],
            reverse=definition.sort.direction is SortDirection.DESC,
        )
        matched = [node for node, _ in present] + missing

    ids = [node.id for node in matched]
    if definition.limit is not None:
        ids = ids[: definition.limit]
    return ids
