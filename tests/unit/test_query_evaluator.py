"""
Unit tests for query definitions and the evaluator.

Tests cover:
- Each filter kind against a small graph
- Logical combinators
- Sorting with nulls last, and limits
- EvaluationError on malformed data
- Definition JSON parsing and validation
"""

import pytest
from pydantic import ValidationError

from tagdb.errors import EvaluationError
from tagdb.events import EventBus
from tagdb.query import (
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
    evaluate_query,
    to_epoch_ms,
)
from tagdb.query.evaluator import DAY_MS
from tagdb.store import FieldType, NodeStore

START_MS = 1_700_000_000_000


class TestEvaluator:
    """Tests for evaluate_query against a small task graph."""

    @pytest.fixture
    def store(self):
        """Store with people, tasks and bugs (bug extends task)."""
        store = NodeStore(EventBus(), clock=lambda: START_MS)
        store.define_field("status", FieldType.SELECT)
        store.define_field("priority", FieldType.NUMBER)
        store.define_field("due", FieldType.DATE)
        store.define_field("assignee", FieldType.NODE)
        store.define_supertag("task")
        store.define_supertag("bug", parent="task")
        store.define_supertag("person")
        return store

    @pytest.fixture
    def graph(self, store):
        alice = store.create_node("Alice", supertags=["person"])
        report = store.create_node(
            "Write report",
            supertags=["task"],
            properties={"status": "open", "priority": 2, "due": "2030-01-10"},
        )
        login = store.create_node(
            "Fix login",
            supertags=["bug"],
            properties={"status": "done", "priority": 5, "assignee": alice.id},
        )
        sprint = store.create_node("Plan sprint", supertags=["task"], properties={"status": "open"})
        return {"alice": alice.id, "report": report.id, "login": login.id, "sprint": sprint.id}

    def run(self, store, *filters, **kwargs):
        return evaluate_query(QueryDefinition(filters=filters, **kwargs), store.snapshot())

    def test_supertag_includes_descendants(self, store, graph):
        """Bugs match a task filter through inheritance."""
        assert self.run(store, SupertagFilter(supertag="task")) == [
            graph["report"],
            graph["login"],
            graph["sprint"],
        ]

    def test_supertag_direct_only(self, store, graph):
        result = self.run(store, SupertagFilter(supertag="task", include_inherited=False))
        assert result == [graph["report"], graph["sprint"]]

    def test_property_eq_and_neq(self, store, graph):
        """neq never matches nodes without the field."""
        assert self.run(store, PropertyFilter(field="status", value="open")) == [
            graph["report"],
            graph["sprint"],
        ]
        assert self.run(store, PropertyFilter(field="status", op=FilterOp.NEQ, value="open")) == [
            graph["login"]
        ]

    def test_property_numeric_comparison(self, store, graph):
        assert self.run(store, PropertyFilter(field="priority", op=FilterOp.GT, value=3)) == [graph["login"]]
        assert self.run(store, PropertyFilter(field="priority", op=FilterOp.LTE, value=5)) == [
            graph["report"],
            graph["login"],
        ]

    def test_property_is_empty(self, store, graph):
        """is_empty matches nodes that lack the field entirely."""
        result = self.run(
            store,
            SupertagFilter(supertag="task"),
            PropertyFilter(field="priority", op=FilterOp.IS_EMPTY),
        )
        assert result == [graph["sprint"]]

    def test_property_string_ops(self, store, graph):
        assert self.run(store, PropertyFilter(field="status", op=FilterOp.STARTS_WITH, value="OP")) == [
            graph["report"],
            graph["sprint"],
        ]
        assert self.run(store, PropertyFilter(field="status", op=FilterOp.CONTAINS, value="on")) == [
            graph["login"]
        ]

    def test_content_case_insensitive(self, store, graph):
        assert self.run(store, ContentFilter(query="REPORT")) == [graph["report"]]
        assert self.run(store, ContentFilter(query="REPORT", case_sensitive=True)) == []

    def test_relation_outgoing_and_incoming(self, store, graph):
        """Relations match in both directions."""
        assert self.run(store, RelationFilter(relation_type="assignee")) == [graph["login"]]
        assert self.run(
            store,
            RelationFilter(relation_type="assignee", direction=RelationDirection.INCOMING),
        ) == [graph["alice"]]

    def test_relation_negated_with_target(self, store, graph):
        result = self.run(
            store,
            SupertagFilter(supertag="task"),
            RelationFilter(relation_type="assignee", target_node_id=graph["alice"], negate=True),
        )
        assert result == [graph["report"], graph["sprint"]]

    def test_relation_to_deleted_target_stops_counting(self, store, graph):
        store.delete_node(graph["alice"])
        assert self.run(store, RelationFilter(relation_type="assignee")) == []

    def test_child_of(self, store, graph):
        child = store.create_node("Outline", owner_id=graph["report"])
        assert self.run(store, RelationFilter(relation_type="child-of", target_node_id=graph["report"])) == [
            child.id
        ]

    def test_temporal_date_field(self, store, graph):
        result = self.run(store, TemporalFilter(field="due", op="before", date="2030-02-01T00:00:00Z"))
        assert result == [graph["report"]]
        assert self.run(store, TemporalFilter(field="due", op="after", date="2030-02-01T00:00:00Z")) == []

    def test_temporal_within(self, store, graph):
        """within is relative to the reference time."""
        definition = QueryDefinition(
            filters=[SupertagFilter(supertag="person"), TemporalFilter(op="within", days=1)]
        )
        snapshot = store.snapshot()
        assert evaluate_query(definition, snapshot) == [graph["alice"]]
        assert evaluate_query(definition, snapshot, now=START_MS + 2 * DAY_MS) == []

    def test_has_field(self, store, graph):
        assert self.run(store, HasFieldFilter(field="due")) == [graph["report"]]
        result = self.run(store, SupertagFilter(supertag="task"), HasFieldFilter(field="due", negate=True))
        assert result == [graph["login"], graph["sprint"]]

    def test_logical_combinators(self, store, graph):
        tree = AndFilter(
            filters=(
                SupertagFilter(supertag="task"),
                OrFilter(
                    filters=(
                        PropertyFilter(field="priority", op=FilterOp.GT, value=4),
                        ContentFilter(query="sprint"),
                    )
                ),
            )
        )
        assert self.run(store, tree) == [graph["login"], graph["sprint"]]
        assert self.run(
            store,
            SupertagFilter(supertag="task"),
            NotFilter(filter=PropertyFilter(field="status", value="open")),
        ) == [graph["login"]]

    def test_sort_nulls_last_both_directions(self, store, graph):
        """Nodes without the sort field come last regardless of direction."""
        task = SupertagFilter(supertag="task")
        assert self.run(store, task, sort=SortSpec(field="priority")) == [
            graph["report"],
            graph["login"],
            graph["sprint"],
        ]
        assert self.run(store, task, sort=SortSpec(field="priority", direction=SortDirection.DESC)) == [
            graph["login"],
            graph["report"],
            graph["sprint"],
        ]

    def test_sort_by_content_and_limit(self, store, graph):
        task = SupertagFilter(supertag="task")
        assert self.run(store, task, sort=SortSpec(field="content")) == [
            graph["login"],
            graph["sprint"],
            graph["report"],
        ]
        assert self.run(store, task, sort=SortSpec(field="content"), limit=1) == [graph["login"]]

    def test_system_nodes_excluded_by_default(self, store, graph):
        """Definition nodes only appear with include_system."""
        assert self.run(store) == [graph["alice"], graph["report"], graph["login"], graph["sprint"]]
        task_def = store.find_node("supertag:task")
        assert task_def.id in self.run(store, include_system=True, limit=None)

    def test_deleted_nodes_never_match(self, store, graph):
        store.delete_node(graph["report"])
        assert graph["report"] not in self.run(store, SupertagFilter(supertag="task"))

    def test_malformed_number_raises(self, store, graph):
        """A typed comparison against garbage raises EvaluationError."""
        store.set_property(graph["sprint"], "priority", "abc")
        with pytest.raises(EvaluationError) as exc_info:
            self.run(store, PropertyFilter(field="priority", op=FilterOp.GT, value=1))
        assert exc_info.value.node_id == graph["sprint"]
        assert exc_info.value.field_name == "priority"

    def test_deterministic(self, store, graph):
        """Same snapshot and definition give the same output."""
        snapshot = store.snapshot()
        definition = QueryDefinition(filters=[SupertagFilter(supertag="task")], sort=SortSpec(field="status"))
        assert evaluate_query(definition, snapshot) == evaluate_query(definition, snapshot)


class TestQueryDefinition:
    """Tests for definition parsing and normalization."""

    def test_normalizes_references(self):
        definition = QueryDefinition(
            filters=[SupertagFilter(supertag="task"), PropertyFilter(field="field:status", value="open")]
        )
        assert definition.filters[0].supertag == "supertag:task"
        assert definition.filters[1].field == "status"

    def test_json_round_trip(self):
        """A nested definition survives JSON encoding."""
        definition = QueryDefinition(
            filters=[
                OrFilter(
                    filters=(
                        NotFilter(filter=HasFieldFilter(field="due")),
                        TemporalFilter(field="updated_at", op="within", days=7),
                    )
                )
            ],
            sort=SortSpec(field="priority", direction=SortDirection.DESC),
            limit=10,
        )
        assert QueryDefinition.from_json(definition.to_json()) == definition
        assert QueryDefinition.from_json(definition.to_dict()) == definition

    def test_parses_discriminated_dict(self):
        definition = QueryDefinition.from_json(
            {"filters": [{"type": "property", "field": "status", "op": "eq", "value": "open"}]}
        )
        assert isinstance(definition.filters[0], PropertyFilter)
        assert definition.limit == 500

    def test_rejects_unknown_filter_type(self):
        with pytest.raises(ValidationError):
            QueryDefinition.from_json({"filters": [{"type": "fuzzy", "query": "x"}]})

    def test_temporal_requires_bounds(self):
        with pytest.raises(ValidationError):
            TemporalFilter(op="within")
        with pytest.raises(ValidationError):
            TemporalFilter(op="before")

    def test_to_epoch_ms(self):
        assert to_epoch_ms("1970-01-02T00:00:00Z") == DAY_MS
        assert to_epoch_ms(42) == 42
        assert to_epoch_ms(True) is None
        assert to_epoch_ms("not a date") is None
