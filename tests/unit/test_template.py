"""
Unit tests for webhook payload templates.

Tests cover:
- Placeholder substitution and dotted paths
- Missing values, booleans and JSON rendering
- Escaped braces
- Structured payloads and node contexts
"""

import pytest

from tagdb.events import EventBus
from tagdb.reactive import build_node_context, render_payload, render_template, resolve_path
from tagdb.store import FieldType, NodeStore


class TestResolvePath:
    """Tests for resolve_path."""

    def test_nested_dicts_and_lists(self):
        context = {"node": {"tags": ["a", "b"], "meta": {"owner": "alice"}}}
        assert resolve_path(context, "node.meta.owner") == "alice"
        assert resolve_path(context, "node.tags.1") == "b"
        assert resolve_path(context, "node.tags.-1") == "b"

    def test_missing_steps_return_none(self):
        context = {"node": {"tags": ["a"]}}
        assert resolve_path(context, "node.missing") is None
        assert resolve_path(context, "node.tags.5") is None
        assert resolve_path(context, "node.tags.first") is None
        assert resolve_path(context, "node.tags.0.deeper") is None


class TestRenderTemplate:
    """Tests for render_template."""

    def test_substitutes_placeholders(self):
        """Whitespace inside braces is ignored."""
        assert render_template("{{content}} is {{ status }}", {"content": "Task A", "status": "open"}) == (
            "Task A is open"
        )

    def test_missing_and_none_render_empty(self):
        assert render_template("[{{missing}}][{{empty}}]", {"empty": None}) == "[][]"

    def test_value_formatting(self):
        """Booleans are lowercase; lists and dicts are compact JSON."""
        context = {"done": True, "tags": ["a", "b"], "meta": {"k": 1}, "n": 3}
        assert render_template("{{done}} {{tags}} {{meta}} {{n}}", context) == 'true ["a","b"] {"k":1} 3'

    def test_escaped_braces(self):
        assert render_template("\\{{content}} {{content}}", {"content": "x"}) == "{{content}} x"

    def test_no_placeholders(self):
        assert render_template("plain text", {}) == "plain text"


class TestRenderPayload:
    """Tests for render_payload."""

    def test_renders_string_leaves(self):
        payload = {"text": "{{content}}", "items": ["{{status}}", 5], "flag": False}
        rendered = render_payload(payload, {"content": "Task A", "status": "open"})
        assert rendered == {"text": "Task A", "items": ["open", 5], "flag": False}

    def test_does_not_mutate_input(self):
        payload = {"text": "{{content}}"}
        render_payload(payload, {"content": "x"})
        assert payload == {"text": "{{content}}"}


class TestBuildNodeContext:
    """Tests for build_node_context."""

    @pytest.fixture
    def node(self):
        store = NodeStore(EventBus())
        store.define_field("status", FieldType.SELECT)
        store.define_field("labels", FieldType.TEXT)
        store.define_supertag("task")
        return store.create_node(
            "Task A",
            supertags=["task"],
            properties={"status": "open", "labels": ["x", "y"]},
        )

    def test_field_shortcuts_and_node_keys(self, node):
        """Fields are reachable directly, under properties and under node."""
        context = build_node_context(node)
        assert render_template("{{content}} is {{status}}", context) == "Task A is open"
        assert render_template("{{properties.status}}", context) == "open"
        assert render_template("{{node.id}}", context) == node.id
        assert render_template("{{labels.1}}", context) == "y"
        assert context["supertags"] == ["supertag:task"]

    def test_extra_keys_win(self, node):
        context = build_node_context(node, status="overridden", event="added")
        assert context["status"] == "overridden"
        assert context["event"] == "added"

    def test_no_node(self):
        assert build_node_context(None, event="removed") == {"event": "removed"}
