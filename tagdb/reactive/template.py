"""
Payload templates for automation webhooks.

Placeholders are written {{path}} where path is a dotted lookup into the
render context ("content", "node.id", "status", "properties.tags.0").
A backslash before the braces (\\{{) emits literal braces.

Rendering rules:
    - Missing paths and None render as an empty string
    - Booleans render as "true"/"false"
    - Lists and dicts render as compact JSON
    - A dict or list payload is rendered leaf by leaf
"""

from __future__ import annotations

import json
import re
from typing import Any

from ..store import Node

_PLACEHOLDER = re.compile(r"\\\{\{|\{\{\s*([^{}]*?)\s*\}\}")

_MISSING = object()


def resolve_path(context: Any, path: str) -> Any:
    """Look up a dotted path; returns None when any step is missing."""
    current = context
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return None
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def render_template(template: str, context: dict[str, Any]) -> str:
    """Substitute every {{path}} placeholder in a string."""

    def replace(match: re.Match[str]) -> str:
        if match.group(0) == "\\{{":
            return "{{"
        return _stringify(resolve_path(context, match.group(1)))

    return _PLACEHOLDER.sub(replace, template)


def render_payload(payload: Any, context: dict[str, Any]) -> Any:
    """Render a string, or every string leaf of a dict/list payload."""
    if isinstance(payload, str):
        return render_template(payload, context)
    if isinstance(payload, dict):
        return {key: render_payload(value, context) for key, value in payload.items()}
    if isinstance(payload, list):
        return [render_payload(item, context) for item in payload]
    return payload


def build_node_context(node: Node | None, **extra: Any) -> dict[str, Any]:
    """Render context for a node.

    Top-level keys are the node's own attributes (id, content, ...) plus one
    shortcut per field name, so {{status}} and {{properties.status}} both
    work. The same dict is also reachable as {{node.*}}.
    """
    context: dict[str, Any] = {}
    if node is not None:
        data = node.to_dict()
        for name, value in data.get("properties", {}).items():
            context.setdefault(name, value)
        context.update(data)
        context["node"] = data
    context.update(extra)
    return context
