"""
SQLite layout and built-in definitions for the tagdb node store.

Table schema:
    store_meta:
        - key TEXT PRIMARY KEY
        - value TEXT (currently only "sequence")

    nodes:
        - id TEXT PRIMARY KEY (UUID)
        - content TEXT
        - system_id TEXT UNIQUE ("supertag:<name>", "field:<name>", ...)
        - owner_id TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - deleted_at INTEGER (Unix ms, soft delete)

    node_properties:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - node_id TEXT
        - field_node_id TEXT (id of the field definition node)
        - value TEXT (JSON)
        - position INTEGER (order among the field's values)
        - created_at / updated_at INTEGER (Unix ms)
        - INDEX on value for backlink lookup

Supertags and fields are themselves nodes. A node's supertags are the values
of the built-in "supertag" field; a supertag's parent is the value of the
built-in "extends" field.
"""

from __future__ import annotations

from .types import FieldType

SCHEMA_VERSION = 1

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS store_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS nodes (
        id TEXT PRIMARY KEY,
        content TEXT,
        system_id TEXT UNIQUE,
        owner_id TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        deleted_at INTEGER
    );

    CREATE INDEX IF NOT EXISTS idx_nodes_owner ON nodes(owner_id);

    CREATE TABLE IF NOT EXISTS node_properties (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        node_id TEXT NOT NULL,
        field_node_id TEXT NOT NULL,
        value TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_props_node ON node_properties(node_id, field_node_id);
    CREATE INDEX IF NOT EXISTS idx_props_value ON node_properties(value);

    INSERT OR IGNORE INTO store_meta (key, value) VALUES ('sequence', '0');
    INSERT OR IGNORE INTO store_meta (key, value) VALUES ('schema_version', '1');
"""

# Built-in supertags (name -> content)
SYSTEM_SUPERTAGS: dict[str, str] = {
    "supertag": "Supertag",
    "field": "Field",
    "query": "Query",
    "computed_field": "Computed Field",
    "automation": "Automation",
}

# Built-in fields (name -> declared type)
SYSTEM_FIELDS: dict[str, FieldType] = {
    "supertag": FieldType.NODES,
    "extends": FieldType.NODE,
    "field_type": FieldType.TEXT,
    "query_definition": FieldType.JSON,
    "query_active": FieldType.BOOLEAN,
    "query_result_cache": FieldType.JSON,
    "query_evaluated_at": FieldType.DATE,
    "computed_value": FieldType.JSON,
    "automation_definition": FieldType.JSON,
    "automation_enabled": FieldType.BOOLEAN,
    "automation_state": FieldType.JSON,
}

SUPERTAG_FIELD = "supertag"
EXTENDS_FIELD = "extends"
FIELD_TYPE_FIELD = "field_type"

# Fields managed through dedicated operations and hidden from Node.properties
STRUCTURAL_FIELDS = frozenset({SUPERTAG_FIELD, EXTENDS_FIELD})

# Relation type resolved through nodes.owner_id
CHILD_OF = "child-of"
