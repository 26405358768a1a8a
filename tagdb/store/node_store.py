"""
SQLite-backed node store for tagdb.

This module owns nodes, their multi-valued properties, supertags (typed,
single-parent inheritance tags) and relations, and exposes the read/write
primitives the rest of the engine builds on.

Every mutating operation commits its transaction and then emits exactly one
MutationEvent on the EventBus, stamped with the next sequence number.

Invariants:
    - Mutations are serialized by a reentrant lock that is held across
      commit and emit (single writer)
    - All writes are atomic (single transaction)
    - The supertag inheritance graph is acyclic; a cyclic assignment raises
      CycleDetectedError before anything is written
    - Writes to missing or soft-deleted nodes raise NotFoundError
    - Operations that would change nothing (adding a supertag a node already
      has, clearing an empty field) return without emitting

How to change safely:
    - New mutations must go through _transaction() and _publish()
    - Keep event payloads complete enough for
      get_mutation_affected_dependencies(); a missing marker is a missed
      subscription update
    - Test with a file-backed database as well as ":memory:"
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any

from ..errors import CycleDetectedError, NotFoundError
from ..events import EventBus, MutationEvent, MutationKind
from .schema import (
    CHILD_OF,
    EXTENDS_FIELD,
    FIELD_TYPE_FIELD,
    SCHEMA_SQL,
    STRUCTURAL_FIELDS,
    SUPERTAG_FIELD,
    SYSTEM_FIELDS,
    SYSTEM_SUPERTAGS,
)
from .types import (
    FIELD_PREFIX,
    SUPERTAG_PREFIX,
    FieldType,
    GraphSnapshot,
    Node,
    PropertyValue,
    SupertagRef,
    field_name,
    infer_value_kind,
    supertag_system_id,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Value of type {type(value).__name__} is not JSON serializable")


def encode_value(value: Any) -> str:
    """Encode a property value for storage."""
    return json.dumps(value, default=_json_default)


@dataclass(frozen=True)
class _FieldDef:
    node_id: str
    name: str
    system_id: str
    field_type: FieldType


@dataclass(frozen=True)
class _SupertagDef:
    node_id: str
    system_id: str
    name: str
    parent_node_id: str | None
    deleted: bool


class NodeStore:
    """SQLite store for nodes, properties, supertags and relations.

    Thread safety:
        A single connection is shared behind a reentrant lock. Listeners
        invoked during emit run on the writer's thread and may write back
        into the store; their events are delivered after the current one.

    Example:
        >>> bus = EventBus()
        >>> store = NodeStore(bus)
        >>> store.define_field("status", FieldType.SELECT)
        >>> store.define_supertag("task")
        >>> task = store.create_node(
        ...     "Write report",
        ...     supertags=["task"],
        ...     properties={"status": "open"},
        ... )
        >>> store.set_property(task.id, "status", "done")
    """

    def __init__(
        self,
        bus: EventBus,
        db_path: str = ":memory:",
        busy_timeout_ms: int = 5000,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Open (and bootstrap) the store.

        Args:
            bus: Event bus receiving one event per mutation
            db_path: SQLite database path or ":memory:"
            busy_timeout_ms: SQLite busy timeout
            clock: Millisecond clock, injectable for tests
        """
        self.bus = bus
        self.db_path = db_path
        self._clock = clock or _now_ms
        self._lock = threading.RLock()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            db_path,
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA_SQL)

        row = self._conn.execute("SELECT value FROM store_meta WHERE key = 'sequence'").fetchone()
        self._sequence = int(row["value"])
        self._system_field_ids: dict[str, str] = {}
        self.bootstrap()

    # ------------------------------------------------------------------
    # Connection and transaction helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def _advance_sequence(self, conn: sqlite3.Connection) -> int:
        sequence = self._sequence + 1
        conn.execute(
            "UPDATE store_meta SET value = ? WHERE key = 'sequence'",
            (str(sequence),),
        )
        return sequence

    def _publish(
        self,
        sequence: int,
        kind: MutationKind,
        node_id: str,
        timestamp_ms: int,
        **payload: Any,
    ) -> MutationEvent:
        self._sequence = sequence
        enclosing = self.bus.current_event
        event = MutationEvent(
            sequence=sequence,
            kind=kind,
            node_id=node_id,
            timestamp_ms=timestamp_ms,
            depth=enclosing.depth + 1 if enclosing is not None else 0,
            **payload,
        )
        self.bus.emit(event)
        return event

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the writer lock so that no mutation commits meanwhile."""
        with self._lock:
            yield

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def now(self) -> int:
        """Current time of the store clock (Unix ms)."""
        return self._clock()

    @property
    def sequence(self) -> int:
        """Sequence number of the last committed mutation."""
        return self._sequence

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def bootstrap(self) -> None:
        """Create built-in supertags and fields if they are missing.

        Bootstrap rows are written directly and emit no events; it runs from
        the constructor before anything can listen.
        """
        with self._lock:
            conn = self._conn
            now = self._clock()
            ids: dict[str, str] = {}
            created: list[str] = []

            with self._transaction():
                for name in SYSTEM_SUPERTAGS:
                    system_id = SUPERTAG_PREFIX + name
                    node_id = self._ensure_system_node(conn, system_id, name, now, created)
                    ids[system_id] = node_id
                for name in SYSTEM_FIELDS:
                    system_id = FIELD_PREFIX + name
                    node_id = self._ensure_system_node(conn, system_id, name, now, created)
                    ids[system_id] = node_id
                    self._system_field_ids[name] = node_id

                supertag_field = ids[FIELD_PREFIX + SUPERTAG_FIELD]
                type_field = ids[FIELD_PREFIX + FIELD_TYPE_FIELD]
                for system_id in created:
                    if system_id.startswith(SUPERTAG_PREFIX):
                        tag = ids[SUPERTAG_PREFIX + "supertag"]
                    else:
                        tag = ids[SUPERTAG_PREFIX + "field"]
                        field_type = SYSTEM_FIELDS[system_id[len(FIELD_PREFIX) :]]
                        self._insert_value(conn, ids[system_id], type_field, field_type.value, 0, now)
                    self._insert_value(conn, ids[system_id], supertag_field, tag, 0, now)

            if created:
                logger.info("Bootstrapped system nodes", extra={"created_count": len(created)})

    def _ensure_system_node(
        self,
        conn: sqlite3.Connection,
        system_id: str,
        content: str,
        now: int,
        created: list[str],
    ) -> str:
        row = conn.execute("SELECT id FROM nodes WHERE system_id = ?", (system_id,)).fetchone()
        if row:
            return row["id"]
        node_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO nodes (id, content, system_id, owner_id, created_at, updated_at)
            VALUES (?, ?, ?, NULL, ?, ?)
            """,
            (node_id, content, system_id, now, now),
        )
        created.append(system_id)
        return node_id

    # ------------------------------------------------------------------
    # Row and definition lookups
    # ------------------------------------------------------------------

    def _fetch_row(self, conn: sqlite3.Connection, ref: str) -> sqlite3.Row | None:
        row = conn.execute("SELECT * FROM nodes WHERE id = ?", (ref,)).fetchone()
        if row is None:
            row = conn.execute("SELECT * FROM nodes WHERE system_id = ?", (ref,)).fetchone()
        return row

    def _require_live(self, conn: sqlite3.Connection, node_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
        if row is None or row["deleted_at"] is not None:
            raise NotFoundError(f"Node not found: {node_id}", "node", node_id)
        return row

    def _require_field(self, conn: sqlite3.Connection, name: str) -> _FieldDef:
        system_id = FIELD_PREFIX + field_name(name)
        row = conn.execute(
            "SELECT id FROM nodes WHERE system_id = ? AND deleted_at IS NULL",
            (system_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Field not found: {name}", "field", system_id)
        values = self._values(conn, row["id"], self._system_field_ids[FIELD_TYPE_FIELD])
        field_type = FieldType.from_str(values[0]) if values else FieldType.TEXT
        return _FieldDef(row["id"], field_name(name), system_id, field_type)

    def _require_supertag(self, conn: sqlite3.Connection, ref: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM nodes WHERE id = ?", (ref,)).fetchone()
        if row is None or not (row["system_id"] or "").startswith(SUPERTAG_PREFIX):
            row = conn.execute(
                "SELECT * FROM nodes WHERE system_id = ?",
                (supertag_system_id(ref),),
            ).fetchone()
        if row is None or row["deleted_at"] is not None:
            raise NotFoundError(f"Supertag not found: {ref}", "supertag", ref)
        return row

    def _values(self, conn: sqlite3.Connection, node_id: str, field_node_id: str) -> list[Any]:
        rows = conn.execute(
            """
            SELECT value FROM node_properties
            WHERE node_id = ? AND field_node_id = ?
            ORDER BY position, id
            """,
            (node_id, field_node_id),
        ).fetchall()
        return [json.loads(r["value"]) for r in rows]

    def _insert_value(
        self,
        conn: sqlite3.Connection,
        node_id: str,
        field_node_id: str,
        value: Any,
        position: int,
        now: int,
    ) -> None:
        conn.execute(
            """
            INSERT INTO node_properties
                (node_id, field_node_id, value, position, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (node_id, field_node_id, encode_value(value), position, now, now),
        )

    def _rewrite_values(
        self,
        conn: sqlite3.Connection,
        node_id: str,
        field_node_id: str,
        values: list[Any],
        now: int,
    ) -> None:
        conn.execute(
            "DELETE FROM node_properties WHERE node_id = ? AND field_node_id = ?",
            (node_id, field_node_id),
        )
        for position, value in enumerate(values):
            self._insert_value(conn, node_id, field_node_id, value, position, now)
        conn.execute("UPDATE nodes SET updated_at = ? WHERE id = ?", (now, node_id))

    def _supertags_of(self, conn: sqlite3.Connection, node_id: str) -> list[str]:
        """Live supertag system ids directly assigned to a node."""
        result = []
        for tag_id in self._values(conn, node_id, self._system_field_ids[SUPERTAG_FIELD]):
            row = conn.execute(
                "SELECT system_id FROM nodes WHERE id = ? AND deleted_at IS NULL",
                (tag_id,),
            ).fetchone()
            if row is not None:
                result.append(row["system_id"])
        return result

    def _ancestors(self, conn: sqlite3.Connection, system_id: str) -> list[str]:
        result: list[str] = []
        seen = {system_id}
        row = conn.execute("SELECT id FROM nodes WHERE system_id = ?", (system_id,)).fetchone()
        while row is not None:
            parents = self._values(conn, row["id"], self._system_field_ids[EXTENDS_FIELD])
            if not parents:
                break
            row = conn.execute(
                "SELECT id, system_id FROM nodes WHERE id = ? AND deleted_at IS NULL",
                (parents[0],),
            ).fetchone()
            if row is None or row["system_id"] in seen:
                break
            seen.add(row["system_id"])
            result.append(row["system_id"])
        return result

    def _ancestors_of_all(self, conn: sqlite3.Connection, system_ids: Iterable[str]) -> tuple[str, ...]:
        result: list[str] = []
        for system_id in system_ids:
            for ancestor in self._ancestors(conn, system_id):
                if ancestor not in result:
                    result.append(ancestor)
        return tuple(result)

    def _load_fields(self, conn: sqlite3.Connection) -> dict[str, _FieldDef]:
        rows = conn.execute(
            """
            SELECT n.id, n.system_id, p.value AS field_type
            FROM nodes n
            LEFT JOIN node_properties p
                ON p.node_id = n.id AND p.field_node_id = ?
            WHERE n.system_id LIKE 'field:%' AND n.deleted_at IS NULL
            """,
            (self._system_field_ids[FIELD_TYPE_FIELD],),
        ).fetchall()
        fields = {}
        for row in rows:
            raw_type = json.loads(row["field_type"]) if row["field_type"] else FieldType.TEXT.value
            name = row["system_id"][len(FIELD_PREFIX) :]
            fields[row["id"]] = _FieldDef(row["id"], name, row["system_id"], FieldType.from_str(raw_type))
        return fields

    def _load_supertags(self, conn: sqlite3.Connection) -> dict[str, _SupertagDef]:
        parents = {
            row["node_id"]: json.loads(row["value"])
            for row in conn.execute(
                "SELECT node_id, value FROM node_properties WHERE field_node_id = ?",
                (self._system_field_ids[EXTENDS_FIELD],),
            )
        }
        supertags = {}
        for row in conn.execute("SELECT * FROM nodes WHERE system_id LIKE 'supertag:%'"):
            supertags[row["id"]] = _SupertagDef(
                node_id=row["id"],
                system_id=row["system_id"],
                name=row["content"] or row["system_id"][len(SUPERTAG_PREFIX) :],
                parent_node_id=parents.get(row["id"]),
                deleted=row["deleted_at"] is not None,
            )
        return supertags

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _build_node(
        self,
        row: sqlite3.Row,
        prop_rows: Iterable[sqlite3.Row],
        fields: dict[str, _FieldDef],
        supertags: dict[str, _SupertagDef],
    ) -> Node:
        properties: dict[str, list[PropertyValue]] = {}
        tags: list[SupertagRef] = []
        parent: str | None = None

        for prop in prop_rows:
            field_def = fields.get(prop["field_node_id"])
            if field_def is None:
                continue
            value = json.loads(prop["value"])
            if field_def.name in STRUCTURAL_FIELDS:
                tag = supertags.get(value) if isinstance(value, str) else None
                if tag is None or tag.deleted:
                    continue
                if field_def.name == SUPERTAG_FIELD:
                    tags.append(SupertagRef(tag.node_id, tag.system_id, tag.name))
                else:
                    parent = tag.system_id
                continue
            properties.setdefault(field_def.name, []).append(
                PropertyValue(
                    value=value,
                    raw=prop["value"],
                    kind=infer_value_kind(value),
                    field_node_id=field_def.node_id,
                    field_name=field_def.name,
                    field_system_id=field_def.system_id,
                    order=prop["position"],
                )
            )

        return Node(
            id=row["id"],
            content=row["content"],
            system_id=row["system_id"],
            owner_id=row["owner_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
            properties=properties,
            supertags=tags,
            parent_supertag_id=parent,
        )

    def _assemble(self, conn: sqlite3.Connection, row: sqlite3.Row, include_inherited: bool = False) -> Node:
        fields = self._load_fields(conn)
        supertags = self._load_supertags(conn)
        node = self._build_node(row, self._prop_rows(conn, row["id"]), fields, supertags)
        if not include_inherited:
            return node

        # Root-first chain so that nearer supertags override farther ones
        chain: list[str] = []
        for tag in node.supertag_ids:
            for system_id in reversed([tag, *self._ancestors(conn, tag)]):
                if system_id not in chain:
                    chain.append(system_id)

        inherited: dict[str, list[PropertyValue]] = {}
        by_system_id = {d.system_id: d for d in supertags.values() if not d.deleted}
        for system_id in chain:
            definition = by_system_id.get(system_id)
            if definition is None:
                continue
            tag_row = conn.execute("SELECT * FROM nodes WHERE id = ?", (definition.node_id,)).fetchone()
            tag_node = self._build_node(tag_row, self._prop_rows(conn, definition.node_id), fields, supertags)
            inherited.update(tag_node.properties)

        for name, values in inherited.items():
            node.properties.setdefault(name, values)
        return node

    def _prop_rows(self, conn: sqlite3.Connection, node_id: str) -> list[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM node_properties WHERE node_id = ? ORDER BY position, id",
            (node_id,),
        ).fetchall()

    def _expand(self, field_def: _FieldDef, value: Any) -> list[Any]:
        """Lists become multiple values except on json fields."""
        if isinstance(value, (list, tuple)) and field_def.field_type is not FieldType.JSON:
            return list(value)
        return [value]

    def _relation_types(self, field_def: _FieldDef) -> tuple[str, ...]:
        return (field_def.name,) if field_def.field_type.is_reference else ()

    def _reject_structural(self, field_def: _FieldDef) -> None:
        if field_def.name in STRUCTURAL_FIELDS:
            raise ValueError(
                f"Field '{field_def.name}' is managed by add_supertag/remove_supertag/set_supertag_parent"
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_node(self, ref: str) -> Node | None:
        """Find a node by id or system id.

        Soft-deleted nodes are returned with deleted_at set.

        Args:
            ref: Node id or system id (e.g. "supertag:task")

        Returns:
            Assembled node, or None if absent
        """
        with self._lock:
            row = self._fetch_row(self._conn, ref)
            if row is None:
                return None
            return self._assemble(self._conn, row)

    def assemble_node(self, node_id: str, include_inherited: bool = False) -> Node:
        """Resolve a node into its fully-populated form.

        Args:
            node_id: Node id or system id
            include_inherited: Fill fields the node lacks with defaults from
                its supertags and their ancestors (nearest wins)

        Returns:
            Assembled node

        Raises:
            NotFoundError: If the node doesn't exist
        """
        with self._lock:
            row = self._fetch_row(self._conn, node_id)
            if row is None:
                raise NotFoundError(f"Node not found: {node_id}", "node", node_id)
            return self._assemble(self._conn, row, include_inherited)

    def get_supertag_ancestors(self, supertag: str) -> list[str]:
        """Ancestor system ids of a supertag, nearest first."""
        with self._lock:
            row = self._require_supertag(self._conn, supertag)
            return self._ancestors(self._conn, row["system_id"])

    def get_backlinks(self, node_id: str, relation_type: str | None = None) -> list[tuple[str, str]]:
        """Find live nodes relating to a node.

        Args:
            node_id: Target node id
            relation_type: Restrict to one relation type

        Returns:
            (source node id, relation type) pairs in write order
        """
        with self._lock:
            conn = self._conn
            fields = self._load_fields(conn)
            result: list[tuple[str, str]] = []
            rows = conn.execute(
                """
                SELECT p.node_id, p.field_node_id
                FROM node_properties p
                JOIN nodes n ON n.id = p.node_id
                WHERE p.value = ? AND n.deleted_at IS NULL
                ORDER BY p.id
                """,
                (encode_value(node_id),),
            ).fetchall()
            for row in rows:
                field_def = fields.get(row["field_node_id"])
                if field_def is None or field_def.name in STRUCTURAL_FIELDS:
                    continue
                if not field_def.field_type.is_reference:
                    continue
                if relation_type is None or relation_type == field_def.name:
                    result.append((row["node_id"], field_def.name))

            if relation_type in (None, CHILD_OF):
                for row in conn.execute(
                    "SELECT id FROM nodes WHERE owner_id = ? AND deleted_at IS NULL ORDER BY rowid",
                    (node_id,),
                ):
                    result.append((row["id"], CHILD_OF))
            return result

    def snapshot(self) -> GraphSnapshot:
        """Take an immutable view of the whole store for query evaluation."""
        with self._lock:
            conn = self._conn
            fields = self._load_fields(conn)
            supertags = self._load_supertags(conn)
            rows = conn.execute("SELECT * FROM nodes ORDER BY rowid").fetchall()
            prop_rows = conn.execute("SELECT * FROM node_properties ORDER BY position, id").fetchall()
            sequence = self._sequence
            taken_at = self._clock()

        grouped: dict[str, list[sqlite3.Row]] = defaultdict(list)
        for prop in prop_rows:
            grouped[prop["node_id"]].append(prop)

        nodes: dict[str, Node] = {}
        order: list[str] = []
        for row in rows:
            node = self._build_node(row, grouped.get(row["id"], ()), fields, supertags)
            nodes[node.id] = node
            if not node.is_deleted:
                order.append(node.id)

        supertag_parents: dict[str, str | None] = {}
        for definition in supertags.values():
            if definition.deleted:
                continue
            parent = supertags.get(definition.parent_node_id) if definition.parent_node_id else None
            supertag_parents[definition.system_id] = (
                parent.system_id if parent is not None and not parent.deleted else None
            )

        field_types = {d.name: d.field_type for d in fields.values()}

        backlinks: dict[str, list[tuple[str, str]]] = defaultdict(list)
        for node_id in order:
            node = nodes[node_id]
            if node.owner_id:
                backlinks[node.owner_id].append((node_id, CHILD_OF))
            for name, values in node.properties.items():
                field_type = field_types.get(name)
                if field_type is None or not field_type.is_reference:
                    continue
                for pv in values:
                    if isinstance(pv.value, str):
                        backlinks[pv.value].append((node_id, name))

        return GraphSnapshot(
            nodes=MappingProxyType(nodes),
            order=tuple(order),
            supertag_parents=MappingProxyType(supertag_parents),
            field_types=MappingProxyType(field_types),
            backlinks=MappingProxyType({k: tuple(v) for k, v in backlinks.items()}),
            sequence=sequence,
            taken_at=taken_at,
        )

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def define_field(self, name: str, field_type: FieldType | str = FieldType.TEXT) -> Node:
        """Define a field (idempotent for an identical definition).

        Raises:
            ValueError: If the field exists with a different type
        """
        if isinstance(field_type, str):
            field_type = FieldType.from_str(field_type)
        name = field_name(name)
        with self._lock:
            existing = self._conn.execute(
                "SELECT id FROM nodes WHERE system_id = ? AND deleted_at IS NULL",
                (FIELD_PREFIX + name,),
            ).fetchone()
            if existing is not None:
                current = self._require_field(self._conn, name)
                if current.field_type is not field_type:
                    raise ValueError(
                        f"Field '{name}' already defined as {current.field_type.value}, "
                        f"not {field_type.value}"
                    )
                return self.assemble_node(existing["id"])
            return self.create_node(
                name,
                supertags=[SUPERTAG_PREFIX + "field"],
                properties={FIELD_TYPE_FIELD: field_type.value},
                system_id=FIELD_PREFIX + name,
            )

    def define_supertag(
        self,
        name: str,
        parent: str | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> Node:
        """Define a supertag, optionally extending a parent.

        Args:
            name: Supertag name ("task" or "supertag:task")
            parent: Parent supertag reference
            defaults: Field values inherited by tagged nodes

        Returns:
            The supertag node (the existing one if already defined)
        """
        system_id = supertag_system_id(name)
        with self._lock:
            existing = self._conn.execute(
                "SELECT id FROM nodes WHERE system_id = ? AND deleted_at IS NULL",
                (system_id,),
            ).fetchone()
            if existing is not None:
                return self.assemble_node(existing["id"])
            parent_row = self._require_supertag(self._conn, parent) if parent else None
            return self._create_node(
                content=system_id[len(SUPERTAG_PREFIX) :],
                supertags=[SUPERTAG_PREFIX + "supertag"],
                properties=defaults or {},
                owner_id=None,
                system_id=system_id,
                node_id=None,
                parent_row=parent_row,
            )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_node(
        self,
        content: str | None = None,
        *,
        supertags: Iterable[str] = (),
        properties: dict[str, Any] | None = None,
        owner_id: str | None = None,
        system_id: str | None = None,
        node_id: str | None = None,
    ) -> Node:
        """Create a new node.

        Args:
            content: Human-readable content
            supertags: Supertag references ("task", "supertag:task" or id)
            properties: Initial field values; a list on a non-json field
                becomes multiple values
            owner_id: Owner (parent) node id
            system_id: Well-known identifier
            node_id: Optional specific node ID (generated if not provided)

        Returns:
            Created node

        Raises:
            NotFoundError: If a supertag, field or owner doesn't exist
            ValueError: If node_id or system_id is already taken
        """
        with self._lock:
            return self._create_node(
                content=content,
                supertags=list(supertags),
                properties=properties or {},
                owner_id=owner_id,
                system_id=system_id,
                node_id=node_id,
                parent_row=None,
            )

    def _create_node(
        self,
        *,
        content: str | None,
        supertags: list[str],
        properties: dict[str, Any],
        owner_id: str | None,
        system_id: str | None,
        node_id: str | None,
        parent_row: sqlite3.Row | None,
    ) -> Node:
        conn = self._conn
        node_id = node_id or str(uuid.uuid4())

        tag_rows: list[sqlite3.Row] = []
        for ref in supertags:
            row = self._require_supertag(conn, ref)
            if all(r["id"] != row["id"] for r in tag_rows):
                tag_rows.append(row)
        field_defs = {name: self._require_field(conn, name) for name in properties}
        for field_def in field_defs.values():
            self._reject_structural(field_def)
        if owner_id is not None:
            self._require_live(conn, owner_id)
        if conn.execute("SELECT 1 FROM nodes WHERE id = ?", (node_id,)).fetchone():
            raise ValueError(f"Node already exists: {node_id}")
        if system_id and conn.execute("SELECT 1 FROM nodes WHERE system_id = ?", (system_id,)).fetchone():
            raise ValueError(f"System id already in use: {system_id}")

        now = self._clock()
        with self._transaction():
            conn.execute(
                """
                INSERT INTO nodes (id, content, system_id, owner_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (node_id, content, system_id, owner_id, now, now),
            )
            for position, row in enumerate(tag_rows):
                self._insert_value(conn, node_id, self._system_field_ids[SUPERTAG_FIELD], row["id"], position, now)
            if parent_row is not None:
                self._insert_value(conn, node_id, self._system_field_ids[EXTENDS_FIELD], parent_row["id"], 0, now)
            for name, value in properties.items():
                field_def = field_defs[name]
                for position, item in enumerate(self._expand(field_def, value)):
                    self._insert_value(conn, node_id, field_def.node_id, item, position, now)
            sequence = self._advance_sequence(conn)

        tag_ids = tuple(row["system_id"] for row in tag_rows)
        relation_types = tuple(
            t for field_def in field_defs.values() for t in self._relation_types(field_def)
        )
        if owner_id is not None:
            relation_types += (CHILD_OF,)

        self._publish(
            sequence,
            MutationKind.NODE_CREATED,
            node_id,
            now,
            system_id=system_id,
            field_names=tuple(d.name for d in field_defs.values()),
            supertag_ids=tag_ids,
            ancestor_supertag_ids=self._ancestors_of_all(conn, tag_ids),
            relation_types=relation_types,
            after_value=content,
        )

        logger.debug(
            "Created node",
            extra={"node_id": node_id, "supertags": list(tag_ids), "sequence": sequence},
        )
        return self._assemble(conn, self._fetch_row(conn, node_id))

    def set_property(self, node_id: str, field: str, value: Any, index: int | None = None) -> Node:
        """Set a field's value.

        Args:
            node_id: Node to write
            field: Field name
            value: New value (a list replaces all values on non-json fields)
            index: Replace only the value at this position; equal to the
                current count appends

        Returns:
            Updated node

        Raises:
            NotFoundError: If the node or field doesn't exist
            IndexError: If index is out of range
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            field_def = self._require_field(conn, field)
            self._reject_structural(field_def)
            before = self._values(conn, node_id, field_def.node_id)

            if index is None:
                after = self._expand(field_def, value)
            else:
                if index < 0 or index > len(before):
                    raise IndexError(f"Property index {index} out of range for '{field_def.name}'")
                after = list(before)
                if index == len(before):
                    after.append(value)
                else:
                    after[index] = value

            return self._write_values(
                row, field_def, before, after, MutationKind.PROPERTY_SET
            )

    def set_properties(self, node_id: str, values: dict[str, Any]) -> Node:
        """Set several fields in one transaction and one PROPERTY_SET event.

        The event's before_value/after_value are dicts keyed by field name.

        Raises:
            NotFoundError: If the node or any field doesn't exist
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            field_defs = [self._require_field(conn, name) for name in values]
            for field_def in field_defs:
                self._reject_structural(field_def)
            if not field_defs:
                return self._assemble(conn, row)

            before: dict[str, tuple[Any, ...]] = {}
            after: dict[str, tuple[Any, ...]] = {}
            now = self._clock()
            with self._transaction():
                for field_def, value in zip(field_defs, values.values()):
                    before[field_def.name] = tuple(self._values(conn, node_id, field_def.node_id))
                    expanded = self._expand(field_def, value)
                    self._rewrite_values(conn, node_id, field_def.node_id, expanded, now)
                    after[field_def.name] = tuple(json.loads(encode_value(v)) for v in expanded)
                sequence = self._advance_sequence(conn)

            self._publish(
                sequence,
                MutationKind.PROPERTY_SET,
                node_id,
                now,
                system_id=row["system_id"],
                field_names=tuple(before),
                supertag_ids=tuple(self._supertags_of(conn, node_id)),
                relation_types=tuple(t for d in field_defs for t in self._relation_types(d)),
                before_value=before,
                after_value=after,
            )
            return self._assemble(conn, self._fetch_row(conn, node_id))

    def add_property_value(self, node_id: str, field: str, value: Any) -> Node:
        """Append a value to a multi-valued field.

        Raises:
            NotFoundError: If the node or field doesn't exist
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            field_def = self._require_field(conn, field)
            self._reject_structural(field_def)
            before = self._values(conn, node_id, field_def.node_id)
            return self._write_values(
                row, field_def, before, [*before, value], MutationKind.PROPERTY_ADDED
            )

    def clear_property(self, node_id: str, field: str) -> Node:
        """Remove every value of a field.

        Raises:
            NotFoundError: If the node or field doesn't exist
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            field_def = self._require_field(conn, field)
            self._reject_structural(field_def)
            before = self._values(conn, node_id, field_def.node_id)
            if not before:
                return self._assemble(conn, row)
            return self._write_values(row, field_def, before, [], MutationKind.PROPERTY_CLEARED)

    def _write_values(
        self,
        row: sqlite3.Row,
        field_def: _FieldDef,
        before: list[Any],
        after: list[Any],
        kind: MutationKind,
    ) -> Node:
        conn = self._conn
        node_id = row["id"]
        now = self._clock()
        with self._transaction():
            self._rewrite_values(conn, node_id, field_def.node_id, after, now)
            sequence = self._advance_sequence(conn)

        self._publish(
            sequence,
            kind,
            node_id,
            now,
            system_id=row["system_id"],
            field_names=(field_def.name,),
            supertag_ids=tuple(self._supertags_of(conn, node_id)),
            relation_types=self._relation_types(field_def),
            before_value=tuple(before),
            after_value=tuple(json.loads(encode_value(v)) for v in after),
        )
        return self._assemble(conn, self._fetch_row(conn, node_id))

    def link_nodes(self, from_id: str, to_id: str, relation_type: str) -> Node:
        """Create a directed relation.

        "child-of" sets the owner; any other relation type names a node or
        nodes field on the source node.

        Raises:
            NotFoundError: If either node or the relation field doesn't exist
            ValueError: If the relation field is not a reference field
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, from_id)
            self._require_live(conn, to_id)

            if relation_type == CHILD_OF:
                if from_id == to_id:
                    raise ValueError("A node cannot be its own child")
                return self._set_owner(row, to_id, MutationKind.RELATION_LINKED)

            field_def = self._reference_field(conn, relation_type)
            before = self._values(conn, from_id, field_def.node_id)
            if field_def.field_type is FieldType.NODE:
                after = [to_id]
            elif to_id in before:
                return self._assemble(conn, row)
            else:
                after = [*before, to_id]
            return self._write_values(row, field_def, before, after, MutationKind.RELATION_LINKED)

    def unlink_nodes(self, from_id: str, to_id: str, relation_type: str) -> Node:
        """Remove a directed relation (no-op if absent)."""
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, from_id)

            if relation_type == CHILD_OF:
                if row["owner_id"] != to_id:
                    return self._assemble(conn, row)
                return self._set_owner(row, None, MutationKind.RELATION_UNLINKED)

            field_def = self._reference_field(conn, relation_type)
            before = self._values(conn, from_id, field_def.node_id)
            if to_id not in before:
                return self._assemble(conn, row)
            after = [v for v in before if v != to_id]
            return self._write_values(row, field_def, before, after, MutationKind.RELATION_UNLINKED)

    def _reference_field(self, conn: sqlite3.Connection, relation_type: str) -> _FieldDef:
        field_def = self._require_field(conn, relation_type)
        self._reject_structural(field_def)
        if not field_def.field_type.is_reference:
            raise ValueError(
                f"Relation type '{relation_type}' is a {field_def.field_type.value} field, "
                "not a node reference"
            )
        return field_def

    def _set_owner(self, row: sqlite3.Row, owner_id: str | None, kind: MutationKind) -> Node:
        conn = self._conn
        now = self._clock()
        with self._transaction():
            conn.execute(
                "UPDATE nodes SET owner_id = ?, updated_at = ? WHERE id = ?",
                (owner_id, now, row["id"]),
            )
            sequence = self._advance_sequence(conn)

        self._publish(
            sequence,
            kind,
            row["id"],
            now,
            system_id=row["system_id"],
            supertag_ids=tuple(self._supertags_of(conn, row["id"])),
            relation_types=(CHILD_OF,),
            before_value=row["owner_id"],
            after_value=owner_id,
        )
        return self._assemble(conn, self._fetch_row(conn, row["id"]))

    def update_content(self, node_id: str, content: str | None) -> Node:
        """Replace a node's content.

        Raises:
            NotFoundError: If the node doesn't exist
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            now = self._clock()
            with self._transaction():
                conn.execute(
                    "UPDATE nodes SET content = ?, updated_at = ? WHERE id = ?",
                    (content, now, node_id),
                )
                sequence = self._advance_sequence(conn)

            self._publish(
                sequence,
                MutationKind.NODE_UPDATED,
                node_id,
                now,
                system_id=row["system_id"],
                supertag_ids=tuple(self._supertags_of(conn, node_id)),
                before_value=row["content"],
                after_value=content,
            )
            return self._assemble(conn, self._fetch_row(conn, node_id))

    def delete_node(self, node_id: str) -> Node:
        """Soft-delete a node.

        The row and its properties are kept; the node disappears from
        queries, and supertags or relation targets it defined stop counting.

        Raises:
            NotFoundError: If the node doesn't exist or is already deleted
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            node = self._assemble(conn, row)
            fields = {d.name: d for d in self._load_fields(conn).values()}

            relation_types: list[str] = [
                name for name in node.properties if name in fields and fields[name].field_type.is_reference
            ]
            for _, relation in self.get_backlinks(node_id):
                if relation not in relation_types:
                    relation_types.append(relation)
            if node.owner_id is not None and CHILD_OF not in relation_types:
                relation_types.append(CHILD_OF)

            system_id = row["system_id"] or ""
            defines_schema = system_id.startswith(SUPERTAG_PREFIX) or system_id.startswith(FIELD_PREFIX)

            now = self._clock()
            with self._transaction():
                conn.execute(
                    "UPDATE nodes SET deleted_at = ?, updated_at = ? WHERE id = ?",
                    (now, now, node_id),
                )
                sequence = self._advance_sequence(conn)

            self._publish(
                sequence,
                MutationKind.NODE_DELETED,
                node_id,
                now,
                system_id=row["system_id"],
                field_names=tuple(node.properties),
                supertag_ids=tuple(node.supertag_ids),
                ancestor_supertag_ids=self._ancestors_of_all(conn, node.supertag_ids),
                relation_types=tuple(relation_types),
                before_value=row["content"],
                affects_all=defines_schema,
            )

            logger.debug("Deleted node", extra={"node_id": node_id, "sequence": sequence})
            return self._assemble(conn, self._fetch_row(conn, node_id))

    def add_supertag(self, node_id: str, supertag: str) -> Node:
        """Assign a supertag to a node.

        Raises:
            NotFoundError: If the node or supertag doesn't exist
            CycleDetectedError: If the node is a supertag that the assigned
                supertag inherits from (or is)
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            tag_row = self._require_supertag(conn, supertag)
            tag_id = tag_row["system_id"]
            current = self._values(conn, node_id, self._system_field_ids[SUPERTAG_FIELD])
            if tag_row["id"] in current:
                return self._assemble(conn, row)

            own_system_id = row["system_id"] or ""
            if own_system_id.startswith(SUPERTAG_PREFIX):
                lineage = [tag_id, *self._ancestors(conn, tag_id)]
                if own_system_id in lineage:
                    raise CycleDetectedError(own_system_id, tag_id, path=lineage)

            now = self._clock()
            with self._transaction():
                self._insert_value(
                    conn, node_id, self._system_field_ids[SUPERTAG_FIELD], tag_row["id"], len(current), now
                )
                conn.execute("UPDATE nodes SET updated_at = ? WHERE id = ?", (now, node_id))
                sequence = self._advance_sequence(conn)

            self._publish(
                sequence,
                MutationKind.SUPERTAG_ADDED,
                node_id,
                now,
                system_id=row["system_id"],
                field_names=(SUPERTAG_FIELD,),
                supertag_ids=(tag_id,),
                ancestor_supertag_ids=tuple(self._ancestors(conn, tag_id)),
                after_value=tag_id,
            )
            return self._assemble(conn, self._fetch_row(conn, node_id))

    def remove_supertag(self, node_id: str, supertag: str) -> Node:
        """Remove a supertag from a node (no-op if not assigned).

        Raises:
            NotFoundError: If the node or supertag doesn't exist
        """
        with self._lock:
            conn = self._conn
            row = self._require_live(conn, node_id)
            tag_row = self._require_supertag(conn, supertag)
            tag_id = tag_row["system_id"]
            field_node_id = self._system_field_ids[SUPERTAG_FIELD]
            current = self._values(conn, node_id, field_node_id)
            if tag_row["id"] not in current:
                return self._assemble(conn, row)

            now = self._clock()
            with self._transaction():
                self._rewrite_values(conn, node_id, field_node_id, [t for t in current if t != tag_row["id"]], now)
                sequence = self._advance_sequence(conn)

            self._publish(
                sequence,
                MutationKind.SUPERTAG_REMOVED,
                node_id,
                now,
                system_id=row["system_id"],
                field_names=(SUPERTAG_FIELD,),
                supertag_ids=(tag_id,),
                ancestor_supertag_ids=tuple(self._ancestors(conn, tag_id)),
                before_value=tag_id,
            )
            return self._assemble(conn, self._fetch_row(conn, node_id))

    def set_supertag_parent(self, supertag: str, parent: str | None) -> Node:
        """Set (or clear) a supertag's parent.

        Raises:
            NotFoundError: If either supertag doesn't exist
            CycleDetectedError: If parent is the supertag or one of its
                descendants; nothing is written
        """
        with self._lock:
            conn = self._conn
            tag_row = self._require_supertag(conn, supertag)
            tag_id = tag_row["system_id"]
            parent_row = self._require_supertag(conn, parent) if parent else None

            new_lineage: list[str] = []
            if parent_row is not None:
                parent_id = parent_row["system_id"]
                new_lineage = [parent_id, *self._ancestors(conn, parent_id)]
                if tag_id in new_lineage:
                    raise CycleDetectedError(tag_id, parent_id, path=new_lineage)

            old_lineage = self._ancestors(conn, tag_id)
            field_node_id = self._system_field_ids[EXTENDS_FIELD]
            now = self._clock()
            with self._transaction():
                self._rewrite_values(
                    conn, tag_row["id"], field_node_id, [parent_row["id"]] if parent_row else [], now
                )
                sequence = self._advance_sequence(conn)

            affected = list(old_lineage)
            affected.extend(a for a in new_lineage if a not in affected)
            self._publish(
                sequence,
                MutationKind.SUPERTAG_PARENT_SET,
                tag_row["id"],
                now,
                system_id=tag_id,
                field_names=(EXTENDS_FIELD,),
                supertag_ids=(tag_id,),
                ancestor_supertag_ids=tuple(affected),
                before_value=old_lineage[0] if old_lineage else None,
                after_value=new_lineage[0] if new_lineage else None,
            )

            logger.info(
                "Supertag parent changed",
                extra={"supertag": tag_id, "parent": new_lineage[0] if new_lineage else None},
            )
            return self._assemble(conn, self._fetch_row(conn, tag_row["id"]))

    @property
    def stats(self) -> dict[str, Any]:
        """Get store statistics."""
        with self._lock:
            nodes = self._conn.execute(
                "SELECT COUNT(*) AS c, SUM(deleted_at IS NOT NULL) AS d FROM nodes"
            ).fetchone()
            props = self._conn.execute("SELECT COUNT(*) AS c FROM node_properties").fetchone()
        return {
            "node_count": nodes["c"],
            "deleted_count": nodes["d"] or 0,
            "property_count": props["c"],
            "sequence": self._sequence,
        }
