"""
Saved queries for tagdb.

A SavedQuery is a QueryDefinition persisted as a node tagged #query, so it
lives (and is soft-deleted) like any other node. Its result cache is
written only by the SubscriptionService through record_results().

Invariants:
    - query_definition holds the definition as JSON
    - query_active defaults to True; False suspends automation bindings
    - query_result_cache / query_evaluated_at are never written by callers
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import NotFoundError
from ..query import QueryDefinition
from ..store import Node, NodeStore

logger = logging.getLogger(__name__)

QUERY_SUPERTAG = "supertag:query"
DEFINITION_FIELD = "query_definition"
ACTIVE_FIELD = "query_active"
RESULT_CACHE_FIELD = "query_result_cache"
EVALUATED_AT_FIELD = "query_evaluated_at"


@dataclass(frozen=True)
class SavedQuery:
    """A persisted query.

    Attributes:
        id: Node id of the saved query
        name: Content label
        definition: Parsed query definition
        active: Whether bindings on this query are live
        result_cache: Last delivered ordered result, if any
        evaluated_at: Time of the last cached evaluation (Unix ms)
    """

    id: str
    name: str
    definition: QueryDefinition
    active: bool = True
    result_cache: tuple[str, ...] | None = None
    evaluated_at: int | None = None


class SavedQueryStore:
    """CRUD over saved-query nodes.

    Example:
        >>> saved = SavedQueryStore(store)
        >>> query = saved.create("Open tasks", definition)
        >>> saved.set_active(query.id, False)
    """

    def __init__(self, store: NodeStore) -> None:
        self.store = store

    def _from_node(self, node: Node) -> SavedQuery:
        cache = node.get_value(RESULT_CACHE_FIELD)
        return SavedQuery(
            id=node.id,
            name=node.content or "",
            definition=QueryDefinition.from_json(node.get_value(DEFINITION_FIELD) or {}),
            active=node.get_value(ACTIVE_FIELD, True) is not False,
            result_cache=tuple(cache) if cache is not None else None,
            evaluated_at=node.get_value(EVALUATED_AT_FIELD),
        )

    def is_saved_query(self, node: Node | None) -> bool:
        return node is not None and not node.is_deleted and QUERY_SUPERTAG in node.supertag_ids

    def create(self, name: str, definition: QueryDefinition | dict[str, Any]) -> SavedQuery:
        """Persist a new saved query."""
        if isinstance(definition, dict):
            definition = QueryDefinition.from_json(definition)
        node = self.store.create_node(
            name,
            supertags=[QUERY_SUPERTAG],
            properties={
                DEFINITION_FIELD: definition.to_dict(),
                ACTIVE_FIELD: True,
            },
        )
        logger.info("Saved query created", extra={"saved_query_id": node.id, "saved_query_name": name})
        return self._from_node(node)

    def get(self, saved_query_id: str) -> SavedQuery:
        """Load a saved query.

        Raises:
            NotFoundError: If it doesn't exist, is deleted, or isn't a query
        """
        node = self.store.find_node(saved_query_id)
        if not self.is_saved_query(node):
            raise NotFoundError(
                f"Saved query not found: {saved_query_id}", "saved_query", saved_query_id
            )
        return self._from_node(node)

    def list(self, include_inactive: bool = True) -> list[SavedQuery]:
        snapshot = self.store.snapshot()
        result = [
            self._from_node(node)
            for node in snapshot.live_nodes()
            if QUERY_SUPERTAG in node.supertag_ids
        ]
        if not include_inactive:
            result = [q for q in result if q.active]
        return result

    def update_definition(
        self, saved_query_id: str, definition: QueryDefinition | dict[str, Any]
    ) -> SavedQuery:
        self.get(saved_query_id)
        if isinstance(definition, dict):
            definition = QueryDefinition.from_json(definition)
        node = self.store.set_property(saved_query_id, DEFINITION_FIELD, definition.to_dict())
        return self._from_node(node)

    def set_active(self, saved_query_id: str, active: bool) -> SavedQuery:
        """Activate or deactivate a saved query."""
        self.get(saved_query_id)
        node = self.store.set_property(saved_query_id, ACTIVE_FIELD, active)
        logger.info(
            "Saved query activation changed",
            extra={"saved_query_id": saved_query_id, "active": active},
        )
        return self._from_node(node)

    def delete(self, saved_query_id: str) -> None:
        self.get(saved_query_id)
        self.store.delete_node(saved_query_id)

    def record_results(self, saved_query_id: str, results: Sequence[str], evaluated_at: int) -> None:
        """Update the result cache. Called by SubscriptionService only."""
        node = self.store.find_node(saved_query_id)
        if not self.is_saved_query(node):
            logger.debug("Skipping cache write for missing saved query", extra={"saved_query_id": saved_query_id})
            return
        self.store.set_properties(
            saved_query_id,
            {RESULT_CACHE_FIELD: list(results), EVALUATED_AT_FIELD: evaluated_at},
        )
