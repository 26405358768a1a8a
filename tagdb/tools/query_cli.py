"""
Query CLI tool for tagdb.

Evaluates a query definition against a SQLite store and prints the matching
nodes, one per line (or as a JSON document).

Usage:
    python -m tagdb.tools.query_cli --db tagdb.sqlite --query '{"filters": [...]}'
    python -m tagdb.tools.query_cli --db tagdb.sqlite --file open_tasks.json --json
    python -m tagdb.tools.query_cli --db tagdb.sqlite --saved <saved-query-id>

Exit codes:
    0 - query evaluated
    1 - invalid query or evaluation error
    2 - database not found

Invariants:
    - The store is only read; no mutation events are emitted
    - Output order is the query's result order
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..errors import EvaluationError, NotFoundError
from ..events import EventBus
from ..query import QueryDefinition, evaluate_query
from ..reactive import SavedQueryStore
from ..store import Node, NodeStore

logger = logging.getLogger(__name__)


class QueryCLI:
    """Evaluate queries against a store file.

    Example:
        >>> cli = QueryCLI("tagdb.sqlite")
        >>> nodes = cli.run(QueryDefinition.from_json('{"filters": []}'))
        >>> print(cli.format(nodes))
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.store = NodeStore(EventBus(), db_path=db_path)

    def load_saved(self, saved_query_id: str) -> QueryDefinition:
        """Definition of a saved query stored in the database."""
        return SavedQueryStore(self.store).get(saved_query_id).definition

    def run(self, definition: QueryDefinition) -> list[Node]:
        """Evaluate a definition and return the matching nodes in order."""
        snapshot = self.store.snapshot()
        ids = evaluate_query(definition, snapshot)
        return [snapshot.nodes[node_id] for node_id in ids]

    def format(self, nodes: list[Node], as_json: bool = False) -> str:
        if as_json:
            output: dict[str, Any] = {
                "count": len(nodes),
                "nodes": [node.to_dict() for node in nodes],
            }
            return json.dumps(output, indent=2, sort_keys=True, default=str)
        return "\n".join(f"{node.id}\t{node.content or ''}" for node in nodes)

    def close(self) -> None:
        self.store.close()


def _read_definition(args: argparse.Namespace) -> QueryDefinition:
    if args.file:
        return QueryDefinition.from_json(Path(args.file).read_text(encoding="utf-8"))
    return QueryDefinition.from_json(args.query)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Evaluate a tagdb query")
    parser.add_argument("--db", required=True, help="Path to the SQLite store")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--query", help="Query definition as JSON")
    source.add_argument("--file", help="File containing the query definition JSON")
    source.add_argument("--saved", help="Id of a saved query in the store")
    parser.add_argument("--json", action="store_true", help="Print nodes as JSON")

    args = parser.parse_args(argv)

    if not Path(args.db).exists():
        print(f"Database not found: {args.db}", file=sys.stderr)
        sys.exit(2)

    cli = QueryCLI(args.db)
    try:
        definition = cli.load_saved(args.saved) if args.saved else _read_definition(args)
        nodes = cli.run(definition)
    except (ValidationError, ValueError) as e:
        print(f"Invalid query: {e}", file=sys.stderr)
        sys.exit(1)
    except (EvaluationError, NotFoundError) as e:
        print(f"Query failed: {e.message}", file=sys.stderr)
        sys.exit(1)
    finally:
        cli.close()

    output = cli.format(nodes, as_json=args.json)
    if output:
        print(output)
    sys.exit(0)


if __name__ == "__main__":
    main()
