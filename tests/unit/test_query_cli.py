"""
Unit tests for the query CLI.

Tests cover:
- Inline, file and saved-query sources
- Text and JSON output
- Exit codes for missing databases and invalid queries
"""

import json

import pytest

from tagdb.events import EventBus
from tagdb.query import PropertyFilter, QueryDefinition, SupertagFilter
from tagdb.reactive import SavedQueryStore
from tagdb.store import FieldType, NodeStore
from tagdb.tools.query_cli import QueryCLI, main

OPEN_TASKS = json.dumps(
    {
        "filters": [
            {"type": "supertag", "supertag": "task"},
            {"type": "property", "field": "status", "value": "open"},
        ]
    }
)


class TestQueryCLI:
    """Tests for the tagdb-query entry point."""

    @pytest.fixture
    def db_path(self, tmp_path):
        """Store file with two open tasks, one done task and a saved query."""
        path = str(tmp_path / "tagdb.sqlite")
        store = NodeStore(EventBus(), db_path=path)
        store.define_field("status", FieldType.SELECT)
        store.define_field("priority", FieldType.NUMBER)
        store.define_supertag("task")
        store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        store.create_node("Task B", supertags=["task"], properties={"status": "done"})
        store.create_node("Task C", supertags=["task"], properties={"status": "open", "priority": "high"})
        saved = SavedQueryStore(store).create(
            "Open tasks",
            QueryDefinition(
                filters=[SupertagFilter(supertag="task"), PropertyFilter(field="status", value="open")]
            ),
        )
        store.close()
        return {"path": path, "saved_id": saved.id}

    def run_main(self, argv):
        with pytest.raises(SystemExit) as exc_info:
            main(argv)
        return exc_info.value.code

    def test_inline_query_text_output(self, db_path, capsys):
        code = self.run_main(["--db", db_path["path"], "--query", OPEN_TASKS])
        out = capsys.readouterr().out
        assert code == 0
        lines = out.strip().splitlines()
        assert [line.split("\t")[1] for line in lines] == ["Task A", "Task C"]

    def test_file_query_json_output(self, db_path, tmp_path, capsys):
        query_file = tmp_path / "open.json"
        query_file.write_text(OPEN_TASKS, encoding="utf-8")

        code = self.run_main(["--db", db_path["path"], "--file", str(query_file), "--json"])
        data = json.loads(capsys.readouterr().out)

        assert code == 0
        assert data["count"] == 2
        assert [node["content"] for node in data["nodes"]] == ["Task A", "Task C"]
        assert data["nodes"][0]["properties"]["status"] == "open"

    def test_saved_query(self, db_path, capsys):
        code = self.run_main(["--db", db_path["path"], "--saved", db_path["saved_id"]])
        assert code == 0
        assert "Task A" in capsys.readouterr().out

    def test_unknown_saved_query(self, db_path, capsys):
        code = self.run_main(["--db", db_path["path"], "--saved", "missing"])
        assert code == 1
        assert "Query failed" in capsys.readouterr().err

    def test_invalid_query(self, db_path, capsys):
        code = self.run_main(["--db", db_path["path"], "--query", '{"filters": [{"type": "fuzzy"}]}'])
        assert code == 1
        assert "Invalid query" in capsys.readouterr().err

    def test_evaluation_error(self, db_path, capsys):
        """A typed comparison on malformed data exits 1."""
        query = json.dumps({"filters": [{"type": "property", "field": "priority", "op": "gt", "value": 1}]})
        code = self.run_main(["--db", db_path["path"], "--query", query])
        assert code == 1
        assert "Query failed" in capsys.readouterr().err

    def test_missing_database(self, tmp_path, capsys):
        code = self.run_main(["--db", str(tmp_path / "nope.sqlite"), "--query", OPEN_TASKS])
        assert code == 2
        assert "Database not found" in capsys.readouterr().err

    def test_cli_does_not_mutate(self, db_path):
        """Running a query leaves the store sequence unchanged."""
        cli = QueryCLI(db_path["path"])
        try:
            before = cli.store.sequence
            cli.run(QueryDefinition.from_json(OPEN_TASKS))
            assert cli.store.sequence == before
        finally:
            cli.close()
