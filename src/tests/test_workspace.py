import sqlite3
import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dualdb.db.connection import Dialect, EmbeddedDescriptor
from dualdb.db.executor import BatchState
from dualdb.errors import ParseError, SessionStateError, TableNotFoundError
from dualdb.workspace import Workspace


@pytest.fixture
def db_file(tmp_path):
    path = tmp_path / "shop.db"
    conn = sqlite3.connect(str(path))
    conn.executescript("""
        CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email TEXT, age INTEGER);
        INSERT INTO users (id, name, age) VALUES (1, 'name-example1', 30), (2, 'name-example2', 40), (3, 'x', 50);
        CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER REFERENCES users(id));
    """)
    conn.close()
    return path


@pytest.fixture
def ws(db_file):
    w = Workspace()
    w.open_connection(str(db_file))
    yield w
    w.close()


def test_open_loads_schema(ws):
    assert ws.is_connected
    assert ws.database_name == "shop.db"
    assert ws.table_count == 2
    assert ws.list_tables() == ["orders", "users"]
    assert ws.get_table("users").primary_key == ["id"]
    with pytest.raises(TableNotFoundError):
        ws.get_table("nope")


def test_only_one_live_session(ws, db_file):
    with pytest.raises(SessionStateError):
        ws.open_connection(str(db_file))
    ws.close()
    ws.open_connection(EmbeddedDescriptor())
    assert ws.database_name == "SQLite"
    assert ws.table_count == 0


def test_calls_without_session_fail():
    w = Workspace()
    with pytest.raises(SessionStateError):
        w.execute_batch("SELECT 1")
    with pytest.raises(SessionStateError):
        w.refresh_schema()


def test_ddl_batch_refreshes_catalog_and_context(ws):
    before = ws.get_formatted_schema_context()
    assert ws.get_formatted_schema_context() is before
    version = ws.snapshot.version

    result = ws.execute_batch("CREATE TABLE reviews (id INTEGER PRIMARY KEY, body TEXT)", atomic=True)
    assert result.schema_changed
    assert ws.snapshot.version == version + 1
    assert "reviews" in ws.list_tables()
    after = ws.get_formatted_schema_context()
    assert after != before
    assert "- reviews" in after


def test_context_dialect_override(ws):
    assert ws.get_formatted_schema_context().startswith("-- Dialect: SQLite")
    assert ws.get_formatted_schema_context(Dialect.NETWORKED).startswith("-- Dialect: PostgreSQL")


def test_failed_atomic_batch_keeps_catalog_version(ws):
    version = ws.snapshot.version
    result = ws.execute_batch("CREATE TABLE t2 (x INTEGER); INSERT INTO missing VALUES (1);", atomic=True)
    assert result.final_state == BatchState.ROLLED_BACK
    assert ws.snapshot.version == version
    assert "t2" not in ws.list_tables()


def test_parse_error_surfaces(ws):
    with pytest.raises(ParseError):
        ws.execute_batch("SELECT 'x")


def test_row_edits_and_save(ws, db_file):
    assert ws.read_all() is None
    assert ws.save() is False

    rows = ws.fetch_rows("users")
    assert ws.update_row("users", rows[0], dict(rows[0], age=33)) == 1
    assert ws.delete_rows("users", "id", ["2", "3"]) == 2
    # nothing reaches the file before save
    assert sqlite3.connect(str(db_file)).execute("SELECT count(*) FROM users").fetchone()[0] == 3

    assert ws.save() is True
    check = sqlite3.connect(str(db_file))
    try:
        assert check.execute("SELECT id, age FROM users").fetchall() == [(1, 33)]
    finally:
        check.close()
    assert ws.save() is False


def test_row_edits_join_open_transaction(ws):
    version = ws.snapshot.version
    ws.execute_batch("BEGIN")
    assert ws.transaction_open
    rows = ws.fetch_rows("users")
    assert ws.update_row("users", rows[0], dict(rows[0], age=99)) == 1
    assert ws.refresh_schema().version == version + 1
    with pytest.raises(SessionStateError):
        ws.save()

    ws.execute_batch("ROLLBACK")
    assert not ws.transaction_open
    assert ws.fetch_rows("users")[0]["age"] == 30


def test_save_with_writer(ws):
    ws.execute_batch("DELETE FROM orders")
    ws.execute_batch("UPDATE users SET age = 1")
    captured = {}
    assert ws.save(writer=lambda path, data: captured.update(path=path, data=data)) is True
    assert captured["path"].endswith("shop.db")
    assert captured["data"][:16] == b"SQLite format 3\x00"


def test_schema_graph(ws):
    graph = ws.schema_graph()
    assert graph["levels"] == {"users": 0, "orders": 1}
    assert [(e.source_table, e.target_table) for e in graph["edges"]] == [("orders", "users")]
    assert graph["stats"].tables == 2
    assert graph["version"] == ws.snapshot.version


def test_background_batch(ws):
    seen = []
    worker = ws.start_batch("UPDATE users SET age = age + 1; SELECT age FROM users ORDER BY id",
                            on_result=seen.append)
    result = worker.wait(10)
    assert result.overall_success
    assert seen == [result]
    assert result.statements[1].rows == [(31,), (41,), (51,)]
