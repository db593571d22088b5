import sys
from decimal import Decimal
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dualdb.db.connection import EmbeddedDescriptor, EmbeddedSession
from dualdb.db.executor import execute_script
from dualdb.db.metadata import SchemaCatalog
from dualdb.db.mutations import RowReconciler, changed_columns, coerce_identifier, values_equal
from dualdb.errors import (
    AmbiguousMatchError,
    ExecutionError,
    MissingPrimaryKeyError,
    MutationError,
    NoSuchRowError,
    TableNotFoundError,
)

SCHEMA = """
CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email TEXT, age INTEGER);
INSERT INTO users (id, name, email, age) VALUES (1, 'ann', 'ann@example.com', 30);
INSERT INTO users (id, name, email, age) VALUES (2, 'bob', NULL, 40);
INSERT INTO users (id, name, email, age) VALUES (3, 'cat', 'cat@example.com', 50);
CREATE TABLE tags (label TEXT, weight INTEGER);
INSERT INTO tags VALUES ('x', 1);
INSERT INTO tags VALUES ('x', 1);
"""


@pytest.fixture
def session():
    s = EmbeddedSession(EmbeddedDescriptor())
    execute_script(s, SCHEMA).raise_for_error()
    yield s
    s.close()


@pytest.fixture
def reconciler(session):
    catalog = SchemaCatalog(session)
    catalog.refresh()
    return RowReconciler(session, catalog)


def _rows(session, sql):
    with session.acquire() as conn:
        with conn.begin():
            return [tuple(r) for r in conn.exec_driver_sql(sql)]


def test_values_equal_is_type_strict():
    assert values_equal(None, None)
    assert not values_equal(None, 0)
    assert not values_equal(1, True)
    assert not values_equal(1, 1.0)
    assert values_equal("a", "a")


def test_changed_columns():
    before = {"id": 1, "name": "ann", "age": 30}
    after = {"id": 1, "name": "ann", "age": 31, "email": None}
    assert changed_columns(before, after) == {"age": 31, "email": None}


def test_coerce_identifier():
    assert coerce_identifier("1", "INTEGER") == 1
    assert coerce_identifier(" 2 ", "BIGINT") == 2
    assert coerce_identifier("1.5", "REAL") == 1.5
    assert coerce_identifier("1.50", "NUMERIC(10, 2)") == Decimal("1.50")
    assert coerce_identifier("true", "BOOLEAN") is True
    assert coerce_identifier("abc", "INTEGER") == "abc"
    assert coerce_identifier("007", "TEXT") == "007"


def test_update_sets_only_changed_columns(reconciler, session):
    before = {"id": 1, "name": "ann", "email": "ann@example.com", "age": 30}
    after = dict(before, age=31)
    assert reconciler.update("users", before, after) == 1
    assert _rows(session, "SELECT age FROM users WHERE id = 1") == [(31,)]
    assert session.is_dirty


def test_update_matches_null_values(reconciler, session):
    before = {"id": 2, "name": "bob", "email": None, "age": 40}
    after = dict(before, email="bob@example.com")
    assert reconciler.update("users", before, after) == 1
    assert _rows(session, "SELECT email FROM users WHERE id = 2") == [("bob@example.com",)]


def test_update_noop_returns_zero(reconciler, session):
    row = {"id": 1, "name": "ann", "email": "ann@example.com", "age": 30}
    assert reconciler.update("users", row, dict(row)) == 0


def test_update_stale_row_fails(reconciler, session):
    before = {"id": 1, "name": "ann", "email": "ann@example.com", "age": 30}
    execute_script(session, "UPDATE users SET age = 35 WHERE id = 1")
    with pytest.raises(NoSuchRowError):
        reconciler.update("users", before, dict(before, name="anne"))
    assert _rows(session, "SELECT name, age FROM users WHERE id = 1") == [("ann", 35)]


def test_update_trusting_primary_key_ignores_other_columns(reconciler, session):
    before = {"id": 1, "name": "ann", "email": "ann@example.com", "age": 30}
    execute_script(session, "UPDATE users SET age = 35 WHERE id = 1")
    assert reconciler.update("users", before, dict(before, name="anne"), trust_primary_key=True) == 1
    assert _rows(session, "SELECT name, age FROM users WHERE id = 1") == [("anne", 35)]


def test_update_ambiguous_match_changes_nothing(reconciler, session):
    before = {"label": "x", "weight": 1}
    with pytest.raises(AmbiguousMatchError) as ei:
        reconciler.update("tags", before, {"label": "y", "weight": 1})
    assert ei.value.matched == 2
    assert isinstance(ei.value, MutationError)
    assert _rows(session, "SELECT label FROM tags") == [("x",), ("x",)]


def test_update_backend_rejection(reconciler):
    before = {"id": 1, "name": "ann", "email": "ann@example.com", "age": 30}
    with pytest.raises(ExecutionError) as ei:
        reconciler.update("users", before, dict(before, name=None))
    assert "NOT NULL" in ei.value.backend_message


def test_update_value_with_quotes_is_bound(reconciler, session):
    before = {"id": 3, "name": "cat", "email": "cat@example.com", "age": 50}
    nasty = "x'; DROP TABLE users; --"
    assert reconciler.update("users", before, dict(before, name=nasty)) == 1
    assert _rows(session, "SELECT name FROM users WHERE id = 3") == [(nasty,)]


def test_delete_rows_by_primary_key(reconciler, session):
    assert reconciler.delete("users", "id", ["1", "2", "2"]) == 2
    assert _rows(session, "SELECT id FROM users") == [(3,)]


def test_delete_empty_list(reconciler, session):
    assert reconciler.delete("users", "id", []) == 0
    assert _rows(session, "SELECT count(*) FROM users") == [(3,)]


def test_delete_requires_unique_column(reconciler):
    with pytest.raises(MissingPrimaryKeyError):
        reconciler.delete("tags", "label", ["x"])
    with pytest.raises(MissingPrimaryKeyError):
        reconciler.delete("users", "name", ["ann"])


def test_delete_unknown_table(reconciler):
    with pytest.raises(TableNotFoundError):
        reconciler.delete("ghosts", "id", [1])


def test_mutations_join_caller_transaction(reconciler, session):
    before = {"id": 1, "name": "ann", "email": "ann@example.com", "age": 30}
    with session.acquire() as conn:
        trans = conn.begin()
        reconciler.update("users", before, dict(before, age=99), connection=conn)
        reconciler.delete("users", "id", [3], connection=conn)
        trans.rollback()
    assert _rows(session, "SELECT id, age FROM users ORDER BY id") == [(1, 30), (2, 40), (3, 50)]


def test_fetch_rows_ordered_by_primary_key(reconciler):
    rows = reconciler.fetch_rows("users", limit=2)
    assert [r["id"] for r in rows] == [1, 2]
    assert list(rows[0]) == ["id", "name", "email", "age"]
    assert reconciler.fetch_rows("users", limit=10, offset=2)[0]["name"] == "cat"
