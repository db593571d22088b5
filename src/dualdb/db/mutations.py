"""Translate grid edits into targeted UPDATE/DELETE statements.

Statements are built with SQLAlchemy Core (``table``/``column``/``bindparam``), so
identifiers are quoted by the dialect and values always travel as bound parameters.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy import and_, asc, bindparam, column as sa_column, select, table as sa_table
from sqlalchemy import delete as sa_delete, update as sa_update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from dualdb.db.connection import Session
from dualdb.db.metadata import SchemaCatalog, TableDescriptor
from dualdb.errors import (
    AmbiguousMatchError,
    ExecutionError,
    MissingPrimaryKeyError,
    NoSuchRowError,
    TableNotFoundError,
)

logger = logging.getLogger(__name__)

RowSnapshot = Dict[str, Any]

# PostgreSQL types without an equality operator; they cannot appear in a row-matching WHERE
_NON_COMPARABLE_TYPES = ("json", "xml", "point")


def values_equal(a: Any, b: Any) -> bool:
    """Equality that does not treat 1, 1.0 and True as the same cell value."""
    if a is None or b is None:
        return a is None and b is None
    return type(a) is type(b) and a == b


def changed_columns(before: RowSnapshot, after: RowSnapshot) -> Dict[str, Any]:
    return {col: val for col, val in after.items()
            if col not in before or not values_equal(before[col], val)}


def _type_family(declared: str) -> str:
    t = (declared or "").lower()
    if "bool" in t:
        return "bool"
    if "point" in t or "interval" in t:
        return "other"
    if "int" in t or "serial" in t:
        return "int"
    if any(k in t for k in ("real", "floa", "doub")):
        return "float"
    if "numeric" in t or "decimal" in t:
        return "decimal"
    return "other"


def coerce_identifier(value: Any, declared_type: str) -> Any:
    """Convert a grid identifier (often text) to the column's declared type.

    Values that do not parse are passed through unchanged so the backend reports
    the mismatch.
    """
    if not isinstance(value, str):
        return value
    family = _type_family(declared_type)
    text = value.strip()
    try:
        if family == "int":
            return int(text)
        if family == "float":
            return float(text)
        if family == "decimal":
            return Decimal(text)
    except (ValueError, InvalidOperation):
        return value
    if family == "bool" and text.lower() in ("true", "false", "t", "f", "1", "0"):
        return text.lower() in ("true", "t", "1")
    return value


def _in_transaction(conn: Connection, func):
    trans = conn.begin_nested() if conn.in_transaction() else conn.begin()
    with trans:
        return func(conn)


class RowReconciler:
    """Apply single-row updates and primary-key deletes through a session.

    Mutations commit immediately unless a ``connection`` already inside a
    transaction is passed, or a user statement left a transaction open; then
    they run in a savepoint of that transaction.
    """

    def __init__(self, session: Session, catalog: Optional[SchemaCatalog] = None):
        self.session = session
        self.catalog = catalog

    def _describe(self, table_name: str) -> Optional[TableDescriptor]:
        if self.catalog is None:
            return None
        return self.catalog.find(table_name)

    def _table(self, table_name: str, columns: Iterable[str]):
        return sa_table(table_name, *[sa_column(c) for c in columns], schema=self.session.schema)

    def _run(self, connection: Optional[Connection], func):
        """Run func(conn) in a transaction (or savepoint) that rolls back if func raises.

        A transaction that is already open, the caller's or one a user statement
        began, gets a savepoint instead of a new transaction.
        """
        if connection is not None:
            return _in_transaction(connection, func)
        with self.session.acquire() as conn:
            return _in_transaction(conn, func)

    def update(self, table_name: str, before: RowSnapshot, after: RowSnapshot,
               trust_primary_key: bool = False, connection: Optional[Connection] = None) -> int:
        """Update the single row that still equals ``before`` so it holds ``after``.

        Only changed columns are written. The WHERE clause matches every column of
        ``before`` (NULL-safe), or just the primary key when ``trust_primary_key``
        is set and the key is present. Returns the affected row count, which is 0
        only for a no-op call where ``before == after``.
        """
        changes = changed_columns(before, after)
        if not changes:
            logger.debug("No changes for row in %s; skipping update", table_name)
            return 0

        desc = self._describe(table_name)
        match_cols = list(before.keys())
        if trust_primary_key and desc is not None:
            pk = desc.primary_key
            if pk and all(c in before for c in pk):
                match_cols = pk
        if desc is not None:
            match_cols = [c for c in match_cols
                          if desc.column(c) is None or desc.column(c).type.lower() not in _NON_COMPARABLE_TYPES]
        if not match_cols:
            raise NoSuchRowError(f"No comparable prior values identify the row in {table_name}")

        tbl = self._table(table_name, {*changes.keys(), *match_cols})
        values = {}
        params: Dict[str, Any] = {}
        for i, (col, val) in enumerate(changes.items()):
            pname = f"v_{i}"
            values[tbl.c[col]] = bindparam(pname)
            params[pname] = val

        clauses = []
        for j, col in enumerate(match_cols):
            val = before[col]
            if val is None:
                clauses.append(tbl.c[col].is_(None))
            else:
                pname = f"w_{j}"
                clauses.append(tbl.c[col] == bindparam(pname))
                params[pname] = val

        stmt = sa_update(tbl).values(values)
        if clauses:
            stmt = stmt.where(and_(*clauses))

        def _apply(conn: Connection) -> int:
            res = conn.execute(stmt, params)
            count = res.rowcount if res.rowcount is not None else 0
            # raising inside the transaction rolls the update back
            if count == 0:
                raise NoSuchRowError(f"No row in {table_name} matches the last-read values; "
                                     "it was changed or deleted by someone else")
            if count > 1:
                raise AmbiguousMatchError(f"{count} rows in {table_name} match the row being edited; "
                                          "update refused", matched=count)
            return count

        try:
            count = self._run(connection, _apply)
        except DBAPIError as exc:
            raise ExecutionError(f"Update of {table_name} failed",
                                 backend_message=str(exc.orig or exc)) from exc
        self.session.mark_dirty()
        logger.debug("Updated row in %s: set=%s match=%s", table_name, list(changes), match_cols)
        return count

    def delete(self, table_name: str, primary_key_column: str, row_identifiers: Iterable[Any],
               connection: Optional[Connection] = None) -> int:
        """Delete every row whose ``primary_key_column`` is in ``row_identifiers``."""
        desc = self._describe(table_name)
        if desc is None:
            raise TableNotFoundError(table_name)
        if not primary_key_column or primary_key_column not in desc.unique_columns:
            raise MissingPrimaryKeyError(
                f"{table_name}.{primary_key_column or '?'} is not a primary key or unique column; "
                "rows cannot be targeted for deletion")

        declared = desc.column(primary_key_column).type
        ids: List[Any] = []
        for value in row_identifiers:
            coerced = coerce_identifier(value, declared)
            if coerced not in ids:
                ids.append(coerced)
        if not ids:
            return 0

        tbl = self._table(table_name, [primary_key_column])
        stmt = sa_delete(tbl).where(tbl.c[primary_key_column].in_(bindparam("ids", expanding=True)))

        def _apply(conn: Connection) -> int:
            res = conn.execute(stmt, {"ids": ids})
            return res.rowcount if res.rowcount is not None else 0

        try:
            count = self._run(connection, _apply)
        except DBAPIError as exc:
            raise ExecutionError(f"Delete from {table_name} failed",
                                 backend_message=str(exc.orig or exc)) from exc
        if count:
            self.session.mark_dirty()
        logger.debug("Deleted %d row(s) from %s by %s", count, table_name, primary_key_column)
        return count

    def fetch_rows(self, table_name: str, limit: int = 1000, offset: int = 0) -> List[RowSnapshot]:
        """Read rows as snapshots (column order preserved), ordered by primary key when known."""
        desc = self._describe(table_name)
        if desc is None:
            raise TableNotFoundError(table_name)
        tbl = self._table(table_name, desc.column_names)
        stmt = select(*tbl.c)
        pk = desc.primary_key
        if pk:
            stmt = stmt.order_by(*[asc(tbl.c[c]) for c in pk])
        stmt = stmt.limit(limit).offset(offset)
        try:
            with self.session.acquire() as conn:
                if conn.in_transaction():
                    return [dict(row._mapping) for row in conn.execute(stmt)]
                with conn.begin():
                    return [dict(row._mapping) for row in conn.execute(stmt)]
        except SQLAlchemyError as exc:
            raise ExecutionError(f"Reading {table_name} failed",
                                 backend_message=str(getattr(exc, "orig", None) or exc)) from exc
