"""Unified schema catalog for both backends.

The catalog introspects the active session with SQLAlchemy's inspector, which reads
PRAGMA metadata on SQLite and pg_catalog/information_schema on PostgreSQL, and
normalizes the result into immutable descriptors. A refresh replaces the whole
snapshot at once, so readers never see a mix of old and new tables.
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple
import logging
import threading

from sqlalchemy import inspect
from sqlalchemy.exc import CompileError, SQLAlchemyError

from dualdb.db.connection import Session
from dualdb.errors import CatalogError, ErrorKind, TableNotFoundError

logger = logging.getLogger(__name__)

# Timeout for introspection of the whole schema (seconds)
_INTROSPECTION_TIMEOUT = 5


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: str
    nullable: bool = True
    primary_key: bool = False
    pk_ordinal: Optional[int] = None
    has_default: bool = False
    default: Optional[str] = None


@dataclass(frozen=True)
class ForeignKeyDescriptor:
    column: str
    referenced_table: str
    referenced_column: str
    name: Optional[str] = None


@dataclass(frozen=True)
class IndexDescriptor:
    name: str
    columns: Tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    columns: Tuple[ColumnDescriptor, ...]
    foreign_keys: Tuple[ForeignKeyDescriptor, ...] = ()
    indexes: Tuple[IndexDescriptor, ...] = ()

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key(self) -> List[str]:
        """Primary key column names ordered by their position in the key."""
        pk_cols = [c for c in self.columns if c.primary_key]
        return [c.name for c in sorted(pk_cols, key=lambda c: c.pk_ordinal or 0)]

    @property
    def unique_columns(self) -> List[str]:
        """Single columns that identify a row: a one-column primary key or unique index."""
        out = []
        pk = self.primary_key
        if len(pk) == 1:
            out.append(pk[0])
        for idx in self.indexes:
            if idx.unique and len(idx.columns) == 1 and idx.columns[0] not in out:
                out.append(idx.columns[0])
        return out


@dataclass(frozen=True)
class CatalogSnapshot:
    identity: str
    version: int
    tables: Mapping[str, TableDescriptor]
    views: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.tables)

    @property
    def table_names(self) -> List[str]:
        return list(self.tables.keys())


def _call_with_timeout(func, timeout: float, on_timeout=None):
    """Run func() in a background thread and return its result or raise on error/timeout.

    On timeout ``on_timeout`` is called (used to interrupt the backend) and the thread is
    joined before TimeoutError is raised, so the connection is never left in use.
    """
    result = {"ok": False, "value": None, "error": None}

    def _target():
        try:
            result["value"] = func()
            result["ok"] = True
        except Exception as e:
            result["error"] = e

    thr = threading.Thread(target=_target, daemon=True)
    thr.start()
    thr.join(timeout)
    if thr.is_alive():
        if on_timeout is not None:
            on_timeout()
        thr.join()
        raise TimeoutError(f"Operation timed out after {timeout} seconds")
    if result["error"] is not None:
        raise result["error"]
    return result["value"]


def _type_name(sa_type) -> str:
    if sa_type is None:
        return ""
    try:
        return str(sa_type)
    except CompileError:
        # NullType: SQLite columns declared without a type
        return ""


def _introspect_table(inspector, table_name: str, schema: Optional[str]) -> TableDescriptor:
    pk = inspector.get_pk_constraint(table_name, schema=schema) or {}
    pk_cols = pk.get("constrained_columns") or []

    columns = []
    for col in inspector.get_columns(table_name, schema=schema):
        name = col["name"]
        default = col.get("default")
        columns.append(ColumnDescriptor(
            name=name,
            type=_type_name(col.get("type")),
            nullable=bool(col.get("nullable", True)),
            primary_key=name in pk_cols,
            pk_ordinal=pk_cols.index(name) + 1 if name in pk_cols else None,
            has_default=default is not None,
            default=None if default is None else str(default),
        ))

    foreign_keys = []
    for fk in inspector.get_foreign_keys(table_name, schema=schema):
        # composite keys become one descriptor per column pair
        for src, dst in zip(fk.get("constrained_columns") or [], fk.get("referred_columns") or []):
            foreign_keys.append(ForeignKeyDescriptor(
                column=src,
                referenced_table=fk.get("referred_table"),
                referenced_column=dst,
                name=fk.get("name"),
            ))

    indexes = []
    for idx in inspector.get_indexes(table_name, schema=schema):
        cols = tuple(c for c in (idx.get("column_names") or []) if c is not None)
        indexes.append(IndexDescriptor(name=idx.get("name") or "", columns=cols, unique=bool(idx.get("unique"))))

    # SQLite reports UNIQUE constraints only here, not as indexes
    indexed = {i.columns for i in indexes}
    for uc in inspector.get_unique_constraints(table_name, schema=schema):
        cols = tuple(uc.get("column_names") or [])
        if cols and cols not in indexed:
            name = uc.get("name") or f"uq_{table_name}_{'_'.join(cols)}"
            indexes.append(IndexDescriptor(name=name, columns=cols, unique=True))
            indexed.add(cols)

    return TableDescriptor(
        name=table_name,
        columns=tuple(columns),
        foreign_keys=tuple(foreign_keys),
        indexes=tuple(indexes),
    )


def introspect(conn, schema: Optional[str] = None) -> Tuple[Dict[str, TableDescriptor], Tuple[str, ...]]:
    """Read every table and view visible on ``conn``."""
    inspector = inspect(conn)
    tables: Dict[str, TableDescriptor] = {}
    for name in inspector.get_table_names(schema=schema):
        if name.startswith("sqlite_"):
            continue
        tables[name] = _introspect_table(inspector, name, schema)
    views = tuple(sorted(inspector.get_view_names(schema=schema)))
    return tables, views


class SchemaCatalog:
    """Versioned, per-session cache of the database schema.

    ``refresh()`` queries the backend; ``get()`` only ever looks at the current
    snapshot. A failed refresh leaves the last good snapshot in place.
    """

    def __init__(self, session: Session, timeout: float = _INTROSPECTION_TIMEOUT):
        self.session = session
        self.timeout = timeout
        self._snapshot: Optional[CatalogSnapshot] = None
        self._version = 0

    @property
    def snapshot(self) -> Optional[CatalogSnapshot]:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version

    def refresh(self) -> CatalogSnapshot:
        session = self.session
        with session.acquire() as conn:
            def _run():
                try:
                    return introspect(conn, session.schema)
                finally:
                    # introspection autobegins a read transaction; end it unless the user owns it
                    if not session.in_user_transaction():
                        conn.rollback()

            try:
                tables, views = _call_with_timeout(_run, self.timeout, on_timeout=session.interrupt)
            except TimeoutError as exc:
                logger.warning("Schema introspection timed out for %s", session.identity)
                raise CatalogError("Schema introspection timed out", kind=ErrorKind.INTROSPECTION_FAILED,
                                   backend_message=str(exc)) from exc
            except SQLAlchemyError as exc:
                logger.debug("Schema introspection failed for %s", session.identity, exc_info=True)
                raise CatalogError("Schema introspection failed", kind=ErrorKind.INTROSPECTION_FAILED,
                                   backend_message=str(getattr(exc, "orig", None) or exc)) from exc

        self._version += 1
        snapshot = CatalogSnapshot(
            identity=session.identity,
            version=self._version,
            tables=MappingProxyType(tables),
            views=views,
        )
        self._snapshot = snapshot
        logger.debug("Catalog for %s refreshed: version=%d tables=%d views=%d",
                     session.identity, snapshot.version, len(tables), len(views))
        return snapshot

    def get(self, table_name: str) -> TableDescriptor:
        snapshot = self._snapshot
        if snapshot is None or table_name not in snapshot.tables:
            raise TableNotFoundError(table_name)
        return snapshot.tables[table_name]

    def find(self, table_name: str) -> Optional[TableDescriptor]:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return snapshot.tables.get(table_name)
