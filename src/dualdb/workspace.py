"""The entry surface the UI/editor layer talks to.

A Workspace holds at most one live session together with its schema catalog,
batch executor and row reconciler; the UI never reaches a backend directly.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging
import threading

from dualdb.db.connection import Descriptor, Dialect, Session, open_session
from dualdb.db.context import format_schema_context
from dualdb.db.executor import BatchExecutor, BatchResult
from dualdb.db.graph import compute_levels, relationship_edges, schema_stats
from dualdb.db.metadata import CatalogSnapshot, SchemaCatalog, TableDescriptor
from dualdb.db.mutations import RowReconciler, RowSnapshot
from dualdb.errors import CatalogError, SessionStateError
from dualdb.utils.settings import DEFAULT_SETTINGS
from dualdb.utils.worker import ExecutionWorker

logger = logging.getLogger(__name__)


class Workspace:
    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.settings = dict(DEFAULT_SETTINGS)
        if settings:
            self.settings.update(settings)
        self.session: Optional[Session] = None
        self.catalog: Optional[SchemaCatalog] = None
        self.executor: Optional[BatchExecutor] = None
        self.reconciler: Optional[RowReconciler] = None
        # (catalog version, dialect, max_tables, max_chars) -> formatted text
        self._context_cache: Dict[Tuple, str] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_open

    @property
    def database_name(self) -> Optional[str]:
        return self.session.database_name if self.session is not None else None

    @property
    def table_count(self) -> int:
        snapshot = self.catalog.snapshot if self.catalog is not None else None
        return len(snapshot) if snapshot is not None else 0

    @property
    def transaction_open(self) -> bool:
        """True while a BEGIN from an earlier batch has not been committed or rolled back."""
        return self.is_connected and self.session.in_user_transaction()

    def _require_session(self) -> Session:
        if self.session is None or not self.session.is_open:
            raise SessionStateError("No database is open")
        return self.session

    def open_connection(self, descriptor: Union[Descriptor, str]) -> Session:
        """Open a session and load its schema.

        Raises SessionStateError when a session is already live; the caller must
        close it first. A failed initial schema load leaves the session open with
        an empty catalog, to be retried with refresh_schema().
        """
        if self.session is not None and self.session.is_open:
            raise SessionStateError(f"A session is already open ({self.session.identity}); close it first")

        session = open_session(descriptor)
        self.session = session
        self.catalog = SchemaCatalog(session, timeout=self.settings["introspection_timeout"])
        self.executor = BatchExecutor(session, statement_timeout=self.settings["statement_timeout"],
                                      row_limit=self.settings["row_limit"])
        self.reconciler = RowReconciler(session, self.catalog)
        self._context_cache.clear()
        try:
            self.catalog.refresh()
        except CatalogError as exc:
            logger.warning("Initial schema load failed for %s: %s", session.identity, exc)
        return session

    def close(self) -> None:
        """Close the live session, if any, and discard everything derived from it."""
        session = self.session
        self.session = None
        self.catalog = None
        self.executor = None
        self.reconciler = None
        self._context_cache.clear()
        if session is not None:
            session.close()

    def refresh_schema(self) -> CatalogSnapshot:
        self._require_session()
        return self.catalog.refresh()

    @property
    def snapshot(self) -> Optional[CatalogSnapshot]:
        return self.catalog.snapshot if self.catalog is not None else None

    def get_table(self, table_name: str) -> TableDescriptor:
        self._require_session()
        return self.catalog.get(table_name)

    def list_tables(self) -> List[str]:
        snapshot = self.snapshot
        return sorted(snapshot.tables) if snapshot is not None else []

    def execute_batch(self, script: str, atomic: bool = False,
                      stop_event: Optional[threading.Event] = None) -> BatchResult:
        """Run a script; the catalog is refreshed when the batch changed the schema."""
        self._require_session()
        result = self.executor.execute(script, atomic=atomic, stop_event=stop_event)
        if result.schema_changed:
            try:
                self.catalog.refresh()
            except CatalogError as exc:
                logger.warning("Schema refresh after batch failed: %s", exc)
        return result

    def start_batch(self, script: str, atomic: bool = False,
                    on_result: Optional[Callable[[BatchResult], None]] = None,
                    on_error: Optional[Callable[[Exception], None]] = None,
                    on_finished: Optional[Callable[[], None]] = None) -> ExecutionWorker:
        """Run execute_batch on a background worker; returns the started worker."""
        self._require_session()
        worker = ExecutionWorker(self.execute_batch, script, atomic=atomic, on_result=on_result,
                                 on_error=on_error, on_finished=on_finished)
        worker.start()
        return worker

    def update_row(self, table_name: str, before: RowSnapshot, after: RowSnapshot,
                   trust_primary_key: bool = False) -> int:
        self._require_session()
        return self.reconciler.update(table_name, before, after, trust_primary_key=trust_primary_key)

    def delete_rows(self, table_name: str, primary_key_column: str, row_identifiers: Iterable[Any]) -> int:
        self._require_session()
        return self.reconciler.delete(table_name, primary_key_column, row_identifiers)

    def fetch_rows(self, table_name: str, limit: Optional[int] = None, offset: int = 0) -> List[RowSnapshot]:
        self._require_session()
        if limit is None:
            limit = self.settings["row_limit"]
        return self.reconciler.fetch_rows(table_name, limit=limit, offset=offset)

    def get_formatted_schema_context(self, dialect: Optional[Dialect] = None) -> str:
        """Schema text for the text-to-SQL collaborator, cached per catalog version."""
        session = self._require_session()
        snapshot = self.catalog.snapshot
        if snapshot is None:
            snapshot = self.catalog.refresh()
        dialect = Dialect(dialect) if dialect is not None else session.dialect
        max_tables = self.settings["context_max_tables"]
        max_chars = self.settings["context_max_chars"]
        key = (snapshot.version, dialect, max_tables, max_chars)
        text = self._context_cache.get(key)
        if text is None:
            # older versions can never be asked for again
            self._context_cache.clear()
            text = format_schema_context(snapshot, dialect, max_tables=max_tables, max_chars=max_chars)
            self._context_cache[key] = text
        return text

    def read_all(self) -> Optional[bytes]:
        """Serialized embedded database, or None when there is nothing to save."""
        return self._require_session().read_all()

    def save(self, path: Optional[str] = None, writer: Optional[Callable[[str, bytes], None]] = None) -> bool:
        """Write the embedded database back to its file. Returns False when nothing changed."""
        session = self._require_session()
        if session.in_user_transaction():
            raise SessionStateError("A transaction is still open; COMMIT or ROLLBACK it before saving")
        saved = session.flush(path, writer=writer)
        if not saved:
            logger.info("No database changes to save")
        return saved

    def schema_graph(self) -> Dict[str, Any]:
        """Edges, layout levels and statistics for the schema visualizer."""
        self._require_session()
        snapshot = self.catalog.snapshot
        if snapshot is None:
            snapshot = self.catalog.refresh()
        return {
            "version": snapshot.version,
            "edges": relationship_edges(snapshot),
            "levels": compute_levels(snapshot),
            "stats": schema_stats(snapshot),
        }
