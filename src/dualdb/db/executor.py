"""Batch SQL execution with all-or-nothing or best-effort transaction semantics."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple
import logging
import re
import string
import threading
import time
import warnings

import sqlparse
from sqlparse import tokens as T
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from dualdb.db.connection import Dialect, Session
from dualdb.errors import ErrorKind, ExecutionError, NonTransactionalDDLWarning, ParseError

logger = logging.getLogger(__name__)

# Per-statement execution timeout (seconds) to avoid indefinite blocking by DB drivers.
_EXECUTION_TIMEOUT = 30
_ROW_LIMIT = 1000
_POLL_INTERVAL = 0.05

_TRANSACTION_KEYWORDS = {"BEGIN", "START", "COMMIT", "END", "ROLLBACK", "SAVEPOINT", "RELEASE", "ABORT"}
_DDL_KEYWORDS = {"CREATE", "ALTER", "DROP", "TRUNCATE", "RENAME"}
_IDENT_CHARS = frozenset(string.ascii_letters + string.digits + "_")
_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


class BatchState(str, Enum):
    IDLE = "idle"
    SPLITTING = "splitting"
    EXECUTING = "executing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_APPLIED = "partially_applied"


@dataclass(frozen=True)
class ParsedStatement:
    text: str
    keyword: str
    line: int

    @property
    def is_transaction_control(self) -> bool:
        return self.keyword in _TRANSACTION_KEYWORDS

    @property
    def is_ddl(self) -> bool:
        return self.keyword in _DDL_KEYWORDS


@dataclass
class StatementResult:
    index: int
    statement: str
    success: bool
    rows_affected: int = 0
    elapsed: float = 0.0
    columns: Optional[List[str]] = None
    rows: Optional[List[Tuple[Any, ...]]] = None
    truncated: bool = False
    error: Optional[ExecutionError] = None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    @property
    def returns_rows(self) -> bool:
        return self.columns is not None


@dataclass
class BatchResult:
    statements: List[StatementResult]
    overall_success: bool
    final_state: BatchState
    aborted_at: Optional[int] = None
    error: Optional[ExecutionError] = None
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)
    schema_changed: bool = False
    transaction_open: bool = False

    @property
    def total_elapsed(self) -> float:
        return sum(r.elapsed for r in self.statements)

    def raise_for_error(self) -> None:
        """Raise the batch's terminal error, if there is one."""
        if self.error is not None:
            raise self.error


def _is_noise(token) -> bool:
    return token.is_whitespace or token.ttype in T.Comment


def _blank(chars: List[str], start: int, end: int) -> None:
    for k in range(start, end):
        if chars[k] != "\n":
            chars[k] = "x"


def _scan_quoted(script: str, start: int, closing: str, backslash: bool, line: int) -> int:
    """Index of the quote closing the literal opened at ``start``."""
    j = start + 1
    n = len(script)
    while j < n:
        c = script[j]
        if backslash and c == "\\":
            j += 2
            continue
        if c == closing:
            if closing != "]" and j + 1 < n and script[j + 1] == closing:
                j += 2
                continue
            return j
        j += 1
    raise ParseError(f"Unterminated quoted string or identifier starting with {script[start]} on line {line}",
                     line=line)


def mask_literals(script: str, dialect: Optional[Dialect] = None) -> str:
    """Blank out the inside of string literals, quoted identifiers and comments.

    The result has the same length and line breaks as ``script`` but nothing a
    lexer could mistake for a quote, a comment or a statement separator. Quotes
    follow the backend's own rules: a quote inside a literal is escaped only by
    doubling it. PostgreSQL adds E'...' strings with backslash escapes,
    $tag$...$tag$ strings and nested block comments; SQLite adds [identifiers]
    and `identifiers`.

    Raises ParseError for an unterminated literal or block comment.
    """
    networked = Dialect(dialect) == Dialect.NETWORKED if dialect is not None else False
    chars = list(script)
    n = len(script)
    i = 0
    line = 1
    while i < n:
        ch = script[i]
        prev = script[i - 1] if i else ""
        if ch == "\n":
            line += 1
            i += 1
        elif script.startswith("--", i):
            end = script.find("\n", i)
            end = n if end < 0 else end
            _blank(chars, i + 2, end)
            i = end
        elif script.startswith("/*", i):
            depth, j = 1, i + 2
            while j < n and depth:
                if script.startswith("*/", j):
                    depth -= 1
                    j += 2
                elif networked and script.startswith("/*", j):
                    depth += 1
                    j += 2
                else:
                    j += 1
            if depth:
                raise ParseError(f"Unterminated block comment on line {line}", line=line)
            _blank(chars, i + 2, j - 2)
            line += script.count("\n", i, j)
            i = j
        elif ch in ("'", '"') or (not networked and ch in ("`", "[")):
            closing = "]" if ch == "[" else ch
            # E'...' with the E standing alone, not ending an identifier
            backslash = (networked and ch == "'" and prev in ("e", "E")
                         and (i < 2 or script[i - 2] not in _IDENT_CHARS))
            end = _scan_quoted(script, i, closing, backslash, line)
            _blank(chars, i + 1, end)
            line += script.count("\n", i, end)
            i = end + 1
        elif networked and ch == "$" and prev not in _IDENT_CHARS and prev != "$":
            m = _DOLLAR_TAG.match(script, i)
            if m is None:
                i += 1
                continue
            tag = m.group(0)
            end = script.find(tag, m.end())
            if end < 0:
                raise ParseError(f"Unterminated dollar-quoted string {tag} on line {line}", line=line)
            _blank(chars, m.end(), end)
            line += script.count("\n", i, end)
            i = end + len(tag)
        else:
            i += 1
    return "".join(chars)


def parse_script(script: str, dialect: Optional[Dialect] = None) -> List[ParsedStatement]:
    """Split a script into statements on semicolons outside strings and comments.

    Leading/trailing comments, whitespace and the terminating semicolon are dropped;
    fragments that contain only comments disappear. sqlparse splits a masked copy
    of the script (see mask_literals) and the statement text is cut from the
    original at the same offsets.
    """
    source = script or ""
    masked = mask_literals(source, dialect)
    statements: List[ParsedStatement] = []
    offset = 0
    for stmt in sqlparse.parse(masked):
        tokens = list(stmt.flatten())
        starts = []
        pos = offset
        for tok in tokens:
            starts.append(pos)
            pos += len(tok.value)
        offset = pos

        start = 0
        while start < len(tokens) and _is_noise(tokens[start]):
            start += 1
        end = len(tokens) - 1
        while end >= start and (_is_noise(tokens[end]) or (tokens[end].ttype is T.Punctuation and tokens[end].value == ";")):
            end -= 1

        if start <= end:
            first = tokens[start]
            keyword = first.normalized.split()[0].upper() if first.ttype in T.Keyword else ""
            begin_at = starts[start]
            text = source[begin_at:starts[end] + len(tokens[end].value)]
            line = source.count("\n", 0, begin_at) + 1
            statements.append(ParsedStatement(text=text, keyword=keyword, line=line))
    return statements


def split_statements(script: str, dialect: Optional[Dialect] = None) -> List[str]:
    return [s.text for s in parse_script(script, dialect)]


def _backend_message(exc: BaseException) -> str:
    return str(getattr(exc, "orig", None) or exc).strip()


class BatchExecutor:
    """Runs scripts against a session, holding it exclusively for the whole batch.

    State machine: IDLE -> SPLITTING -> EXECUTING -> {COMMITTED | ROLLED_BACK |
    PARTIALLY_APPLIED} -> IDLE. ``last_state`` keeps the terminal state of the most
    recent batch.
    """

    def __init__(self, session: Session, statement_timeout: float = _EXECUTION_TIMEOUT,
                 row_limit: int = _ROW_LIMIT):
        self.session = session
        self.statement_timeout = statement_timeout
        self.row_limit = row_limit
        self.state = BatchState.IDLE
        self.last_state: Optional[BatchState] = None

    def execute(self, script: str, atomic: bool = False,
                stop_event: Optional[threading.Event] = None) -> BatchResult:
        self.state = BatchState.SPLITTING
        try:
            statements = parse_script(script, self.session.dialect)
        except ParseError:
            self.state = BatchState.IDLE
            raise

        if not statements:
            self.state = BatchState.IDLE
            self.last_state = BatchState.COMMITTED
            return BatchResult(statements=[], overall_success=True, final_state=BatchState.COMMITTED)

        batch_warnings: List[str] = []
        if atomic and not self.session.supports_transactional_ddl and any(s.is_ddl for s in statements):
            msg = (f"{self.session.dialect.value} cannot roll back DDL; "
                   "schema changes in this batch survive a rollback")
            warnings.warn(msg, NonTransactionalDDLWarning, stacklevel=2)
            batch_warnings.append(msg)

        try:
            with self.session.acquire() as conn:
                self.state = BatchState.EXECUTING
                logger.debug("Executing %d statement(s) on %s (atomic=%s)",
                             len(statements), self.session.identity, atomic)
                if atomic:
                    result, mutated = self._run_atomic(conn, statements, stop_event)
                else:
                    result, mutated = self._run_independent(conn, statements, stop_event)
                result.transaction_open = self.session.in_user_transaction()
        finally:
            self.state = BatchState.IDLE

        result.warnings = batch_warnings
        if mutated:
            self.session.mark_dirty()
        self.last_state = result.final_state
        logger.info("Batch finished on %s: state=%s statements=%d/%d elapsed=%.3fs",
                    self.session.identity, result.final_state.value, len(result.statements),
                    len(statements), result.total_elapsed)
        return result

    def _run_statement(self, conn: Connection, index: int, stmt: ParsedStatement,
                       stop_event: Optional[threading.Event],
                       allow_transaction_control: bool = True) -> Tuple[Optional[StatementResult], bool]:
        """Run one statement on a helper thread so it can be interrupted.

        Returns (result, cancelled); result is None when the statement was cancelled
        before it completed.
        """
        if stmt.is_transaction_control and not allow_transaction_control:
            err = ExecutionError("Transaction control statements are not allowed in an atomic batch",
                                 statement_index=index)
            return StatementResult(index=index, statement=stmt.text, success=False, error=err), False

        outcome = {"value": None, "error": None}

        def _target():
            try:
                res = conn.exec_driver_sql(stmt.text)
                if res.returns_rows:
                    cols = list(res.keys())
                    # fetch up to row_limit + 1 to detect truncation
                    fetched = res.fetchmany(self.row_limit + 1)
                    res.close()
                    rows = [tuple(r) for r in fetched[:self.row_limit]]
                    outcome["value"] = (cols, rows, len(fetched) > self.row_limit, len(rows))
                else:
                    outcome["value"] = (None, None, False, max(res.rowcount, 0))
            except Exception as e:
                outcome["error"] = e

        start = time.perf_counter()
        thr = threading.Thread(target=_target, daemon=True)
        thr.start()

        cancelled = timed_out = False
        while thr.is_alive():
            thr.join(_POLL_INTERVAL)
            if not thr.is_alive():
                break
            if stop_event is not None and stop_event.is_set():
                cancelled = True
            elif time.perf_counter() - start >= self.statement_timeout:
                timed_out = True
            if cancelled or timed_out:
                # the driver raises in the helper thread once interrupted
                self.session.interrupt()
                thr.join()
        elapsed = time.perf_counter() - start

        if outcome["error"] is None and outcome["value"] is not None:
            cols, rows, truncated, count = outcome["value"]
            return StatementResult(index=index, statement=stmt.text, success=True, rows_affected=count,
                                   elapsed=elapsed, columns=cols, rows=rows, truncated=truncated), cancelled
        if cancelled:
            logger.debug("Statement %d cancelled after %.3fs", index + 1, elapsed)
            return None, True
        if timed_out:
            err = ExecutionError(f"Execution timed out after {self.statement_timeout} seconds",
                                 kind=ErrorKind.TIMEOUT, statement_index=index)
        else:
            exc = outcome["error"]
            err = ExecutionError("Statement failed", backend_message=_backend_message(exc), statement_index=index)
            logger.debug("Statement %d failed: %s", index + 1, err.backend_message)
        return StatementResult(index=index, statement=stmt.text, success=False, elapsed=elapsed, error=err), False

    def _run_atomic(self, conn: Connection, statements: List[ParsedStatement],
                    stop_event: Optional[threading.Event]) -> Tuple[BatchResult, bool]:
        results: List[StatementResult] = []
        failure: Optional[ExecutionError] = None
        aborted_at: Optional[int] = None
        cancelled = False

        # inside a transaction the user opened, the batch becomes a savepoint
        if conn.in_transaction() or self.session.in_user_transaction():
            trans = conn.begin_nested()
        else:
            trans = conn.begin()
        try:
            for i, stmt in enumerate(statements):
                if stop_event is not None and stop_event.is_set():
                    cancelled = True
                    break
                res, cancelled = self._run_statement(conn, i, stmt, stop_event, allow_transaction_control=False)
                if res is not None:
                    results.append(res)
                if cancelled:
                    break
                if not res.success:
                    failure = res.error
                    aborted_at = i
                    break

            if cancelled or failure is not None:
                trans.rollback()
            else:
                try:
                    trans.commit()
                except SQLAlchemyError as exc:
                    if trans.is_active:
                        trans.rollback()
                    failure = ExecutionError("Commit failed", backend_message=_backend_message(exc))
        except BaseException:
            if trans.is_active:
                trans.rollback()
            raise

        if cancelled:
            aborted_at = len(results)
            failure = ExecutionError("Batch cancelled", kind=ErrorKind.CANCELLED, statement_index=aborted_at)
        committed = failure is None
        batch = BatchResult(
            statements=results,
            overall_success=committed,
            final_state=BatchState.COMMITTED if committed else BatchState.ROLLED_BACK,
            aborted_at=aborted_at,
            error=failure,
            cancelled=cancelled,
            schema_changed=committed and any(statements[r.index].is_ddl for r in results),
        )
        mutated = committed and any(not r.returns_rows for r in results)
        return batch, mutated

    def _run_independent(self, conn: Connection, statements: List[ParsedStatement],
                         stop_event: Optional[threading.Event]) -> Tuple[BatchResult, bool]:
        """Run each statement in autocommit mode.

        Statements that cannot run inside a transaction (VACUUM, PRAGMA
        foreign_keys) take effect here. Transaction control reaches the backend
        unchanged, so a BEGIN opens a transaction that later statements, and later
        batches, run inside until a COMMIT or ROLLBACK ends it.
        """
        session = self.session
        results: List[StatementResult] = []
        cancelled = False

        if not session.autocommit:
            session.set_autocommit(conn, True)
        try:
            for i, stmt in enumerate(statements):
                if stop_event is not None and stop_event.is_set():
                    cancelled = True
                    break
                res, cancelled = self._run_statement(conn, i, stmt, stop_event)
                if conn.in_transaction() and not session.in_user_transaction():
                    # the backend already committed; close SQLAlchemy's implicit transaction
                    try:
                        if res is not None and res.success:
                            conn.commit()
                        else:
                            conn.rollback()
                    except SQLAlchemyError as exc:
                        if res is not None and res.success:
                            res.success = False
                            res.error = ExecutionError("Commit failed", backend_message=_backend_message(exc),
                                                       statement_index=i)
                if res is not None:
                    results.append(res)
                if cancelled:
                    break
        finally:
            if not session.in_user_transaction():
                if conn.in_transaction():
                    conn.rollback()
                session.set_autocommit(conn, False)

        all_ok = all(r.success for r in results)
        error = None
        if cancelled:
            error = ExecutionError("Batch cancelled", kind=ErrorKind.CANCELLED, statement_index=len(results))
        batch = BatchResult(
            statements=results,
            overall_success=all_ok and not cancelled,
            final_state=BatchState.COMMITTED if all_ok and not cancelled else BatchState.PARTIALLY_APPLIED,
            aborted_at=len(results) if cancelled else None,
            error=error,
            cancelled=cancelled,
            schema_changed=any(r.success and statements[r.index].is_ddl for r in results),
        )
        mutated = any(r.success and not r.returns_rows for r in results)
        return batch, mutated


def execute_script(session: Session, script: str, atomic: bool = False,
                   stop_event: Optional[threading.Event] = None,
                   statement_timeout: float = _EXECUTION_TIMEOUT, row_limit: int = _ROW_LIMIT) -> BatchResult:
    """Execute ``script`` on ``session``; see BatchExecutor.execute."""
    executor = BatchExecutor(session, statement_timeout=statement_timeout, row_limit=row_limit)
    return executor.execute(script, atomic=atomic, stop_event=stop_event)
