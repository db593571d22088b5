"""Error taxonomy shared by every dualdb component.

Each error carries a machine-readable ``kind``, the backend's native message
(when there is one) and, for batch execution, the index of the statement that
failed, so the UI can render a precise diagnostic.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    AUTH_REJECTED = "auth_rejected"
    MALFORMED = "malformed"
    SESSION_STATE = "session_state"
    INTROSPECTION_FAILED = "introspection_failed"
    TABLE_NOT_FOUND = "table_not_found"
    PARSE = "parse"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    NO_SUCH_ROW = "no_such_row"
    AMBIGUOUS_MATCH = "ambiguous_match"
    MISSING_PRIMARY_KEY = "missing_primary_key"


class DualDbError(Exception):
    """Base class for all errors raised by dualdb."""

    default_kind = ErrorKind.EXECUTION

    def __init__(self, message: str, kind: Optional[ErrorKind] = None,
                 backend_message: Optional[str] = None, statement_index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.backend_message = backend_message
        self.statement_index = statement_index

    def __str__(self) -> str:
        text = self.message
        if self.statement_index is not None:
            text = f"[statement {self.statement_index + 1}] {text}"
        if self.backend_message and self.backend_message not in self.message:
            text = f"{text}: {self.backend_message}"
        return text


class DatabaseConnectionError(DualDbError):
    default_kind = ErrorKind.UNREACHABLE


class SessionStateError(DualDbError):
    """A session was used in a state that does not allow the operation."""

    default_kind = ErrorKind.SESSION_STATE


class CatalogError(DualDbError):
    default_kind = ErrorKind.INTROSPECTION_FAILED


class TableNotFoundError(DualDbError, LookupError):
    default_kind = ErrorKind.TABLE_NOT_FOUND

    def __init__(self, table_name: str):
        super().__init__(f"Table not found in catalog: {table_name}")
        self.table_name = table_name


class ParseError(DualDbError):
    """The script could not be split into statements (e.g. an unterminated quote)."""

    default_kind = ErrorKind.PARSE

    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.line = line


class ExecutionError(DualDbError):
    default_kind = ErrorKind.EXECUTION


class MutationError(DualDbError):
    pass


class NoSuchRowError(MutationError):
    default_kind = ErrorKind.NO_SUCH_ROW


class AmbiguousMatchError(MutationError):
    default_kind = ErrorKind.AMBIGUOUS_MATCH

    def __init__(self, message: str, matched: int):
        super().__init__(message)
        self.matched = matched


class MissingPrimaryKeyError(MutationError):
    default_kind = ErrorKind.MISSING_PRIMARY_KEY


class NonTransactionalDDLWarning(UserWarning):
    """DDL ran in an atomic batch on a backend that cannot roll DDL back."""
