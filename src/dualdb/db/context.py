"""Render a catalog snapshot as compact schema context for text-to-SQL prompts.

The output is a pure function of (snapshot, dialect, bounds): no I/O, no clock, and
tables always appear in name order, so identical inputs give byte-identical text.
"""
from typing import Dict, List

from dualdb.db.connection import Dialect
from dualdb.db.metadata import CatalogSnapshot, TableDescriptor

_MAX_TABLES = 50
_MAX_CHARS = 12000

_DIALECT_HINTS: Dict[Dialect, List[str]] = {
    Dialect.EMBEDDED: [
        "Dialect: SQLite (embedded, single file)",
        'Quote identifiers with double quotes ("name"); string literals use single quotes.',
        "Use LIMIT n OFFSET m for paging. ILIKE is not supported; LIKE is case-insensitive for ASCII.",
        "Dates are TEXT/REAL/INTEGER; use date(), datetime(), strftime() and julianday().",
        "Column types are affinities, not strict types; booleans are stored as 0/1.",
        "RETURNING, UPSERT (ON CONFLICT), window functions and CTEs are available.",
    ],
    Dialect.NETWORKED: [
        "Dialect: PostgreSQL (networked server)",
        'Quote identifiers with double quotes ("Name") when they are mixed-case or reserved.',
        "Use LIMIT n OFFSET m for paging; ILIKE, RETURNING, ON CONFLICT, CTEs and window functions are available.",
        "Use now(), date_trunc(), interval arithmetic and :: casts for dates and types.",
        "Booleans are true/false; string concatenation uses ||.",
    ],
}


def _column_line(table: TableDescriptor, col) -> str:
    parts = [f"  - {col.name} {col.type or 'ANY'}"]
    if col.primary_key:
        parts.append("PK" if len(table.primary_key) == 1 else f"PK({col.pk_ordinal})")
    if not col.nullable and not col.primary_key:
        parts.append("NOT NULL")
    if col.has_default:
        parts.append(f"DEFAULT {col.default}")
    for fk in table.foreign_keys:
        if fk.column == col.name:
            parts.append(f"FK -> {fk.referenced_table}.{fk.referenced_column}")
    return " ".join(parts)


def format_table(table: TableDescriptor) -> List[str]:
    lines = [f"- {table.name}"]
    for col in table.columns:
        lines.append(_column_line(table, col))
    for idx in sorted(table.indexes, key=lambda i: i.name):
        unique = " UNIQUE" if idx.unique else ""
        lines.append(f"  index {idx.name} ({', '.join(idx.columns)}){unique}")
    return lines


def format_schema_context(snapshot: CatalogSnapshot, dialect: Dialect,
                          max_tables: int = _MAX_TABLES, max_chars: int = _MAX_CHARS) -> str:
    """Return the schema of every table in ``snapshot`` with a dialect preamble.

    At most ``max_tables`` tables are rendered and a table is only added while the
    text stays within ``max_chars``; anything left out is counted in a final line.
    """
    dialect = Dialect(dialect)
    lines = [f"-- {hint}" for hint in _DIALECT_HINTS[dialect]]
    lines.append("Tables:")
    if not snapshot.tables:
        lines.append("(none)")

    names = sorted(snapshot.tables)
    size = sum(len(line) + 1 for line in lines)
    rendered = 0
    for name in names:
        if rendered >= max_tables:
            break
        block = format_table(snapshot.tables[name])
        block_size = sum(len(line) + 1 for line in block)
        if size + block_size > max_chars:
            break
        lines.extend(block)
        size += block_size
        rendered += 1

    omitted = len(names) - rendered
    if omitted:
        lines.append(f"... ({omitted} more table{'s' if omitted != 1 else ''} omitted)")

    if snapshot.views:
        views_line = "Views: " + ", ".join(snapshot.views)
        if size + len(views_line) <= max_chars:
            lines.append(views_line)
    return "\n".join(lines)
