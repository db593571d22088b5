"""dualdb: one data access layer over an embedded SQLite file and a PostgreSQL server."""

__version__ = "0.1.0"

__all__ = [
    "app",
    "db",
    "errors",
    "utils",
    "workspace",
]
