"""Database package for dualdb.

Sessions, the schema catalog, batch execution, row mutations and the schema
renderings (prompt context and relationship graph) built on top of them.
"""

__all__ = [
    "connection",
    "context",
    "executor",
    "graph",
    "metadata",
    "mutations",
]
