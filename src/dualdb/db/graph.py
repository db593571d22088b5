"""Relationship graph of a catalog snapshot, as consumed by the schema visualizer.

Foreign keys may form cycles (self-references, mutually referencing tables); the
traversal is iterative with a visited set and treats a cycle as a normal shape.
"""
from dataclasses import dataclass
from typing import Dict, List

from dualdb.db.metadata import CatalogSnapshot


@dataclass(frozen=True)
class RelationshipEdge:
    source_table: str
    source_column: str
    target_table: str
    target_column: str

    @property
    def id(self) -> str:
        return f"{self.source_table}-{self.source_column}-{self.target_table}-{self.target_column}"


@dataclass(frozen=True)
class SchemaStats:
    tables: int
    columns: int
    relationships: int
    indexes: int


def relationship_edges(snapshot: CatalogSnapshot) -> List[RelationshipEdge]:
    """One edge per foreign-key column pair whose target table is in the snapshot."""
    edges = []
    for name in sorted(snapshot.tables):
        for fk in snapshot.tables[name].foreign_keys:
            if fk.referenced_table in snapshot.tables:
                edges.append(RelationshipEdge(name, fk.column, fk.referenced_table, fk.referenced_column))
    return edges


def _references(snapshot: CatalogSnapshot) -> Dict[str, List[str]]:
    refs = {}
    for name, table in snapshot.tables.items():
        targets = {fk.referenced_table for fk in table.foreign_keys}
        refs[name] = sorted(t for t in targets if t in snapshot.tables and t != name)
    return refs


def compute_levels(snapshot: CatalogSnapshot) -> Dict[str, int]:
    """Layout level per table.

    A table that references nothing is level 0; otherwise it sits one level past the
    deepest table it references. Edges that close a cycle are ignored.
    """
    refs = _references(snapshot)
    levels: Dict[str, int] = {}
    in_progress = set()

    for root in sorted(refs):
        if root in levels:
            continue
        in_progress.add(root)
        stack = [(root, iter(refs[root]))]
        while stack:
            node, pending = stack[-1]
            nxt = next(pending, None)
            if nxt is None:
                stack.pop()
                in_progress.discard(node)
                levels[node] = 1 + max((levels[r] for r in refs[node] if r in levels), default=-1)
                continue
            if nxt in levels or nxt in in_progress:
                continue
            in_progress.add(nxt)
            stack.append((nxt, iter(refs[nxt])))
    return levels


def group_by_level(snapshot: CatalogSnapshot) -> Dict[int, List[str]]:
    groups: Dict[int, List[str]] = {}
    for name, level in sorted(compute_levels(snapshot).items()):
        groups.setdefault(level, []).append(name)
    return dict(sorted(groups.items()))


def schema_stats(snapshot: CatalogSnapshot) -> SchemaStats:
    tables = snapshot.tables.values()
    return SchemaStats(
        tables=len(snapshot.tables),
        columns=sum(len(t.columns) for t in tables),
        relationships=sum(len(t.foreign_keys) for t in tables),
        indexes=sum(len(t.indexes) for t in tables),
    )
