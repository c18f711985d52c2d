"""Table dependencies of compiled queries.

The cascade graph has one node per table and an edge ``P -> C`` of kind
``delete`` or ``update`` for every table ``C`` named in ``P``'s
``cascadeNotify`` directive. Cycles and self-edges are allowed; expansion
tracks visited tables.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlnow.core.types import CascadeNotify, DependencyEdges, QuerySpec, StatementKind

if TYPE_CHECKING:
    from sqlnow.compiler.analyzer import AnalyzedStatement, SchemaCatalog

logger = logging.getLogger(__name__)

DELETE = "delete"
UPDATE = "update"


class DependencyGraph:
    """Cascade-notification adjacency between tables."""

    def __init__(self) -> None:
        self._edges: dict[str, dict[str, list[str]]] = {DELETE: {}, UPDATE: {}}

    def add_edge(self, source: str, target: str, kind: str) -> None:
        targets = self._edges[kind].setdefault(source, [])
        if target not in targets:
            targets.append(target)

    def add_cascade(self, table: str, cascade: CascadeNotify) -> None:
        for target in cascade.delete:
            self.add_edge(table, target, DELETE)
        for target in cascade.update:
            self.add_edge(table, target, UPDATE)

    def neighbors(self, table: str, kind: str) -> list[str]:
        return list(self._edges[kind].get(table, []))

    def expand(self, tables: Iterable[str], kinds: Iterable[str]) -> list[str]:
        """Breadth-first closure of ``tables`` along edges of the given kinds.

        Returns:
            The start tables followed by every table reachable from them, in
            discovery order
        """
        kinds = list(kinds)
        order: list[str] = []
        visited: set[str] = set()
        queue: deque[str] = deque()
        for table in tables:
            if table not in visited:
                visited.add(table)
                order.append(table)
                queue.append(table)
        while queue:
            table = queue.popleft()
            for kind in kinds:
                for target in self._edges[kind].get(table, []):
                    if target not in visited:
                        visited.add(target)
                        order.append(target)
                        queue.append(target)
        return order

    def to_edges(self) -> DependencyEdges:
        return DependencyEdges(
            delete={k: list(v) for k, v in self._edges[DELETE].items()},
            update={k: list(v) for k, v in self._edges[UPDATE].items()},
        )

    @classmethod
    def from_edges(cls, edges: DependencyEdges) -> DependencyGraph:
        graph = cls()
        for source, targets in edges.delete.items():
            for target in targets:
                graph.add_edge(source, target, DELETE)
        for source, targets in edges.update.items():
            for target in targets:
                graph.add_edge(source, target, UPDATE)
        return graph


def edge_kinds(kind: StatementKind, upsert: bool = False, replace: bool = False) -> list[str]:
    """Edge kinds a write of the given kind walks."""
    kinds: list[str] = []
    if kind == StatementKind.DELETE or replace:
        kinds.append(DELETE)
    if kind == StatementKind.UPDATE or upsert:
        kinds.append(UPDATE)
    return kinds


class DependencyExtractor:
    """Fills in touched, invalidation and affected tables of a query."""

    def __init__(self, catalog: SchemaCatalog, graph: DependencyGraph) -> None:
        self.catalog = catalog
        self.graph = graph

    def base_tables(self, names: Iterable[str]) -> list[str]:
        out: list[str] = []
        for name in names:
            for table in self.catalog.base_tables(name):
                if table not in out:
                    out.append(table)
        return out

    def populate(self, spec: QuerySpec, analyzed: AnalyzedStatement) -> QuerySpec:
        """Attach dependency sets to a compiled query."""
        spec.read_tables = self.base_tables(analyzed.read_tables)
        spec.write_tables = self.base_tables(analyzed.write_tables)
        spec.touched_tables = spec.read_tables + [
            t for t in spec.write_tables if t not in spec.read_tables
        ]
        if spec.is_read:
            spec.invalidation_tables = list(spec.read_tables)
            spec.affected_tables = []
        else:
            spec.invalidation_tables = []
            spec.affected_tables = self.graph.expand(
                spec.write_tables, edge_kinds(spec.kind, spec.upsert, spec.replace)
            )
        logger.debug(
            f"{spec.qualified_name}: touched={spec.touched_tables} "
            f"invalidation={spec.invalidation_tables} affected={spec.affected_tables}"
        )
        return spec
