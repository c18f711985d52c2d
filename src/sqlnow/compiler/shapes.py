"""Result-shape resolution.

Turns an analyzed projection plus its ``dynamicField`` directives into a
nested :class:`ResultNode` tree, and keeps the per-namespace registry of
shared result shapes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlnow.compiler.inference import property_name, strip_prefix
from sqlnow.core.types import (
    PropertyNameGenerator,
    ResultColumn,
    ResultKind,
    ResultNode,
    TableSpec,
)
from sqlnow.exceptions import SchemaConflictError

if TYPE_CHECKING:
    from sqlnow.compiler.analyzer import AnalyzedStatement, ProjectedColumn, SchemaCatalog
    from sqlnow.compiler.directives import DynamicFieldDirectives, StatementDirectives

logger = logging.getLogger(__name__)


class ResultShapeResolver:
    """Builds the result tree of one statement."""

    def __init__(self, catalog: SchemaCatalog) -> None:
        self.catalog = catalog

    def resolve(
        self,
        analyzed: AnalyzedStatement,
        directives: StatementDirectives,
        generator: PropertyNameGenerator,
        name: str,
    ) -> ResultNode:
        """Group projected columns into a result tree.

        Args:
            analyzed: Output of the query analyzer
            directives: The statement's directives
            generator: Property naming rule for this statement
            name: Qualified statement name for error messages

        Returns:
            The root (flat) result node

        Raises:
            SchemaConflictError: If a dynamic field claims no columns, a grouping
                key is not projected, or two properties collide
        """
        remaining = list(analyzed.columns)
        children: list[ResultNode] = []

        for shape in directives.dynamic_fields:
            claimed = self._claim(shape, remaining, analyzed)
            if not claimed:
                raise SchemaConflictError(
                    f"Dynamic field '{shape.dynamic_field}' in '{name}' matches no projected "
                    f"columns. Prefix their aliases with '{shape.alias_prefix}' or select "
                    f"them from '{shape.source_table}'."
                )
            remaining = [c for c in remaining if c not in claimed]
            children.append(self._dynamic_node(shape, claimed, analyzed, generator, name))

        # Columns from a shaped view that no dynamic field claimed keep the view's shape
        inherited: list[ResultNode] = []
        for source in analyzed.sources:
            view = source.table
            if view is None or view.result is None or not view.result.children:
                continue
            own = [c for c in remaining if c.source_alias == source.alias]
            nested, used = _reuse_view_shape(view.result, own, "")
            if nested:
                inherited.extend(nested)
                remaining = [c for c in remaining if c not in used]

        root = ResultNode(
            kind=ResultKind.FLAT,
            columns=[self._column(c, None, generator) for c in remaining],
            children=inherited + children,
        )
        if root.has_collections:
            root.parent_key = self._parent_key(analyzed, directives, name)
        _check_unique_properties(root, name)
        return root

    def _claim(
        self,
        shape: DynamicFieldDirectives,
        remaining: list[ProjectedColumn],
        analyzed: AnalyzedStatement,
    ) -> list[ProjectedColumn]:
        prefix = shape.alias_prefix.lower()
        alias = shape.source_table.lower()
        source = analyzed.source(shape.source_table)
        # A shaped view brings its nested columns along whatever their prefix
        whole_source = source is not None and _is_shaped(source.table)
        claimed = [
            c
            for c in remaining
            if c.label.lower().startswith(prefix)
            or (whole_source and (c.source_alias or "").lower() == alias)
        ]
        if not claimed:
            claimed = [c for c in remaining if (c.source_alias or "").lower() == alias]
        return claimed

    def _dynamic_node(
        self,
        shape: DynamicFieldDirectives,
        claimed: list[ProjectedColumn],
        analyzed: AnalyzedStatement,
        generator: PropertyNameGenerator,
        name: str,
    ) -> ResultNode:
        kind = ResultKind(shape.mapping_type)
        source = analyzed.source(shape.source_table)
        table = source.table if source is not None else None

        children: list[ResultNode] = []
        flat = claimed
        if table is not None and table.result is not None and table.result.children:
            children, used = _reuse_view_shape(table.result, claimed, shape.alias_prefix)
            flat = [c for c in claimed if c not in used]

        node = ResultNode(
            kind=kind,
            name=shape.dynamic_field,
            property_type=shape.property_type,
            alias_prefix=shape.alias_prefix,
            source_table=shape.source_table,
            nullable=kind == ResultKind.PER_ROW and not shape.not_null,
            default_value=shape.default_value,
            columns=[self._column(c, shape.alias_prefix, generator) for c in flat],
            children=children,
        )
        if kind == ResultKind.COLLECTION:
            node.grouping_key = self._grouping_key(shape, claimed, table, name)
        return node

    def _grouping_key(
        self,
        shape: DynamicFieldDirectives,
        claimed: list[ProjectedColumn],
        table: TableSpec | None,
        name: str,
    ) -> str:
        wanted: list[str] = []
        if shape.collection_key:
            wanted = [shape.collection_key]
        elif table is not None and table.primary_key:
            wanted = list(table.primary_key)
        elif table is not None and table.result is not None and table.result.parent_key:
            wanted = [table.result.parent_key]
        for key in wanted:
            for column in claimed:
                stripped = strip_prefix(column.label, shape.alias_prefix)
                if key.lower() in (column.label.lower(), stripped.lower()):
                    return column.label
                if column.column is not None and column.column.name.lower() == key.lower():
                    if table is not None and column.source_table == table.name:
                        return column.label
        described = f"'{wanted[0]}'" if wanted else "a primary key or collectionKey"
        raise SchemaConflictError(
            f"Collection '{shape.dynamic_field}' in '{name}' needs its grouping key "
            f"{described} in the projection (as '{shape.alias_prefix}"
            f"{wanted[0] if wanted else 'id'}'). Add it to the SELECT list or set collectionKey."
        )

    def _parent_key(
        self,
        analyzed: AnalyzedStatement,
        directives: StatementDirectives,
        name: str,
    ) -> str | None:
        # Nested nodes may have claimed the key, so every projected column is a candidate
        columns = analyzed.columns
        if directives.query is not None and directives.query.collection_key:
            key = directives.query.collection_key
            for column in columns:
                if column.label.lower() == key.lower():
                    return column.label
            raise SchemaConflictError(
                f"collectionKey '{key}' of '{name}' is not a projected column. "
                f"Available: {', '.join(c.label for c in columns)}"
            )
        main = analyzed.source(analyzed.main_alias)
        if main is not None and main.table is not None:
            keys = list(main.table.primary_key)
            if not keys and main.table.result is not None and main.table.result.parent_key:
                keys = [main.table.result.parent_key]
            if len(keys) == 1:
                for column in columns:
                    if (
                        column.source_alias == main.alias
                        and column.column is not None
                        and column.column.name.lower() == keys[0].lower()
                    ):
                        return column.label
        # Without a single-column key the non-collection columns identify the parent
        logger.debug(f"'{name}' has no parent key; grouping by all non-collection columns")
        return None

    def _column(
        self,
        column: ProjectedColumn,
        prefix: str | None,
        generator: PropertyNameGenerator,
    ) -> ResultColumn:
        stripped = strip_prefix(column.label, prefix)
        if column.property_name:
            prop = column.property_name
        elif (
            column.column is not None
            and column.column.name.lower() == stripped.lower()
            and column.column.property_name != column.column.name
        ):
            # renamed by the table's own directives or generator
            prop = column.column.property_name
        else:
            prop = property_name(stripped, generator)
        return ResultColumn(
            label=column.label,
            property_name=prop,
            property_type=column.property_type,
            sql_type=column.sql_type,
            nullable=column.nullable,
            source_table=column.source_table,
            source_column=column.column.name if column.column is not None else None,
            origin=column.origin,
        )


def _reuse_view_shape(
    view_result: ResultNode, columns: list[ProjectedColumn], prefix: str
) -> tuple[list[ResultNode], list[ProjectedColumn]]:
    """Copy a view's nested nodes onto the columns that project them.

    A column projected under the view's own label, or as ``<prefix><view label>``,
    takes the place of the view's column in the copied node.
    """
    by_label = {c.label.lower(): c for c in columns}
    for column in columns:
        by_label.setdefault(strip_prefix(column.label, prefix).lower(), column)
    used: list[ProjectedColumn] = []
    nodes: list[ResultNode] = []
    for child in view_result.children:
        copied = _remap(child, by_label, used)
        if copied is not None:
            nodes.append(copied)
    return nodes, used


def _remap(
    node: ResultNode, by_label: dict[str, ProjectedColumn], used: list[ProjectedColumn]
) -> ResultNode | None:
    columns: list[ResultColumn] = []
    mine: list[ProjectedColumn] = []
    for column in node.columns:
        projected = by_label.get(column.label.lower())
        if projected is None:
            return None
        columns.append(column.model_copy(update={"label": projected.label}))
        mine.append(projected)
    children: list[ResultNode] = []
    for child in node.children:
        copied = _remap(child, by_label, mine)
        if copied is None:
            return None
        children.append(copied)
    grouping_key = node.grouping_key
    if grouping_key is not None:
        projected = by_label.get(grouping_key.lower())
        if projected is None:
            return None
        grouping_key = projected.label
    used.extend(mine)
    return node.model_copy(
        update={"columns": columns, "children": children, "grouping_key": grouping_key}
    )


def _is_shaped(table: TableSpec | None) -> bool:
    return table is not None and table.result is not None and bool(table.result.children)


def _check_unique_properties(node: ResultNode, name: str) -> None:
    seen: dict[str, str] = {}
    for column in node.columns:
        if column.property_name in seen:
            raise SchemaConflictError(
                f"Columns '{seen[column.property_name]}' and '{column.label}' of '{name}' "
                f"both map to property '{column.property_name}'. Alias one of them."
            )
        seen[column.property_name] = column.label
    for child in node.children:
        if child.name in seen:
            raise SchemaConflictError(
                f"Dynamic field '{child.name}' of '{name}' collides with column "
                f"'{seen[child.name or '']}'."
            )
        seen[child.name or ""] = child.name or ""
        _check_unique_properties(child, name)


def structural_differences(expected: ResultNode, actual: ResultNode, path: str = "") -> list[str]:
    """List how ``actual`` differs from ``expected`` (empty when identical)."""
    diffs: list[str] = []
    where = path or "result"
    if expected.kind != actual.kind:
        diffs.append(f"{where}: mapping kind {expected.kind.value} != {actual.kind.value}")
    if expected.nullable != actual.nullable:
        diffs.append(f"{where}: nullable {expected.nullable} != {actual.nullable}")
    if expected.property_type != actual.property_type:
        diffs.append(f"{where}: type {expected.property_type} != {actual.property_type}")
    if expected.grouping_key != actual.grouping_key:
        diffs.append(f"{where}: grouping key {expected.grouping_key} != {actual.grouping_key}")
    if expected.parent_key != actual.parent_key:
        diffs.append(f"{where}: parent key {expected.parent_key} != {actual.parent_key}")

    old = {c.property_name: c for c in expected.columns}
    new = {c.property_name: c for c in actual.columns}
    for prop in old.keys() - new.keys():
        diffs.append(f"missing field '{_join(path, prop)}'")
    for prop in new.keys() - old.keys():
        diffs.append(f"new field '{_join(path, prop)}'")
    for prop in old.keys() & new.keys():
        if old[prop].signature() != new[prop].signature():
            a, b = old[prop], new[prop]
            diffs.append(
                f"changed field '{_join(path, prop)}': "
                f"{a.label} {a.property_type}{'?' if a.nullable else ''} -> "
                f"{b.label} {b.property_type}{'?' if b.nullable else ''}"
            )
    if [c.property_name for c in expected.columns] != [c.property_name for c in actual.columns]:
        if not diffs:
            diffs.append(f"{where}: fields are in a different order")

    old_children = {c.name: c for c in expected.children}
    new_children = {c.name: c for c in actual.children}
    for child in old_children.keys() - new_children.keys():
        diffs.append(f"missing field '{_join(path, child or '')}'")
    for child in new_children.keys() - old_children.keys():
        diffs.append(f"new field '{_join(path, child or '')}'")
    for child in old_children.keys() & new_children.keys():
        diffs.extend(
            structural_differences(
                old_children[child], new_children[child], _join(path, child or "")
            )
        )
    return sorted(diffs)


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


class SharedResultRegistry:
    """Canonical result shapes keyed by ``namespace.name``."""

    def __init__(self) -> None:
        self._results: dict[str, ResultNode] = {}
        self._owners: dict[str, str] = {}
        self._generators: dict[str, PropertyNameGenerator] = {}

    @staticmethod
    def key(namespace: str, name: str) -> str:
        return f"{namespace}.{name}"

    def register(
        self,
        namespace: str,
        name: str,
        node: ResultNode,
        query: str,
        generator: PropertyNameGenerator,
    ) -> ResultNode:
        """Register a query's shape under a shared name.

        Returns:
            The canonical node: ``node`` itself on first registration, else
            the node registered first

        Raises:
            SchemaConflictError: If the shapes or naming rules differ
        """
        key = self.key(namespace, name)
        existing = self._results.get(key)
        if existing is None:
            self._results[key] = node
            self._owners[key] = query
            self._generators[key] = generator
            return node

        owner = self._owners[key]
        if self._generators[key] != generator:
            raise SchemaConflictError(
                f"Shared result '{key}' is used by '{owner}' with propertyNameGenerator="
                f"{self._generators[key].value} and by '{query}' with {generator.value}. "
                f"Use the same generator for every query sharing a result."
            )
        if existing.signature() != node.signature():
            raise SchemaConflictError(
                f"Shared result '{key}' of '{query}' does not match the shape declared "
                f"by '{owner}':",
                structural_differences(existing, node) or ["column labels differ"],
            )
        logger.debug(f"'{query}' reuses shared result '{key}' from '{owner}'")
        return existing

    @property
    def results(self) -> dict[str, ResultNode]:
        return dict(self._results)
