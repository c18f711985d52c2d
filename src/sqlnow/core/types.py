"""Core types for SQLNow.

These models are the compiler's output and the runtime's input. All of them
are pydantic models so a compiled database can be written to JSON and loaded
back unchanged.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StatementKind(StrEnum):
    """Kind of a compiled statement."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid statement kinds."""
        return [k.value for k in cls]


class ResultKind(StrEnum):
    """How a result node maps onto projected columns."""

    FLAT = "flat"  # The row itself
    ENTITY = "entity"  # Columns of the query's own main table, one object per row
    PER_ROW = "perRow"  # Columns of a joined table, one object (or None) per row
    COLLECTION = "collection"  # Columns of a joined table, grouped into a list


class TypeOrigin(StrEnum):
    """Which rule decided a result column's type and nullability."""

    HINT = "hint"
    NOT_NULL = "notNull"
    INTROSPECTED = "introspected"
    FALLBACK = "fallback"


class TransactionMode(StrEnum):
    """SQLite BEGIN modes."""

    DEFERRED = "DEFERRED"
    IMMEDIATE = "IMMEDIATE"
    EXCLUSIVE = "EXCLUSIVE"


class PropertyNameGenerator(StrEnum):
    """How output property names are derived from column labels."""

    PLAIN = "plain"
    LOWER_CAMEL_CASE = "lowerCamelCase"


class SourceLocation(BaseModel):
    """Position of a construct in a source file."""

    source: str | None = None
    line: int = 1
    column: int = 1

    def __str__(self) -> str:
        return f"{self.source or '<string>'}:{self.line}:{self.column}"


class AnnotationBlock(BaseModel):
    """One parsed ``@@{...}`` directive block bound to a scope."""

    scope: str = Field(..., description="table, column, query or result_shape")
    values: dict[str, Any] = Field(default_factory=dict)
    location: SourceLocation = Field(default_factory=SourceLocation)
    target: str | None = Field(None, description="Column the block binds to, if any")


class ColumnSpec(BaseModel):
    """A column of a table or view."""

    name: str
    sql_type: str = ""
    nullable: bool = True
    primary_key: bool = False
    property_name: str
    property_type: str
    type_hint: str | None = None
    default_value: str | None = None


class ForeignKeySpec(BaseModel):
    """A foreign-key edge between two tables."""

    columns: list[str]
    referred_table: str
    referred_columns: list[str] = Field(default_factory=list)
    on_delete: str | None = None
    on_update: str | None = None


class CascadeNotify(BaseModel):
    """Tables to mark affected when this table is deleted from or updated."""

    delete: list[str] = Field(default_factory=list)
    update: list[str] = Field(default_factory=list)


class ResultColumn(BaseModel):
    """One output property backed by a projected column."""

    label: str = Field(..., description="Projected column name as the engine reports it")
    property_name: str
    property_type: str
    sql_type: str = ""
    nullable: bool = True
    source_table: str | None = None
    source_column: str | None = None
    origin: TypeOrigin = TypeOrigin.FALLBACK

    def signature(self) -> tuple[Any, ...]:
        """Return the parts that take part in structural comparison."""
        return (self.label, self.property_name, self.property_type, self.nullable)


class ResultNode(BaseModel):
    """A (possibly nested) result shape."""

    kind: ResultKind = ResultKind.FLAT
    name: str | None = Field(None, description="Property name for nested nodes")
    property_type: str | None = None
    alias_prefix: str | None = None
    source_table: str | None = None
    grouping_key: str | None = Field(None, description="Label of a collection's element key")
    parent_key: str | None = Field(None, description="Label identifying a parent row")
    nullable: bool = False
    default_value: str | None = None
    columns: list[ResultColumn] = Field(default_factory=list)
    children: list[ResultNode] = Field(default_factory=list)

    @property
    def labels(self) -> list[str]:
        """All projected labels consumed by this node and its children."""
        out = [c.label for c in self.columns]
        for child in self.children:
            out.extend(child.labels)
        return out

    @property
    def has_collections(self) -> bool:
        return any(c.kind == ResultKind.COLLECTION for c in self.children)

    def signature(self) -> tuple[Any, ...]:
        """Structural identity: columns, types, nullability, nested shape."""
        return (
            self.kind.value,
            self.name,
            self.property_type,
            self.nullable,
            self.grouping_key,
            self.parent_key,
            tuple(c.signature() for c in self.columns),
            tuple(child.signature() for child in self.children),
        )


class TableSpec(BaseModel):
    """A table, or a view modelled as a read-only table."""

    name: str
    is_view: bool = False
    columns: list[ColumnSpec] = Field(default_factory=list)
    primary_key: list[str] = Field(default_factory=list)
    foreign_keys: list[ForeignKeySpec] = Field(default_factory=list)
    cascade_notify: CascadeNotify = Field(default_factory=CascadeNotify)
    base_tables: list[str] = Field(default_factory=list)
    result: ResultNode | None = None
    property_name_generator: PropertyNameGenerator = PropertyNameGenerator.PLAIN
    class_name: str | None = None
    sql: str = ""

    def get_column(self, name: str) -> ColumnSpec | None:
        """Find a column by name (case-insensitive, as SQLite resolves them)."""
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


class ParameterSpec(BaseModel):
    """A bound ``:name`` parameter."""

    name: str
    sql_type: str = ""
    property_type: str = "Any"
    nullable: bool = True
    is_collection: bool = False


class QuerySpec(BaseModel):
    """A compiled query."""

    namespace: str
    name: str
    kind: StatementKind
    returning: bool = False
    upsert: bool = False
    replace: bool = False
    sql: str
    source: str | None = None
    parameters: list[ParameterSpec] = Field(default_factory=list)
    result: ResultNode | None = None
    result_name: str | None = Field(None, description="Shared/declared result name")
    class_name: str | None = None
    map_to: str | None = None
    read_tables: list[str] = Field(default_factory=list)
    write_tables: list[str] = Field(default_factory=list)
    touched_tables: list[str] = Field(default_factory=list)
    invalidation_tables: list[str] = Field(default_factory=list)
    affected_tables: list[str] = Field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"

    @property
    def is_read(self) -> bool:
        return self.kind == StatementKind.SELECT

    def get_parameter(self, name: str) -> ParameterSpec | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None


class NamespaceModel(BaseModel):
    """Tables and queries grouped under one namespace directory."""

    name: str
    tables: list[str] = Field(default_factory=list)
    queries: dict[str, QuerySpec] = Field(default_factory=dict)


class DependencyEdges(BaseModel):
    """Adjacency of the cascade graph."""

    delete: dict[str, list[str]] = Field(default_factory=dict)
    update: dict[str, list[str]] = Field(default_factory=dict)


class MigrationSpec(BaseModel):
    """One numbered migration file."""

    version: int
    description: str | None = None
    statements: list[str] = Field(default_factory=list)
    source: str | None = None


class CompiledDatabase(BaseModel):
    """Everything the runtime needs to open and serve one database."""

    name: str
    schema_statements: list[str] = Field(default_factory=list)
    init_statements: list[str] = Field(default_factory=list)
    migrations: list[MigrationSpec] = Field(default_factory=list)
    tables: dict[str, TableSpec] = Field(default_factory=dict)
    namespaces: dict[str, NamespaceModel] = Field(default_factory=dict)
    shared_results: dict[str, ResultNode] = Field(default_factory=dict)
    dependency_graph: DependencyEdges = Field(default_factory=DependencyEdges)

    @property
    def latest_version(self) -> int:
        return max((m.version for m in self.migrations), default=0)

    def get_query(self, namespace: str, name: str) -> QuerySpec:
        """Look up a compiled query.

        Raises:
            QueryNotFoundError: If no such query was compiled
        """
        from sqlnow.exceptions import QueryNotFoundError

        ns = self.namespaces.get(namespace)
        if ns is None or name not in ns.queries:
            available = sorted(q.qualified_name for q in self.iter_queries())
            raise QueryNotFoundError(namespace, name, available)
        return ns.queries[name]

    def iter_queries(self) -> list[QuerySpec]:
        return [q for ns in self.namespaces.values() for q in ns.queries.values()]
