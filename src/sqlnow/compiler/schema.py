"""Schema model building.

Table and view declarations are executed on a scratch in-memory SQLite
database and read back through the SQLAlchemy inspector, so the engine
decides what a column list, type or constraint means. Directives are then
merged on top: column directives over table directives over inferred
defaults.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import Connection, inspect
from sqlalchemy.engine.reflection import Inspector
from sqlalchemy.exc import DBAPIError

from sqlnow.compiler import lexer
from sqlnow.compiler.analyzer import QueryAnalyzer, SchemaCatalog
from sqlnow.compiler.dependencies import DependencyGraph
from sqlnow.compiler.directives import AnnotationExtractor, StatementDirectives
from sqlnow.compiler.inference import is_valid_sql_type, property_name, property_type_for
from sqlnow.compiler.shapes import ResultShapeResolver
from sqlnow.core.config import CompilerConfig
from sqlnow.core.connection import DatabaseConnection
from sqlnow.core.types import (
    CascadeNotify,
    ColumnSpec,
    ForeignKeySpec,
    TableSpec,
    TypeOrigin,
)
from sqlnow.exceptions import AnnotationError, SchemaError, TypeInferenceError

logger = logging.getLogger(__name__)


@dataclass
class SchemaModel:
    """Result of :meth:`SchemaModelBuilder.build`."""

    catalog: SchemaCatalog
    graph: DependencyGraph
    statements: list[str] = field(default_factory=list)

    @property
    def tables(self) -> dict[str, TableSpec]:
        return self.catalog.tables


class SchemaModelBuilder:
    """Builds TableSpecs and the cascade graph from schema source files."""

    def __init__(
        self,
        config: CompilerConfig | None = None,
        connection: DatabaseConnection | None = None,
    ) -> None:
        self.config = config or CompilerConfig()
        self._db = connection or DatabaseConnection("sqlite://")
        self._conn: Connection | None = None
        self._pending: list[StatementDirectives] = []

    @property
    def connection(self) -> Connection:
        """Scratch connection the schema is executed on."""
        if self._conn is None:
            self._conn = self._db.connect()
        return self._conn

    def add_source(self, text: str, source: str | None = None) -> int:
        """Queue the statements of one schema file.

        Returns:
            Number of statements found
        """
        statements = AnnotationExtractor(text, source).statements()
        self._pending.extend(statements)
        return len(statements)

    def build(self) -> SchemaModel:
        """Execute queued statements and model every table and view.

        Raises:
            SchemaError: If the engine rejects a statement or a directive names
                an unknown table
            AnnotationError: If a column directive names an unknown column
        """
        executed = self._execute()
        catalog = SchemaCatalog(self.connection)
        graph = DependencyGraph()

        created: dict[str, StatementDirectives] = {}
        views: list[tuple[str, StatementDirectives]] = []
        for directives in executed:
            kind, name = created_object(directives.statement)
            if name is None:
                continue
            created[name.lower()] = directives
            if kind == "VIEW":
                views.append((name, directives))

        inspector = inspect(self.connection)
        for table_name in inspector.get_table_names():
            spec = self._table_spec(table_name, created.get(table_name.lower()), inspector)
            catalog.add(spec)

        analyzer = QueryAnalyzer(catalog, self.config)
        shapes = ResultShapeResolver(catalog)
        for view_name, directives in views:
            catalog.add(self._view_spec(view_name, directives, analyzer, shapes))

        for spec in catalog.tables.values():
            cascade = spec.cascade_notify
            resolved = CascadeNotify(
                delete=[self._cascade_target(spec, t, catalog) for t in cascade.delete],
                update=[self._cascade_target(spec, t, catalog) for t in cascade.update],
            )
            spec.cascade_notify = resolved
            graph.add_cascade(spec.name, resolved)

        logger.info(
            f"Schema model built: {sum(not t.is_view for t in catalog.tables.values())} tables, "
            f"{len(views)} views"
        )
        return SchemaModel(
            catalog=catalog,
            graph=graph,
            statements=[d.statement.code for d in executed],
        )

    def close(self) -> None:
        """Close the scratch database."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._db.close()

    # --- execution ---

    def _execute(self) -> list[StatementDirectives]:
        """Run queued statements, retrying ones that depend on later ones."""
        pending = list(self._pending)
        executed: list[StatementDirectives] = []
        while pending:
            failed: list[tuple[StatementDirectives, DBAPIError]] = []
            for directives in pending:
                try:
                    self.connection.exec_driver_sql(directives.statement.code)
                except DBAPIError as e:
                    failed.append((directives, e))
                else:
                    executed.append(directives)
            if len(failed) == len(pending):
                directives, error = failed[0]
                statement = directives.statement
                raise SchemaError(
                    f"{statement.source or '<string>'}:{statement.line}: "
                    f"the engine rejected the statement: {error.orig}"
                )
            pending = [d for d, _ in failed]
        self._pending = []
        return executed

    # --- tables ---

    def _table_spec(
        self, name: str, directives: StatementDirectives | None, inspector: Inspector
    ) -> TableSpec:
        table_directives = directives.table if directives is not None else None
        generator = (
            table_directives.property_name_generator
            if table_directives is not None and table_directives.property_name_generator
            else self.config.property_name_generator
        )
        declared = {
            row[1]: row[2] or ""
            for row in self.connection.exec_driver_sql(f'PRAGMA table_info("{name}")')
        }
        pk = list(inspector.get_pk_constraint(name).get("constrained_columns") or [])

        columns: list[ColumnSpec] = []
        for col in inspector.get_columns(name):
            column_name = col["name"]
            sql_type = declared.get(column_name, "")
            nullable = bool(col["nullable"])
            if pk == [column_name] and sql_type.upper() == "INTEGER":
                nullable = False  # rowid alias
            overrides = directives.column(column_name) if directives is not None else None
            hint = overrides.sql_type_hint if overrides is not None else None
            if hint is not None and not is_valid_sql_type(hint):
                raise TypeInferenceError(column_name, name, f"invalid sqlTypeHint '{hint}'")
            if overrides is not None and overrides.not_null is not None:
                nullable = not overrides.not_null
            default = col.get("default")
            if overrides is not None and overrides.default_value is not None:
                default = overrides.default_value
            columns.append(
                ColumnSpec(
                    name=column_name,
                    sql_type=sql_type,
                    nullable=nullable,
                    primary_key=column_name in pk,
                    property_name=(overrides.property_name if overrides else None)
                    or property_name(column_name, generator),
                    property_type=(overrides.property_type if overrides else None)
                    or property_type_for(hint or sql_type),
                    type_hint=hint,
                    default_value=str(default) if default is not None else None,
                )
            )

        spec = TableSpec(
            name=name,
            columns=columns,
            primary_key=pk,
            foreign_keys=[
                ForeignKeySpec(
                    columns=fk["constrained_columns"],
                    referred_table=fk["referred_table"],
                    referred_columns=fk.get("referred_columns") or [],
                    on_delete=(fk.get("options") or {}).get("ondelete"),
                    on_update=(fk.get("options") or {}).get("onupdate"),
                )
                for fk in inspector.get_foreign_keys(name)
            ],
            property_name_generator=generator,
            class_name=table_directives.name if table_directives is not None else None,
            sql=directives.statement.code if directives is not None else "",
        )
        if table_directives is not None and table_directives.cascade_notify is not None:
            spec.cascade_notify = CascadeNotify(
                delete=list(table_directives.cascade_notify.delete),
                update=list(table_directives.cascade_notify.update),
            )
        if directives is not None:
            self._check_columns(spec, directives)
        return spec

    def _check_columns(self, spec: TableSpec, directives: StatementDirectives) -> None:
        for field_name in directives.columns:
            if spec.get_column(field_name) is None:
                location = directives.location_of("column", field_name)
                raise AnnotationError(
                    f"column directive names unknown column '{field_name}' of '{spec.name}'. "
                    f"Available columns: {', '.join(spec.column_names)}",
                    location.source if location else None,
                    location.line if location else None,
                    location.column if location else None,
                )

    def _cascade_target(self, spec: TableSpec, target: str, catalog: SchemaCatalog) -> str:
        found = catalog.get(target)
        if found is None or found.is_view:
            tables = sorted(t.name for t in catalog.tables.values() if not t.is_view)
            raise SchemaError(
                f"cascadeNotify on '{spec.name}' names unknown table '{target}'. "
                f"Available tables: {', '.join(tables)}"
            )
        return found.name

    # --- views ---

    def _view_spec(
        self,
        name: str,
        directives: StatementDirectives,
        analyzer: QueryAnalyzer,
        shapes: ResultShapeResolver,
    ) -> TableSpec:
        query_directives = directives.query
        generator = (
            query_directives.property_name_generator
            if query_directives is not None and query_directives.property_name_generator
            else self.config.property_name_generator
        )
        analyzed = analyzer.analyze(directives, name, sql=view_select(directives.statement))
        result = shapes.resolve(analyzed, directives, generator, name)
        flat_names = {c.label: c.property_name for c in result.columns}

        columns = [
            ColumnSpec(
                name=c.label,
                sql_type=c.sql_type,
                nullable=c.nullable,
                property_name=flat_names.get(c.label) or property_name(c.label, generator),
                property_type=c.property_type,
                type_hint=c.sql_type if c.origin == TypeOrigin.HINT else None,
            )
            for c in analyzed.columns
        ]
        logger.debug(f"View '{name}' reads {analyzed.read_tables}")
        return TableSpec(
            name=name,
            is_view=True,
            columns=columns,
            base_tables=list(analyzed.read_tables),
            result=result,
            property_name_generator=generator,
            class_name=query_directives.name if query_directives is not None else None,
            sql=directives.statement.code,
        )


def created_object(statement: lexer.RawStatement) -> tuple[str | None, str | None]:
    """Return (``TABLE``/``VIEW``/..., name) for a CREATE statement."""
    words = [t for t in statement.tokens if t.kind in (lexer.WORD, lexer.IDENT, lexer.PUNCT)]
    if not words or words[0].upper != "CREATE":
        return None, None
    i = 1
    while i < len(words) and words[i].upper in ("TEMP", "TEMPORARY", "VIRTUAL", "UNIQUE"):
        i += 1
    if i >= len(words):
        return None, None
    kind = words[i].upper
    i += 1
    if [w.upper for w in words[i : i + 3]] == ["IF", "NOT", "EXISTS"]:
        i += 3
    if i >= len(words):
        return kind, None
    name = lexer.unquote_identifier(words[i].text)
    if i + 2 < len(words) and words[i + 1].text == ".":
        name = lexer.unquote_identifier(words[i + 2].text)
    if kind not in ("TABLE", "VIEW"):
        return kind, None
    return kind, name


def view_select(statement: lexer.RawStatement) -> str:
    """Return the SELECT part of a CREATE VIEW statement."""
    depth = 0
    tokens = statement.body_tokens
    for index, token in enumerate(tokens):
        if token.text == "(":
            depth += 1
        elif token.text == ")":
            depth -= 1
        elif depth == 0 and token.kind == lexer.WORD and token.upper == "AS":
            return lexer.render(tokens[index + 1 :], keep_comments=False).strip()
    raise SchemaError(f"{statement.source or '<string>'}:{statement.line}: CREATE VIEW without AS")
