"""Query analysis: statement kind, parameters and typed output projection.

Statements are parsed with sqlglot into a statement tree. The engine itself
is the authority on what a SELECT projects: the statement is wrapped in a
temporary view on the scratch database and its column labels and declared
types are read back with ``PRAGMA table_info``. The statement tree is then
used to trace each projected column to the table column it comes from.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from sqlnow.compiler import lexer
from sqlnow.compiler.inference import ANY_TYPE, is_valid_sql_type, property_type_for
from sqlnow.core.config import CompilerConfig
from sqlnow.core.types import ColumnSpec, ParameterSpec, StatementKind, TableSpec, TypeOrigin
from sqlnow.exceptions import (
    AnnotationError,
    SchemaConflictError,
    SchemaError,
    TableNotFoundError,
    TypeInferenceError,
)

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from sqlnow.compiler.directives import ColumnDirectives, StatementDirectives

logger = logging.getLogger(__name__)

PARAM_PREFIX = "__sqlnow_param_"
INSPECT_VIEW = "__sqlnow_inspect"

_DUPLICATE_LABEL = re.compile(r"(.+):(\d+)")
_COMPARISONS = (exp.EQ, exp.NEQ, exp.GT, exp.GTE, exp.LT, exp.LTE, exp.Is, exp.NullSafeEQ)
_TEXT_MATCH = (exp.Like, exp.ILike, exp.Glob)
_COMPOUND = (exp.Union, exp.Intersect, exp.Except)


class SchemaCatalog:
    """Tables and views known to the compiler, plus the scratch connection."""

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self.tables: dict[str, TableSpec] = {}

    def add(self, spec: TableSpec) -> None:
        self.tables[spec.name] = spec

    def get(self, name: str) -> TableSpec | None:
        """Find a table or view by name (case-insensitive)."""
        if name in self.tables:
            return self.tables[name]
        lowered = name.lower()
        for key, spec in self.tables.items():
            if key.lower() == lowered:
                return spec
        return None

    def require(self, name: str) -> TableSpec:
        spec = self.get(name)
        if spec is None:
            raise TableNotFoundError(name, sorted(self.tables))
        return spec

    def base_tables(self, name: str, _seen: set[str] | None = None) -> list[str]:
        """Expand a view to the base tables it reads, recursively."""
        seen = _seen if _seen is not None else set()
        spec = self.get(name)
        if spec is None or spec.name in seen:
            return []
        seen.add(spec.name)
        if not spec.is_view:
            return [spec.name]
        out: list[str] = []
        for base in spec.base_tables:
            for table in self.base_tables(base, seen):
                if table not in out:
                    out.append(table)
        return out


@dataclass
class ColumnOrigin:
    """Where a projected value comes from."""

    sql_type: str = ""
    nullable: bool = True
    table: str | None = None
    column: ColumnSpec | None = None
    resolved: bool = False


@dataclass
class Source:
    """A FROM/JOIN item visible in one SELECT scope."""

    alias: str
    table: TableSpec | None = None
    columns: dict[str, ColumnOrigin] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    nullable: bool = False

    def lookup(self, name: str) -> ColumnOrigin | None:
        return self.columns.get(name.lower())


@dataclass
class ProjectedColumn:
    """One output column of a statement after type resolution."""

    label: str
    sql_type: str
    nullable: bool
    property_type: str
    origin: TypeOrigin
    source_alias: str | None = None
    source_table: str | None = None
    column: ColumnSpec | None = None
    property_name: str | None = None


@dataclass
class AnalyzedStatement:
    """Everything the analyzer learned about one statement."""

    kind: StatementKind
    sql: str
    returning: bool = False
    upsert: bool = False
    replace: bool = False
    parameters: list[ParameterSpec] = field(default_factory=list)
    columns: list[ProjectedColumn] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    main_alias: str | None = None
    read_tables: list[str] = field(default_factory=list)
    write_tables: list[str] = field(default_factory=list)

    def source(self, alias: str | None) -> Source | None:
        if alias is None:
            return None
        for src in self.sources:
            if src.alias.lower() == alias.lower():
                return src
        return None


class QueryAnalyzer:
    """Analyzes one statement against a :class:`SchemaCatalog`."""

    def __init__(self, catalog: SchemaCatalog, config: CompilerConfig | None = None) -> None:
        self.catalog = catalog
        self.config = config or CompilerConfig()

    def analyze(
        self, directives: StatementDirectives, name: str, sql: str | None = None
    ) -> AnalyzedStatement:
        """Analyze a statement and its directives.

        Args:
            directives: The statement with its extracted directives
            name: Qualified name used in error messages
            sql: Statement text to analyze instead of the statement's own code
                 (the SELECT of a CREATE VIEW)

        Returns:
            The analyzed statement

        Raises:
            SchemaError: If the engine or the parser rejects the statement
            SchemaConflictError: If two projected columns share a label
            TypeInferenceError: If a column's type cannot be determined
        """
        statement = directives.statement
        sql = sql if sql is not None else statement.code
        tokens = lexer.tokenize(sql)
        tree = self._parse(tokens, name, statement.source)
        words = [t.upper for t in tokens if t.kind == lexer.WORD]

        result = AnalyzedStatement(kind=_statement_kind(tree, name), sql=sql)
        result.returning = bool(tree.args.get("returning"))
        if result.kind == StatementKind.INSERT:
            result.replace = words[:1] == ["REPLACE"] or words[:3] == ["INSERT", "OR", "REPLACE"]
            result.upsert = "CONFLICT" in words and _has_sequence(words, ["DO", "UPDATE"])

        self._inspect(tokens, result, name)
        self._collect_tables(tree, result)
        scopes = _ScopeResolver(self.catalog)

        if result.kind == StatementKind.SELECT:
            select = _leftmost_select(tree)
            result.sources = scopes.sources(select)
            result.main_alias = result.sources[0].alias if result.sources else None
            result.columns = self._project_select(select, scopes, result, directives, name)
        elif result.returning:
            target = self.catalog.require(result.write_tables[0])
            result.sources = [_table_source(target, target.name)]
            result.main_alias = target.name
            result.columns = self._project_returning(tree, target, directives, name)

        self._check_field_directives(directives, result)
        result.parameters = self._parameters(tokens, tree, scopes)
        return result

    # --- parsing ---

    def _parse(self, tokens: list[lexer.Token], name: str, source: str | None) -> exp.Expression:
        analysis_sql = lexer.render(tokens, replace_param=_analysis_param)
        try:
            tree = sqlglot.parse_one(analysis_sql, read="sqlite")
        except SqlglotError as e:
            raise SchemaError(f"Could not parse '{name}' ({source or '<string>'}): {e}") from e
        if tree is None:
            raise SchemaError(f"'{name}' does not contain a statement")
        return tree

    def _inspect(self, tokens: list[lexer.Token], result: AnalyzedStatement, name: str) -> None:
        """Let the engine compile the statement and report its projection."""
        inspect_sql = lexer.render(tokens, replace_param=_inspect_param).strip()
        conn = self.catalog.connection
        try:
            if result.kind == StatementKind.SELECT:
                conn.execute(text(f'DROP VIEW IF EXISTS temp."{INSPECT_VIEW}"'))
                conn.exec_driver_sql(f'CREATE TEMP VIEW "{INSPECT_VIEW}" AS {inspect_sql}')
                try:
                    rows = conn.exec_driver_sql(f'PRAGMA temp.table_info("{INSPECT_VIEW}")').all()
                finally:
                    conn.exec_driver_sql(f'DROP VIEW IF EXISTS temp."{INSPECT_VIEW}"')
                result.columns = [
                    ProjectedColumn(
                        label=row[1],
                        sql_type=row[2] or "",
                        nullable=True,
                        property_type=ANY_TYPE,
                        origin=TypeOrigin.FALLBACK,
                    )
                    for row in rows
                ]
            else:
                conn.exec_driver_sql(f"EXPLAIN {inspect_sql}").all()
        except DBAPIError as e:
            raise SchemaError(f"The engine rejected '{name}': {e.orig}") from e

        labels = [c.label for c in result.columns]
        for label in labels:
            m = _DUPLICATE_LABEL.fullmatch(label)
            if m and m.group(1) in labels:
                raise SchemaConflictError(
                    f"'{name}' projects column '{m.group(1)}' more than once; "
                    f"give each one a distinct alias"
                )

    def _collect_tables(self, tree: exp.Expression, result: AnalyzedStatement) -> None:
        ctes = {cte.alias_or_name.lower() for cte in tree.find_all(exp.CTE)}
        target = _write_target(tree)
        if target is not None:
            spec = self.catalog.require(target.name)
            result.write_tables.append(spec.name)
        for table in tree.find_all(exp.Table):
            if table is target or not table.name or table.name.lower() in ctes:
                continue
            spec = self.catalog.get(table.name)
            if spec is not None and spec.name not in result.read_tables:
                result.read_tables.append(spec.name)

    # --- projection ---

    def _project_select(
        self,
        select: exp.Select,
        scopes: _ScopeResolver,
        result: AnalyzedStatement,
        directives: StatementDirectives,
        name: str,
    ) -> list[ProjectedColumn]:
        inspected = result.columns
        traced = _expand_projection(select, result.sources)
        if len(traced) != len(inspected):
            logger.debug(f"Projection of '{name}' differs from the engine's; matching by name")
            traced = [(None, self._by_label(c.label, result.sources)) for c in inspected]

        columns: list[ProjectedColumn] = []
        for col, (alias, node) in zip(inspected, traced, strict=True):
            hint = directives.column(col.label)
            origin, src_alias = self._origin(node, alias, scopes, select, col, hint, name)
            columns.append(self._finish(col.label, col.sql_type, origin, src_alias, hint, name))
        return columns

    def _project_returning(
        self,
        tree: exp.Expression,
        target: TableSpec,
        directives: StatementDirectives,
        name: str,
    ) -> list[ProjectedColumn]:
        returning = tree.args["returning"]
        source = _table_source(target, target.name)
        columns: list[ProjectedColumn] = []
        for projection in returning.expressions:
            inner = projection.this if isinstance(projection, exp.Alias) else projection
            if isinstance(inner, exp.Star) or (
                isinstance(inner, exp.Column) and isinstance(inner.this, exp.Star)
            ):
                pairs = [(c.name, source.lookup(c.name)) for c in target.columns]
            elif isinstance(inner, exp.Column) and source.lookup(inner.name):
                pairs = [(projection.alias_or_name, source.lookup(inner.name))]
            else:
                pairs = [(projection.alias_or_name, _expression_origin(inner))]
            for label, origin in pairs:
                assert origin is not None
                hint = directives.column(label)
                columns.append(self._finish(label, "", origin, target.name, hint, name))
        return columns

    def _origin(
        self,
        node: exp.Expression | None,
        alias: str | None,
        scopes: _ScopeResolver,
        select: exp.Select,
        projected: ProjectedColumn,
        hint: ColumnDirectives | None,
        name: str,
    ) -> tuple[ColumnOrigin, str | None]:
        if isinstance(node, ColumnOrigin):
            return node, alias
        if node is None:
            return ColumnOrigin(sql_type=projected.sql_type), None
        inner = node.this if isinstance(node, exp.Alias) else node
        if isinstance(inner, exp.Column) and not inner.name.startswith(PARAM_PREFIX):
            found = scopes.resolve_column(select, inner)
            if found is not None:
                return found
            has_override = hint is not None and hint.sql_type_hint is not None
            if self.config.strict_types and not has_override and inner.name.lower() != "rowid":
                reason = (
                    f"no source named '{inner.table}'"
                    if inner.table
                    else "it does not belong to exactly one source of the query"
                )
                raise TypeInferenceError(projected.label, name, reason)
            if inner.name.lower() == "rowid":
                return ColumnOrigin(sql_type="INTEGER", nullable=False, resolved=True), None
            return ColumnOrigin(sql_type=projected.sql_type), None
        origin = _expression_origin(inner)
        if not origin.sql_type:
            origin.sql_type = projected.sql_type
        return origin, None

    def _by_label(self, label: str, sources: list[Source]) -> ColumnOrigin | None:
        matches = [src.lookup(label) for src in sources if src.lookup(label) is not None]
        return matches[0] if len(matches) == 1 else None

    def _finish(
        self,
        label: str,
        inspected_type: str,
        origin: ColumnOrigin,
        source_alias: str | None,
        hint: ColumnDirectives | None,
        name: str,
    ) -> ProjectedColumn:
        """Apply type precedence: hint, then notNull, then introspection, then fallback."""
        column = origin.column
        if origin.resolved and column is not None:
            sql_type, nullable, kind = origin.sql_type, origin.nullable, TypeOrigin.INTROSPECTED
            prop_type = column.property_type
        elif origin.resolved:
            sql_type, nullable, kind = origin.sql_type, origin.nullable, TypeOrigin.INTROSPECTED
            prop_type = property_type_for(sql_type)
        else:
            sql_type, nullable, kind = origin.sql_type or inspected_type, True, TypeOrigin.FALLBACK
            prop_type = property_type_for(sql_type) if origin.sql_type else ANY_TYPE

        property_name = None
        if hint is not None:
            if hint.not_null is not None:
                nullable = not hint.not_null
                kind = TypeOrigin.NOT_NULL
            if hint.sql_type_hint:
                if not is_valid_sql_type(hint.sql_type_hint):
                    raise TypeInferenceError(
                        label, name, f"invalid sqlTypeHint '{hint.sql_type_hint}'"
                    )
                sql_type = hint.sql_type_hint
                prop_type = property_type_for(sql_type)
                kind = TypeOrigin.HINT
            if hint.property_type:
                prop_type = hint.property_type
            property_name = hint.property_name

        return ProjectedColumn(
            label=label,
            sql_type=sql_type,
            nullable=nullable,
            property_type=prop_type,
            origin=kind,
            source_alias=source_alias,
            source_table=origin.table,
            column=column,
            property_name=property_name,
        )

    def _check_field_directives(
        self, directives: StatementDirectives, result: AnalyzedStatement
    ) -> None:
        labels = {c.label.lower() for c in result.columns}
        for field_name in directives.columns:
            if field_name.lower() not in labels:
                location = directives.location_of("column", field_name)
                raise AnnotationError(
                    f"field '{field_name}' is not a projected column. "
                    f"Projected columns: {', '.join(c.label for c in result.columns) or 'none'}",
                    location.source if location else directives.statement.source,
                    location.line if location else None,
                    location.column if location else None,
                )

    # --- parameters ---

    def _parameters(
        self, tokens: list[lexer.Token], tree: exp.Expression, scopes: _ScopeResolver
    ) -> list[ParameterSpec]:
        ordered: dict[str, ParameterSpec] = {}
        previous: lexer.Token | None = None
        for token in tokens:
            if token.kind == lexer.PARAM:
                name = token.param_name
                is_collection = previous is not None and previous.upper == "IN"
                spec = ordered.setdefault(name, ParameterSpec(name=name))
                spec.is_collection = spec.is_collection or is_collection
            if token.kind not in (lexer.WS, *lexer.COMMENTS):
                previous = token

        for node in tree.find_all(exp.Column):
            if not node.name.startswith(PARAM_PREFIX):
                continue
            spec = ordered.get(node.name[len(PARAM_PREFIX) :])
            if spec is None or spec.sql_type:
                continue
            inferred = _parameter_context(node, tree, scopes)
            if inferred is not None:
                sql_type, prop_type, nullable = inferred
                spec.sql_type = sql_type
                spec.property_type = prop_type
                spec.nullable = nullable
        return list(ordered.values())


class _ScopeResolver:
    """Builds FROM/JOIN sources per SELECT and resolves column references."""

    def __init__(self, catalog: SchemaCatalog) -> None:
        self.catalog = catalog
        self._cache: dict[int, list[Source]] = {}

    def sources(self, select: exp.Expression) -> list[Source]:
        key = id(select)
        if key not in self._cache:
            self._cache[key] = self._build(select)
        return self._cache[key]

    def _build(self, select: exp.Expression) -> list[Source]:
        ctes = self._ctes(select)
        out: list[Source] = []
        if isinstance(select, (exp.Update, exp.Delete)):
            target = select.this
            if isinstance(target, exp.Table):
                spec = self.catalog.get(target.name)
                if spec is not None:
                    out.append(_table_source(spec, target.alias_or_name))
        elif isinstance(select, exp.Insert):
            target = _write_target(select)
            if target is not None and (spec := self.catalog.get(target.name)) is not None:
                out.append(_table_source(spec, target.alias_or_name))
                out.append(_table_source(spec, "excluded"))
        from_ = select.args.get("from") or select.args.get("from_")
        items: list[tuple[exp.Expression, str | None]] = []
        if from_ is not None:
            items.append((from_.this, None))
        for join in select.args.get("joins") or []:
            items.append((join.this, (join.side or "").upper() or None))

        for item, side in items:
            source = self._source(item, ctes)
            if source is None:
                continue
            if side in ("LEFT", "FULL"):
                source.nullable = True
            if side in ("RIGHT", "FULL"):
                for previous in out:
                    previous.nullable = True
            out.append(source)
        return out

    def _ctes(self, node: exp.Expression) -> dict[str, exp.Expression]:
        found: dict[str, exp.Expression] = {}
        current: exp.Expression | None = node
        while current is not None:
            with_ = current.args.get("with") or current.args.get("with_")
            if with_ is not None:
                for cte in with_.expressions:
                    found.setdefault(cte.alias_or_name.lower(), cte.this)
            current = current.parent
        return found

    def _source(self, item: exp.Expression, ctes: dict[str, exp.Expression]) -> Source | None:
        if isinstance(item, exp.Table):
            alias = item.alias_or_name
            if item.name.lower() in ctes:
                return self._derived(ctes[item.name.lower()], alias)
            spec = self.catalog.get(item.name)
            if spec is None:
                return None
            return _table_source(spec, alias)
        if isinstance(item, exp.Subquery):
            return self._derived(item.this, item.alias_or_name)
        return None

    def _derived(self, query: exp.Expression, alias: str) -> Source:
        select = _leftmost_select(query)
        inner_sources = self.sources(select)
        source = Source(alias=alias)
        for label, node in _labelled_projection(select, inner_sources):
            origin = node if isinstance(node, ColumnOrigin) else None
            if origin is None and isinstance(node, exp.Expression):
                inner = node.this if isinstance(node, exp.Alias) else node
                if isinstance(inner, exp.Column):
                    found = self.resolve_column(select, inner)
                    origin = found[0] if found else ColumnOrigin()
                else:
                    origin = _expression_origin(inner)
            source.columns.setdefault(label.lower(), origin or ColumnOrigin())
            source.order.append(label)
        return source

    def resolve_column(
        self, scope: exp.Expression, column: exp.Column
    ) -> tuple[ColumnOrigin, str] | None:
        """Resolve a column reference within its nearest enclosing scope."""
        node: exp.Expression | None = column
        while node is not None:
            if isinstance(node, (exp.Select, exp.Update, exp.Delete, exp.Insert)):
                found = self._resolve_in(self.sources(node), column)
                if found is not None:
                    return found
            node = node.parent
        if scope is not None and not _is_ancestor(scope, column):
            return self._resolve_in(self.sources(scope), column)
        return None

    def _resolve_in(
        self, sources: list[Source], column: exp.Column
    ) -> tuple[ColumnOrigin, str] | None:
        if column.table:
            for source in sources:
                if source.alias.lower() == column.table.lower():
                    origin = source.lookup(column.name)
                    if origin is None:
                        return None
                    return _nullable(origin, source.nullable), source.alias
            return None
        matches = [(s, s.lookup(column.name)) for s in sources if s.lookup(column.name)]
        if len(matches) != 1:
            return None
        source, origin = matches[0]
        assert origin is not None
        return _nullable(origin, source.nullable), source.alias


# === helpers ===


def _analysis_param(token: lexer.Token, previous: lexer.Token | None) -> str:
    name = PARAM_PREFIX + token.param_name
    if previous is not None and previous.upper == "IN":
        return f"({name})"
    return name


def _inspect_param(token: lexer.Token, previous: lexer.Token | None) -> str:
    if previous is not None and previous.upper in ("LIMIT", "OFFSET"):
        return "0"
    if previous is not None and previous.upper == "IN":
        return "(NULL)"
    return "NULL"


def _has_sequence(words: list[str], sequence: list[str]) -> bool:
    n = len(sequence)
    return any(words[i : i + n] == sequence for i in range(len(words) - n + 1))


def _statement_kind(tree: exp.Expression, name: str) -> StatementKind:
    if isinstance(tree, (exp.Select, *_COMPOUND)):
        return StatementKind.SELECT
    if isinstance(tree, exp.Insert):
        return StatementKind.INSERT
    if isinstance(tree, exp.Update):
        return StatementKind.UPDATE
    if isinstance(tree, exp.Delete):
        return StatementKind.DELETE
    raise SchemaError(
        f"'{name}' is a {tree.key.upper()} statement. "
        f"Supported: {', '.join(k.upper() for k in StatementKind.values())}"
    )


def _leftmost_select(tree: exp.Expression) -> exp.Expression:
    node = tree
    while isinstance(node, _COMPOUND):
        node = node.this
    if isinstance(node, exp.Subquery):
        return _leftmost_select(node.this)
    return node


def _write_target(tree: exp.Expression) -> exp.Table | None:
    if isinstance(tree, exp.Insert):
        target = tree.this
        if isinstance(target, exp.Schema):
            target = target.this
        return target if isinstance(target, exp.Table) else None
    if isinstance(tree, (exp.Update, exp.Delete)):
        return tree.this if isinstance(tree.this, exp.Table) else None
    return None


def _table_source(spec: TableSpec, alias: str) -> Source:
    source = Source(alias=alias, table=spec)
    for column in spec.columns:
        source.columns[column.name.lower()] = ColumnOrigin(
            sql_type=column.type_hint or column.sql_type,
            nullable=column.nullable,
            table=spec.name,
            column=column,
            resolved=True,
        )
        source.order.append(column.name)
    return source


def _nullable(origin: ColumnOrigin, force: bool) -> ColumnOrigin:
    if not force or origin.nullable:
        return origin
    return ColumnOrigin(
        sql_type=origin.sql_type,
        nullable=True,
        table=origin.table,
        column=origin.column,
        resolved=origin.resolved,
    )


def _is_ancestor(node: exp.Expression, child: exp.Expression) -> bool:
    current: exp.Expression | None = child
    while current is not None:
        if current is node:
            return True
        current = current.parent
    return False


def _expand_projection(
    select: exp.Expression, sources: list[Source]
) -> list[tuple[str | None, exp.Expression | ColumnOrigin | None]]:
    """Expand ``*`` and ``alias.*`` into per-column entries, in engine order."""
    out: list[tuple[str | None, exp.Expression | ColumnOrigin | None]] = []
    for projection in select.expressions if isinstance(select, exp.Select) else []:
        if isinstance(projection, exp.Star):
            for source in sources:
                out.extend(
                    (source.alias, _nullable(source.columns[c.lower()], source.nullable))
                    for c in source.order
                )
        elif isinstance(projection, exp.Column) and isinstance(projection.this, exp.Star):
            matched = [s for s in sources if s.alias.lower() == projection.table.lower()]
            for source in matched[:1]:
                out.extend(
                    (source.alias, _nullable(source.columns[c.lower()], source.nullable))
                    for c in source.order
                )
        else:
            out.append((None, projection))
    return out


def _labelled_projection(
    select: exp.Expression, sources: list[Source]
) -> list[tuple[str, exp.Expression | ColumnOrigin | None]]:
    labelled: list[tuple[str, exp.Expression | ColumnOrigin | None]] = []
    for alias, node in _expand_projection(select, sources):
        if isinstance(node, ColumnOrigin):
            label = node.column.name if node.column is not None else ""
        elif node is not None:
            label = node.alias_or_name
        else:
            label = ""
        labelled.append((label, node))
    return labelled


def _expression_origin(node: exp.Expression) -> ColumnOrigin:
    """Best-effort typing of a computed projection."""
    if isinstance(node, exp.Cast):
        return ColumnOrigin(sql_type=node.args["to"].sql(dialect="sqlite"), nullable=True)
    if isinstance(node, exp.Count):
        return ColumnOrigin(sql_type="INTEGER", nullable=False, resolved=True)
    if isinstance(node, exp.Literal):
        if node.is_string:
            return ColumnOrigin(sql_type="TEXT", nullable=False, resolved=True)
        if node.is_int:
            return ColumnOrigin(sql_type="INTEGER", nullable=False, resolved=True)
        return ColumnOrigin(sql_type="REAL", nullable=False, resolved=True)
    if isinstance(node, exp.Paren):
        return _expression_origin(node.this)
    return ColumnOrigin()


def _parameter_context(
    node: exp.Column, tree: exp.Expression, scopes: _ScopeResolver
) -> tuple[str, str, bool] | None:
    """Infer a parameter's type from the expression around it."""
    parent = node.parent
    while isinstance(parent, exp.Paren):
        node, parent = parent, parent.parent  # type: ignore[assignment]

    if isinstance(parent, (exp.Limit, exp.Offset, exp.Fetch)):
        return "INTEGER", "int", False
    if isinstance(parent, exp.Cast):
        sql_type = parent.args["to"].sql(dialect="sqlite")
        return sql_type, property_type_for(sql_type), False
    if isinstance(parent, _TEXT_MATCH):
        return "TEXT", "str", False
    if isinstance(parent, (*_COMPARISONS, exp.In, exp.Between)):
        other = parent.this if parent.this is not node else parent.args.get("expression")
        if isinstance(other, exp.Column) and not other.name.startswith(PARAM_PREFIX):
            found = scopes.resolve_column(tree, other)
            if found is not None:
                origin = found[0]
                nullable = False
                # SET col = :value and upsert assignments follow the column's nullability
                if isinstance(parent, exp.EQ) and isinstance(parent.parent, (exp.Update,)):
                    nullable = origin.nullable
                if isinstance(parent, exp.EQ) and parent.arg_key == "expressions" and isinstance(
                    parent.parent, exp.OnConflict
                ):
                    nullable = origin.nullable
                return _parameter_type(origin, nullable)
        return None
    if isinstance(parent, exp.Tuple) and isinstance(parent.parent, exp.Values):
        insert = parent.parent.parent
        if isinstance(insert, exp.Insert):
            return _insert_position(insert, parent.expressions.index(node), scopes)
    return None


def _insert_position(
    insert: exp.Insert, index: int, scopes: _ScopeResolver
) -> tuple[str, str, bool] | None:
    target = _write_target(insert)
    if target is None:
        return None
    spec = scopes.catalog.get(target.name)
    if spec is None:
        return None
    if isinstance(insert.this, exp.Schema) and insert.this.expressions:
        names = [c.name for c in insert.this.expressions]
    else:
        names = spec.column_names
    if index >= len(names):
        return None
    column = spec.get_column(names[index])
    if column is None:
        return None
    origin = ColumnOrigin(
        sql_type=column.type_hint or column.sql_type,
        nullable=column.nullable,
        table=spec.name,
        column=column,
        resolved=True,
    )
    return _parameter_type(origin, column.nullable or column.default_value is not None)


def _parameter_type(origin: ColumnOrigin, nullable: bool) -> tuple[str, str, bool]:
    if origin.column is not None:
        return origin.sql_type, origin.column.property_type, nullable
    return origin.sql_type, property_type_for(origin.sql_type), nullable
