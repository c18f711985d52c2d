"""Compilation of a database source directory.

Layout::

    <root>/
      schema/*.sql                  tables and views
      init/*.sql                    seed data for a fresh database
      migration/NNNN[_desc].sql     numbered migrations
      queries/<namespace>/*.sql     one statement per file
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from sqlnow.compiler import lexer
from sqlnow.compiler.analyzer import QueryAnalyzer
from sqlnow.compiler.dependencies import DependencyExtractor
from sqlnow.compiler.directives import AnnotationExtractor, StatementDirectives
from sqlnow.compiler.schema import SchemaModel, SchemaModelBuilder
from sqlnow.compiler.shapes import ResultShapeResolver, SharedResultRegistry
from sqlnow.core.config import CompilerConfig
from sqlnow.core.types import (
    CompiledDatabase,
    MigrationSpec,
    NamespaceModel,
    QuerySpec,
    ResultNode,
)
from sqlnow.exceptions import SchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = "schema"
INIT_DIR = "init"
MIGRATION_DIR = "migration"
QUERIES_DIR = "queries"

_MIGRATION_FILE = re.compile(r"(\d+)(?:_(.*))?")


class SqlCompiler:
    """Compiles annotated SQL sources into a :class:`CompiledDatabase`.

    Example:
        compiled = SqlCompiler().compile("sql/AppDatabase")
        print(compiled.model_dump_json(indent=2))
    """

    def __init__(self, config: CompilerConfig | None = None) -> None:
        self.config = config or CompilerConfig()

    def compile(self, root: str | Path, name: str | None = None) -> CompiledDatabase:
        """Compile every source under ``root``.

        Args:
            root: Database source directory
            name: Database name (defaults to the directory name)

        Returns:
            The compiled database

        Raises:
            CompileError: On the first problem found; nothing partial is returned
        """
        root = Path(root)
        if not root.is_dir():
            raise SchemaError(f"Source directory '{root}' does not exist")
        name = name or root.name
        logger.info(f"Compiling database '{name}' from {root}")

        builder = SchemaModelBuilder(self.config)
        try:
            for path in _sql_files(root / SCHEMA_DIR):
                builder.add_source(path.read_text(encoding="utf-8"), _relative(path, root))
            schema = builder.build()
            namespaces, shared = self._compile_queries(root, schema)
        finally:
            builder.close()

        compiled = CompiledDatabase(
            name=name,
            schema_statements=schema.statements,
            init_statements=self._init_statements(root),
            migrations=self._migrations(root),
            tables=dict(schema.tables),
            namespaces=namespaces,
            shared_results=shared,
            dependency_graph=schema.graph.to_edges(),
        )
        logger.info(
            f"Compiled '{name}': {len(compiled.tables)} tables/views, "
            f"{len(compiled.iter_queries())} queries, {len(compiled.migrations)} migrations"
        )
        return compiled

    def compile_to_json(
        self, root: str | Path, output: str | Path, name: str | None = None
    ) -> CompiledDatabase:
        """Compile and write the result as JSON."""
        compiled = self.compile(root, name)
        Path(output).write_text(compiled.model_dump_json(indent=2), encoding="utf-8")
        return compiled

    # --- queries ---

    def _compile_queries(
        self, root: Path, schema: SchemaModel
    ) -> tuple[dict[str, NamespaceModel], dict[str, ResultNode]]:
        analyzer = QueryAnalyzer(schema.catalog, self.config)
        shapes = ResultShapeResolver(schema.catalog)
        registry = SharedResultRegistry()
        dependencies = DependencyExtractor(schema.catalog, schema.graph)
        namespaces: dict[str, NamespaceModel] = {}

        queries_dir = root / QUERIES_DIR
        if not queries_dir.is_dir():
            return namespaces, registry.results
        for ns_dir in sorted(p for p in queries_dir.iterdir() if p.is_dir()):
            namespace = NamespaceModel(name=ns_dir.name)
            for path in _sql_files(ns_dir):
                source = _relative(path, root)
                text = path.read_text(encoding="utf-8")
                statements = AnnotationExtractor(text, source).statements()
                if len(statements) != 1:
                    raise SchemaError(
                        f"{source}: a query file must contain exactly one statement, "
                        f"found {len(statements)}"
                    )
                spec = self._compile_query(
                    statements[0],
                    namespace.name,
                    path.stem,
                    analyzer,
                    shapes,
                    registry,
                    dependencies,
                )
                if spec.name in namespace.queries:
                    raise SchemaError(
                        f"{source}: query '{spec.qualified_name}' is already defined by "
                        f"{namespace.queries[spec.name].source}"
                    )
                namespace.queries[spec.name] = spec
                for table in spec.touched_tables:
                    if table not in namespace.tables:
                        namespace.tables.append(table)
            namespaces[namespace.name] = namespace
        return namespaces, registry.results

    def _compile_query(
        self,
        directives: StatementDirectives,
        namespace: str,
        default_name: str,
        analyzer: QueryAnalyzer,
        shapes: ResultShapeResolver,
        registry: SharedResultRegistry,
        dependencies: DependencyExtractor,
    ) -> QuerySpec:
        query = directives.query
        name = (query.name if query is not None else None) or default_name
        qualified = f"{namespace}.{name}"
        generator = (
            query.property_name_generator
            if query is not None and query.property_name_generator
            else self.config.property_name_generator
        )
        analyzed = analyzer.analyze(directives, qualified)

        result = None
        if analyzed.columns:
            result = shapes.resolve(analyzed, directives, generator, qualified)
            if query is not None and query.result_name:
                result = registry.register(
                    namespace, query.result_name, result, qualified, generator
                )
        elif directives.dynamic_fields:
            raise SchemaError(f"'{qualified}' has dynamicField directives but returns no columns")

        spec = QuerySpec(
            namespace=namespace,
            name=name,
            kind=analyzed.kind,
            returning=analyzed.returning,
            upsert=analyzed.upsert,
            replace=analyzed.replace,
            sql=analyzed.sql,
            source=directives.statement.source,
            parameters=analyzed.parameters,
            result=result,
            result_name=query.result_name if query is not None else None,
            class_name=query.query_result if query is not None else None,
            map_to=query.map_to if query is not None else None,
        )
        return dependencies.populate(spec, analyzed)

    # --- init and migrations ---

    def _init_statements(self, root: Path) -> list[str]:
        statements: list[str] = []
        for path in _sql_files(root / INIT_DIR):
            for statement in lexer.split_statements(
                path.read_text(encoding="utf-8"), _relative(path, root)
            ):
                statements.append(statement.code)
        return statements

    def _migrations(self, root: Path) -> list[MigrationSpec]:
        migrations: dict[int, MigrationSpec] = {}
        for path in _sql_files(root / MIGRATION_DIR):
            source = _relative(path, root)
            m = _MIGRATION_FILE.fullmatch(path.stem)
            if m is None:
                raise SchemaError(
                    f"{source}: migration files must be named NNNN.sql or NNNN_description.sql"
                )
            version = int(m.group(1))
            if version in migrations:
                raise SchemaError(
                    f"{source}: migration version {version} is already defined by "
                    f"{migrations[version].source}"
                )
            statements = lexer.split_statements(path.read_text(encoding="utf-8"), source)
            migrations[version] = MigrationSpec(
                version=version,
                description=m.group(2),
                statements=[s.code for s in statements],
                source=source,
            )
        return [migrations[v] for v in sorted(migrations)]


def _sql_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() == ".sql")


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)
