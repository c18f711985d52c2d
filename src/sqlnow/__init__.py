"""SQLNow - typed, reactive access to SQLite from annotated SQL files.

The compiler reads schema and query files whose comments carry ``@@{...}``
directives and produces typed models of every table, view and query: result
shapes (including nested objects and collections), parameters, and the tables
each query reads or affects. The runtime serves those queries on one
serialized SQLite connection, re-delivers live queries after matching
mutations, and snapshots in-memory databases to durable storage.

Example:
    from sqlnow import SqlCompiler, SqlNowDatabase, MemorySnapshotStore

    compiled = SqlCompiler().compile("sql/")

    async with SqlNowDatabase(compiled, store=MemorySnapshotStore()) as db:
        await db.query("customer", "insert").execute(name="Ada")

        # Live query: first result now, a fresh one after every matching write
        sub = await db.query("customer", "all").subscribe(sink=print)

        async with db.transaction():
            await db.query("customer", "insert").execute(name="Grace")

        sub.cancel()
"""

from sqlnow.compiler import (
    AnnotationExtractor,
    DependencyExtractor,
    QueryAnalyzer,
    ResultShapeResolver,
    SchemaModelBuilder,
    SqlCompiler,
)
from sqlnow.core.config import CompilerConfig, DatabaseConfig
from sqlnow.core.types import (
    CompiledDatabase,
    PropertyNameGenerator,
    QuerySpec,
    ResultKind,
    ResultNode,
    StatementKind,
    TableSpec,
    TransactionMode,
)
from sqlnow.exceptions import (
    AnnotationError,
    CompileError,
    ConnectionError,
    DatabaseClosedError,
    MigrationError,
    PersistenceError,
    QueryError,
    QueryNotFoundError,
    RowCountError,
    SchemaConflictError,
    SchemaError,
    SqlNowError,
    TableNotFoundError,
    TransactionError,
    TypeInferenceError,
)
from sqlnow.runtime import (
    DatabaseSnapshotStore,
    FileSnapshotStore,
    MemorySnapshotStore,
    PersistenceController,
    QueryRunner,
    ReactiveSubscriptionManager,
    SqlNowDatabase,
    Subscription,
    TransactionCoordinator,
    TypeAdapters,
)

__version__ = "0.1.0"

__all__ = [
    # Compiler
    "SqlCompiler",
    "CompilerConfig",
    "AnnotationExtractor",
    "SchemaModelBuilder",
    "QueryAnalyzer",
    "ResultShapeResolver",
    "DependencyExtractor",
    # Models
    "CompiledDatabase",
    "TableSpec",
    "QuerySpec",
    "ResultNode",
    "ResultKind",
    "StatementKind",
    "PropertyNameGenerator",
    "TransactionMode",
    # Runtime
    "SqlNowDatabase",
    "DatabaseConfig",
    "QueryRunner",
    "Subscription",
    "TransactionCoordinator",
    "ReactiveSubscriptionManager",
    "PersistenceController",
    "MemorySnapshotStore",
    "FileSnapshotStore",
    "DatabaseSnapshotStore",
    "TypeAdapters",
    # Exceptions
    "SqlNowError",
    "CompileError",
    "AnnotationError",
    "SchemaConflictError",
    "TypeInferenceError",
    "SchemaError",
    "TableNotFoundError",
    "QueryNotFoundError",
    "ConnectionError",
    "DatabaseClosedError",
    "QueryError",
    "RowCountError",
    "TransactionError",
    "PersistenceError",
    "MigrationError",
]
