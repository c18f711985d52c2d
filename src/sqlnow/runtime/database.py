"""The runtime entry point: one open database serving compiled queries."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import DBAPIError, StatementError

from sqlnow.compiler import lexer
from sqlnow.core.config import DatabaseConfig
from sqlnow.core.connection import DatabaseConnection
from sqlnow.exceptions import DatabaseClosedError, QueryError, RowCountError
from sqlnow.runtime.coordinator import MutationCycle, TransactionCoordinator
from sqlnow.runtime.mapping import RowMapper, TypeAdapters
from sqlnow.runtime.migrations import migrate
from sqlnow.runtime.persistence import NoopPersistenceController, PersistenceController
from sqlnow.runtime.subscriptions import ErrorSink, ReactiveSubscriptionManager, Sink, Subscription

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from sqlalchemy import Connection, TextClause

    from sqlnow.core.types import CompiledDatabase, QuerySpec, TransactionMode
    from sqlnow.runtime.coordinator import TransactionState
    from sqlnow.runtime.persistence import SnapshotStore

Row = dict[str, Any]


def _escape_literals(sql: str) -> str:
    """Escape colons inside literals so only real placeholders become bind parameters."""
    out = []
    for token in lexer.tokenize(sql):
        if token.kind in (lexer.STRING, lexer.IDENT):
            out.append(token.text.replace(":", "\\:"))
        else:
            out.append(token.text)
    return "".join(out)


class SqlNowDatabase:
    """A compiled database opened on SQLite.

    Example:
        >>> compiled = SqlCompiler().compile("sql/")
        >>> async with SqlNowDatabase(compiled) as db:
        ...     await db.query("users", "insert").execute(name="Ada")
        ...     users = await db.query("users", "all").as_list()
    """

    def __init__(
        self,
        compiled: CompiledDatabase,
        config: DatabaseConfig | None = None,
        store: SnapshotStore | None = None,
        adapters: TypeAdapters | None = None,
        mappers: Mapping[str, Callable[[Row], Any]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the database. Nothing is opened until :meth:`open`.

        Args:
            compiled: Compiler output
            config: Runtime options (in-memory, auto-flush by default)
            store: Snapshot store for in-memory databases; without one nothing is persisted
            adapters: Value conversions between Python and SQLite
            mappers: Callables applied to mapped rows of queries declaring ``mapTo``
            logger: Logger for every runtime component (default: module loggers)
        """
        self.compiled = compiled
        self.config = config or DatabaseConfig()
        self.adapters = adapters or TypeAdapters()
        self.mappers: dict[str, Callable[[Row], Any]] = dict(mappers or {})
        self._log = logger or logging.getLogger(__name__)

        self._connection = DatabaseConnection(self.config.url, echo=self.config.echo)
        self._coordinator = TransactionCoordinator(self._connection, logger)
        self._subscriptions = ReactiveSubscriptionManager(
            logger, enabled=self.config.notifications_enabled
        )
        self._persistence: PersistenceController | NoopPersistenceController
        if self._connection.is_memory and store is not None:
            self._persistence = PersistenceController(
                compiled.name, store, self._coordinator, self.config.auto_flush, logger
            )
        else:
            self._persistence = NoopPersistenceController(compiled.name)
        self._coordinator.add_listener(self._on_cycle)

        self._statements: dict[str, TextClause] = {}
        self._row_mappers: dict[str, RowMapper] = {}
        self._restored = False
        self._open = False
        self.migrations_applied: list[str] = []

    # --- lifecycle ---

    @property
    def name(self) -> str:
        return self.compiled.name

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def restored_from_snapshot(self) -> bool:
        return self._restored

    @property
    def coordinator(self) -> TransactionCoordinator:
        return self._coordinator

    @property
    def subscriptions(self) -> ReactiveSubscriptionManager:
        return self._subscriptions

    @property
    def persistence(self) -> PersistenceController | NoopPersistenceController:
        return self._persistence

    async def open(self) -> SqlNowDatabase:
        """Connect, restore the stored snapshot, and run migrations.

        Raises:
            ConnectionError: If the database cannot be opened
            PersistenceError: If a stored snapshot cannot be loaded
            MigrationError: If schema creation or a migration fails
        """
        if self._open:
            return self
        await self._coordinator.start()
        try:
            self._restored = await self._persistence.restore()
            if self.config.run_migrations:
                self.migrations_applied = await migrate(
                    self._coordinator, self.compiled, self._restored
                )
        except BaseException:
            await self._coordinator.close()
            raise
        self._open = True
        self._log.info(f"Opened database '{self.name}' ({self._connection.url})")
        return self

    async def close(self) -> None:
        """Stop live queries, force a final snapshot and close the connection.

        Raises:
            PersistenceError: If the final snapshot fails (the connection is closed anyway)
        """
        if not self._open:
            return
        self._open = False
        try:
            await self._subscriptions.close()
            await self._persistence.close()
        finally:
            await self._coordinator.close()
            self._log.info(f"Closed database '{self.name}'")

    async def __aenter__(self) -> SqlNowDatabase:
        return await self.open()

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    def _require_open(self) -> None:
        if not self._open:
            raise DatabaseClosedError(self.name)

    # --- transactions, notifications, persistence ---

    def transaction(
        self, mode: TransactionMode | None = None
    ) -> AbstractAsyncContextManager[TransactionState]:
        """Open (or join) a transaction. See :meth:`TransactionCoordinator.transaction`."""
        self._require_open()
        return self._coordinator.transaction(mode or self.config.default_transaction_mode)

    def enable_notifications(self) -> None:
        self._subscriptions.enable()

    def disable_notifications(self) -> None:
        self._subscriptions.disable()

    async def flush(self) -> bytes:
        """Force a snapshot now. Returns the persisted bytes (empty without a store)."""
        self._require_open()
        return await self._persistence.flush()

    async def wait_idle(self) -> None:
        """Wait until live queries and scheduled flushes have caught up."""
        await self._subscriptions.wait_idle()
        await self._persistence.wait_pending()

    def _on_cycle(self, cycle: MutationCycle) -> None:
        self._subscriptions.notify(cycle.tables)
        self._persistence.on_cycle(cycle)

    # --- statements ---

    def query(self, namespace: str, name: str) -> QueryRunner:
        """Get a runner for a compiled query.

        Raises:
            QueryNotFoundError: If the query was not compiled
        """
        return QueryRunner(self, self.compiled.get_query(namespace, name))

    async def execute(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        affected_tables: Iterable[str] = (),
    ) -> list[Row] | int:
        """Run a statement that was not compiled.

        Args:
            sql: One SQL statement with ``:name`` placeholders
            params: Values for the placeholders
            affected_tables: Tables to notify live queries about

        Returns:
            Rows as dicts when the statement returns rows, else the row count
        """
        self._require_open()
        tables = list(affected_tables)
        head = lexer.strip_comments(sql).lstrip().upper()
        mutating = bool(tables) or not head.startswith(("SELECT", "PRAGMA", "EXPLAIN", "VALUES"))
        statement = text(_escape_literals(sql))
        bound = {k: self.adapters.encode(v) for k, v in (params or {}).items()}
        rows, count = await self._run(statement, bound, sql, tables, mutating)
        return rows if rows is not None else count

    def _statement(self, query: QuerySpec) -> TextClause:
        statement = self._statements.get(query.qualified_name)
        if statement is None:
            statement = text(_escape_literals(query.sql))
            expanding = [
                bindparam(p.name, expanding=True) for p in query.parameters if p.is_collection
            ]
            if expanding:
                statement = statement.bindparams(*expanding)
            self._statements[query.qualified_name] = statement
        return statement

    def _mapper(self, query: QuerySpec) -> RowMapper | None:
        if query.result is None:
            return None
        mapper = self._row_mappers.get(query.qualified_name)
        if mapper is None:
            mapper = RowMapper(query.result, self.adapters)
            self._row_mappers[query.qualified_name] = mapper
        return mapper

    def _bind(self, query: QuerySpec, params: Mapping[str, Any]) -> dict[str, Any]:
        names = {p.name for p in query.parameters}
        unknown = sorted(set(params) - names)
        if unknown:
            raise QueryError(
                f"Unknown parameters for '{query.qualified_name}': {', '.join(unknown)}. "
                f"Expected: {', '.join(sorted(names)) or 'none'}"
            )
        missing = [p.name for p in query.parameters if p.name not in params]
        if missing:
            raise QueryError(
                f"Missing parameters for '{query.qualified_name}': {', '.join(missing)}"
            )
        bound: dict[str, Any] = {}
        for param in query.parameters:
            value = params[param.name]
            if param.is_collection and (
                isinstance(value, (str, bytes)) or not isinstance(value, Iterable)
            ):
                raise QueryError(
                    f"Parameter '{param.name}' of '{query.qualified_name}' takes a list of values"
                )
            bound[param.name] = self.adapters.encode(value)
        return bound

    async def run_query(self, query: QuerySpec, params: Mapping[str, Any]) -> list[Any] | int:
        """Execute a compiled query and map its rows.

        Returns:
            Mapped rows for SELECT and RETURNING statements, else the row count
        """
        self._require_open()
        bound = self._bind(query, params)
        mutating = not query.is_read
        rows, count = await self._run(
            self._statement(query),
            bound,
            query.qualified_name,
            query.affected_tables if mutating else (),
            mutating,
        )
        if rows is None:
            return count
        mapper = self._mapper(query)
        mapped = mapper.map_rows(rows) if mapper is not None else rows
        if query.map_to and query.map_to in self.mappers:
            convert = self.mappers[query.map_to]
            return [convert(row) for row in mapped]
        return mapped

    async def _run(
        self,
        statement: TextClause,
        params: dict[str, Any],
        label: str,
        affected: Iterable[str],
        mutating: bool,
    ) -> tuple[list[Row] | None, int]:
        def work(conn: Connection) -> tuple[list[Row] | None, int]:
            result = conn.execute(statement, params)
            if result.returns_rows:
                keys = list(result.keys())
                rows = [dict(zip(keys, row, strict=True)) for row in result.fetchall()]
                return rows, len(rows)
            return None, result.rowcount

        try:
            return await self._coordinator.run(work, affected=affected, mutating=mutating)
        except DBAPIError as e:
            raise QueryError(
                f"Statement '{label}' failed: {e.orig}", str(statement), reason=str(e.orig)
            ) from e
        except StatementError as e:
            raise QueryError(f"Statement '{label}' failed: {e}", str(statement)) from e


class QueryRunner:
    """Runs one compiled query. Parameters are passed as a dict or as keywords."""

    def __init__(self, database: SqlNowDatabase, query: QuerySpec) -> None:
        self.database = database
        self.query = query

    @staticmethod
    def _params(params: Mapping[str, Any] | None, kwargs: dict[str, Any]) -> dict[str, Any]:
        merged = dict(params or {})
        merged.update(kwargs)
        return merged

    async def _rows(self, params: dict[str, Any]) -> list[Any]:
        result = await self.database.run_query(self.query, params)
        if isinstance(result, int):
            raise QueryError(
                f"'{self.query.qualified_name}' returns no rows; use execute() instead"
            )
        return result

    async def as_list(self, params: Mapping[str, Any] | None = None, /, **kwargs: Any) -> list[Any]:
        """All rows."""
        return await self._rows(self._params(params, kwargs))

    async def as_one(self, params: Mapping[str, Any] | None = None, /, **kwargs: Any) -> Any:
        """Exactly one row.

        Raises:
            RowCountError: If the query returns no rows or more than one
        """
        rows = await self._rows(self._params(params, kwargs))
        if len(rows) != 1:
            raise RowCountError(self.query.qualified_name, len(rows))
        return rows[0]

    async def as_one_or_none(
        self, params: Mapping[str, Any] | None = None, /, **kwargs: Any
    ) -> Any | None:
        """One row or None.

        Raises:
            RowCountError: If the query returns more than one row
        """
        rows = await self._rows(self._params(params, kwargs))
        if len(rows) > 1:
            raise RowCountError(self.query.qualified_name, len(rows))
        return rows[0] if rows else None

    async def execute(
        self, params: Mapping[str, Any] | None = None, /, **kwargs: Any
    ) -> list[Any] | int:
        """Run the statement. Returns mapped RETURNING rows if any, else the row count."""
        return await self.database.run_query(self.query, self._params(params, kwargs))

    async def subscribe(
        self,
        params: Mapping[str, Any] | None = None,
        /,
        sink: Sink | None = None,
        on_error: ErrorSink | None = None,
        **kwargs: Any,
    ) -> Subscription:
        """Subscribe to the query's results.

        The first result is delivered before this returns; a fresh one follows
        every completed mutation touching a table the query reads.

        Raises:
            QueryError: If the query is not a SELECT
        """
        if not self.query.is_read:
            raise QueryError(
                f"Only SELECT queries can be subscribed to: '{self.query.qualified_name}'"
            )
        self.database._require_open()
        bound = self._params(params, kwargs)
        self.database._bind(self.query, bound)

        async def execute() -> list[Any]:
            return await self._rows(bound)

        return await self.database.subscriptions.subscribe(
            self.query, bound, execute, sink=sink, on_error=on_error
        )
