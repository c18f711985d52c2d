"""Custom exceptions for SQLNow.

Errors carry a human-readable message plus a ``context`` dict:
- Compile-time errors say where the problem is (file, line) and what to change
- Lookup errors list the names that do exist
"""

from __future__ import annotations

from typing import Any


class SqlNowError(Exception):
    """Base exception for all SQLNow errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Return error as JSON-serializable dict."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


# === Compile-time errors ===


class CompileError(SqlNowError):
    """Base class for errors that halt compilation."""

    pass


class AnnotationError(CompileError):
    """Malformed directive, unknown key for its scope, or duplicate key."""

    def __init__(
        self,
        message: str,
        source: str | None = None,
        line: int | None = None,
        column: int | None = None,
    ) -> None:
        location = ""
        if source is not None:
            location = source
            if line is not None:
                location += f":{line}"
                if column is not None:
                    location += f":{column}"
            message = f"{location}: {message}"
        super().__init__(message, {"source": source, "line": line, "column": column})
        self.source = source
        self.line = line
        self.column = column


class SchemaConflictError(CompileError):
    """Result shapes that must agree do not, or a grouping key is missing."""

    def __init__(self, message: str, differences: list[str] | None = None) -> None:
        diff = differences or []
        if diff:
            message = f"{message}\n  " + "\n  ".join(diff)
        super().__init__(message, {"differences": diff})
        self.differences = diff


class TypeInferenceError(CompileError):
    """A projected column type cannot be determined and no override is given."""

    def __init__(self, column: str, query: str, reason: str) -> None:
        message = (
            f"Cannot infer the type of column '{column}' in '{query}': {reason}. "
            f"Qualify the column or add a directive such as "
            f"@@{{ field={column}, sqlTypeHint=TEXT }}."
        )
        super().__init__(message, {"column": column, "query": query, "reason": reason})
        self.column = column
        self.query = query


class SchemaError(CompileError):
    """The engine rejected a statement or the source layout is invalid."""

    pass


class TableNotFoundError(CompileError):
    """Table or view does not exist in the schema model."""

    def __init__(self, table_name: str, available_tables: list[str] | None = None) -> None:
        available = available_tables or []
        if available:
            message = f"Table '{table_name}' not found. Available tables: {', '.join(available)}"
        else:
            message = f"Table '{table_name}' not found. No tables are defined."
        super().__init__(message, {"table_name": table_name, "available_tables": available})
        self.table_name = table_name
        self.available_tables = available


class QueryNotFoundError(SqlNowError):
    """Query does not exist in the compiled database."""

    def __init__(
        self, namespace: str, query_name: str, available_queries: list[str] | None = None
    ) -> None:
        available = available_queries or []
        if available:
            message = (
                f"Query '{namespace}.{query_name}' not found. "
                f"Available queries: {', '.join(available)}"
            )
        else:
            message = f"Query '{namespace}.{query_name}' not found. No queries are compiled."
        super().__init__(
            message,
            {"namespace": namespace, "query_name": query_name, "available_queries": available},
        )
        self.namespace = namespace
        self.query_name = query_name
        self.available_queries = available


# === Runtime errors ===


class ConnectionError(SqlNowError):
    """Failed to connect to the database."""

    pass


class DatabaseClosedError(SqlNowError):
    """Operation attempted on a database that is not open."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Database '{name}' is not open. Call open() before running statements.",
            {"database": name},
        )


class QueryError(SqlNowError):
    """Statement execution failed or was called with bad parameters."""

    def __init__(self, message: str, sql: str | None = None, reason: str | None = None) -> None:
        context: dict[str, Any] = {}
        if sql:
            context["sql"] = sql[:500]
        if reason:
            context["reason"] = reason
        super().__init__(message, context)
        self.sql = sql
        self.reason = reason


class RowCountError(QueryError):
    """A query expected to return exactly one row returned zero or several."""

    def __init__(self, query: str, row_count: int) -> None:
        if row_count == 0:
            message = f"Query '{query}' returned no rows. Use as_one_or_none() if that is allowed."
        else:
            message = f"Query '{query}' returned {row_count} rows, expected exactly one."
        super().__init__(message)
        self.context["row_count"] = row_count
        self.row_count = row_count


class TransactionError(SqlNowError):
    """A transaction was rolled back because a statement inside it failed."""

    pass


class PersistenceError(SqlNowError):
    """Snapshot load, persist or clear failed."""

    def __init__(self, message: str, database: str | None = None) -> None:
        super().__init__(message, {"database": database})
        self.database = database


class MigrationError(SqlNowError):
    """Applying schema, init or migration statements failed."""

    def __init__(self, message: str, version: int | None = None) -> None:
        super().__init__(message, {"version": version})
        self.version = version
