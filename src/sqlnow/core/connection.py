"""SQLite connection capability for SQLNow."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, Engine, create_engine, event, text
from sqlalchemy.pool import StaticPool

from sqlnow.exceptions import ConnectionError

if TYPE_CHECKING:
    from sqlalchemy.engine.url import URL


def is_memory_url(url: str) -> bool:
    """Check whether a SQLite URL names an in-memory database.

    Supports:
    - sqlite://
    - sqlite:///:memory:
    - sqlite:///file:name?mode=memory&uri=true
    """
    base, _, query = url.partition("?")
    if base in ("sqlite://", "sqlite:///:memory:") or base.endswith(":memory:"):
        return True
    return "mode=memory" in query


def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


class DatabaseConnection:
    """Manages the SQLAlchemy engine behind one SQLite database.

    The engine runs the driver in autocommit mode; transactions are opened
    explicitly with ``BEGIN <mode>`` by whoever owns the connection.
    """

    SUPPORTED_DIALECTS = ("sqlite",)

    def __init__(self, url: str | URL = "sqlite://", echo: bool = False) -> None:
        """Initialize database connection.

        Args:
            url: Database connection URL
                 In-memory: "sqlite://" or "sqlite:///:memory:"
                 File: "sqlite:///path/to/db.sqlite"
            echo: Whether to echo SQL statements (for debugging)
        """
        self._url = str(url)
        self._echo = echo
        self._engine: Engine | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_memory(self) -> bool:
        return is_memory_url(self._url)

    @property
    def engine(self) -> Engine:
        """Get or create the SQLAlchemy engine.

        Raises:
            ConnectionError: If the engine cannot be created or the dialect is not SQLite
        """
        if self._engine is None:
            try:
                options: dict[str, Any] = {
                    "echo": self._echo,
                    "isolation_level": "AUTOCOMMIT",
                    "connect_args": {"check_same_thread": False},
                }
                if self.is_memory:
                    # Every checkout must see the same in-memory database
                    options["poolclass"] = StaticPool
                engine = create_engine(self._url, **options)

                if engine.dialect.name not in self.SUPPORTED_DIALECTS:
                    raise ConnectionError(
                        f"Unsupported database dialect: {engine.dialect.name}. "
                        f"Supported: {', '.join(self.SUPPORTED_DIALECTS)}"
                    )
                event.listen(engine, "connect", _enable_foreign_keys)
                self._engine = engine
            except Exception as e:
                if isinstance(e, ConnectionError):
                    raise
                raise ConnectionError(f"Failed to create database engine: {e}") from e
        return self._engine

    def connect(self) -> Connection:
        """Check out a connection from the engine."""
        try:
            return self.engine.connect()
        except ConnectionError:
            raise
        except Exception as e:
            raise ConnectionError(f"Failed to open connection to {self._url}: {e}") from e

    @staticmethod
    def driver_connection(conn: Connection) -> sqlite3.Connection:
        """Return the raw ``sqlite3.Connection`` behind a SQLAlchemy connection."""
        return conn.connection.driver_connection  # type: ignore[return-value]

    def test_connection(self) -> bool:
        """Test if the database connection works.

        Returns:
            True if connection is successful

        Raises:
            ConnectionError: If connection test fails
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            raise ConnectionError(f"Database connection test failed: {e}") from e

    def close(self) -> None:
        """Dispose of the engine."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> DatabaseConnection:
        """Context manager entry."""
        self.test_connection()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()
