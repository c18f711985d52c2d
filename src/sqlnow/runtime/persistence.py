"""Snapshot persistence for databases the engine keeps only in memory.

The controller exports the whole database with ``sqlite3.Connection.serialize``
and hands the bytes to a :class:`SnapshotStore`. At open the most recent
snapshot is loaded back with ``deserialize``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from sqlnow.core.connection import DatabaseConnection
from sqlnow.exceptions import PersistenceError
from sqlnow.runtime.models import Base, SnapshotRecord

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

    from sqlnow.runtime.coordinator import MutationCycle, TransactionCoordinator


class SnapshotStore(Protocol):
    """Durable byte storage keyed by database name."""

    def load(self, name: str) -> bytes | None: ...

    def persist(self, name: str, data: bytes) -> None: ...

    def clear(self, name: str) -> None: ...


class MemorySnapshotStore:
    """Keeps snapshots in a dict. Useful for tests and for handing bytes around."""

    def __init__(self) -> None:
        self.snapshots: dict[str, bytes] = {}

    def load(self, name: str) -> bytes | None:
        return self.snapshots.get(name)

    def persist(self, name: str, data: bytes) -> None:
        self.snapshots[name] = bytes(data)

    def clear(self, name: str) -> None:
        self.snapshots.pop(name, None)


class FileSnapshotStore:
    """One ``<name>.sqlite`` file per database, replaced atomically on every flush."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.sqlite"

    def load(self, name: str) -> bytes | None:
        path = self.path_for(name)
        if not path.exists():
            return None
        return path.read_bytes()

    def persist(self, name: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{name}.", dir=self.directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path_for(name))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def clear(self, name: str) -> None:
        self.path_for(name).unlink(missing_ok=True)


class DatabaseSnapshotStore:
    """Stores snapshots as rows of the ``sqlnow_snapshots`` table of another database."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self._engine: Engine = create_engine(url, echo=echo)
        Base.metadata.create_all(self._engine)

    def load(self, name: str) -> bytes | None:
        with Session(self._engine) as session:
            record = session.get(SnapshotRecord, name)
            return record.payload if record is not None else None

    def persist(self, name: str, data: bytes) -> None:
        with Session(self._engine) as session:
            record = session.get(SnapshotRecord, name)
            if record is None:
                record = SnapshotRecord(name=name, payload=data, size=len(data))
                session.add(record)
            else:
                record.payload = data
                record.size = len(data)
            session.commit()

    def clear(self, name: str) -> None:
        with Session(self._engine) as session:
            record = session.get(SnapshotRecord, name)
            if record is not None:
                session.delete(record)
                session.commit()

    def close(self) -> None:
        self._engine.dispose()


class PersistenceController:
    """Keeps the stored snapshot of one in-memory database up to date.

    With ``auto_flush`` a best-effort flush is scheduled after every
    completed mutation cycle; its failures are logged and swallowed.
    :meth:`flush` and :meth:`close` always export and raise
    :class:`PersistenceError` on failure.
    """

    def __init__(
        self,
        name: str,
        store: SnapshotStore,
        coordinator: TransactionCoordinator,
        auto_flush: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.store = store
        self.auto_flush = auto_flush
        self._coordinator = coordinator
        self._log = logger or logging.getLogger(__name__)
        self._cache: bytes | None = None
        self._dirty = False
        self._flush_lock = asyncio.Lock()
        self._pending: set[asyncio.Task[None]] = set()
        coordinator.add_write_hook(self.mark_dirty)

    @property
    def has_pending_flush(self) -> bool:
        return bool(self._pending)

    def mark_dirty(self) -> None:
        """Drop the cached export. Runs right after every mutating statement."""
        self._cache = None
        self._dirty = True

    async def restore(self) -> bool:
        """Load the stored snapshot into the database.

        Returns:
            True if a snapshot was found and loaded

        Raises:
            PersistenceError: If the snapshot cannot be read or loaded
        """
        try:
            data = await asyncio.to_thread(self.store.load, self.name)
        except Exception as e:
            raise PersistenceError(f"Failed to load snapshot: {e}", self.name) from e
        if not data:
            self._log.debug(f"No snapshot stored for '{self.name}'")
            return False

        def load(conn: Connection) -> None:
            DatabaseConnection.driver_connection(conn).deserialize(data)
            # deserialize accepts any bytes; the first read is what rejects a bad image
            conn.exec_driver_sql("SELECT count(*) FROM sqlite_master").scalar_one()
            self._cache = bytes(data)
            self._dirty = False

        try:
            await self._coordinator.run(load)
        except Exception as e:
            raise PersistenceError(f"Failed to load snapshot: {e}", self.name) from e
        self._log.info(f"Restored '{self.name}' from a {len(data)} byte snapshot")
        return True

    def on_cycle(self, cycle: MutationCycle) -> None:
        """Schedule a best-effort flush after a completed mutation."""
        if not self.auto_flush:
            return
        task = asyncio.get_running_loop().create_task(self._best_effort_flush())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _best_effort_flush(self) -> None:
        try:
            await self._flush(only_if_dirty=True)
        except Exception as e:
            self._log.warning(f"Snapshot flush of '{self.name}' failed: {e}")

    async def flush(self) -> bytes:
        """Export and persist the database now.

        Returns:
            The persisted snapshot bytes

        Raises:
            PersistenceError: If called inside a transaction, or export/persist fails
        """
        if self._coordinator.owns_transaction():
            raise PersistenceError(
                "Cannot flush inside a transaction; flush after it commits", self.name
            )
        try:
            data = await self._flush(only_if_dirty=False)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Snapshot flush failed: {e}", self.name) from e
        assert data is not None
        return data

    async def _flush(self, only_if_dirty: bool) -> bytes | None:
        async with self._flush_lock:
            if only_if_dirty and not self._dirty:
                return None
            data = await self._coordinator.run(self._export)
            await asyncio.to_thread(self.store.persist, self.name, data)
            self._log.debug(f"Flushed {len(data)} bytes for '{self.name}'")
            return data

    def _export(self, conn: Connection) -> bytes:
        if self._cache is None:
            self._cache = DatabaseConnection.driver_connection(conn).serialize()
        self._dirty = False
        return self._cache

    async def wait_pending(self) -> None:
        """Wait for scheduled best-effort flushes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Finish scheduled flushes, then force a final one."""
        await self.wait_pending()
        await self.flush()

    async def clear(self) -> None:
        """Remove the stored snapshot."""
        try:
            await asyncio.to_thread(self.store.clear, self.name)
        except Exception as e:
            raise PersistenceError(f"Failed to clear snapshot: {e}", self.name) from e


class NoopPersistenceController:
    """Stand-in for databases the engine persists on its own (file URLs)."""

    has_pending_flush = False

    def __init__(self, name: str) -> None:
        self.name = name

    async def restore(self) -> bool:
        return False

    def on_cycle(self, cycle: MutationCycle) -> None:
        return None

    async def flush(self) -> bytes:
        return b""

    async def wait_pending(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def clear(self) -> None:
        return None
