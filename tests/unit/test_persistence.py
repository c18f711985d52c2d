"""Tests for snapshot stores and the persistence controller."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from sqlalchemy import Connection

from sqlnow.core.connection import DatabaseConnection
from sqlnow.exceptions import PersistenceError
from sqlnow.runtime.coordinator import TransactionCoordinator
from sqlnow.runtime.persistence import (
    DatabaseSnapshotStore,
    FileSnapshotStore,
    MemorySnapshotStore,
    NoopPersistenceController,
    PersistenceController,
    SnapshotStore,
)


class FailingStore(MemorySnapshotStore):
    """A store whose persist always fails."""

    def persist(self, name: str, data: bytes) -> None:
        raise OSError("disk full")


@asynccontextmanager
async def controller(
    store: SnapshotStore, auto_flush: bool = True
) -> AsyncIterator[tuple[TransactionCoordinator, PersistenceController]]:
    coord = TransactionCoordinator(DatabaseConnection("sqlite://"))
    persistence = PersistenceController("app", store, coord, auto_flush=auto_flush)
    coord.add_listener(persistence.on_cycle)
    await coord.start()
    try:
        yield coord, persistence
    finally:
        await persistence.wait_pending()
        await coord.close()


def create(conn: Connection) -> None:
    conn.exec_driver_sql("CREATE TABLE t (v INTEGER)")


def insert(conn: Connection) -> None:
    conn.exec_driver_sql("INSERT INTO t (v) VALUES (1)")


def count(conn: Connection) -> int:
    return conn.exec_driver_sql("SELECT count(*) FROM t").scalar_one()


class TestStores:
    """Test the snapshot store implementations."""

    def test_memory_store(self) -> None:
        store = MemorySnapshotStore()
        assert store.load("a") is None
        store.persist("a", b"one")
        store.persist("a", b"two")
        assert store.load("a") == b"two"
        store.clear("a")
        store.clear("a")
        assert store.load("a") is None

    def test_file_store(self, tmp_path: Path) -> None:
        """Snapshots are files replaced in place, with no temporary files left."""
        store = FileSnapshotStore(tmp_path / "snapshots")
        assert store.load("app") is None
        store.persist("app", b"one")
        store.persist("app", b"two")
        assert store.load("app") == b"two"
        assert [p.name for p in (tmp_path / "snapshots").iterdir()] == ["app.sqlite"]
        store.clear("app")
        assert store.load("app") is None

    def test_database_store(self, tmp_path: Path) -> None:
        store = DatabaseSnapshotStore(f"sqlite:///{tmp_path / 'snapshots.db'}")
        try:
            assert store.load("app") is None
            store.persist("app", b"one")
            store.persist("app", b"two")
            assert store.load("app") == b"two"
            store.clear("app")
            assert store.load("app") is None
        finally:
            store.close()


class TestPersistenceController:
    """Test flushing and restoring an in-memory database."""

    @pytest.mark.asyncio
    async def test_flush_and_restore(self) -> None:
        """A flushed snapshot restores into a fresh in-memory database."""
        store = MemorySnapshotStore()
        async with controller(store, auto_flush=False) as (coord, persistence):
            await coord.run(create, ["t"], mutating=True)
            await coord.run(insert, ["t"], mutating=True)
            data = await persistence.flush()
            assert store.load("app") == data

        async with controller(store) as (coord, persistence):
            assert await persistence.restore()
            assert await coord.run(count) == 1

    @pytest.mark.asyncio
    async def test_restore_without_snapshot(self) -> None:
        async with controller(MemorySnapshotStore()) as (_, persistence):
            assert not await persistence.restore()

    @pytest.mark.asyncio
    async def test_restore_rejects_garbage(self) -> None:
        store = MemorySnapshotStore()
        store.persist("app", b"definitely not a database")
        async with controller(store) as (coord, persistence):
            with pytest.raises(PersistenceError, match="Failed to load snapshot"):
                await persistence.restore()

    @pytest.mark.asyncio
    async def test_auto_flush_after_each_cycle(self) -> None:
        store = MemorySnapshotStore()
        async with controller(store) as (coord, persistence):
            await coord.run(create, ["t"], mutating=True)
            await persistence.wait_pending()
            first = store.load("app")
            assert first is not None
            await coord.run(insert, ["t"], mutating=True)
            await persistence.wait_pending()
            assert store.load("app") != first
            assert not persistence.has_pending_flush

    @pytest.mark.asyncio
    async def test_transaction_flushes_once_at_commit(self) -> None:
        store = MemorySnapshotStore()
        async with controller(store) as (coord, persistence):
            await coord.run(create, ["t"], mutating=True)
            await persistence.wait_pending()
            before = store.load("app")
            async with coord.transaction():
                await coord.run(insert, ["t"], mutating=True)
                await coord.run(insert, ["t"], mutating=True)
                assert store.load("app") == before
            await persistence.wait_pending()
            assert store.load("app") != before

    @pytest.mark.asyncio
    async def test_best_effort_failures_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Auto-flush failures never reach the writer; forced flushes raise."""
        async with controller(FailingStore()) as (coord, persistence):
            with caplog.at_level(logging.WARNING):
                await coord.run(create, ["t"], mutating=True)
                await persistence.wait_pending()
            assert "Snapshot flush of 'app' failed: disk full" in caplog.text
            with pytest.raises(PersistenceError, match="disk full"):
                await persistence.flush()

    @pytest.mark.asyncio
    async def test_flush_inside_transaction_is_rejected(self) -> None:
        async with controller(MemorySnapshotStore()) as (coord, persistence):
            async with coord.transaction():
                with pytest.raises(PersistenceError, match="inside a transaction"):
                    await persistence.flush()

    @pytest.mark.asyncio
    async def test_export_is_cached_until_the_next_write(self) -> None:
        async with controller(MemorySnapshotStore(), auto_flush=False) as (coord, persistence):
            await coord.run(create, ["t"], mutating=True)
            first = await persistence.flush()
            assert await persistence.flush() is first
            await coord.run(insert, ["t"], mutating=True)
            assert await persistence.flush() != first

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        store = MemorySnapshotStore()
        async with controller(store, auto_flush=False) as (coord, persistence):
            await coord.run(create, ["t"], mutating=True)
            await persistence.flush()
            await persistence.clear()
            assert store.load("app") is None

    @pytest.mark.asyncio
    async def test_noop_controller(self) -> None:
        noop = NoopPersistenceController("file")
        assert not await noop.restore()
        assert await noop.flush() == b""
        assert not noop.has_pending_flush
