"""Tests for the transaction coordinator."""

import asyncio
import contextvars
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import pytest
from sqlalchemy import Connection

from sqlnow.core.connection import DatabaseConnection
from sqlnow.core.types import TransactionMode
from sqlnow.exceptions import DatabaseClosedError, TransactionError
from sqlnow.runtime.coordinator import MutationCycle, TransactionCoordinator


@asynccontextmanager
async def coordinator() -> AsyncIterator[TransactionCoordinator]:
    coord = TransactionCoordinator(DatabaseConnection("sqlite://"))
    await coord.start()
    await coord.run(lambda c: c.exec_driver_sql("CREATE TABLE t (v INTEGER)"))
    try:
        yield coord
    finally:
        await coord.close()


def insert(value: int):
    def fn(conn: Connection) -> None:
        conn.exec_driver_sql(f"INSERT INTO t (v) VALUES ({value})")

    return fn


def values(conn: Connection) -> list[int]:
    return [row[0] for row in conn.exec_driver_sql("SELECT v FROM t ORDER BY rowid")]


def driver_in_transaction(conn: Connection) -> bool:
    return DatabaseConnection.driver_connection(conn).in_transaction


class TestExecution:
    """Test serialized execution outside transactions."""

    @pytest.mark.asyncio
    async def test_fifo_order(self) -> None:
        """Callers are served in the order they arrived."""
        async with coordinator() as coord:
            await asyncio.gather(*(coord.run(insert(i), ["t"], mutating=True) for i in range(10)))
            assert await coord.run(values) == list(range(10))

    @pytest.mark.asyncio
    async def test_cycle_per_statement(self) -> None:
        """Each mutating statement outside a transaction is one uncommitted cycle."""
        async with coordinator() as coord:
            cycles: list[MutationCycle] = []
            coord.add_listener(cycles.append)
            await coord.run(insert(1), ["t"], mutating=True)
            await coord.run(values)
            await asyncio.sleep(0)
            assert cycles == [MutationCycle(tables=frozenset({"t"}))]

    @pytest.mark.asyncio
    async def test_write_hooks_run_for_writes_only(self) -> None:
        async with coordinator() as coord:
            calls: list[str] = []
            coord.add_write_hook(lambda: calls.append("write"))
            await coord.run(values)
            await coord.run(insert(1), ["t"], mutating=True)
            assert calls == ["write"]

    @pytest.mark.asyncio
    async def test_listener_failure_is_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """A failing listener is logged and later listeners still run."""

        def broken(cycle: MutationCycle) -> None:
            raise RuntimeError("listener broke")

        async with coordinator() as coord:
            cycles: list[MutationCycle] = []
            coord.add_listener(broken)
            coord.add_listener(cycles.append)
            with caplog.at_level(logging.ERROR):
                await coord.run(insert(1), ["t"], mutating=True)
                await asyncio.sleep(0)
            assert len(cycles) == 1
            assert "Mutation listener failed" in caplog.text

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_work(self) -> None:
        """Work already handed to the connection completes and is published."""

        def slow_insert(conn: Connection) -> None:
            time.sleep(0.2)
            conn.exec_driver_sql("INSERT INTO t (v) VALUES (7)")

        async with coordinator() as coord:
            cycles: list[MutationCycle] = []
            coord.add_listener(cycles.append)
            task = asyncio.create_task(coord.run(slow_insert, ["t"], mutating=True))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert await coord.run(values) == [7]
            await asyncio.sleep(0)
            assert cycles == [MutationCycle(tables=frozenset({"t"}))]

    @pytest.mark.asyncio
    async def test_not_started(self) -> None:
        coord = TransactionCoordinator(DatabaseConnection("sqlite://"))
        assert not coord.is_open
        with pytest.raises(DatabaseClosedError):
            await coord.run(values)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        async with coordinator() as coord:
            assert coord.is_open
        assert not coord.is_open
        await coord.close()


class TestTransactions:
    """Test transaction blocks."""

    @pytest.mark.asyncio
    async def test_depth_and_mode(self) -> None:
        """Nesting increments depth; only the outermost block opens a transaction."""
        async with coordinator() as coord:
            assert coord.depth == 0
            async with coord.transaction(TransactionMode.IMMEDIATE) as state:
                assert state.mode == TransactionMode.IMMEDIATE
                assert coord.depth == 1
                assert coord.owns_transaction()
                assert await coord.run(driver_in_transaction)
                async with coord.transaction():
                    assert coord.depth == 2
                assert coord.depth == 1
            assert coord.depth == 0
            assert not coord.in_transaction
            assert not await coord.run(driver_in_transaction)

    @pytest.mark.asyncio
    async def test_commit_publishes_one_cycle(self) -> None:
        """All statements of a transaction notify once, at commit."""
        async with coordinator() as coord:
            await coord.run(lambda c: c.exec_driver_sql("CREATE TABLE u (v INTEGER)"))
            cycles: list[MutationCycle] = []
            coord.add_listener(cycles.append)
            async with coord.transaction():
                await coord.run(insert(1), ["t"], mutating=True)
                async with coord.transaction():
                    await coord.run(
                        lambda c: c.exec_driver_sql("INSERT INTO u VALUES (1)"),
                        ["u"],
                        mutating=True,
                    )
                await asyncio.sleep(0.01)
                assert cycles == []
            assert cycles == [MutationCycle(tables=frozenset({"t", "u"}), committed=True)]

    @pytest.mark.asyncio
    async def test_read_only_transaction_publishes_nothing(self) -> None:
        async with coordinator() as coord:
            cycles: list[MutationCycle] = []
            coord.add_listener(cycles.append)
            async with coord.transaction():
                await coord.run(values)
            assert cycles == []

    @pytest.mark.asyncio
    async def test_exception_rolls_back_and_propagates(self) -> None:
        """An exception leaving the block rolls back and is re-raised unchanged."""
        async with coordinator() as coord:
            cycles: list[MutationCycle] = []
            coord.add_listener(cycles.append)
            with pytest.raises(ValueError, match="boom"):
                async with coord.transaction():
                    await coord.run(insert(1), ["t"], mutating=True)
                    raise ValueError("boom")
            assert await coord.run(values) == []
            assert cycles == []
            assert not coord.in_transaction

    @pytest.mark.asyncio
    async def test_swallowed_nested_failure_rolls_back_everything(self) -> None:
        """A nested failure that was caught still dooms the outer transaction."""
        async with coordinator() as coord:
            with pytest.raises(TransactionError, match="nested failure"):
                async with coord.transaction():
                    await coord.run(insert(1), ["t"], mutating=True)
                    try:
                        async with coord.transaction():
                            await coord.run(insert(2), ["t"], mutating=True)
                            raise RuntimeError("nested failure")
                    except RuntimeError:
                        pass
                    await coord.run(insert(3), ["t"], mutating=True)
            assert await coord.run(values) == []

    @pytest.mark.asyncio
    async def test_failed_statement_marks_rollback_only(self) -> None:
        async with coordinator() as coord:
            with pytest.raises(TransactionError) as exc_info:
                async with coord.transaction():
                    await coord.run(insert(1), ["t"], mutating=True)
                    try:
                        await coord.run(lambda c: c.exec_driver_sql("INSERT INTO nope VALUES (1)"))
                    except Exception:
                        pass
            assert exc_info.value.__cause__ is not None
            assert await coord.run(values) == []

    @pytest.mark.asyncio
    async def test_other_callers_wait_for_commit(self) -> None:
        """Statements from outside the transaction run after it completes."""
        async with coordinator() as coord:
            order: list[str] = []

            async def outsider() -> None:
                await coord.run(insert(99), ["t"], mutating=True)
                order.append("outsider")

            async with coord.transaction():
                # a fresh context, so the task does not join the transaction
                task = asyncio.create_task(outsider(), context=contextvars.Context())
                await asyncio.sleep(0.05)
                assert not task.done()
                await coord.run(insert(1), ["t"], mutating=True)
                order.append("transaction")
            await task
            assert order == ["transaction", "outsider"]
            assert await coord.run(values) == [1, 99]
