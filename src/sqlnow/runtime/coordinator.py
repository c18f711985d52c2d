"""Serialized statement execution and transaction depth tracking.

One worker thread owns the database connection. Every statement, inside a
transaction or not, runs there, and an asyncio lock admits one caller (or
one whole transaction) at a time. ``asyncio.Lock`` wakes waiters in the
order they started waiting, which gives FIFO service.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from sqlnow.core.types import TransactionMode
from sqlnow.exceptions import DatabaseClosedError, TransactionError

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from sqlnow.core.connection import DatabaseConnection


T = TypeVar("T")


@dataclass(frozen=True)
class MutationCycle:
    """A completed mutation: one statement outside a transaction, or a commit."""

    tables: frozenset[str]
    committed: bool = False


CycleListener = Callable[[MutationCycle], None]


@dataclass
class TransactionState:
    """The active transaction of a coordinator."""

    mode: TransactionMode
    depth: int = 1
    rollback_only: bool = False
    error: BaseException | None = None
    mutated: bool = False
    affected: set[str] = field(default_factory=set)


class TransactionCoordinator:
    """Owns the single connection and serializes everything run on it."""

    def __init__(
        self,
        connection: DatabaseConnection,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = connection
        self._log = logger or logging.getLogger(__name__)
        self._conn: Connection | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._lock = asyncio.Lock()
        self._current: ContextVar[TransactionState | None] = ContextVar(
            f"sqlnow_transaction_{id(self)}", default=None
        )
        self._transaction: TransactionState | None = None
        self._listeners: list[CycleListener] = []
        self._write_hooks: list[Callable[[], None]] = []

    # --- lifecycle ---

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    @property
    def depth(self) -> int:
        return self._transaction.depth if self._transaction is not None else 0

    async def start(self) -> None:
        """Open the connection on the worker thread."""
        if self._conn is not None:
            return
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sqlnow-db")
        loop = asyncio.get_running_loop()
        self._conn = await loop.run_in_executor(self._executor, self._db.connect)
        self._log.debug(f"Connection opened on {self._db.url}")

    async def close(self) -> None:
        """Wait for the current caller, then close the connection."""
        if self._conn is None:
            return
        async with self._lock:
            conn, self._conn = self._conn, None
            executor, self._executor = self._executor, None
            assert executor is not None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(executor, conn.close)
            executor.shutdown(wait=True)
        self._db.close()
        self._log.debug("Connection closed")

    def add_listener(self, listener: CycleListener) -> None:
        """Call ``listener`` after every completed mutation cycle."""
        self._listeners.append(listener)

    def add_write_hook(self, hook: Callable[[], None]) -> None:
        """Call ``hook`` on the worker thread right after every mutating statement."""
        self._write_hooks.append(hook)

    def owns_transaction(self) -> bool:
        """True when the calling task is inside this coordinator's open transaction."""
        state = self._current.get()
        return state is not None and state is self._transaction

    # --- execution ---

    async def run(
        self,
        fn: Callable[[Connection], T],
        affected: Iterable[str] = (),
        mutating: bool = False,
    ) -> T:
        """Run ``fn`` with the connection, after every earlier caller.

        Args:
            fn: Work to do on the worker thread
            affected: Tables the work mutates, for change notification
            mutating: Whether the work writes to the database

        Returns:
            Whatever ``fn`` returns

        Raises:
            DatabaseClosedError: If the coordinator is not started
        """
        tables = frozenset(affected)
        state = self._current.get()
        if state is not None and self.owns_transaction():
            try:
                result = await self._submit(fn, mutating, None)
            except BaseException as e:
                state.rollback_only = True
                state.error = state.error or e
                raise
            state.mutated = state.mutated or mutating
            state.affected.update(tables)
            return result

        async with self._lock:
            publish = MutationCycle(tables=tables) if mutating else None
            return await self._submit(fn, mutating, publish)

    async def _submit(
        self,
        fn: Callable[[Connection], T],
        mutating: bool,
        publish: MutationCycle | None,
    ) -> T:
        conn = self._conn
        executor = self._executor
        if conn is None or executor is None:
            raise DatabaseClosedError(self._db.url)
        loop = asyncio.get_running_loop()

        def job() -> T:
            result = fn(conn)
            if mutating:
                for hook in self._write_hooks:
                    hook()
            # Scheduled from the worker so the cycle is published even when the
            # awaiting caller has been cancelled.
            if publish is not None:
                loop.call_soon_threadsafe(self._publish, publish)
            return result

        return await loop.run_in_executor(executor, job)

    def _publish(self, cycle: MutationCycle) -> None:
        self._log.debug(f"Mutation cycle: tables={sorted(cycle.tables)} commit={cycle.committed}")
        for listener in list(self._listeners):
            try:
                listener(cycle)
            except Exception:
                self._log.exception("Mutation listener failed")

    # --- transactions ---

    @asynccontextmanager
    async def transaction(
        self, mode: TransactionMode = TransactionMode.DEFERRED
    ) -> AsyncIterator[TransactionState]:
        """Run a block inside a transaction.

        Nested blocks join the outermost transaction. Only the outermost block
        issues BEGIN (with ``mode``) and COMMIT. If any statement or nested
        block fails, the whole outermost transaction is rolled back.

        Raises:
            TransactionError: If the outermost block completes but something
                inside it failed and was caught, or COMMIT fails
        """
        state = self._current.get()
        if state is not None and state is self._transaction:
            state.depth += 1
            try:
                yield state
            except BaseException as e:
                state.rollback_only = True
                state.error = state.error or e
                raise
            finally:
                state.depth -= 1
            return

        await self._lock.acquire()
        state = TransactionState(mode=mode)
        token = self._current.set(state)
        self._transaction = state
        try:
            await self._submit(lambda c: c.exec_driver_sql(f"BEGIN {mode.value}"), False, None)
            self._log.debug(f"BEGIN {mode.value}")
            try:
                yield state
            except BaseException:
                await self._rollback()
                raise
            if state.rollback_only:
                await self._rollback()
                raise TransactionError(
                    "Transaction rolled back because a statement or nested block inside it "
                    f"failed: {state.error}",
                    {"mode": mode.value},
                ) from state.error
            try:
                await self._submit(lambda c: c.exec_driver_sql("COMMIT"), False, None)
            except Exception as e:
                await self._rollback()
                raise TransactionError(f"COMMIT failed: {e}", {"mode": mode.value}) from e
            self._log.debug("COMMIT")
        finally:
            self._transaction = None
            self._current.reset(token)
            self._lock.release()

        if state.mutated:
            self._publish(MutationCycle(tables=frozenset(state.affected), committed=True))

    async def _rollback(self) -> None:
        def rollback(conn: Connection) -> Any:
            if self._db.driver_connection(conn).in_transaction:
                conn.exec_driver_sql("ROLLBACK")

        try:
            await self._submit(rollback, False, None)
            self._log.debug("ROLLBACK")
        except Exception:
            self._log.exception("ROLLBACK failed")
