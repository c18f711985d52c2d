"""Live queries that re-deliver their results after matching mutations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlnow.core.types import QuerySpec

Sink = Callable[[list[Any]], Any]
ErrorSink = Callable[[BaseException], Any]
Executor = Callable[[], Awaitable[list[Any]]]

_CLOSED = object()


@dataclass
class _Failure:
    error: BaseException


def freeze(value: Any) -> Any:
    """Turn parameter values into something usable as part of a dict key."""
    if isinstance(value, Mapping):
        return tuple(sorted((k, freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(v) for v in value)
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


@dataclass
class LiveQueryRegistration:
    """A query bound to concrete parameter values and its subscribers."""

    key: tuple[str, Any]
    query: QuerySpec
    params: dict[str, Any]
    invalidation: frozenset[str]
    execute: Executor
    subscribers: list[Subscription] = field(default_factory=list)
    last_result: list[Any] | None = None
    deliveries: int = 0

    @property
    def subscriber_count(self) -> int:
        return len(self.subscribers)

    def matches(self, tables: frozenset[str]) -> bool:
        return not self.invalidation.isdisjoint(tables)


class Subscription:
    """Handle for one subscriber of a live query.

    Results go to ``sink`` when one is given. Without a sink they are
    queued and read by iterating::

        async with await db.query("users", "all").subscribe() as sub:
            async for users in sub:
                ...
    """

    def __init__(
        self,
        manager: ReactiveSubscriptionManager,
        registration: LiveQueryRegistration,
        sink: Sink | None = None,
        on_error: ErrorSink | None = None,
    ) -> None:
        self._manager = manager
        self.registration = registration
        self._sink = sink
        self._on_error = on_error
        self._queue: asyncio.Queue[Any] | None = asyncio.Queue() if sink is None else None
        self.latest: list[Any] | None = None
        self.cancelled = False

    @property
    def query(self) -> QuerySpec:
        return self.registration.query

    async def deliver(self, result: list[Any]) -> None:
        if self.cancelled:
            return
        self.latest = result
        if self._queue is not None:
            self._queue.put_nowait(result)
            return
        assert self._sink is not None
        outcome = self._sink(result)
        if inspect.isawaitable(outcome):
            await outcome

    async def fail(self, error: BaseException) -> None:
        if self.cancelled:
            return
        if self._on_error is not None:
            outcome = self._on_error(error)
            if inspect.isawaitable(outcome):
                await outcome
        elif self._queue is not None:
            self._queue.put_nowait(_Failure(error))
        else:
            raise error

    def cancel(self) -> None:
        """Stop deliveries. Safe to call more than once."""
        if self.cancelled:
            return
        self.cancelled = True
        self._manager.unsubscribe(self)
        if self._queue is not None:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> Subscription:
        if self._queue is None:
            raise TypeError("Subscriptions with a sink cannot be iterated")
        return self

    async def __anext__(self) -> list[Any]:
        assert self._queue is not None
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            raise item.error
        return item

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.cancel()


class ReactiveSubscriptionManager:
    """Registry of live queries plus the dispatcher that refreshes them.

    Every completed mutation cycle is queued and processed in order by a single
    dispatcher task. A registration whose invalidation set intersects the
    cycle's affected tables is re-executed once and the result delivered to
    each of its subscribers, even when it equals the previous result.
    """

    def __init__(self, logger: logging.Logger | None = None, enabled: bool = True) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._registry: dict[tuple[str, Any], LiveQueryRegistration] = {}
        self._cycles: asyncio.Queue[frozenset[str]] = asyncio.Queue()
        self._dispatcher: asyncio.Task[None] | None = None
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        """Stop reacting to mutations. Existing subscriptions stay registered."""
        self._enabled = False

    @property
    def registrations(self) -> list[LiveQueryRegistration]:
        return list(self._registry.values())

    def get_registration(
        self, query: QuerySpec, params: Mapping[str, Any] | None = None
    ) -> LiveQueryRegistration | None:
        return self._registry.get((query.qualified_name, freeze(dict(params or {}))))

    async def subscribe(
        self,
        query: QuerySpec,
        params: Mapping[str, Any],
        execute: Executor,
        sink: Sink | None = None,
        on_error: ErrorSink | None = None,
    ) -> Subscription:
        """Register a subscriber, run the query and deliver the first result.

        Args:
            query: A compiled read query
            params: Values bound to the query's parameters
            execute: Runs the query with ``params`` and returns mapped rows
            sink: Receives each result; omit to iterate the subscription instead
            on_error: Receives re-execution failures

        Returns:
            The subscription handle
        """
        key = (query.qualified_name, freeze(dict(params)))
        registration = self._registry.get(key)
        if registration is None:
            registration = LiveQueryRegistration(
                key=key,
                query=query,
                params=dict(params),
                invalidation=frozenset(t.lower() for t in query.invalidation_tables),
                execute=execute,
            )
            self._registry[key] = registration
            self._log.debug(
                f"Live query {query.qualified_name} watches {sorted(registration.invalidation)}"
            )

        subscription = Subscription(self, registration, sink, on_error)
        try:
            result = await registration.execute()
        except BaseException:
            if not registration.subscribers:
                self._registry.pop(key, None)
            raise
        registration.last_result = result
        registration.subscribers.append(subscription)
        await subscription.deliver(result)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        registration = subscription.registration
        if subscription in registration.subscribers:
            registration.subscribers.remove(subscription)
        if not registration.subscribers and self._registry.get(registration.key) is registration:
            del self._registry[registration.key]
            self._log.debug(f"Live query {registration.query.qualified_name} released")

    def notify(self, tables: frozenset[str] | set[str]) -> None:
        """Queue a completed mutation's affected tables for processing."""
        if not self._enabled or not tables:
            return
        self._cycles.put_nowait(frozenset(t.lower() for t in tables))
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch())

    async def _dispatch(self) -> None:
        while True:
            tables = await self._cycles.get()
            try:
                await self.process(tables)
            except Exception:
                self._log.exception("Live query dispatch failed")
            finally:
                self._cycles.task_done()

    async def process(self, tables: frozenset[str]) -> None:
        """Re-execute and deliver every registration affected by ``tables``."""
        for registration in list(self._registry.values()):
            if not registration.matches(tables) or not registration.subscribers:
                continue
            try:
                result = await registration.execute()
            except Exception as e:
                self._log.error(f"Live query {registration.query.qualified_name} failed: {e}")
                for subscription in list(registration.subscribers):
                    await self._safe(subscription.fail(e), registration)
                continue
            registration.last_result = result
            registration.deliveries += 1
            for subscription in list(registration.subscribers):
                await self._safe(subscription.deliver(result), registration)

    async def _safe(self, delivery: Awaitable[None], registration: LiveQueryRegistration) -> None:
        try:
            await delivery
        except Exception:
            self._log.exception(f"Subscriber of {registration.query.qualified_name} failed")

    async def wait_idle(self) -> None:
        """Wait until every queued mutation cycle has been processed."""
        await self._cycles.join()

    async def close(self) -> None:
        """Cancel every subscription and stop the dispatcher."""
        for registration in list(self._registry.values()):
            for subscription in list(registration.subscribers):
                subscription.cancel()
        self._registry.clear()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
