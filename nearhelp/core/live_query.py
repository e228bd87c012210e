"""Live query subscriptions.

A ``LiveQuery`` names a collection plus equality / membership filters. The
store registers every ``Subscription`` with a ``LiveQueryHub`` and calls
``LiveQueryHub.notify`` after each committed write; matching subscriptions
re-run their query and receive the full snapshot.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Snapshot = list[Any]
SnapshotCallback = Callable[[Snapshot], Any]

_CLOSED = object()


@dataclass(frozen=True)
class LiveQuery:
    """Declarative query over one collection.

    ``filters`` holds ``(field, op, value)`` triples where op is ``"=="`` or
    ``"in"``.
    """

    collection: str
    filters: tuple[tuple[str, str, Any], ...] = ()
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None

    def where(self, field_name: str, op: str, value: Any) -> LiveQuery:
        if op not in ("==", "in"):
            raise ValueError(f"Unsupported operator: {op}")
        if op == "in":
            value = tuple(value)
        return LiveQuery(
            collection=self.collection,
            filters=self.filters + ((field_name, op, value),),
            order_by=self.order_by,
            descending=self.descending,
            limit=self.limit,
        )

    def ordered(self, field_name: str, descending: bool = False, limit: int | None = None) -> LiveQuery:
        return LiveQuery(
            collection=self.collection,
            filters=self.filters,
            order_by=field_name,
            descending=descending,
            limit=limit,
        )


@dataclass(eq=False)
class Subscription:
    """Handle for one live query.

    Consume snapshots with ``async for`` or pass a callback when subscribing.
    Either way, ``unsubscribe()`` stops delivery.
    """

    query: LiveQuery
    fetch: Callable[[], Awaitable[Snapshot]]
    callback: SnapshotCallback | None = None
    hub: LiveQueryHub | None = None
    active: bool = True
    max_pending: int = 16
    _queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    latest: Snapshot | None = None

    async def refresh(self) -> None:
        if not self.active:
            return
        snapshot = await self.fetch()
        if not self.active:
            return
        self.latest = snapshot
        if self.callback is not None:
            result = self.callback(snapshot)
            if inspect.isawaitable(result):
                await result
        else:
            # snapshots are full state; an undrained iterator keeps the newest
            while self._queue.qsize() >= self.max_pending:
                self._queue.get_nowait()
            self._queue.put_nowait(snapshot)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.hub is not None:
            self.hub.remove(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Snapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class LiveQueryHub:
    """Registry of open subscriptions keyed by collection.

    A subscriber that takes longer than ``delivery_timeout_s`` to refresh is
    skipped for that write so it cannot stall the writer.
    """

    def __init__(self, delivery_timeout_s: float = 5.0) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {}
        self.delivery_timeout_s = delivery_timeout_s

    def add(self, subscription: Subscription) -> None:
        subscription.hub = self
        self._subscriptions.setdefault(subscription.query.collection, []).append(subscription)

    def remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.query.collection)
        if subs and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscriptions[subscription.query.collection]

    def count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._subscriptions.get(collection, []))
        return sum(len(s) for s in self._subscriptions.values())

    async def notify(self, collection: str) -> None:
        """Push fresh snapshots to every subscription on ``collection``."""
        subscriptions = list(self._subscriptions.get(collection, []))
        if subscriptions:
            await asyncio.gather(*(self._deliver(s) for s in subscriptions))

    async def _deliver(self, subscription: Subscription) -> None:
        try:
            await asyncio.wait_for(subscription.refresh(), self.delivery_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Live query refresh for %s took longer than %ss; skipped",
                subscription.query,
                self.delivery_timeout_s,
            )
        except Exception:
            # keep delivering to the rest
            logger.exception("Live query refresh failed for %s", subscription.query)
