"""In-process realtime channel broadcasting committed row changes.

Subscribers are keyed by ``(table, family_id)``.  Delivery is at-least-once
from the subscriber's point of view only while the subscription is alive: a
subscription that overflows its queue, or whose channel is dropped, is closed
with :class:`~famboard.exceptions.ChannelDroppedError` and the subscriber is
expected to re-subscribe and re-fetch.
"""

from __future__ import annotations

import asyncio
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Tuple, Union

from .exceptions import ChannelDroppedError
from .models import ChangeEvent
from .ops import StructuredLogger

ChannelKey = Tuple[str, str]


class _Signal:
    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"<{self.name}>"


_CLOSED = _Signal("closed")
_DROPPED = _Signal("dropped")

_Item = Union[ChangeEvent, _Signal]


class Subscription:
    """Async iterator over the change events of one channel."""

    def __init__(
        self,
        hub: "RealtimeHub",
        key: ChannelKey,
        loop: asyncio.AbstractEventLoop,
        *,
        max_queue: int,
    ) -> None:
        self._hub = hub
        self.key = key
        self._loop = loop
        self._queue: "asyncio.Queue[_Item]" = asyncio.Queue()
        self._max_queue = max_queue
        self._finished = False

    @property
    def table(self) -> str:
        return self.key[0]

    @property
    def family_id(self) -> str:
        return self.key[1]

    @property
    def closed(self) -> bool:
        return self._finished

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._finished and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        if item is _DROPPED:
            self._finished = True
            raise ChannelDroppedError(f"Realtime channel {self.table}:{self.family_id} was dropped.")
        return item  # type: ignore[return-value]

    async def close(self) -> None:
        """Unsubscribe; safe to call more than once."""

        self._hub._remove(self)
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(_CLOSED)

    # Delivery side, called from any thread via the owning loop -------------
    def _deliver(self, item: _Item) -> bool:
        try:
            self._loop.call_soon_threadsafe(self._enqueue, item)
        except RuntimeError:
            # Owning loop is closed; nothing left to deliver to.
            return False
        return True

    def _enqueue(self, item: _Item) -> None:
        if self._finished:
            return
        if isinstance(item, ChangeEvent) and self._queue.qsize() >= self._max_queue:
            self._hub._remove(self)
            self._hub._logger.log("realtime_overflow", table=self.table, family_id=self.family_id)
            item = _DROPPED
        self._queue.put_nowait(item)


class RealtimeHub:
    """Broadcast committed changes to every subscriber of a channel."""

    def __init__(self, *, max_queue: int = 256, logger: Optional[StructuredLogger] = None) -> None:
        self._subscriptions: Dict[ChannelKey, List[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()
        self._max_queue = max_queue
        self._logger = logger or StructuredLogger()

    @property
    def max_queue(self) -> int:
        return self._max_queue

    def subscribe(self, table: str, family_id: str) -> Subscription:
        """Open a subscription bound to the running event loop."""

        loop = asyncio.get_running_loop()
        subscription = Subscription(self, (table, family_id), loop, max_queue=self._max_queue)
        with self._lock:
            self._subscriptions[subscription.key].append(subscription)
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to its channel; return the number of subscribers reached."""

        key = (event.table, event.family_id)
        with self._lock:
            targets = list(self._subscriptions.get(key, ()))
        delivered = 0
        for subscription in targets:
            if subscription._deliver(event):
                delivered += 1
            else:
                self._remove(subscription)
        return delivered

    def drop(self, table: str, family_id: str) -> int:
        """Disconnect every subscriber of a channel, as a network loss would."""

        with self._lock:
            targets = self._subscriptions.pop((table, family_id), [])
        for subscription in targets:
            subscription._deliver(_DROPPED)
        if targets:
            self._logger.log("realtime_dropped", table=table, family_id=family_id, subscribers=len(targets))
        return len(targets)

    def subscriber_count(self, table: str, family_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get((table, family_id), ()))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            bucket = self._subscriptions.get(subscription.key)
            if not bucket:
                return
            try:
                bucket.remove(subscription)
            except ValueError:
                pass
            if not bucket:
                self._subscriptions.pop(subscription.key, None)


__all__ = ["RealtimeHub", "Subscription"]
