"""Keep a collection cache in step with its realtime channel."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .cache import CollectionCache
from .exceptions import ChannelDroppedError, FamBoardError, TransientIOError
from .models import ChangeEvent, Row
from .ops import StructuredLogger
from .realtime import RealtimeHub, Subscription

Fetch = Callable[[], Awaitable[List[Row]]]
Listener = Callable[[ChangeEvent], None]


class RealtimeReconciler:
    """Subscribe, fetch, then merge every change event into the cache.

    The subscription is opened before the initial fetch so no commit can fall
    between the two; events queued meanwhile merge idempotently.  A dropped
    channel triggers a fresh subscribe and full re-fetch.  Each sync bumps a
    generation counter, and results belonging to an older generation (or to
    a stopped reconciler) are discarded.
    """

    def __init__(
        self,
        hub: RealtimeHub,
        table: str,
        family_id: str,
        fetch: Fetch,
        cache: CollectionCache,
        *,
        logger: Optional[StructuredLogger] = None,
        on_change: Optional[Listener] = None,
        accepts: Optional[Callable[[ChangeEvent], bool]] = None,
    ) -> None:
        self._hub = hub
        self._accepts = accepts
        self.table = table
        self.family_id = family_id
        self._fetch = fetch
        self.cache = cache
        self._logger = logger or StructuredLogger()
        self._on_change = on_change
        self._generation = 0
        self._running = False
        self._resyncing = False
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task[None]] = None
        self.resyncs = 0
        self.last_error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def generation(self) -> int:
        return self._generation

    async def start(self) -> "RealtimeReconciler":
        if self._running:
            return self
        self._running = True
        try:
            await self._sync()
        except BaseException:
            self._running = False
            raise
        return self

    async def stop(self) -> None:
        """Tear down the consumer and subscription; late fetches are ignored."""

        self._running = False
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()
        self.cache.clear()

    async def __aenter__(self) -> "RealtimeReconciler":
        return await self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def settle(self, *, timeout: float = 2.0) -> None:
        """Wait until every event already delivered has been merged."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            await asyncio.sleep(0)
            subscription = self._subscription
            if not self._running:
                return
            if not self._resyncing and (subscription is None or subscription.backlog == 0):
                return
            await asyncio.sleep(0.005)
        raise asyncio.TimeoutError(f"{self.table} reconciler did not settle within {timeout}s.")

    # ------------------------------------------------------------------
    async def _sync(self) -> None:
        self._generation += 1
        generation = self._generation
        subscription = self._hub.subscribe(self.table, self.family_id)
        try:
            rows = await self._fetch()
        except BaseException:
            await subscription.close()
            raise
        if generation != self._generation or not self._running:
            await subscription.close()
            self._logger.log("realtime_stale_fetch", table=self.table, family_id=self.family_id)
            return
        self._subscription = subscription
        self.cache.load(rows)
        self._task = asyncio.create_task(self._consume(subscription, generation))

    async def _consume(self, subscription: Subscription, generation: int) -> None:
        try:
            async for event in subscription:
                if generation != self._generation:
                    return
                if self._accepts is not None and not self._accepts(event):
                    continue
                if self.cache.merge(event) and self._on_change is not None:
                    self._on_change(event)
        except ChannelDroppedError:
            if not self._running or generation != self._generation:
                return
            self._resyncing = True
            self._subscription = None
            self._task = None
            self.resyncs += 1
            self._logger.log("realtime_resync", table=self.table, family_id=self.family_id)
            try:
                await self._sync()
            except FamBoardError as exc:
                self._resync_failed(exc)
            except (SQLAlchemyError, OSError) as exc:
                error = TransientIOError(f"Could not refresh {self.table}, please reopen the board.")
                error.__cause__ = exc
                self._resync_failed(error)
            finally:
                self._resyncing = False

    def _resync_failed(self, error: FamBoardError) -> None:
        self.last_error = error
        self._running = False
        self._logger.log(
            "realtime_resync_failed",
            table=self.table,
            family_id=self.family_id,
            error=str(error),
            cause=type(error.__cause__ or error).__name__,
        )


__all__ = ["Fetch", "Listener", "RealtimeReconciler"]
