"""Optimistic mutations against a :class:`~famboard.cache.CollectionCache`.

Updates and deletes are applied to the cache before the remote write is
awaited; creates wait for the server row so the authoritative id is known
before the realtime echo arrives.  A failed remote write restores the
affected entry and the error is re-raised to the caller.

Realtime events may be merged while a write is in flight.  The result of
the write (or its undo) only lands when the cache entry still holds what
the coordinator left there, so a newer merged event always wins.  Nothing
lands once the cache has been cleared by a closing board.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from .cache import CollectionCache, Mutation
from .exceptions import FamBoardError, NotFoundError, TransientIOError
from .models import Row
from .ops import StructuredLogger

RemoteWrite = Callable[[], Awaitable[Any]]


class _Pending:
    """What one in-flight write left in the cache."""

    __slots__ = ("epoch", "row_id", "undo", "expected")

    def __init__(self, cache: CollectionCache, row_id: Any, undo: Optional[Mutation]) -> None:
        self.epoch = cache.epoch
        self.row_id = row_id
        self.undo = undo
        self.expected = cache.get(row_id) if row_id is not None else None

    def untouched(self, cache: CollectionCache) -> bool:
        if cache.epoch != self.epoch or cache.was_deleted(self.row_id):
            return False
        return cache.get(self.row_id) == self.expected


class MutationCoordinator:
    """Pairs each local cache change with its remote write."""

    def __init__(self, cache: CollectionCache, table: str, *, logger: Optional[StructuredLogger] = None) -> None:
        self.cache = cache
        self.table = table
        self._logger = logger or StructuredLogger()

    async def create(self, operation: Callable[[], Awaitable[Row]]) -> Row:
        epoch = self.cache.epoch
        row = await self._remote("create", None, operation)
        if self.cache.epoch != epoch or self.cache.was_deleted(row["id"]):
            self._logger.log("mutation_discarded", table=self.table, action="create", id=row["id"])
        else:
            self.cache.apply(Mutation.replace(row))
        return row

    async def update(
        self,
        row_id: Any,
        changes: Dict[str, Any],
        operation: Callable[[], Awaitable[Row]],
    ) -> Row:
        undo = self.cache.apply(Mutation.patch(row_id, changes))
        pending = _Pending(self.cache, row_id, undo)
        try:
            row = await self._remote("update", row_id, operation, pending, keep_on=NotFoundError)
        except NotFoundError:
            if self.cache.epoch == pending.epoch:
                self.cache.apply(Mutation.remove(row_id))
            self._logger.log("update_target_gone", table=self.table, id=row_id)
            raise
        if pending.untouched(self.cache):
            self.cache.apply(Mutation.replace(row))
        else:
            # The cache already holds a newer merged event, or the board closed.
            self._logger.log("mutation_discarded", table=self.table, action="update", id=row_id)
        return row

    async def delete(self, row_id: Any, operation: RemoteWrite) -> None:
        undo = self.cache.apply(Mutation.remove(row_id))
        pending = _Pending(self.cache, row_id, undo)
        try:
            await self._remote("delete", row_id, operation, pending, keep_on=NotFoundError)
        except NotFoundError:
            # Someone else deleted it first; the local removal stands.
            self._logger.log("delete_already_gone", table=self.table, id=row_id)

    async def _remote(
        self,
        action: str,
        row_id: Any,
        operation: Callable[[], Awaitable[Any]],
        pending: Optional[_Pending] = None,
        *,
        keep_on: Optional[type[BaseException]] = None,
    ) -> Any:
        try:
            return await operation()
        except asyncio.CancelledError:
            self._revert(action, row_id, pending, "cancelled")
            raise
        except FamBoardError as exc:
            if keep_on is None or not isinstance(exc, keep_on):
                self._revert(action, row_id, pending, type(exc).__name__)
            raise
        except (SQLAlchemyError, OSError) as exc:
            self._revert(action, row_id, pending, type(exc).__name__)
            raise TransientIOError(f"Could not {action} {self.table} item, please try again.") from exc

    def _revert(self, action: str, row_id: Any, pending: Optional[_Pending], reason: str) -> None:
        if pending is None or pending.undo is None:
            self._logger.log("mutation_failed", table=self.table, action=action, id=row_id, reason=reason)
            return
        if not pending.untouched(self.cache):
            self._logger.log("mutation_revert_skipped", table=self.table, action=action, id=row_id, reason=reason)
            return
        self.cache.apply(pending.undo)
        self._logger.log("mutation_reverted", table=self.table, action=action, id=row_id, reason=reason)


__all__ = ["MutationCoordinator", "RemoteWrite"]
