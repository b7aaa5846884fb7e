"""Async facade over the synchronous store, bound to one signed-in caller."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from .models import Caller, DashboardSummary, ProfileStats, RedemptionStatus, RedemptionView, Row
from .realtime import RealtimeHub, Subscription

if TYPE_CHECKING:  # pragma: no cover
    from .service import FamBoard


class AsyncStoreClient:
    """Every call runs the store operation in a worker thread and is awaited."""

    def __init__(self, service: "FamBoard", caller: Caller) -> None:
        self._service = service
        self.caller = caller

    @property
    def hub(self) -> RealtimeHub:
        return self._service.hub

    @property
    def family_id(self) -> Optional[str]:
        return self.caller.family_id

    def table(self, name: str) -> "TableRemote":
        return TableRemote(self, name)

    def subscribe(self, table: str) -> Subscription:
        return self.hub.subscribe(table, self.caller.family_id or "")

    # Tables ------------------------------------------------------------------
    async def select(self, table: str, **options: Any) -> List[Row]:
        return await asyncio.to_thread(self._service.store.select, self.caller, table, **options)

    async def insert(self, table: str, values: Mapping[str, Any]) -> Row:
        return await asyncio.to_thread(self._service.store.insert, self.caller, table, dict(values))

    async def update(self, table: str, row_id: str, values: Mapping[str, Any]) -> Row:
        return await asyncio.to_thread(self._service.store.update, self.caller, table, row_id, dict(values))

    async def delete(self, table: str, row_id: str) -> Row:
        return await asyncio.to_thread(self._service.store.delete, self.caller, table, row_id)

    # Ledger ------------------------------------------------------------------
    async def request_redemption(self, reward_id: str) -> Row:
        return await asyncio.to_thread(self._service.ledger.request_redemption, self.caller, reward_id)

    async def approve_redemption(self, redemption_id: str) -> Row:
        return await asyncio.to_thread(self._service.ledger.approve_redemption, self.caller, redemption_id)

    async def reject_redemption(self, redemption_id: str) -> Row:
        return await asyncio.to_thread(self._service.ledger.reject_redemption, self.caller, redemption_id)

    async def list_redemptions(self, status: RedemptionStatus | str | None = None) -> Tuple[RedemptionView, ...]:
        return await asyncio.to_thread(self._service.ledger.list_redemptions, self.caller, status=status)

    async def award_points(self, profile_id: str, points: int, *, reason: str = "") -> Row:
        return await asyncio.to_thread(
            self._service.ledger.award_points, self.caller, profile_id, points, reason=reason
        )

    async def balance_of(self, profile_id: Optional[str] = None) -> int:
        return await asyncio.to_thread(self._service.ledger.balance_of, self.caller, profile_id)

    # Games & summaries -------------------------------------------------------
    async def record_score(self, game_id: str, level: int, points: int = 0) -> Row:
        return await asyncio.to_thread(self._service.games.record_score, self.caller, game_id, level, points)

    async def highest_level(self, game_id: str) -> int:
        return await asyncio.to_thread(self._service.games.highest_level, self.caller, game_id)

    async def dashboard(self) -> DashboardSummary:
        return await asyncio.to_thread(self._service.store.dashboard, self.caller)

    async def profile_stats(self, profile_id: Optional[str] = None) -> ProfileStats:
        return await asyncio.to_thread(self._service.store.profile_stats, self.caller, profile_id)


class TableRemote:
    """The remote half of one collection: fetch plus the three writes."""

    def __init__(self, client: AsyncStoreClient, table: str, *, order: Optional[Dict[str, Any]] = None) -> None:
        self._client = client
        self.table = table
        self._order = order or {}

    async def fetch(self) -> List[Row]:
        return await self._client.select(self.table, **self._order)

    async def insert(self, values: Mapping[str, Any]) -> Row:
        return await self._client.insert(self.table, values)

    async def update(self, row_id: str, values: Mapping[str, Any]) -> Row:
        return await self._client.update(self.table, row_id, values)

    async def delete(self, row_id: str) -> Row:
        return await self._client.delete(self.table, row_id)


__all__ = ["AsyncStoreClient", "TableRemote"]
