"""Collection boards: the cache, coordinator and reconciler wired per table.

A board is what a screen holds while it is open: ``open()`` subscribes and
loads, ``close()`` unsubscribes and clears, and every user action goes
through the optimistic coordinator.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from .cache import CollectionCache, by_field
from .chores import progress, toggle_changes
from .client import AsyncStoreClient, TableRemote
from .config import DEFAULT_NOTE_COLOR
from .coordinator import MutationCoordinator
from .exceptions import NotFoundError
from .models import ChangeEvent, RedemptionStatus, RedemptionView, Row
from .ops import StructuredLogger
from .reconciler import Listener, RealtimeReconciler


class CollectionBoard:
    table = ""
    sort_field = "created_at"
    descending = True

    def __init__(
        self,
        client: AsyncStoreClient,
        *,
        logger: Optional[StructuredLogger] = None,
        on_change: Optional[Listener] = None,
    ) -> None:
        self.client = client
        self.remote = TableRemote(client, self.table, order={"order_by": self.sort_field, "descending": self.descending})
        self.cache = CollectionCache(sort_key=by_field(self.sort_field), reverse=self.descending)
        self.coordinator = MutationCoordinator(self.cache, self.table, logger=logger)
        self.reconciler = RealtimeReconciler(
            client.hub,
            self.table,
            client.family_id or "",
            self.remote.fetch,
            self.cache,
            logger=logger,
            on_change=on_change,
            accepts=self.accepts,
        )

    def accepts(self, event: ChangeEvent) -> bool:
        """Whether a channel event belongs on this board for the signed-in member."""

        return True

    async def open(self) -> "CollectionBoard":
        await self.reconciler.start()
        return self

    async def close(self) -> None:
        await self.reconciler.stop()

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def settle(self) -> None:
        await self.reconciler.settle()

    @property
    def rows(self) -> List[Row]:
        return self.cache.rows()

    def get(self, row_id: str) -> Row:
        row = self.cache.get(row_id)
        if row is None:
            raise NotFoundError(f"No row '{row_id}' in {self.table}.")
        return row

    async def delete(self, row_id: str) -> None:
        await self.coordinator.delete(row_id, lambda: self.remote.delete(row_id))

    async def _update(self, row_id: str, changes: Dict[str, Any]) -> Row:
        return await self.coordinator.update(row_id, changes, lambda: self.remote.update(row_id, changes))

    async def _create(self, values: Dict[str, Any]) -> Row:
        return await self.coordinator.create(lambda: self.remote.insert(values))


class ChoreBoard(CollectionBoard):
    table = "chores"

    async def add(self, title: str, points: int, *, assigned_to: Optional[str] = None) -> Row:
        values: Dict[str, Any] = {"title": title, "points": points}
        if assigned_to:
            values["assigned_to"] = assigned_to
        return await self._create(values)

    async def toggle(self, chore_id: str) -> Row:
        """Flip completion; completing an unassigned chore claims it."""

        changes = toggle_changes(self.get(chore_id), self.client.caller.profile_id)
        return await self._update(chore_id, changes)

    async def assign(self, chore_id: str, profile_id: str) -> Row:
        return await self._update(chore_id, {"assigned_to": profile_id})

    def progress(self) -> int:
        return progress(self.rows)

    def assigned_to(self, profile_id: str) -> List[Row]:
        return [row for row in self.rows if row.get("assigned_to") == profile_id]


class GroceryList(CollectionBoard):
    table = "groceries"

    async def add(self, item_name: str, quantity: Optional[str] = None, category: Optional[str] = None) -> Row:
        return await self._create({"item_name": item_name, "quantity": quantity, "category": category})

    async def toggle_purchased(self, item_id: str) -> Row:
        item = self.get(item_id)
        return await self._update(item_id, {"is_purchased": not item.get("is_purchased")})

    def to_buy(self) -> List[Row]:
        return [row for row in self.rows if not row.get("is_purchased")]

    def purchased(self) -> List[Row]:
        return [row for row in self.rows if row.get("is_purchased")]


class NoteBoard(CollectionBoard):
    table = "notes"

    async def add(self, content: str, color: str = DEFAULT_NOTE_COLOR) -> Row:
        return await self._create({"content": content, "color": color})

    async def edit(self, note_id: str, content: str) -> Row:
        return await self._update(note_id, {"content": content})


class RewardCatalog(CollectionBoard):
    table = "rewards"
    sort_field = "cost"
    descending = False

    async def add(self, name: str, cost: int, icon: Optional[str] = None) -> Row:
        values: Dict[str, Any] = {"name": name, "cost": cost}
        if icon:
            values["icon"] = icon
        return await self._create(values)

    def affordable(self, balance: int) -> List[Row]:
        return [row for row in self.rows if row["cost"] <= balance]


class RedemptionBoard(CollectionBoard):
    """Redemption rows change only through the ledger procedures.

    Requests are not optimistic; the board waits for the procedure and then
    records the server row, so the realtime echo deduplicates against it.
    Approve and reject are applied optimistically and reverted on failure.
    """

    table = "redemptions"

    def accepts(self, event: ChangeEvent) -> bool:
        caller = self.client.caller
        if caller.is_parent:
            return True
        snapshot = event.new or event.old or {}
        return snapshot.get("kid_id") == caller.profile_id

    async def request(self, reward_id: str) -> Row:
        return await self.coordinator.create(lambda: self.client.request_redemption(reward_id))

    async def approve(self, redemption_id: str) -> Row:
        return await self._resolve(redemption_id, RedemptionStatus.APPROVED)

    async def reject(self, redemption_id: str) -> Row:
        return await self._resolve(redemption_id, RedemptionStatus.REJECTED)

    async def _resolve(self, redemption_id: str, status: RedemptionStatus) -> Row:
        if status is RedemptionStatus.APPROVED:
            operation = lambda: self.client.approve_redemption(redemption_id)  # noqa: E731
        else:
            operation = lambda: self.client.reject_redemption(redemption_id)  # noqa: E731
        return await self.coordinator.update(redemption_id, {"status": status.value}, operation)

    def pending(self) -> List[Row]:
        return [row for row in self.rows if row["status"] == RedemptionStatus.PENDING.value]

    async def load_views(self) -> Tuple[RedemptionView, ...]:
        """Joined read model with kid and reward names."""

        return await self.client.list_redemptions()


class FamilyMembers(CollectionBoard):
    """Family profiles, including balances pushed by the ledger."""

    table = "profiles"
    descending = False

    async def rename(self, display_name: str) -> Row:
        profile_id = self.client.caller.profile_id
        return await self._update(profile_id, {"display_name": display_name})

    def balance_of(self, profile_id: str) -> int:
        return int(self.get(profile_id)["balance"])

    def children(self) -> List[Row]:
        return [row for row in self.rows if row["role"] == "child"]


__all__ = [
    "ChoreBoard",
    "CollectionBoard",
    "FamilyMembers",
    "GroceryList",
    "NoteBoard",
    "RedemptionBoard",
    "RewardCatalog",
]
