import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from famboard.boards import ChoreBoard, FamilyMembers, GroceryList, NoteBoard, RedemptionBoard, RewardCatalog
from famboard.cache import CollectionCache
from famboard.exceptions import (
    ChannelDroppedError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    TransientIOError,
)
from famboard.models import ChangeEvent, ChangeType
from famboard.ops import StructuredLogger
from famboard.realtime import RealtimeHub
from famboard.reconciler import RealtimeReconciler


def test_hub_delivers_per_family_channel() -> None:
    async def scenario():
        hub = RealtimeHub()
        mine = hub.subscribe("notes", "fam-1")
        theirs = hub.subscribe("notes", "fam-2")
        delivered = hub.publish(ChangeEvent(ChangeType.INSERT, "notes", "fam-1", new={"id": "n1"}))
        received = await asyncio.wait_for(mine.__anext__(), 1)
        await asyncio.sleep(0)
        backlog = theirs.backlog
        await mine.close()
        await theirs.close()
        return delivered, received, backlog, hub.subscriber_count("notes", "fam-1")

    delivered, received, backlog, remaining = asyncio.run(scenario())
    assert delivered == 1
    assert received.row_id == "n1"
    assert backlog == 0
    assert remaining == 0


def test_overflowing_subscription_is_dropped() -> None:
    async def scenario():
        hub = RealtimeHub(max_queue=2)
        subscription = hub.subscribe("chores", "fam")
        for index in range(3):
            hub.publish(ChangeEvent(ChangeType.INSERT, "chores", "fam", new={"id": str(index)}))
        await asyncio.sleep(0)
        seen = [await subscription.__anext__(), await subscription.__anext__()]
        with pytest.raises(ChannelDroppedError):
            await subscription.__anext__()
        return seen, hub.subscriber_count("chores", "fam")

    seen, remaining = asyncio.run(scenario())
    assert [item.row_id for item in seen] == ["0", "1"]
    assert remaining == 0


def test_late_fetch_is_not_applied_after_stop() -> None:
    async def scenario():
        hub = RealtimeHub()
        release = asyncio.Event()
        cache = CollectionCache()

        async def slow_fetch():
            await release.wait()
            return [{"id": "late", "created_at": 1}]

        reconciler = RealtimeReconciler(hub, "notes", "fam", slow_fetch, cache)
        start = asyncio.create_task(reconciler.start())
        await asyncio.sleep(0)
        await reconciler.stop()
        release.set()
        await start
        return cache, hub.subscriber_count("notes", "fam"), reconciler.running

    cache, subscribers, running = asyncio.run(scenario())
    assert len(cache) == 0
    assert subscribers == 0
    assert running is False


def test_write_finishing_after_close_is_not_applied(household) -> None:
    board = household.board

    async def scenario():
        groceries = await GroceryList(board.client(household.kid)).open()
        eggs = await groceries.add("Eggs")
        await groceries.settle()
        gate = asyncio.Event()

        async def gated_update():
            await gate.wait()
            return await groceries.remote.update(eggs["id"], {"is_purchased": True})

        async def gated_insert():
            await gate.wait()
            return await groceries.remote.insert({"item_name": "Bread"})

        update = asyncio.create_task(groceries.coordinator.update(eggs["id"], {"is_purchased": True}, gated_update))
        create = asyncio.create_task(groceries.coordinator.create(gated_insert))
        await asyncio.sleep(0)
        await groceries.close()
        size_at_close = len(groceries.cache)
        gate.set()
        updated = await update
        await create
        return size_at_close, len(groceries.cache), updated

    size_at_close, size_after, updated = asyncio.run(scenario())
    assert size_at_close == 0
    assert size_after == 0
    assert updated["is_purchased"] is True


def test_failed_refetch_after_drop_is_recorded() -> None:
    async def scenario():
        hub = RealtimeHub()
        cache = CollectionCache()
        logger = StructuredLogger()
        calls = []

        async def fetch():
            calls.append(len(calls))
            if len(calls) > 1:
                raise OperationalError("SELECT notes", {}, Exception("database is locked"))
            return [{"id": "n1", "created_at": 1}]

        reconciler = RealtimeReconciler(hub, "notes", "fam", fetch, cache, logger=logger)
        await reconciler.start()
        hub.drop("notes", "fam")
        await reconciler.settle()
        state = (reconciler.last_error, reconciler.running, hub.subscriber_count("notes", "fam"))
        await reconciler.stop()
        return state, logger

    (error, running, subscribers), logger = asyncio.run(scenario())
    assert isinstance(error, TransientIOError)
    assert isinstance(error.__cause__, OperationalError)
    assert running is False
    assert subscribers == 0
    failed = logger.events("realtime_resync_failed")
    assert failed and failed[-1]["cause"] == "OperationalError"


def test_failed_update_does_not_bring_back_remotely_deleted_row(household) -> None:
    board = household.board

    async def scenario():
        async with GroceryList(board.client(household.kid)) as groceries:
            milk = await groceries.add("Milk")
            await groceries.settle()
            gate = asyncio.Event()

            async def gated_update():
                await gate.wait()
                return await groceries.remote.update(milk["id"], {"is_purchased": True})

            write = asyncio.create_task(groceries.coordinator.update(milk["id"], {"is_purchased": True}, gated_update))
            await asyncio.sleep(0)
            board.store.delete(household.parent, "groceries", milk["id"])
            await groceries.settle()
            gate.set()
            with pytest.raises(NotFoundError):
                await write
            await groceries.settle()
            return groceries.rows, board.store.select(household.parent, "groceries")

    local, server = asyncio.run(scenario())
    assert local == []
    assert server == []


def test_remote_edit_during_own_update_converges(household) -> None:
    board = household.board

    def summary(rows):
        return [(row["id"], row["quantity"], row["is_purchased"]) for row in rows]

    async def scenario():
        async with GroceryList(board.client(household.kid)) as groceries:
            eggs = await groceries.add("Eggs", quantity="6")
            await groceries.settle()
            gate = asyncio.Event()

            async def gated_update():
                await gate.wait()
                return await groceries.remote.update(eggs["id"], {"quantity": "12"})

            write = asyncio.create_task(groceries.coordinator.update(eggs["id"], {"quantity": "12"}, gated_update))
            await asyncio.sleep(0)
            board.store.update(household.parent, "groceries", eggs["id"], {"is_purchased": True})
            await groceries.settle()
            during = groceries.get(eggs["id"])
            gate.set()
            await write
            await groceries.settle()
            return during, groceries.rows, board.store.select(household.parent, "groceries")

    during, local, server = asyncio.run(scenario())
    assert during["quantity"] == "6" and during["is_purchased"] is True
    assert summary(local) == summary(server)
    assert summary(local)[0][1:] == ("12", True)


def test_remote_insert_reaches_open_board(household) -> None:
    board = household.board

    async def scenario():
        async with GroceryList(board.client(household.parent)) as groceries:
            await board.client(household.kid).insert("groceries", {"item_name": "Apples"})
            await groceries.settle()
            return [row["item_name"] for row in groceries.rows]

    assert asyncio.run(scenario()) == ["Apples"]


def test_own_insert_and_its_echo_appear_once(household) -> None:
    board = household.board

    async def scenario():
        async with NoteBoard(board.client(household.kid)) as notes:
            created = await notes.add("Pick up Ben at 3")
            await notes.settle()
            await notes.settle()
            return created, notes.rows

    created, rows = asyncio.run(scenario())
    assert [row["id"] for row in rows] == [created["id"]]


def test_two_members_converge(household) -> None:
    board = household.board

    async def scenario():
        kid_board = await ChoreBoard(board.client(household.kid)).open()
        parent_board = await ChoreBoard(board.client(household.parent)).open()
        try:
            chore = await parent_board.add("Walk the dog", 10)
            await kid_board.settle()
            toggled = await kid_board.toggle(chore["id"])
            await parent_board.settle()
            await kid_board.settle()
            second = await parent_board.add("Water plants", 5)
            await parent_board.delete(second["id"])
            await kid_board.settle()
            await parent_board.settle()
            return toggled, kid_board.rows, parent_board.rows, kid_board.progress()
        finally:
            await kid_board.close()
            await parent_board.close()

    toggled, kid_rows, parent_rows, percent = asyncio.run(scenario())
    assert toggled["assigned_to"] == household.kid.profile_id
    assert kid_rows == parent_rows
    assert len(kid_rows) == 1 and kid_rows[0]["is_completed"] is True
    assert percent == 100


def test_forbidden_write_reverts_board(household) -> None:
    board = household.board
    chore = board.store.insert(household.parent, "chores", {"title": "Mow", "points": 30})

    async def scenario():
        async with ChoreBoard(board.client(household.kid)) as chores:
            with pytest.raises(ForbiddenError):
                await chores.delete(chore["id"])
            return chores.rows

    rows = asyncio.run(scenario())
    assert [row["id"] for row in rows] == [chore["id"]]


def test_dropped_channel_triggers_full_refetch(household) -> None:
    board = household.board
    logger = board.logger

    async def scenario():
        groceries = await GroceryList(board.client(household.kid), logger=logger).open()
        try:
            board.hub.drop("groceries", household.family_id)
            # Written while the channel is down, so only the re-fetch can see it.
            board.store.insert(household.parent, "groceries", {"item_name": "Butter"})
            await groceries.settle()
            await board.client(household.parent).insert("groceries", {"item_name": "Flour"})
            await groceries.settle()
            return sorted(row["item_name"] for row in groceries.rows), groceries.reconciler.resyncs
        finally:
            await groceries.close()

    names, resyncs = asyncio.run(scenario())
    assert names == ["Butter", "Flour"]
    assert resyncs == 1
    assert logger.events("realtime_resync")


def test_redemption_board_and_balances(household) -> None:
    board = household.board
    reward = board.store.insert(household.parent, "rewards", {"name": "Zoo trip", "cost": 50})

    async def scenario():
        kid_client = board.client(household.kid)
        parent_client = board.client(household.parent)
        members = await FamilyMembers(parent_client).open()
        parent_requests = await RedemptionBoard(parent_client).open()
        kid_requests = await RedemptionBoard(kid_client).open()
        catalog = await RewardCatalog(kid_client).open()
        try:
            affordable = [row["name"] for row in catalog.affordable(members.balance_of(household.kid.profile_id))]
            request = await kid_requests.request(reward["id"])
            with pytest.raises(InsufficientBalanceError):
                await kid_requests.request(reward["id"])
            await parent_requests.settle()
            await members.settle()
            reserved = members.balance_of(household.kid.profile_id)
            pending = [row["id"] for row in parent_requests.pending()]
            await parent_requests.reject(request["id"])
            await members.settle()
            await kid_requests.settle()
            views = await kid_requests.load_views()
            return affordable, reserved, pending, members.balance_of(household.kid.profile_id), kid_requests.rows, views
        finally:
            for screen in (members, parent_requests, kid_requests, catalog):
                await screen.close()

    affordable, reserved, pending, refunded, kid_rows, views = asyncio.run(scenario())
    assert affordable == ["Zoo trip"]
    assert reserved == 10
    assert len(pending) == 1
    assert refunded == 60
    assert [row["status"] for row in kid_rows] == ["rejected"]
    assert views[0].reward_name == "Zoo trip" and views[0].kid_name == "Ava"


def test_kid_only_receives_own_redemptions_after_refetch(household) -> None:
    board = household.board
    reward = board.store.insert(household.parent, "rewards", {"name": "Sticker", "cost": 5})
    board.ledger.award_points(household.parent, household.sibling.profile_id, 10)
    board.ledger.request_redemption(household.sibling, reward["id"])

    async def scenario():
        async with RedemptionBoard(board.client(household.kid)) as requests:
            before = requests.rows
            await board.client(household.sibling).request_redemption(reward["id"])
            await requests.settle()
            return before, requests.rows

    before, after = asyncio.run(scenario())
    assert before == []
    assert after == []
