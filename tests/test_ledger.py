from concurrent.futures import ThreadPoolExecutor

import pytest

from famboard.exceptions import ForbiddenError, InsufficientBalanceError, InvalidStateError, NotFoundError
from famboard.ledger import Ledger
from famboard.models import Caller, RedemptionStatus, Role
from famboard.persistence import build_engine, create_db_and_tables
from famboard.redemptions import balance_delta, can_transition, ensure_transition, is_terminal
from famboard.store import TableStore


def add_reward(household, name="Movie night", cost=50):
    return household.board.store.insert(household.parent, "rewards", {"name": name, "cost": cost})


def balance(household, caller=None):
    return household.board.ledger.balance_of(household.parent, (caller or household.kid).profile_id)


def test_redemption_example_walkthrough(household) -> None:
    ledger = household.board.ledger
    reward = add_reward(household, cost=50)

    poorer = Caller.from_row(
        household.board.store.create_profile("Cal", Role.CHILD, family_id=household.family_id, balance=40)
    )
    with pytest.raises(InsufficientBalanceError):
        ledger.request_redemption(poorer, reward["id"])
    assert balance(household, poorer) == 40
    assert ledger.list_redemptions(poorer) == ()

    redemption = ledger.request_redemption(household.kid, reward["id"])
    assert redemption["status"] == RedemptionStatus.PENDING.value
    assert balance(household) == 10

    rejected = ledger.reject_redemption(household.parent, redemption["id"])
    assert rejected["status"] == RedemptionStatus.REJECTED.value
    assert balance(household) == 60

    with pytest.raises(InvalidStateError):
        ledger.approve_redemption(household.parent, redemption["id"])
    assert balance(household) == 60


def test_approve_keeps_reserved_points(household) -> None:
    ledger = household.board.ledger
    reward = add_reward(household, cost=25)

    redemption = ledger.request_redemption(household.kid, reward["id"])
    assert balance(household) == 35
    approved = ledger.approve_redemption(household.parent, redemption["id"])

    assert approved["status"] == "approved"
    assert balance(household) == 35
    with pytest.raises(InvalidStateError):
        ledger.reject_redemption(household.parent, redemption["id"])
    assert balance(household) == 35


def test_refund_uses_cost_charged_at_request_time(household) -> None:
    ledger = household.board.ledger
    reward = add_reward(household, cost=30)
    redemption = ledger.request_redemption(household.kid, reward["id"])

    household.board.store.update(household.parent, "rewards", reward["id"], {"cost": 45})
    household.board.store.delete(household.parent, "rewards", reward["id"])
    ledger.reject_redemption(household.parent, redemption["id"])

    assert balance(household) == 60
    (view,) = ledger.list_redemptions(household.parent)
    assert view.reward_name == "Movie night"
    assert view.cost == 30
    assert view.status is RedemptionStatus.REJECTED


def test_pending_requests_cannot_overcommit(household) -> None:
    ledger = household.board.ledger
    reward = add_reward(household, cost=25)

    ledger.request_redemption(household.kid, reward["id"])
    ledger.request_redemption(household.kid, reward["id"])
    with pytest.raises(InsufficientBalanceError):
        ledger.request_redemption(household.kid, reward["id"])

    assert balance(household) == 10
    pending = ledger.list_redemptions(household.kid, status="pending")
    assert len(pending) == 2
    assert all(view.kid_name == "Ava" for view in pending)


def test_role_and_family_checks(household, other_household) -> None:
    ledger = household.board.ledger
    reward = add_reward(household)

    with pytest.raises(ForbiddenError):
        ledger.request_redemption(household.parent, reward["id"])
    with pytest.raises(ForbiddenError):
        ledger.request_redemption(other_household.kid, reward["id"])
    with pytest.raises(ForbiddenError):
        ledger.request_redemption(household.kid, reward["id"], kid_id=household.sibling.profile_id)

    redemption = ledger.request_redemption(household.kid, reward["id"])
    with pytest.raises(ForbiddenError):
        ledger.approve_redemption(household.kid, redemption["id"])
    with pytest.raises(ForbiddenError):
        ledger.reject_redemption(other_household.parent, redemption["id"])
    assert balance(household) == 10


def test_missing_rows_are_not_found(household) -> None:
    ledger = household.board.ledger
    with pytest.raises(NotFoundError):
        ledger.request_redemption(household.kid, "no-such-reward")
    with pytest.raises(NotFoundError):
        ledger.approve_redemption(household.parent, "no-such-redemption")


def test_children_only_see_their_own_requests(household) -> None:
    ledger = household.board.ledger
    reward = add_reward(household, cost=5)
    ledger.award_points(household.parent, household.sibling.profile_id, 10)
    ledger.request_redemption(household.kid, reward["id"])
    ledger.request_redemption(household.sibling, reward["id"])

    assert len(ledger.list_redemptions(household.parent)) == 2
    assert [view.kid_id for view in ledger.list_redemptions(household.sibling)] == [household.sibling.profile_id]


def test_award_points_is_parent_only(household) -> None:
    ledger = household.board.ledger
    updated = ledger.award_points(household.parent, household.kid.profile_id, "15", reason="Helped with dishes")
    assert updated["balance"] == 75
    with pytest.raises(ForbiddenError):
        ledger.award_points(household.kid, household.kid.profile_id, 100)

    latest = household.board.audit_log.latest()
    assert latest is not None and latest.action == "award_points"
    assert latest.details == {"points": 15, "reason": "Helped with dishes"}


def test_ledger_actions_are_logged(household) -> None:
    ledger = household.board.ledger
    reward = add_reward(household, cost=100)
    with pytest.raises(InsufficientBalanceError):
        ledger.request_redemption(household.kid, reward["id"])

    refused = household.board.logger.events("redemption_refused")
    assert refused and refused[-1]["reason"] == "insufficient_balance"


def test_concurrent_requests_never_overdraw(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_db_and_tables(engine)
    store = TableStore(engine)
    ledger = Ledger(engine)
    parent_row = store.create_profile("Dad", Role.PARENT)
    family = store.create_family(Caller.from_row(parent_row), "Race")
    parent = Caller.from_row(store.get_profile(parent_row["id"]))
    kid = Caller.from_row(store.create_profile("Kit", Role.CHILD, family_id=family["id"], balance=100))
    reward = store.insert(parent, "rewards", {"name": "Game", "cost": 30})

    def attempt(_: int) -> str:
        try:
            ledger.request_redemption(kid, reward["id"])
        except InsufficientBalanceError:
            return "refused"
        return "ok"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    assert outcomes.count("ok") == 3
    assert outcomes.count("refused") == 5
    assert ledger.balance_of(kid) == 10
    assert len(ledger.list_redemptions(parent)) == 3


def test_redemption_state_machine() -> None:
    assert can_transition("pending", "approved")
    assert can_transition("pending", "rejected")
    assert can_transition("approved", "fulfilled")
    assert not can_transition("rejected", "approved")
    assert not can_transition("approved", "rejected")
    assert is_terminal("rejected") and is_terminal("fulfilled")
    assert not is_terminal("pending")
    assert balance_delta("pending", 30) == -30
    assert balance_delta("rejected", 30) == 30
    assert balance_delta("approved", 30) == 0
    with pytest.raises(InvalidStateError):
        ensure_transition(RedemptionStatus.REJECTED, RedemptionStatus.APPROVED)
