from dataclasses import dataclass

import pytest

from famboard.models import Caller, Role
from famboard.service import FamBoard


@dataclass
class Household:
    board: FamBoard
    family_id: str
    secret_key: str
    parent: Caller
    kid: Caller
    sibling: Caller


def make_household(board: FamBoard, *, kid_balance: int = 60) -> Household:
    parent_row = board.store.create_profile("Mom", Role.PARENT)
    family = board.create_family(Caller.from_row(parent_row), "The Smiths")
    parent = Caller.from_row(board.store.get_profile(parent_row["id"]))
    kid = Caller.from_row(board.store.create_profile("Ava", Role.CHILD, family_id=family["id"], balance=kid_balance))
    sibling = Caller.from_row(board.store.create_profile("Ben", Role.CHILD, family_id=family["id"]))
    return Household(board, family["id"], family["secret_key"], parent, kid, sibling)


@pytest.fixture
def board() -> FamBoard:
    return FamBoard("sqlite://")


@pytest.fixture
def household(board: FamBoard) -> Household:
    return make_household(board)


@pytest.fixture
def other_household(board: FamBoard) -> Household:
    return make_household(board, kid_balance=500)
