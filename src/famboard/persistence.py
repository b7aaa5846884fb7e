"""Persistence and SQLModel definitions for the FamBoard store."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Iterator, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import CheckConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from .models import ChangeEvent, Row

if TYPE_CHECKING:  # pragma: no cover
    from .realtime import RealtimeHub


def new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Family(SQLModel, table=True):
    __tablename__ = "families"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    secret_key: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_profiles_balance_non_negative"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    display_name: str
    role: str  # parent|child
    family_id: Optional[str] = Field(default=None, index=True)
    balance: int = 0
    avatar_url: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Chore(SQLModel, table=True):
    __tablename__ = "chores"

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(index=True)
    title: str
    points: int
    is_completed: bool = False
    assigned_to: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Reward(SQLModel, table=True):
    __tablename__ = "rewards"

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(index=True)
    name: str
    cost: int
    icon: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Redemption(SQLModel, table=True):
    __tablename__ = "redemptions"

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(index=True)
    kid_id: str = Field(index=True)
    reward_id: Optional[str] = None
    reward_name: str = ""
    cost: int
    status: str = "pending"  # pending|approved|rejected|fulfilled
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Grocery(SQLModel, table=True):
    __tablename__ = "groceries"

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(index=True)
    item_name: str
    quantity: Optional[str] = None
    category: Optional[str] = None
    is_purchased: bool = False
    added_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Note(SQLModel, table=True):
    __tablename__ = "notes"

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(index=True)
    content: str
    color: Optional[str] = None
    author_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class GameScore(SQLModel, table=True):
    __tablename__ = "game_scores"

    id: str = Field(default_factory=new_id, primary_key=True)
    game_id: str = Field(index=True)
    level: int
    points: int = 0
    profile_id: str = Field(index=True)
    family_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ---------------------------------------------------------------------------
# Engine & transaction helpers
# ---------------------------------------------------------------------------
def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``url``; in-memory SQLite shares one connection."""

    if url.startswith("sqlite"):
        if url in {"sqlite://", "sqlite:///:memory:"}:
            return create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def row_to_dict(row: SQLModel) -> Row:
    return row.model_dump()


class PendingChanges:
    """Change events collected during a transaction, published after commit."""

    __slots__ = ("_events",)

    def __init__(self) -> None:
        self._events: List[ChangeEvent] = []

    def append(self, event: ChangeEvent) -> None:
        self._events.append(event)

    def __iter__(self) -> Iterator[ChangeEvent]:
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)


@contextmanager
def transaction(engine: Engine, hub: Optional["RealtimeHub"] = None) -> Iterator[Tuple[Session, PendingChanges]]:
    """Run a unit of work; commit on success and then publish its changes.

    Any exception rolls the whole unit back and nothing is published.
    """

    changes = PendingChanges()
    with Session(engine, expire_on_commit=False) as session:
        try:
            yield session, changes
            session.commit()
        except BaseException:
            session.rollback()
            raise
    if hub is not None:
        for event in changes:
            hub.publish(event)


__all__ = [
    "Family",
    "Profile",
    "Chore",
    "Reward",
    "Redemption",
    "Grocery",
    "Note",
    "GameScore",
    "PendingChanges",
    "build_engine",
    "create_db_and_tables",
    "new_id",
    "row_to_dict",
    "transaction",
]
