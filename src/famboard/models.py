"""Domain models used by the FamBoard package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

Row = Dict[str, Any]


class Role(str, Enum):
    """Household role of a profile."""

    PARENT = "parent"
    CHILD = "child"


class RedemptionStatus(str, Enum):
    """Lifecycle of a reward redemption request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"


class ChangeType(str, Enum):
    """Kinds of row changes delivered on the realtime channel."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class Caller:
    """The authenticated identity a store operation is performed for."""

    profile_id: str
    role: Role
    family_id: Optional[str] = None

    @property
    def is_parent(self) -> bool:
        return self.role is Role.PARENT

    @property
    def is_child(self) -> bool:
        return self.role is Role.CHILD

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Caller":
        return cls(profile_id=row["id"], role=Role(row["role"]), family_id=row.get("family_id"))


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A committed row change for one ``(table, family_id)`` channel.

    ``new`` carries the full row after an insert or update; ``old`` carries the
    row as it was before an update or delete.
    """

    type: ChangeType
    table: str
    family_id: str
    new: Optional[Row] = None
    old: Optional[Row] = None
    committed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def row_id(self) -> Any:
        snapshot = self.new if self.new is not None else self.old
        return snapshot["id"] if snapshot else None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "table": self.table,
            "family_id": self.family_id,
            "new": self.new,
            "old": self.old,
            "committed_at": self.committed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class RedemptionView:
    """Read model joining a redemption with its reward and requesting kid."""

    id: str
    family_id: str
    kid_id: str
    kid_name: str
    reward_id: Optional[str]
    reward_name: str
    cost: int
    status: RedemptionStatus
    created_at: datetime
    updated_at: datetime

    @property
    def is_pending(self) -> bool:
        return self.status is RedemptionStatus.PENDING


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable ledger action."""

    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DashboardSummary:
    """Snapshot used by the family dashboard cards."""

    groceries_to_buy: int
    next_chore: Optional[Row]
    latest_note: Optional[Row]
    pending_redemptions: int


@dataclass(slots=True)
class ProfileStats:
    """Completed-chore history for a single profile."""

    profile_id: str
    completed_chores: int
    total_points: int
    balance: int
