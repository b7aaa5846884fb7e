"""Redemption state machine and the role checks guarding ledger operations."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Mapping, Optional

from .exceptions import ForbiddenError, InvalidStateError
from .models import Caller, RedemptionStatus, RedemptionView

TRANSITIONS: Dict[RedemptionStatus, FrozenSet[RedemptionStatus]] = {
    RedemptionStatus.PENDING: frozenset({RedemptionStatus.APPROVED, RedemptionStatus.REJECTED}),
    RedemptionStatus.APPROVED: frozenset({RedemptionStatus.FULFILLED}),
    RedemptionStatus.REJECTED: frozenset(),
    RedemptionStatus.FULFILLED: frozenset(),
}

# Balance effect applied together with a transition, as a signed multiple of the cost.
BALANCE_EFFECT: Dict[RedemptionStatus, int] = {
    RedemptionStatus.PENDING: -1,
    RedemptionStatus.APPROVED: 0,
    RedemptionStatus.REJECTED: 1,
    RedemptionStatus.FULFILLED: 0,
}


def can_transition(current: RedemptionStatus | str, target: RedemptionStatus | str) -> bool:
    return RedemptionStatus(target) in TRANSITIONS[RedemptionStatus(current)]


def ensure_transition(current: RedemptionStatus | str, target: RedemptionStatus | str) -> RedemptionStatus:
    """Return ``target`` as a status, raising when the move is not allowed."""

    current_status = RedemptionStatus(current)
    target_status = RedemptionStatus(target)
    if target_status not in TRANSITIONS[current_status]:
        raise InvalidStateError(
            f"Redemption cannot move from '{current_status.value}' to '{target_status.value}'."
        )
    return target_status


def is_terminal(status: RedemptionStatus | str) -> bool:
    return not TRANSITIONS[RedemptionStatus(status)]


def balance_delta(target: RedemptionStatus | str, cost: int) -> int:
    return BALANCE_EFFECT[RedemptionStatus(target)] * cost


# ---------------------------------------------------------------------------
# Capability checks, performed once at the boundary of each ledger operation
# ---------------------------------------------------------------------------
def require_member(caller: Caller, family_id: Optional[str]) -> None:
    if caller.family_id is None or family_id is None or caller.family_id != family_id:
        raise ForbiddenError("Caller does not belong to this family.")


def require_parent(caller: Caller, family_id: Optional[str]) -> None:
    require_member(caller, family_id)
    if not caller.is_parent:
        raise ForbiddenError("Only a parent can perform this action.")


def require_child(caller: Caller, family_id: Optional[str]) -> None:
    require_member(caller, family_id)
    if not caller.is_child:
        raise ForbiddenError("Only a child can request a reward.")


def build_view(
    redemption: Mapping[str, Any],
    *,
    kid: Optional[Mapping[str, Any]] = None,
    reward: Optional[Mapping[str, Any]] = None,
) -> RedemptionView:
    """Assemble the read model; the stored name and cost win over the live reward."""

    reward_name = redemption.get("reward_name") or (reward or {}).get("name") or "Unknown Reward"
    return RedemptionView(
        id=redemption["id"],
        family_id=redemption["family_id"],
        kid_id=redemption["kid_id"],
        kid_name=(kid or {}).get("display_name") or "",
        reward_id=redemption.get("reward_id"),
        reward_name=reward_name,
        cost=int(redemption["cost"]),
        status=RedemptionStatus(redemption["status"]),
        created_at=redemption["created_at"],
        updated_at=redemption["updated_at"],
    )


__all__ = [
    "TRANSITIONS",
    "BALANCE_EFFECT",
    "balance_delta",
    "build_view",
    "can_transition",
    "ensure_transition",
    "is_terminal",
    "require_child",
    "require_member",
    "require_parent",
]
