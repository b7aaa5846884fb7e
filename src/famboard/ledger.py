"""The points ledger: balance primitives and the atomic redemption procedures.

Every balance change is a single conditional ``UPDATE`` issued inside the
caller's transaction, so the read-check-write of a debit can never interleave
with another writer.  Procedures commit as one unit and publish their row
changes only after the commit succeeds.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, desc, select

from .admin import AuditLog
from .exceptions import ForbiddenError, InsufficientBalanceError, InvalidStateError, NotFoundError
from .models import Caller, ChangeEvent, ChangeType, RedemptionStatus, RedemptionView, Role, Row
from .ops import StructuredLogger
from .persistence import PendingChanges, Profile, Redemption, Reward, row_to_dict, transaction
from .points import PointsLike, format_points, require_positive, to_points
from .realtime import RealtimeHub
from .redemptions import balance_delta, build_view, ensure_transition, require_child, require_member, require_parent


# ---------------------------------------------------------------------------
# Balance primitives (only the ledger and store triggers call these)
# ---------------------------------------------------------------------------
def _reload_profile(session: Session, profile_id: str) -> Profile:
    statement = select(Profile).where(Profile.id == profile_id).execution_options(populate_existing=True)
    return session.exec(statement).one()


def credit(session: Session, profile_id: str, points: int) -> Profile:
    """Add ``points`` to a balance within the open transaction."""

    require_positive(points)
    statement = (
        update(Profile)
        .where(Profile.id == profile_id)
        .values(balance=Profile.balance + points)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(statement)
    if result.rowcount == 0:
        raise NotFoundError(f"Profile '{profile_id}' does not exist.")
    return _reload_profile(session, profile_id)


def debit(session: Session, profile_id: str, points: int) -> Profile:
    """Remove ``points`` from a balance, failing rather than going below zero."""

    require_positive(points)
    statement = (
        update(Profile)
        .where(Profile.id == profile_id)
        .where(Profile.balance >= points)
        .values(balance=Profile.balance - points)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(statement)
    if result.rowcount == 0:
        statement = select(Profile).where(Profile.id == profile_id).execution_options(populate_existing=True)
        profile = session.exec(statement).first()
        if profile is None:
            raise NotFoundError(f"Profile '{profile_id}' does not exist.")
        raise InsufficientBalanceError(
            f"Balance of {format_points(profile.balance)} is not enough for {format_points(points)}."
        )
    return _reload_profile(session, profile_id)


def balance_changed(changes: PendingChanges, profile: Profile) -> None:
    if profile.family_id:
        changes.append(
            ChangeEvent(ChangeType.UPDATE, "profiles", profile.family_id, new=row_to_dict(profile))
        )


class Ledger:
    """Atomic points operations for one store."""

    def __init__(
        self,
        engine: Engine,
        hub: Optional[RealtimeHub] = None,
        *,
        logger: Optional[StructuredLogger] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self._engine = engine
        self._hub = hub
        self._logger = logger or StructuredLogger()
        self._audit = audit or AuditLog()

    # ------------------------------------------------------------------
    # Redemption procedures
    # ------------------------------------------------------------------
    def request_redemption(self, caller: Caller, reward_id: str, kid_id: str | None = None) -> Row:
        """Reserve the reward's cost from the kid's balance and open a pending request."""

        kid_id = kid_id or caller.profile_id
        try:
            with transaction(self._engine, self._hub) as (session, changes):
                reward = session.get(Reward, reward_id)
                if reward is None:
                    raise NotFoundError(f"Reward '{reward_id}' does not exist.")
                require_child(caller, reward.family_id)
                if kid_id != caller.profile_id:
                    raise ForbiddenError("A child can only redeem rewards for themselves.")
                member = session.get(Profile, kid_id)
                if member is None:
                    raise NotFoundError(f"Profile '{kid_id}' does not exist.")
                if member.family_id != reward.family_id or member.role != Role.CHILD.value:
                    raise ForbiddenError("Rewards can only be redeemed by a child of the same family.")
                kid = debit(session, kid_id, reward.cost)
                now = datetime.utcnow()
                redemption = Redemption(
                    family_id=reward.family_id,
                    kid_id=kid.id,
                    reward_id=reward.id,
                    reward_name=reward.name,
                    cost=reward.cost,
                    status=RedemptionStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(redemption)
                session.flush()
                balance_changed(changes, kid)
                changes.append(
                    ChangeEvent(ChangeType.INSERT, "redemptions", redemption.family_id, new=row_to_dict(redemption))
                )
        except InsufficientBalanceError:
            self._logger.log("redemption_refused", kid=kid_id, reward=reward_id, reason="insufficient_balance")
            raise
        self._audit.record(caller.profile_id, "request_redemption", redemption.id, details={"cost": redemption.cost})
        self._logger.log(
            "redemption_requested",
            redemption=redemption.id,
            kid=kid.id,
            reward=reward_id,
            cost=redemption.cost,
            balance=kid.balance,
        )
        return row_to_dict(redemption)

    def approve_redemption(self, caller: Caller, redemption_id: str) -> Row:
        """Mark a pending request approved; the points were already reserved."""

        return self._transition(caller, redemption_id, RedemptionStatus.APPROVED)

    def reject_redemption(self, caller: Caller, redemption_id: str) -> Row:
        """Mark a pending request rejected and release the reservation."""

        return self._transition(caller, redemption_id, RedemptionStatus.REJECTED)

    def _transition(self, caller: Caller, redemption_id: str, target: RedemptionStatus) -> Row:
        with transaction(self._engine, self._hub) as (session, changes):
            redemption = session.get(Redemption, redemption_id)
            if redemption is None:
                raise NotFoundError(f"Redemption '{redemption_id}' does not exist.")
            require_parent(caller, redemption.family_id)
            current = redemption.status
            ensure_transition(current, target)
            old = row_to_dict(redemption)
            statement = (
                update(Redemption)
                .where(Redemption.id == redemption_id)
                .where(Redemption.status == current)
                .values(status=target.value, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if session.exec(statement).rowcount == 0:
                # Another parent moved it first.
                latest = self._current_status(session, redemption_id)
                raise InvalidStateError(f"Redemption is already '{latest}'.")
            delta = balance_delta(target, redemption.cost)
            if delta > 0:
                balance_changed(changes, credit(session, redemption.kid_id, delta))
            refreshed = session.exec(
                select(Redemption)
                .where(Redemption.id == redemption_id)
                .execution_options(populate_existing=True)
            ).one()
            changes.append(
                ChangeEvent(
                    ChangeType.UPDATE, "redemptions", refreshed.family_id, new=row_to_dict(refreshed), old=old
                )
            )
        self._audit.record(
            caller.profile_id,
            f"{target.value}_redemption",
            redemption_id,
            details={"refund": max(delta, 0)},
        )
        self._logger.log(
            "redemption_resolved",
            redemption=redemption_id,
            status=target.value,
            kid=refreshed.kid_id,
            refund=max(delta, 0),
        )
        return row_to_dict(refreshed)

    def _current_status(self, session: Session, redemption_id: str) -> str:
        statement = (
            select(Redemption)
            .where(Redemption.id == redemption_id)
            .execution_options(populate_existing=True)
        )
        redemption = session.exec(statement).first()
        if redemption is None:
            raise NotFoundError(f"Redemption '{redemption_id}' does not exist.")
        return redemption.status

    # ------------------------------------------------------------------
    # Direct balance operations
    # ------------------------------------------------------------------
    def award_points(self, caller: Caller, profile_id: str, points: PointsLike, *, reason: str = "") -> Row:
        """Parent-granted bonus points."""

        value = require_positive(to_points(points))
        with transaction(self._engine, self._hub) as (session, changes):
            profile = session.get(Profile, profile_id)
            if profile is None:
                raise NotFoundError(f"Profile '{profile_id}' does not exist.")
            require_parent(caller, profile.family_id)
            updated = credit(session, profile_id, value)
            balance_changed(changes, updated)
        self._audit.record(caller.profile_id, "award_points", profile_id, details={"points": value, "reason": reason})
        self._logger.log("points_awarded", profile=profile_id, points=value, balance=updated.balance)
        return row_to_dict(updated)

    def balance_of(self, caller: Caller, profile_id: str | None = None) -> int:
        profile_id = profile_id or caller.profile_id
        with Session(self._engine, expire_on_commit=False) as session:
            profile = session.get(Profile, profile_id)
            if profile is None:
                raise NotFoundError(f"Profile '{profile_id}' does not exist.")
            if profile.id != caller.profile_id:
                require_member(caller, profile.family_id)
            return profile.balance

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------
    def list_redemptions(
        self,
        caller: Caller,
        *,
        status: RedemptionStatus | str | None = None,
    ) -> Tuple[RedemptionView, ...]:
        """Parents see the whole family's requests; children see their own."""

        require_member(caller, caller.family_id)
        statement = (
            select(Redemption, Profile, Reward)
            .join(Profile, Profile.id == Redemption.kid_id)
            .join(Reward, Reward.id == Redemption.reward_id, isouter=True)
            .where(Redemption.family_id == caller.family_id)
            .order_by(desc(Redemption.created_at))
        )
        if not caller.is_parent:
            statement = statement.where(Redemption.kid_id == caller.profile_id)
        if status is not None:
            statement = statement.where(Redemption.status == RedemptionStatus(status).value)
        with Session(self._engine, expire_on_commit=False) as session:
            rows = session.exec(statement).all()
        return tuple(
            build_view(
                row_to_dict(redemption),
                kid=row_to_dict(kid),
                reward=row_to_dict(reward) if reward is not None else None,
            )
            for redemption, kid, reward in rows
        )


__all__ = ["Ledger", "balance_changed", "credit", "debit"]
