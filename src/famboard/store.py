"""Family-scoped table primitives with a role-based authorization policy.

This is the write path for the list-backed collections (chores, groceries,
notes, rewards) and the read path for every table.  Each write runs in its own
transaction and publishes the committed change on the realtime hub.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, asc, desc, select

from .chores import apply_claim, completion_change
from .config import DEFAULT_NOTE_COLOR, DEFAULT_REWARD_ICON, INVITE_KEY_LENGTH
from .exceptions import ForbiddenError, NotFoundError, ValidationError
from .ledger import balance_changed, credit, debit
from .models import Caller, ChangeEvent, ChangeType, DashboardSummary, ProfileStats, RedemptionStatus, Role, Row
from .ops import StructuredLogger
from .persistence import (
    Chore,
    Family,
    Grocery,
    Note,
    PendingChanges,
    Profile,
    Redemption,
    Reward,
    row_to_dict,
    transaction,
)
from .points import require_positive, to_points
from .realtime import RealtimeHub
from .redemptions import require_member

ALL_ROLES: FrozenSet[Role] = frozenset(Role)
PARENTS: FrozenSet[Role] = frozenset({Role.PARENT})
NOBODY: FrozenSet[Role] = frozenset()

Validator = Callable[[Dict[str, Any], bool], None]


@dataclass(frozen=True, slots=True)
class TablePolicy:
    """Who may write which fields of a family-scoped table."""

    model: type[SQLModel]
    insert_roles: FrozenSet[Role] = NOBODY
    update_roles: FrozenSet[Role] = NOBODY
    delete_roles: FrozenSet[Role] = NOBODY
    insert_fields: FrozenSet[str] = frozenset()
    update_fields: Mapping[Role, FrozenSet[str]] = field(default_factory=dict)
    order_by: Tuple[str, bool] = ("created_at", True)
    owner_field: Optional[str] = None
    own_rows_field: Optional[str] = None
    own_rows_only: bool = False


def _text(values: Dict[str, Any], key: str, *, required: bool) -> None:
    if key not in values:
        if required:
            raise ValidationError(f"'{key}' is required.")
        return
    value = values[key]
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{key}' must be a non-empty string.")
    values[key] = value.strip()


def _positive(values: Dict[str, Any], key: str, *, required: bool) -> None:
    if key not in values:
        if required:
            raise ValidationError(f"'{key}' is required.")
        return
    values[key] = require_positive(to_points(values[key]))


def _flag(values: Dict[str, Any], key: str) -> None:
    if key in values and not isinstance(values[key], bool):
        raise ValidationError(f"'{key}' must be true or false.")


def _optional_text(values: Dict[str, Any], key: str) -> None:
    if key in values:
        value = values[key]
        if value is None:
            return
        if not isinstance(value, str):
            raise ValidationError(f"'{key}' must be a string.")
        values[key] = value.strip() or None


def _validate_chore(values: Dict[str, Any], partial: bool) -> None:
    _text(values, "title", required=not partial)
    _positive(values, "points", required=not partial)
    _flag(values, "is_completed")


def _validate_reward(values: Dict[str, Any], partial: bool) -> None:
    _text(values, "name", required=not partial)
    _positive(values, "cost", required=not partial)
    _optional_text(values, "icon")


def _validate_grocery(values: Dict[str, Any], partial: bool) -> None:
    _text(values, "item_name", required=not partial)
    _optional_text(values, "quantity")
    _optional_text(values, "category")
    _flag(values, "is_purchased")


def _validate_note(values: Dict[str, Any], partial: bool) -> None:
    _text(values, "content", required=not partial)
    _optional_text(values, "color")


def _validate_profile(values: Dict[str, Any], partial: bool) -> None:
    _text(values, "display_name", required=not partial)
    _optional_text(values, "avatar_url")


POLICIES: Dict[str, TablePolicy] = {
    "chores": TablePolicy(
        model=Chore,
        insert_roles=PARENTS,
        update_roles=ALL_ROLES,
        delete_roles=PARENTS,
        insert_fields=frozenset({"title", "points", "assigned_to"}),
        update_fields={
            Role.PARENT: frozenset({"title", "points", "is_completed", "assigned_to"}),
            Role.CHILD: frozenset({"is_completed", "assigned_to"}),
        },
    ),
    "rewards": TablePolicy(
        model=Reward,
        insert_roles=PARENTS,
        update_roles=PARENTS,
        delete_roles=PARENTS,
        insert_fields=frozenset({"name", "cost", "icon"}),
        update_fields={Role.PARENT: frozenset({"name", "cost", "icon"})},
        order_by=("cost", False),
    ),
    "groceries": TablePolicy(
        model=Grocery,
        insert_roles=ALL_ROLES,
        update_roles=ALL_ROLES,
        delete_roles=ALL_ROLES,
        insert_fields=frozenset({"item_name", "quantity", "category"}),
        update_fields={role: frozenset({"item_name", "quantity", "category", "is_purchased"}) for role in Role},
        owner_field="added_by",
    ),
    "notes": TablePolicy(
        model=Note,
        insert_roles=ALL_ROLES,
        update_roles=ALL_ROLES,
        delete_roles=ALL_ROLES,
        insert_fields=frozenset({"content", "color"}),
        update_fields={role: frozenset({"content", "color"}) for role in Role},
        owner_field="author_id",
    ),
    "redemptions": TablePolicy(
        model=Redemption,
        own_rows_field="kid_id",
    ),
    "profiles": TablePolicy(
        model=Profile,
        update_roles=ALL_ROLES,
        update_fields={role: frozenset({"display_name", "avatar_url"}) for role in Role},
        order_by=("created_at", False),
        own_rows_only=True,
    ),
}

VALIDATORS: Dict[str, Validator] = {
    "chores": _validate_chore,
    "rewards": _validate_reward,
    "groceries": _validate_grocery,
    "notes": _validate_note,
    "profiles": _validate_profile,
}

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "rewards": {"icon": DEFAULT_REWARD_ICON},
    "notes": {"color": DEFAULT_NOTE_COLOR},
}


class TableStore:
    """Select/insert/update/delete scoped to the caller's family."""

    def __init__(
        self,
        engine: Engine,
        hub: Optional[RealtimeHub] = None,
        *,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._engine = engine
        self._hub = hub
        self._logger = logger or StructuredLogger()

    # ------------------------------------------------------------------
    # Table primitives
    # ------------------------------------------------------------------
    def select(
        self,
        caller: Caller,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        policy = self._policy(table)
        require_member(caller, caller.family_id)
        model = policy.model
        statement = select(model).where(model.family_id == caller.family_id)
        if policy.own_rows_field and not caller.is_parent:
            statement = statement.where(getattr(model, policy.own_rows_field) == caller.profile_id)
        for key, value in (filters or {}).items():
            statement = statement.where(self._column(policy, key) == value)
        column_name, default_descending = policy.order_by
        column = self._column(policy, order_by or column_name)
        use_descending = default_descending if descending is None else descending
        statement = statement.order_by(desc(column) if use_descending else asc(column))
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self._engine, expire_on_commit=False) as session:
            return [row_to_dict(row) for row in session.exec(statement).all()]

    def insert(self, caller: Caller, table: str, values: Mapping[str, Any]) -> Row:
        policy = self._policy(table)
        require_member(caller, caller.family_id)
        if caller.role not in policy.insert_roles:
            raise ForbiddenError(f"A {caller.role.value} cannot add to {table}.")
        payload = self._writable(policy, policy.insert_fields, values)
        for key, default in DEFAULTS.get(table, {}).items():
            if not payload.get(key):
                payload[key] = default
        VALIDATORS[table](payload, False)
        with transaction(self._engine, self._hub) as (session, changes):
            if payload.get("assigned_to"):
                self._require_family_profile(session, caller.family_id, payload["assigned_to"])
            payload["family_id"] = caller.family_id
            if policy.owner_field:
                payload[policy.owner_field] = caller.profile_id
            row = policy.model(**payload)
            session.add(row)
            session.flush()
            created = row_to_dict(row)
            changes.append(ChangeEvent(ChangeType.INSERT, table, caller.family_id, new=created))
        self._logger.log("row_inserted", table=table, id=created["id"], actor=caller.profile_id)
        return created

    def update(self, caller: Caller, table: str, row_id: str, values: Mapping[str, Any]) -> Row:
        policy = self._policy(table)
        require_member(caller, caller.family_id)
        if caller.role not in policy.update_roles:
            raise ForbiddenError(f"A {caller.role.value} cannot edit {table}.")
        payload = self._writable(policy, policy.update_fields.get(caller.role, frozenset()), values)
        VALIDATORS[table](payload, True)
        with transaction(self._engine, self._hub) as (session, changes):
            row = self._family_row(session, policy, caller, row_id, table)
            if policy.own_rows_only and row.id != caller.profile_id:
                raise ForbiddenError("Profiles can only be edited by their owner.")
            before = row_to_dict(row)
            if table == "chores":
                payload = self._prepare_chore_update(session, caller, before, payload)
            for key, value in payload.items():
                setattr(row, key, value)
            session.add(row)
            session.flush()
            after = row_to_dict(row)
            if table == "chores":
                self._settle_chore_points(session, changes, before, after)
            changes.append(ChangeEvent(ChangeType.UPDATE, table, caller.family_id, new=after, old=before))
        self._logger.log("row_updated", table=table, id=row_id, actor=caller.profile_id, fields=sorted(payload))
        return after

    def delete(self, caller: Caller, table: str, row_id: str) -> Row:
        policy = self._policy(table)
        require_member(caller, caller.family_id)
        if caller.role not in policy.delete_roles:
            raise ForbiddenError(f"A {caller.role.value} cannot delete from {table}.")
        with transaction(self._engine, self._hub) as (session, changes):
            row = self._family_row(session, policy, caller, row_id, table)
            removed = row_to_dict(row)
            session.delete(row)
            changes.append(ChangeEvent(ChangeType.DELETE, table, caller.family_id, old=removed))
        self._logger.log("row_deleted", table=table, id=row_id, actor=caller.profile_id)
        return removed

    # ------------------------------------------------------------------
    # Profiles & families
    # ------------------------------------------------------------------
    def create_profile(
        self,
        display_name: str,
        role: Role | str,
        *,
        family_id: Optional[str] = None,
        balance: int = 0,
        profile_id: Optional[str] = None,
    ) -> Row:
        """Register a profile; called by the auth collaborator on signup."""

        values: Dict[str, Any] = {"display_name": display_name}
        _validate_profile(values, False)
        starting = require_positive(to_points(balance), allow_zero=True)
        with transaction(self._engine, self._hub) as (session, changes):
            if family_id is not None and session.get(Family, family_id) is None:
                raise NotFoundError(f"Family '{family_id}' does not exist.")
            extra = {"id": profile_id} if profile_id else {}
            profile = Profile(
                display_name=values["display_name"],
                role=Role(role).value,
                family_id=family_id,
                balance=starting,
                **extra,
            )
            session.add(profile)
            session.flush()
            created = row_to_dict(profile)
            if family_id:
                changes.append(ChangeEvent(ChangeType.INSERT, "profiles", family_id, new=created))
        self._logger.log("profile_created", id=created["id"], role=created["role"])
        return created

    def get_profile(self, profile_id: str) -> Row:
        with Session(self._engine, expire_on_commit=False) as session:
            profile = session.get(Profile, profile_id)
            if profile is None:
                raise NotFoundError(f"Profile '{profile_id}' does not exist.")
            return row_to_dict(profile)

    def create_family(self, caller: Caller, name: str) -> Row:
        """Create a family with a fresh invite key and move the parent into it."""

        if not caller.is_parent:
            raise ForbiddenError("Only a parent can create a family.")
        values: Dict[str, Any] = {"name": name}
        _text(values, "name", required=True)
        with transaction(self._engine, self._hub) as (session, changes):
            secret_key = self._unused_secret_key(session)
            family = Family(name=values["name"], secret_key=secret_key)
            session.add(family)
            session.flush()
            self._move_profile(session, changes, caller.profile_id, family.id)
            created = row_to_dict(family)
        self._logger.log("family_created", id=created["id"], parent=caller.profile_id)
        return created

    def join_family(self, caller: Caller, secret_key: str) -> Row:
        key = (secret_key or "").strip().upper()
        with transaction(self._engine, self._hub) as (session, changes):
            family = session.exec(select(Family).where(Family.secret_key == key)).first()
            if family is None:
                raise NotFoundError("Invalid Secret Key")
            self._move_profile(session, changes, caller.profile_id, family.id)
            joined = row_to_dict(family)
        self._logger.log("family_joined", id=joined["id"], profile=caller.profile_id)
        return joined

    def family(self, caller: Caller) -> Row:
        require_member(caller, caller.family_id)
        with Session(self._engine, expire_on_commit=False) as session:
            family = session.get(Family, caller.family_id)
            if family is None:
                raise NotFoundError(f"Family '{caller.family_id}' does not exist.")
            return row_to_dict(family)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------
    def dashboard(self, caller: Caller) -> DashboardSummary:
        require_member(caller, caller.family_id)
        family_id = caller.family_id
        with Session(self._engine, expire_on_commit=False) as session:
            groceries = session.exec(
                select(func.count())
                .select_from(Grocery)
                .where(Grocery.family_id == family_id)
                .where(Grocery.is_purchased == False)  # noqa: E712
            ).one()
            next_chore = session.exec(
                select(Chore)
                .where(Chore.family_id == family_id)
                .where(Chore.is_completed == False)  # noqa: E712
                .order_by(asc(Chore.created_at))
                .limit(1)
            ).first()
            latest_note = session.exec(
                select(Note).where(Note.family_id == family_id).order_by(desc(Note.created_at)).limit(1)
            ).first()
            pending = select(func.count()).select_from(Redemption).where(Redemption.family_id == family_id)
            pending = pending.where(Redemption.status == RedemptionStatus.PENDING.value)
            if not caller.is_parent:
                pending = pending.where(Redemption.kid_id == caller.profile_id)
            pending_count = session.exec(pending).one()
        return DashboardSummary(
            groceries_to_buy=int(groceries),
            next_chore=row_to_dict(next_chore) if next_chore else None,
            latest_note=row_to_dict(latest_note) if latest_note else None,
            pending_redemptions=int(pending_count),
        )

    def profile_stats(self, caller: Caller, profile_id: Optional[str] = None) -> ProfileStats:
        profile_id = profile_id or caller.profile_id
        with Session(self._engine, expire_on_commit=False) as session:
            profile = session.get(Profile, profile_id)
            if profile is None:
                raise NotFoundError(f"Profile '{profile_id}' does not exist.")
            require_member(caller, profile.family_id)
            chores = session.exec(
                select(Chore)
                .where(Chore.family_id == profile.family_id)
                .where(Chore.assigned_to == profile_id)
                .where(Chore.is_completed == True)  # noqa: E712
            ).all()
        return ProfileStats(
            profile_id=profile_id,
            completed_chores=len(chores),
            total_points=sum(chore.points for chore in chores),
            balance=profile.balance,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _policy(self, table: str) -> TablePolicy:
        try:
            return POLICIES[table]
        except KeyError as exc:
            raise NotFoundError(f"Unknown table '{table}'.") from exc

    def _column(self, policy: TablePolicy, name: str) -> Any:
        if name not in policy.model.model_fields:
            raise ValidationError(f"Unknown column '{name}'.")
        return getattr(policy.model, name)

    def _writable(self, policy: TablePolicy, allowed: FrozenSet[str], values: Mapping[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for key, value in values.items():
            if key == "id":
                continue
            if key not in policy.model.model_fields:
                raise ValidationError(f"Unknown column '{key}'.")
            if key not in allowed:
                raise ForbiddenError(f"Column '{key}' cannot be written here.")
            payload[key] = value
        return payload

    def _family_row(self, session: Session, policy: TablePolicy, caller: Caller, row_id: str, table: str) -> Any:
        row = session.get(policy.model, row_id)
        if row is None or row.family_id != caller.family_id:
            raise NotFoundError(f"No row '{row_id}' in {table}.")
        return row

    def _require_family_profile(self, session: Session, family_id: Optional[str], profile_id: str) -> Profile:
        profile = session.get(Profile, profile_id)
        if profile is None or profile.family_id != family_id:
            raise ValidationError(f"'{profile_id}' is not a member of this family.")
        return profile

    def _prepare_chore_update(
        self, session: Session, caller: Caller, before: Row, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        payload = apply_claim(before, payload, caller.profile_id)
        if payload.get("assigned_to") and payload["assigned_to"] != before.get("assigned_to"):
            self._require_family_profile(session, caller.family_id, payload["assigned_to"])
        if "points" in payload and payload["points"] != before["points"] and before["is_completed"]:
            raise ValidationError("Points cannot be changed on a completed chore.")
        return payload

    def _settle_chore_points(self, session: Session, changes: PendingChanges, before: Row, after: Row) -> None:
        change = completion_change(before, after)
        if change.credit_due:
            balance_changed(changes, credit(session, change.assignee, change.points))
            self._logger.log("chore_points_credited", chore=after["id"], profile=change.assignee, points=change.points)
        elif change.debit_due:
            balance_changed(changes, debit(session, change.assignee, change.points))
            self._logger.log("chore_points_reversed", chore=after["id"], profile=change.assignee, points=change.points)

    def _unused_secret_key(self, session: Session) -> str:
        alphabet = string.ascii_uppercase + string.digits
        while True:
            key = "".join(secrets.choice(alphabet) for _ in range(INVITE_KEY_LENGTH))
            if session.exec(select(Family).where(Family.secret_key == key)).first() is None:
                return key

    def _move_profile(self, session: Session, changes: PendingChanges, profile_id: str, family_id: str) -> None:
        profile = session.get(Profile, profile_id)
        if profile is None:
            raise NotFoundError(f"Profile '{profile_id}' does not exist.")
        previous = profile.family_id
        if previous == family_id:
            return
        old = row_to_dict(profile)
        profile.family_id = family_id
        session.add(profile)
        session.flush()
        if previous:
            changes.append(ChangeEvent(ChangeType.DELETE, "profiles", previous, old=old))
        changes.append(ChangeEvent(ChangeType.INSERT, "profiles", family_id, new=row_to_dict(profile)))


__all__ = ["POLICIES", "TablePolicy", "TableStore"]
