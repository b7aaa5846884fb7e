"""Chore completion rules: claim-on-complete and the points that follow it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional


@dataclass(frozen=True, slots=True)
class CompletionChange:
    """Outcome of toggling a chore, as seen by the ledger."""

    completed: bool
    uncompleted: bool
    assignee: Optional[str]
    points: int

    @property
    def credit_due(self) -> bool:
        return self.completed and self.assignee is not None

    @property
    def debit_due(self) -> bool:
        return self.uncompleted and self.assignee is not None


def toggle_changes(chore: Mapping[str, Any], actor_id: str) -> Dict[str, Any]:
    """Return the update that flips ``chore``'s completion for ``actor_id``.

    Completing an unassigned chore claims it for the actor.  Un-completing
    never touches ``assigned_to``.
    """

    now_done = not bool(chore.get("is_completed"))
    changes: Dict[str, Any] = {"is_completed": now_done}
    if now_done and not chore.get("assigned_to"):
        changes["assigned_to"] = actor_id
    return changes


def apply_claim(chore: Mapping[str, Any], changes: Mapping[str, Any], actor_id: str) -> Dict[str, Any]:
    """Normalise an arbitrary chore update against the assignment rules.

    A completing update without an assignee claims the chore for the actor.
    ``assigned_to`` may be set while it is empty; once set, requests to change
    or clear it are ignored, so a racing claim keeps the first claimant.
    """

    result = dict(changes)
    current = chore.get("assigned_to")
    if "assigned_to" in result:
        result["assigned_to"] = current or result["assigned_to"] or None
    completing = bool(result.get("is_completed")) and not bool(chore.get("is_completed"))
    if completing and not (result.get("assigned_to") or current):
        result["assigned_to"] = actor_id
    return result


def completion_change(before: Mapping[str, Any], after: Mapping[str, Any]) -> CompletionChange:
    was_done = bool(before.get("is_completed"))
    is_done = bool(after.get("is_completed"))
    return CompletionChange(
        completed=is_done and not was_done,
        uncompleted=was_done and not is_done,
        assignee=after.get("assigned_to"),
        points=int(after.get("points") or 0),
    )


def progress(chores: Iterable[Mapping[str, Any]]) -> int:
    """Percentage of completed chores, rounded to the nearest whole number."""

    items = list(chores)
    if not items:
        return 0
    done = sum(1 for chore in items if chore.get("is_completed"))
    return round(done * 100 / len(items))


__all__ = ["CompletionChange", "apply_claim", "completion_change", "progress", "toggle_changes"]
