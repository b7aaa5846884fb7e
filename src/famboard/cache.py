"""Per-collection local cache with exactly two mutators: ``apply`` and ``merge``.

``apply`` is used by the optimistic mutation coordinator and returns the
inverse mutation so a failed remote write can be reverted.  ``merge`` folds a
realtime change event into the cache using the dedup-by-id rules:

* insert of a known id is discarded;
* update overwrites the matching row (and inserts it when unknown);
* delete of an unknown id is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

from .models import ChangeEvent, ChangeType, Row

SortKey = Callable[[Row], Any]


class MutationKind(str, Enum):
    INSERT = "insert"
    PATCH = "patch"
    REPLACE = "replace"
    REMOVE = "remove"


@dataclass(frozen=True, slots=True)
class Mutation:
    """A local change to one cached row."""

    kind: MutationKind
    row_id: Any
    row: Optional[Row] = None
    changes: Optional[Dict[str, Any]] = None

    @classmethod
    def insert(cls, row: Row) -> "Mutation":
        return cls(MutationKind.INSERT, row["id"], row=dict(row))

    @classmethod
    def patch(cls, row_id: Any, changes: Dict[str, Any]) -> "Mutation":
        return cls(MutationKind.PATCH, row_id, changes=dict(changes))

    @classmethod
    def replace(cls, row: Row) -> "Mutation":
        return cls(MutationKind.REPLACE, row["id"], row=dict(row))

    @classmethod
    def remove(cls, row_id: Any) -> "Mutation":
        return cls(MutationKind.REMOVE, row_id)


def by_field(name: str) -> SortKey:
    return lambda row: row.get(name)


class CollectionCache:
    """Ordered rows of one family collection keyed by id."""

    def __init__(self, *, sort_key: Optional[SortKey] = None, reverse: bool = False) -> None:
        self._rows: Dict[Any, Row] = {}
        self._deleted: Set[Any] = set()
        self._sort_key = sort_key or by_field("created_at")
        self._reverse = reverse
        self.loaded = False
        self.epoch = 0

    # Lifecycle -------------------------------------------------------------
    def load(self, rows: Iterable[Row]) -> None:
        """Replace the contents with a fresh fetch."""

        self._rows = {row["id"]: dict(row) for row in rows}
        self._deleted = set()
        self.loaded = True

    def clear(self) -> None:
        """Empty the cache; writes started before this call must not land."""

        self._rows = {}
        self._deleted = set()
        self.loaded = False
        self.epoch += 1

    def was_deleted(self, row_id: Any) -> bool:
        """Whether a realtime delete for ``row_id`` was merged since the last load."""

        return row_id in self._deleted

    # Mutators --------------------------------------------------------------
    def apply(self, mutation: Mutation) -> Mutation:
        """Apply a local mutation and return the mutation that undoes it."""

        previous = self._rows.get(mutation.row_id)
        if mutation.kind in (MutationKind.INSERT, MutationKind.REPLACE):
            self._rows[mutation.row_id] = dict(mutation.row or {})
        elif mutation.kind is MutationKind.PATCH:
            if previous is None:
                return Mutation.remove(mutation.row_id)
            self._rows[mutation.row_id] = {**previous, **(mutation.changes or {})}
        else:
            self._rows.pop(mutation.row_id, None)
        if previous is None:
            return Mutation.remove(mutation.row_id)
        return Mutation.replace(previous)

    def merge(self, event: ChangeEvent) -> bool:
        """Fold a realtime event into the cache; return whether anything changed."""

        row_id = event.row_id
        if row_id is None:
            return False
        if event.type is ChangeType.INSERT:
            if row_id in self._rows or event.new is None:
                return False
            self._rows[row_id] = dict(event.new)
            return True
        if event.type is ChangeType.UPDATE:
            if event.new is None or self._rows.get(row_id) == event.new:
                return False
            self._rows[row_id] = dict(event.new)
            return True
        self._deleted.add(row_id)
        return self._rows.pop(row_id, None) is not None

    # Views -----------------------------------------------------------------
    def rows(self) -> List[Row]:
        return sorted(
            (dict(row) for row in self._rows.values()),
            key=self._sort_key,
            reverse=self._reverse,
        )

    def get(self, row_id: Any) -> Optional[Row]:
        row = self._rows.get(row_id)
        return dict(row) if row is not None else None

    def ids(self) -> List[Any]:
        return [row["id"] for row in self.rows()]

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._rows

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows())


__all__ = ["CollectionCache", "Mutation", "MutationKind", "SortKey", "by_field"]
