"""Administrative helpers for FamBoard."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

from .models import AuditEvent


class AuditLog:
    """Collect audit events for ledger actions."""

    def __init__(self) -> None:
        self._entries: list[AuditEvent] = []
        self._lock = threading.Lock()

    def record(
        self,
        actor: str,
        action: str,
        target: str,
        *,
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor,
            action=action,
            target=target,
            timestamp=timestamp or datetime.utcnow(),
            details=dict(details or {}),
        )
        with self._lock:
            self._entries.append(event)
        return event

    def entries(self, *, action: str | None = None, target: str | None = None) -> tuple[AuditEvent, ...]:
        with self._lock:
            records = list(self._entries)
        if action is not None:
            records = [entry for entry in records if entry.action == action]
        if target is not None:
            records = [entry for entry in records if entry.target == target]
        return tuple(records)

    def latest(self) -> AuditEvent | None:
        with self._lock:
            return self._entries[-1] if self._entries else None


__all__ = ["AuditLog"]
