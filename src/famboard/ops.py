"""Operational utilities for FamBoard."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional


class StructuredLogger:
    """Write JSON lines log entries for admin inspection."""

    def __init__(self, *, path: Path | None = None, limit: int = 1000) -> None:
        self.path = path
        self._limit = limit
        self._entries: list[dict] = []
        self._lock = threading.Lock()

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": datetime.utcnow().isoformat(), "event": event_type, **fields}
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._limit:
                del self._entries[: len(self._entries) - self._limit]
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        with self._lock:
            return tuple(self._entries[-limit:])

    def events(self, event_type: str) -> tuple[dict, ...]:
        with self._lock:
            return tuple(entry for entry in self._entries if entry["event"] == event_type)


class HealthMonitor:
    """Aggregate runtime health information for the status endpoint."""

    def __init__(self, *, database_check: Optional[Callable[[], bool]] = None) -> None:
        self._database_check = database_check
        self.started_at = datetime.utcnow()

    def status(self) -> dict:
        database_ok = True
        if self._database_check is not None:
            try:
                database_ok = bool(self._database_check())
            except Exception:  # noqa: BLE001 - any failure means the database is down
                database_ok = False
        return {
            "database": "ok" if database_ok else "down",
            "uptime_seconds": self.uptime_seconds(),
        }

    def uptime_seconds(self) -> int:
        return int((datetime.utcnow() - self.started_at).total_seconds())


__all__ = ["HealthMonitor", "StructuredLogger"]
