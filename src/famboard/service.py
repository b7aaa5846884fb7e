"""High level service wiring the FamBoard store, ledger and realtime hub."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from . import config
from .admin import AuditLog
from .client import AsyncStoreClient
from .exceptions import ForbiddenError, NotFoundError
from .games import GameScores
from .ledger import Ledger
from .models import Caller, Role, Row
from .ops import HealthMonitor, StructuredLogger
from .persistence import build_engine, create_db_and_tables
from .realtime import RealtimeHub
from .security import AuthManager, Session
from .store import TableStore


class FamBoard:
    """One household backend: tables, ledger, games, sessions and realtime."""

    __slots__ = (
        "engine",
        "hub",
        "store",
        "ledger",
        "games",
        "auth",
        "_audit_log",
        "_logger",
        "_health",
    )

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        engine: Optional[Engine] = None,
        log_path: Optional[Path] = None,
        realtime_queue_size: Optional[int] = None,
        session_minutes: Optional[int] = None,
    ) -> None:
        self.engine = engine or build_engine(database_url or config.DATABASE_URL)
        create_db_and_tables(self.engine)
        self._logger = StructuredLogger(path=log_path or config.LOG_PATH)
        self._audit_log = AuditLog()
        self.hub = RealtimeHub(max_queue=realtime_queue_size or config.REALTIME_QUEUE_SIZE, logger=self._logger)
        self.store = TableStore(self.engine, self.hub, logger=self._logger)
        self.ledger = Ledger(self.engine, self.hub, logger=self._logger, audit=self._audit_log)
        self.games = GameScores(self.engine, logger=self._logger)
        self.auth = AuthManager(
            self.store.get_profile,
            session_minutes=session_minutes or config.SESSION_MINUTES,
        )
        self._health = HealthMonitor(database_check=self._database_online)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def register(self, display_name: str, role: Role | str, *, balance: int = 0) -> Session:
        """Create a profile and sign it in."""

        profile = self.store.create_profile(display_name, role, balance=balance)
        return self.auth.create_session(profile["id"])

    def login(self, profile_id: str) -> Session:
        return self.auth.create_session(profile_id)

    def caller_for(self, token: str) -> Caller:
        return self.auth.resolve(token)

    def client(self, caller: Caller) -> AsyncStoreClient:
        return AsyncStoreClient(self, caller)

    # ------------------------------------------------------------------
    # Families
    # ------------------------------------------------------------------
    def create_family(self, caller: Caller, name: str) -> Row:
        family = self.store.create_family(caller, name)
        self._audit_log.record(caller.profile_id, "create_family", family["id"])
        return family

    def join_family(self, caller: Caller, secret_key: str) -> Row:
        if self.auth.is_locked(caller.profile_id):
            raise ForbiddenError("Too many invalid secret keys, try again later.")
        try:
            family = self.store.join_family(caller, secret_key)
        except NotFoundError:
            self.auth.record_join_attempt(caller.profile_id, success=False)
            self._logger.log("family_join_refused", profile=caller.profile_id)
            raise
        self.auth.record_join_attempt(caller.profile_id, success=True)
        self._audit_log.record(caller.profile_id, "join_family", family["id"])
        return family

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    def health(self) -> dict:
        status = self._health.status()
        status["realtime_queue_size"] = self.hub.max_queue
        return status

    def _database_online(self) -> bool:
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True


__all__ = ["FamBoard"]
