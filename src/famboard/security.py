"""Session tokens and invite-key guessing limits for FamBoard."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from secrets import token_urlsafe
from typing import Any, Callable, Deque, Dict, Iterable, Mapping, Optional

from .exceptions import ForbiddenError
from .models import Caller

ProfileLoader = Callable[[str], Mapping[str, Any]]


@dataclass(slots=True)
class Session:
    """An authenticated session bound to one profile."""

    token: str
    profile_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=datetime.utcnow)

    def is_expired(self, *, at: Optional[datetime] = None) -> bool:
        moment = at or datetime.utcnow()
        return moment >= self.expires_at


class AuthManager:
    """Issue session tokens and resolve them to the caller the store trusts.

    The caller is re-read from the profile on every request so a family join
    or role change takes effect without a new login.
    """

    def __init__(
        self,
        load_profile: ProfileLoader,
        *,
        session_minutes: int = 720,
        max_join_attempts: int = 5,
        lockout_minutes: int = 15,
    ) -> None:
        self._load_profile = load_profile
        self._session_duration = timedelta(minutes=session_minutes)
        self._max_join_attempts = max_join_attempts
        self._lockout_window = timedelta(minutes=lockout_minutes)
        self._sessions: Dict[str, Session] = {}
        self._join_attempts: Dict[str, Deque[datetime]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------
    def create_session(self, profile_id: str, *, at: Optional[datetime] = None) -> Session:
        self._load_profile(profile_id)
        now = at or datetime.utcnow()
        session = Session(token=token_urlsafe(24), profile_id=profile_id, expires_at=now + self._session_duration)
        with self._lock:
            self._sessions[session.token] = session
        return session

    def validate_session(self, token: str, *, at: Optional[datetime] = None) -> bool:
        with self._lock:
            session = self._sessions.get(token)
            if not session:
                return False
            if session.is_expired(at=at):
                self._sessions.pop(token, None)
                return False
            return True

    def resolve(self, token: str, *, at: Optional[datetime] = None) -> Caller:
        """Return the caller for ``token`` or raise :class:`ForbiddenError`."""

        if not self.validate_session(token, at=at):
            raise ForbiddenError("Session is missing or expired.")
        with self._lock:
            profile_id = self._sessions[token].profile_id
        return Caller.from_row(self._load_profile(profile_id))

    def logout(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def expire_sessions(self, *, at: Optional[datetime] = None) -> None:
        now = at or datetime.utcnow()
        with self._lock:
            expired = [token for token, session in self._sessions.items() if session.is_expired(at=now)]
            for token in expired:
                self._sessions.pop(token, None)

    def active_sessions(self, profile_id: str) -> Iterable[Session]:
        with self._lock:
            return tuple(session for session in self._sessions.values() if session.profile_id == profile_id)

    # ------------------------------------------------------------------
    # Invite key guessing
    # ------------------------------------------------------------------
    def record_join_attempt(self, profile_id: str, *, success: bool, at: Optional[datetime] = None) -> bool:
        """Record a join attempt and return whether further attempts are allowed."""

        now = at or datetime.utcnow()
        with self._lock:
            bucket = self._join_attempts.setdefault(profile_id, deque())
            self._prune(bucket, now)
            if success:
                bucket.clear()
                return True
            bucket.append(now)
            return len(bucket) < self._max_join_attempts

    def is_locked(self, profile_id: str, *, at: Optional[datetime] = None) -> bool:
        now = at or datetime.utcnow()
        with self._lock:
            bucket = self._join_attempts.get(profile_id)
            if not bucket:
                return False
            self._prune(bucket, now)
            return len(bucket) >= self._max_join_attempts

    def _prune(self, bucket: Deque[datetime], now: datetime) -> None:
        while bucket and now - bucket[0] > self._lockout_window:
            bucket.popleft()


__all__ = ["AuthManager", "Session"]
