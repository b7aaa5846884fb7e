"""Score keeping for the mini-games."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .exceptions import NotFoundError, ValidationError
from .models import Caller, Row
from .ops import StructuredLogger
from .persistence import GameScore, Profile, row_to_dict, transaction
from .redemptions import require_member


class GameScores:
    """Record finished levels and report where a player should resume."""

    def __init__(self, engine: Engine, *, logger: Optional[StructuredLogger] = None) -> None:
        self._engine = engine
        self._logger = logger or StructuredLogger()

    def record_score(
        self,
        caller: Caller,
        game_id: str,
        level: int,
        points: int = 0,
        profile_id: Optional[str] = None,
    ) -> Row:
        profile_id = profile_id or caller.profile_id
        if profile_id != caller.profile_id:
            raise ValidationError("Scores can only be recorded for the signed-in player.")
        if not game_id or not game_id.strip():
            raise ValidationError("A game id is required.")
        if int(level) < 1:
            raise ValidationError("Levels start at 1.")
        if int(points) < 0:
            raise ValidationError("Points cannot be negative.")
        with transaction(self._engine) as (session, _changes):
            score = GameScore(
                game_id=game_id.strip(),
                level=int(level),
                points=int(points),
                profile_id=profile_id,
                family_id=caller.family_id,
            )
            session.add(score)
            session.flush()
            recorded = row_to_dict(score)
        self._logger.log("score_recorded", game=recorded["game_id"], profile=profile_id, level=recorded["level"])
        return recorded

    def highest_level(self, caller: Caller, game_id: str, profile_id: Optional[str] = None) -> int:
        """Highest level reached so far, 0 when the player has never finished one."""

        profile_id = profile_id or caller.profile_id
        with Session(self._engine, expire_on_commit=False) as session:
            if profile_id != caller.profile_id:
                profile = session.get(Profile, profile_id)
                if profile is None:
                    raise NotFoundError(f"Profile '{profile_id}' does not exist.")
                require_member(caller, profile.family_id)
            best = session.exec(
                select(func.max(GameScore.level))
                .where(GameScore.game_id == game_id)
                .where(GameScore.profile_id == profile_id)
            ).one()
        return int(best or 0)

    def next_level(self, caller: Caller, game_id: str, profile_id: Optional[str] = None) -> int:
        return self.highest_level(caller, game_id, profile_id) + 1


__all__ = ["GameScores"]
