"""FastAPI surface of the FamBoard store: tables, ledger procedures and realtime."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

from .exceptions import (
    ChannelDroppedError,
    FamBoardError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from .models import Caller, ChangeEvent, Role
from .service import FamBoard

ERROR_STATUS: Dict[type, int] = {
    InsufficientBalanceError: 402,
    ForbiddenError: 403,
    NotFoundError: 404,
    InvalidStateError: 409,
    ValidationError: 422,
    TransientIOError: 503,
}


def status_for(exc: FamBoardError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 400


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class RegisterBody(SQLModel):
    display_name: str
    role: Role


class LoginBody(SQLModel):
    profile_id: str


class FamilyBody(SQLModel):
    name: str


class JoinBody(SQLModel):
    secret_key: str


class RewardRequestBody(SQLModel):
    reward_id: str


class RedemptionBody(SQLModel):
    redemption_id: str


class AwardBody(SQLModel):
    profile_id: str
    points: int
    reason: str = ""


class ScoreBody(SQLModel):
    game_id: str
    level: int
    points: int = 0


def _visible_to(caller: Caller, event: ChangeEvent) -> bool:
    if event.table != "redemptions" or caller.is_parent:
        return True
    snapshot = event.new or event.old or {}
    return snapshot.get("kid_id") == caller.profile_id


def create_app(board: Optional[FamBoard] = None) -> FastAPI:
    """Build the API around ``board`` (a fresh :class:`FamBoard` by default)."""

    board = board or FamBoard()
    app = FastAPI(title="FamBoard")
    app.state.board = board

    @app.exception_handler(FamBoardError)
    async def famboard_error(request: Request, exc: FamBoardError) -> JSONResponse:
        status = status_for(exc)
        board.logger.log("api_error", path=request.url.path, status=status, error=type(exc).__name__)
        return JSONResponse({"error": type(exc).__name__, "detail": str(exc)}, status_code=status)

    def current_caller(authorization: str = Header(default="")) -> Caller:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise ForbiddenError("A bearer token is required.")
        return board.caller_for(token.strip())

    # Identity & families ---------------------------------------------------
    @app.post("/auth/register")
    def register(body: RegisterBody) -> Dict[str, Any]:
        session = board.register(body.display_name, body.role)
        return {"token": session.token, "profile": jsonable_encoder(board.store.get_profile(session.profile_id))}

    @app.post("/auth/login")
    def login(body: LoginBody) -> Dict[str, Any]:
        session = board.login(body.profile_id)
        return {"token": session.token, "expires_at": session.expires_at.isoformat()}

    @app.post("/families")
    def create_family(body: FamilyBody, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.create_family(caller, body.name))

    @app.post("/families/join")
    def join_family(body: JoinBody, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.join_family(caller, body.secret_key))

    @app.get("/families/me")
    def my_family(caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.store.family(caller))

    # Table primitives ------------------------------------------------------
    @app.get("/tables/{table}")
    def select_rows(
        table: str,
        order_by: Optional[str] = Query(default=None),
        descending: Optional[bool] = Query(default=None),
        limit: Optional[int] = Query(default=None, ge=1),
        caller: Caller = Depends(current_caller),
    ) -> Any:
        rows = board.store.select(caller, table, order_by=order_by, descending=descending, limit=limit)
        return jsonable_encoder(rows)

    @app.post("/tables/{table}", status_code=201)
    def insert_row(table: str, values: Dict[str, Any], caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.store.insert(caller, table, values))

    @app.patch("/tables/{table}/{row_id}")
    def update_row(
        table: str, row_id: str, values: Dict[str, Any], caller: Caller = Depends(current_caller)
    ) -> Any:
        return jsonable_encoder(board.store.update(caller, table, row_id, values))

    @app.delete("/tables/{table}/{row_id}")
    def delete_row(table: str, row_id: str, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.store.delete(caller, table, row_id))

    # Ledger procedures -----------------------------------------------------
    @app.post("/rpc/request_redemption", status_code=201)
    def request_redemption(body: RewardRequestBody, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.ledger.request_redemption(caller, body.reward_id))

    @app.post("/rpc/approve_redemption")
    def approve_redemption(body: RedemptionBody, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.ledger.approve_redemption(caller, body.redemption_id))

    @app.post("/rpc/reject_redemption")
    def reject_redemption(body: RedemptionBody, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.ledger.reject_redemption(caller, body.redemption_id))

    @app.post("/rpc/award_points")
    def award_points(body: AwardBody, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.ledger.award_points(caller, body.profile_id, body.points, reason=body.reason))

    @app.get("/redemptions")
    def list_redemptions(status: Optional[str] = Query(default=None), caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.ledger.list_redemptions(caller, status=status))

    # Games & summaries -----------------------------------------------------
    @app.post("/games/scores", status_code=201)
    def record_score(body: ScoreBody, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.games.record_score(caller, body.game_id, body.level, body.points))

    @app.get("/games/{game_id}/level")
    def highest_level(game_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, int]:
        highest = board.games.highest_level(caller, game_id)
        return {"highest_level": highest, "next_level": highest + 1}

    @app.get("/dashboard")
    def dashboard(caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.store.dashboard(caller))

    @app.get("/profiles/{profile_id}/stats")
    def profile_stats(profile_id: str, caller: Caller = Depends(current_caller)) -> Any:
        return jsonable_encoder(board.store.profile_stats(caller, profile_id))

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return board.health()

    # Realtime --------------------------------------------------------------
    @app.websocket("/realtime/{table}")
    async def realtime(websocket: WebSocket, table: str, token: str = "") -> None:
        try:
            caller = board.caller_for(token)
            board.store.select(caller, table, limit=1)
        except FamBoardError as exc:
            await websocket.close(code=4000 + status_for(exc))
            return
        subscription = board.hub.subscribe(table, caller.family_id or "")
        await websocket.accept()

        async def watch_disconnect() -> None:
            try:
                while (await websocket.receive())["type"] != "websocket.disconnect":
                    pass
            finally:
                await subscription.close()

        watcher = asyncio.create_task(watch_disconnect())
        try:
            async for event in subscription:
                if _visible_to(caller, event):
                    await websocket.send_json(jsonable_encoder(event.as_dict()))
        except ChannelDroppedError:
            # Clients re-fetch after reconnecting.
            await websocket.close(code=1012)
        except WebSocketDisconnect:
            pass
        finally:
            watcher.cancel()
            await subscription.close()
            board.logger.log("realtime_client_left", table=table, profile=caller.profile_id)

    return app


__all__ = ["ERROR_STATUS", "create_app", "status_for"]
