import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from famboard.service import FamBoard
from famboard.webapp import create_app


@pytest.fixture
def api():
    board = FamBoard("sqlite://")
    return board, TestClient(create_app(board))


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register(client: TestClient, name: str, role: str) -> str:
    response = client.post("/auth/register", json={"display_name": name, "role": role})
    assert response.status_code == 200
    return response.json()["token"]


@pytest.fixture
def family(api):
    board, client = api
    parent = register(client, "Dad", "parent")
    created = client.post("/families", json={"name": "Lees"}, headers=auth(parent))
    assert created.status_code == 200
    kid = register(client, "Mia", "child")
    joined = client.post("/families/join", json={"secret_key": created.json()["secret_key"]}, headers=auth(kid))
    assert joined.status_code == 200
    return board, client, parent, kid


def test_requests_without_token_are_forbidden(api) -> None:
    _, client = api
    assert client.get("/tables/chores").status_code == 403
    assert client.get("/tables/chores", headers=auth("bogus")).status_code == 403
    assert client.get("/health").json()["database"] == "ok"


def test_table_round_trip(family) -> None:
    _, client, parent, kid = family
    created = client.post("/tables/chores", json={"title": "Vacuum", "points": 12}, headers=auth(parent))
    assert created.status_code == 201
    chore_id = created.json()["id"]

    toggled = client.patch(f"/tables/chores/{chore_id}", json={"is_completed": True}, headers=auth(kid))
    assert toggled.status_code == 200
    kid_id = toggled.json()["assigned_to"]
    assert kid_id is not None
    assert client.get("/families/me", headers=auth(kid)).json()["name"] == "Lees"

    members = client.get("/tables/profiles", headers=auth(parent)).json()
    mia = next(row for row in members if row["display_name"] == "Mia")
    assert mia["id"] == kid_id
    assert mia["balance"] == 12

    assert client.delete(f"/tables/chores/{chore_id}", headers=auth(kid)).status_code == 403
    assert client.delete(f"/tables/chores/{chore_id}", headers=auth(parent)).status_code == 200
    assert client.get("/tables/chores", headers=auth(kid)).json() == []
    assert client.post("/tables/chores", json={"title": "Bad", "points": -1}, headers=auth(parent)).status_code == 422
    assert client.get("/tables/unknown", headers=auth(parent)).status_code == 404


def test_redemption_procedures_map_errors(family) -> None:
    _, client, parent, kid = family
    reward = client.post("/tables/rewards", json={"name": "Pizza", "cost": 20}, headers=auth(parent)).json()

    refused = client.post("/rpc/request_redemption", json={"reward_id": reward["id"]}, headers=auth(kid))
    assert refused.status_code == 402
    assert refused.json()["error"] == "InsufficientBalanceError"

    profiles = client.get("/tables/profiles", headers=auth(parent)).json()
    kid_id = next(row["id"] for row in profiles if row["role"] == "child")
    awarded = client.post("/rpc/award_points", json={"profile_id": kid_id, "points": 25}, headers=auth(parent))
    assert awarded.json()["balance"] == 25

    requested = client.post("/rpc/request_redemption", json={"reward_id": reward["id"]}, headers=auth(kid))
    assert requested.status_code == 201
    redemption_id = requested.json()["id"]
    assert client.post(
        "/rpc/approve_redemption", json={"redemption_id": redemption_id}, headers=auth(kid)
    ).status_code == 403
    assert client.post(
        "/rpc/approve_redemption", json={"redemption_id": redemption_id}, headers=auth(parent)
    ).status_code == 200
    assert client.post(
        "/rpc/reject_redemption", json={"redemption_id": redemption_id}, headers=auth(parent)
    ).status_code == 409
    assert client.post(
        "/rpc/reject_redemption", json={"redemption_id": "missing"}, headers=auth(parent)
    ).status_code == 404

    views = client.get("/redemptions", headers=auth(kid)).json()
    assert [(view["reward_name"], view["status"]) for view in views] == [("Pizza", "approved")]
    assert client.get("/dashboard", headers=auth(parent)).json()["pending_redemptions"] == 0


def test_game_levels(family) -> None:
    _, client, _, kid = family
    assert client.get("/games/hanoi/level", headers=auth(kid)).json() == {"highest_level": 0, "next_level": 1}
    assert client.post("/games/scores", json={"game_id": "hanoi", "level": 2, "points": 30}, headers=auth(kid)).status_code == 201
    assert client.get("/games/hanoi/level", headers=auth(kid)).json() == {"highest_level": 2, "next_level": 3}


def test_realtime_websocket_forwards_changes(family) -> None:
    _, client, parent, kid = family
    with client.websocket_connect(f"/realtime/notes?token={kid}") as websocket:
        client.post("/tables/notes", json={"content": "Soccer at 5"}, headers=auth(parent))
        message = websocket.receive_json()
    assert message["event_type"] == "insert"
    assert message["table"] == "notes"
    assert message["new"]["content"] == "Soccer at 5"


def test_realtime_websocket_rejects_bad_token(api) -> None:
    _, client = api
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/realtime/notes?token=nope") as websocket:
            websocket.receive_json()
