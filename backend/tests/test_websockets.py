import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import NEW_YORK, auth_headers
from convoyhub import main
from convoyhub.core.database import build_engine, build_session_factory, get_session, init_db
from convoyhub.core.security import create_access_token
from convoyhub.repositories.users import UserRepository


@pytest.fixture
def ws_client(tmp_path, monkeypatch):
    """Sync TestClient whose lifespan builds a fresh database on the client's own loop."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ws.db'}")
    factory = build_session_factory(engine)
    user_ids = {}

    async def setup_db():
        await init_db(engine)
        async with factory() as session:
            repo = UserRepository(session)
            for name in ("alice", "bob"):
                user_ids[name] = (await repo.add_user(name)).id

    async def override_get_session():
        async with factory() as session:
            yield session

    monkeypatch.setattr(main, "init_db", setup_db)
    main.app.dependency_overrides[get_session] = override_get_session
    with TestClient(main.app) as client:
        yield client, user_ids
        client.portal.call(engine.dispose)
    main.app.dependency_overrides.clear()


def create_convoy(client, user_id):
    response = client.post("/api/v1/convoys/", json={"current_center": NEW_YORK}, headers=auth_headers(user_id))
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_member_location_is_broadcast(ws_client):
    client, users = ws_client
    cid = create_convoy(client, users["alice"])
    token = create_access_token(users["alice"])

    with client.websocket_connect(f"/ws/{cid}?token={token}") as ws:
        ws.send_json({"lat": 40.2, "lng": -74.2, "heading": 45})
        message = ws.receive_json()
        assert message["type"] == "location_update"
        assert message["user_id"] == users["alice"]
        assert message["center"]["lat"] == 40.2

        ws.send_json({"lat": 40.2, "lng": -74.2, "heading": 400})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["error"]["code"] == "VALIDATION_ERROR"

        ws.send_json(["not", "an", "object"])
        assert ws.receive_json()["type"] == "error"

    center = client.get(f"/api/v1/convoys/{cid}").json()["current_center"]
    assert center["lat"] == 40.2


def test_non_members_and_bad_tokens_are_refused(ws_client):
    client, users = ws_client
    cid = create_convoy(client, users["alice"])

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/ws/{cid}?token={create_access_token(users['bob'])}"):
            pass
    assert exc_info.value.code == 1008

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/{cid}?token=garbage"):
            pass


def test_removed_member_is_disconnected(ws_client):
    client, users = ws_client
    cid = create_convoy(client, users["alice"])
    client.post(f"/api/v1/convoys/{cid}/join", headers=auth_headers(users["bob"]))

    with client.websocket_connect(f"/ws/{cid}?token={create_access_token(users['bob'])}") as ws:
        response = client.delete(f"/api/v1/convoys/{cid}/members/{users['bob']}", headers=auth_headers(users["alice"]))
        assert response.status_code == 200
        assert ws.receive_json()["type"] == "member_left"

        ws.send_json({"lat": 40.3, "lng": -74.3})
        error = ws.receive_json()
        assert error["error"]["code"] == "ACCESS_DENIED"
