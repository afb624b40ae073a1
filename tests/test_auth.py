import asyncio
from datetime import datetime

import pytest
import redis
from starlette.websockets import WebSocketDisconnect

from app.models.token import TokenGenerate, TokenStatus
from app.models.user import User
from app.routers import auth
from app.services import token_service, tunnel_service
from app.services.auth_service import is_password_hashed, verify_password
from app.services.session_broadcast import session_broadcaster


def test_signin_returns_session_and_counts_logins(client, db, make_user, sign_in):
    user = make_user()

    response = client.post("/auth/signin", json={"username": "pilot", "password": "password123"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["userId"] == user.id
    assert data["username"] == "pilot"
    assert len(data["sessionId"]) == 36
    assert data["sessionToken"][:64].isalnum()
    db.refresh(user)
    assert user.login_count == 1
    assert user.last_login is not None
    assert user.session_token == data["sessionToken"]


def test_signin_failures_share_one_message(client, make_user):
    make_user()

    wrong_password = client.post("/auth/signin", json={"username": "pilot", "password": "nope-nope"})
    unknown_user = client.post("/auth/signin", json={"username": "ghost", "password": "password123"})

    assert wrong_password.status_code == 401
    assert unknown_user.status_code == 401
    assert wrong_password.json()["message"] == unknown_user.json()["message"] == "Invalid credentials"


def test_second_signin_invalidates_first_session(client, make_user, sign_in):
    make_user()
    first = sign_in()
    second = sign_in()

    assert first["Authorization"] != second["Authorization"]
    assert first["X-Session-ID"] != second["X-Session-ID"]
    assert client.get("/auth/session-details", headers=first).status_code == 401
    assert client.get("/auth/session-details", headers=second).status_code == 200


def test_session_requires_all_three_headers(client, make_user, sign_in):
    make_user()
    headers = sign_in()

    for missing in ("Authorization", "X-User-ID", "X-Session-ID"):
        partial = {key: value for key, value in headers.items() if key != missing}
        assert client.get("/auth/session-details", headers=partial).status_code == 401


def test_legacy_plaintext_password_is_rehashed(client, db, make_user):
    user = make_user(password="legacy-pass", hashed=False)

    response = client.post("/auth/signin", json={"username": "pilot", "password": "legacy-pass"})

    assert response.status_code == 200
    db.refresh(user)
    assert is_password_hashed(user.password)
    assert verify_password("legacy-pass", user.password)


def test_signup_claims_token_and_blocks_reuse(client, db, admin_headers):
    created = client.post("/admin/tokens", json={"duration": "3month"}, headers=admin_headers)
    assert created.status_code == 201
    token_string = created.json()["data"]["token"]

    response = client.post(
        "/auth/signup",
        json={"username": "newpilot", "password": "password123", "token": token_string},
    )

    assert response.status_code == 201
    user = db.query(User).filter(User.username == "newpilot").one()
    token = db.query(TokenGenerate).filter(TokenGenerate.token == token_string).one()
    assert token.status == TokenStatus.in_use.value
    assert token.userid == user.id
    assert user.token == token_string

    again = client.post(
        "/auth/signup",
        json={"username": "otherpilot", "password": "password123", "token": token_string},
    )
    assert again.status_code == 400
    assert "already been used" in again.json()["message"]


def test_signup_reports_claim_failure_after_user_created(client, db, make_token, monkeypatch):
    token = make_token()

    def broken_claim(db, token_string, user_id):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(token_service, "claim", broken_claim)

    response = client.post(
        "/auth/signup", json={"username": "newpilot", "password": "password123", "token": token.token}
    )

    assert response.status_code == 500
    assert response.json()["message"] == "User created, but failed to update token status."
    user = db.query(User).filter(User.username == "newpilot").one()
    assert user.token == token.token
    db.refresh(token)
    assert token.status == TokenStatus.active.value
    assert token.userid is None


def test_signup_validation(client, make_token, make_user):
    token = make_token()
    make_user(username="taken")

    short = client.post("/auth/signup", json={"username": "abc", "password": "short", "token": token.token})
    unknown = client.post("/auth/signup", json={"username": "abcd", "password": "password123", "token": "missing"})
    missing = client.post("/auth/signup", json={"username": "abcd"})
    duplicate = client.post(
        "/auth/signup", json={"username": "taken", "password": "password123", "token": token.token}
    )

    assert short.status_code == 400
    assert unknown.status_code == 400
    assert unknown.json()["message"] == "Invalid token provided."
    assert missing.status_code == 400
    assert duplicate.status_code == 409


def test_signout_clears_session_and_deploy_record(client, db, make_user, sign_in):
    user = make_user()
    headers = sign_in()
    db.query(User).filter(User.id == user.id).update(
        {User.deploy_timestamp: datetime.utcnow(), User.active_form_number: 2}
    )
    db.commit()

    response = client.post("/auth/signout", headers=headers)

    assert response.status_code == 200
    db.refresh(user)
    assert user.session_token is None
    assert user.active_session_id is None
    assert user.deploy_timestamp is None
    assert user.active_form_number is None
    assert user.last_logout is not None
    assert client.post("/auth/signout", headers=headers).status_code == 401


def test_beacon_always_answers_ok(client):
    response = client.post("/auth/beacon-signout-undeploy")

    assert response.status_code == 200
    assert response.json()["message"] == "No session"


def test_beacon_stops_active_form_and_signs_out(client, db, make_user, sign_in, monkeypatch):
    calls = []

    async def fake_action(target, action, form_number, form_data):
        calls.append((target, action, form_number))
        return 500, None

    monkeypatch.setattr(tunnel_service, "perform_tunnel_action", fake_action)
    user = make_user()
    headers = sign_in()
    db.query(User).filter(User.id == user.id).update(
        {User.deploy_timestamp: datetime.utcnow(), User.active_form_number: 3}
    )
    db.commit()

    response = client.post("/auth/beacon-signout-undeploy", headers=headers)

    assert response.status_code == 200
    assert calls == [("pilot7890", "stop", 3)]
    db.refresh(user)
    assert user.deploy_timestamp is None
    assert user.active_form_number is None
    assert user.session_token is None


def test_session_details_reports_token_expiry(client, make_user, make_token, sign_in):
    token = make_token(status="InUse")
    user = make_user(token=token.token)
    headers = sign_in()

    response = client.get("/auth/session-details", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["username"] == user.username
    assert data["tokenExpiresAt"].startswith(token.expiresat.isoformat()[:19])


def test_set_active_run_requires_deploy_record(client, db, make_user, sign_in):
    user = make_user()
    headers = sign_in()

    refused = client.post("/auth/set-active-run", json={"runId": 42}, headers=headers)
    assert refused.status_code == 409

    db.query(User).filter(User.id == user.id).update({User.deploy_timestamp: datetime.utcnow()})
    db.commit()
    accepted = client.post("/auth/set-active-run", json={"runId": 42}, headers=headers)

    assert accepted.status_code == 200
    db.refresh(user)
    assert user.active_run_id == "42"


def test_second_signin_pushes_session_terminated(client, make_user, sign_in):
    user = make_user()
    headers = sign_in()
    token = headers["Authorization"].split(" ", 1)[1]
    url = f"/auth/session-events?userId={user.id}&sessionId={headers['X-Session-ID']}&token={token}"

    with client.websocket_connect(url) as websocket:
        sign_in()
        event = websocket.receive_json()

    assert event == {"event": "session_terminated", "userId": user.id}


class DeadSocket:
    """Websocket whose sends fail and whose client never disconnects."""

    def __init__(self, on_accept):
        self.on_accept = on_accept
        self.sent = 0

    async def accept(self):
        self.on_accept()

    async def send_json(self, data):
        self.sent += 1
        raise RuntimeError("socket gone")

    async def receive(self):
        await asyncio.Event().wait()

    async def close(self, code=1000):
        pass


def test_session_events_end_when_sending_fails(client, db, make_user, sign_in):
    user = make_user()
    headers = sign_in()
    token = headers["Authorization"].split(" ", 1)[1]
    socket = DeadSocket(on_accept=lambda: session_broadcaster.publish_session_terminated(user.id))

    async def scenario():
        await asyncio.wait_for(
            auth.session_events(
                socket, user_id=str(user.id), session_id=headers["X-Session-ID"], token=token, db=db
            ),
            timeout=2,
        )

    asyncio.run(scenario())

    assert socket.sent == 1
    assert session_broadcaster.subscriber_count(user.id) == 0


def test_session_events_close_when_channel_unreachable(client, make_user, sign_in):
    class DownRedis:
        def pubsub(self):
            return self

        async def subscribe(self, channel):
            raise redis.ConnectionError("down")

        async def aclose(self):
            pass

    user = make_user()
    headers = sign_in()
    token = headers["Authorization"].split(" ", 1)[1]
    session_broadcaster.configure(DownRedis(), DownRedis())
    url = f"/auth/session-events?userId={user.id}&sessionId={headers['X-Session-ID']}&token={token}"

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(url):
            pass

    assert excinfo.value.code == 1011
