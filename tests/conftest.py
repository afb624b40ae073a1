import asyncio
import os
import sys
from datetime import datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure predictable environment variables for tests before importing the app.
BASE_DIR = Path(__file__).resolve().parents[1]
TEST_DB_PATH = BASE_DIR / "test.db"

if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("DATABASE_URL", f"sqlite:///{TEST_DB_PATH}")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("GITHUB_TOKEN", "test-github-token")
os.environ.setdefault("GITHUB_ORG", "galaxy-org")
os.environ.setdefault("GITHUB_REPO", "galaxy-pipeline")
os.environ.setdefault("DEPLOY_API_URL", "https://deploy.test/api/deploy")
os.environ.setdefault("UNDEPLOY_API_URL", "https://deploy.test/api/undeploy")
os.environ.setdefault("STATUS_API_URL", "https://deploy.test/api/status")
os.environ.setdefault("MODAL_API_BASE_URL", "https://{username}.modal.test")
os.environ["GITHUB_RETRY_WAIT_SECONDS"] = "0"
os.environ["GITHUB_JOBS_DELAY_SECONDS"] = "0"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ALLOWED_ORIGINS"] = ""

import app.main as main  # noqa: E402  (import after env vars are set)
from app.database import Base, SessionLocal, engine  # noqa: E402
from app.models.admin import Admin  # noqa: E402
from app.models.token import TokenGenerate  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services.auth_service import hash_password  # noqa: E402
from app.services.session_broadcast import session_broadcaster  # noqa: E402
from app.services.token_service import generate_token_string  # noqa: E402
from app.utils.dates import compute_expiry  # noqa: E402

DEFAULT_PASSWORD = "password123"


class FakePubSub:
    def __init__(self, hub):
        self.hub = hub
        self.channel = None
        self.loop = None
        self.messages = None

    async def subscribe(self, channel):
        self.channel = channel
        self.loop = asyncio.get_running_loop()
        self.messages = asyncio.Queue()
        self.hub.subscriptions.append(self)

    async def listen(self):
        while True:
            yield await self.messages.get()

    async def unsubscribe(self, channel=None):
        if self in self.hub.subscriptions:
            self.hub.subscriptions.remove(self)

    async def aclose(self):
        await self.unsubscribe()


class FakeRedisHub:
    """In-memory Redis pub/sub; one hub stands in for the server shared by every process."""

    def __init__(self):
        self.subscriptions = []
        self.published = []

    def publish(self, channel, data):
        self.published.append((channel, data))
        receivers = 0
        for pubsub in list(self.subscriptions):
            if pubsub.channel != channel or pubsub.loop.is_closed():
                continue
            message = {"type": "message", "channel": channel, "data": data}
            pubsub.loop.call_soon_threadsafe(pubsub.messages.put_nowait, message)
            receivers += 1
        return receivers

    def pubsub(self):
        return FakePubSub(self)


@pytest.fixture(autouse=True)
def clean_tables():
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())
    yield


@pytest.fixture(autouse=True)
def redis_hub():
    hub = FakeRedisHub()
    session_broadcaster.configure(hub, hub)
    yield hub
    session_broadcaster.configure(None, None)


@pytest.fixture()
def client(monkeypatch):
    """Provide a TestClient with startup tasks patched out for isolation."""
    monkeypatch.setattr(main, "run_seed", lambda: None)

    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db):
    def _make_user(username="pilot", password=DEFAULT_PASSWORD, token=None, hashed=True):
        user = User(
            username=username,
            password=hash_password(password) if hashed else password,
            token=token,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture()
def make_token(db):
    def _make_token(duration="3month", status="Active", userid=None, createdat=None, token=None):
        created = createdat or datetime.utcnow()
        row = TokenGenerate(
            token=token or generate_token_string(),
            duration=duration,
            status=status,
            createdat=created,
            expiresat=compute_expiry(created, duration),
            userid=userid,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _make_token


@pytest.fixture()
def sign_in(client):
    """Sign in through the API and return the session headers."""

    def _sign_in(username="pilot", password=DEFAULT_PASSWORD):
        response = client.post("/auth/signin", json={"username": username, "password": password})
        assert response.status_code == 200, response.json()
        data = response.json()["data"]
        return {
            "Authorization": f"Bearer {data['sessionToken']}",
            "X-User-ID": str(data["userId"]),
            "X-Session-ID": data["sessionId"],
        }

    return _sign_in


@pytest.fixture()
def admin_headers(client, db):
    db.add(Admin(username="root", password=hash_password("admin-pass-1")))
    db.commit()
    response = client.post("/admin/auth/signin", json={"username": "root", "password": "admin-pass-1"})
    assert response.status_code == 200, response.json()
    data = response.json()["data"]
    return {
        "X-Admin-ID": data["adminId"],
        "X-Admin-Username": data["adminUsername"],
        "X-Admin-Session-ID": data["adminSessionId"],
    }
