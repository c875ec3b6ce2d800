"""Shared fixtures: an in-memory Mongo, test settings, and an API client wired to both."""
from typing import Any, Dict, List

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
from config import Settings, get_settings
from database import create_document, get_db
from main import app, get_channel
from realtime import LiveChannel


class FakeSocket:
    """Stands in for a WebSocket; records what the channel sends it."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.accepted = False
        self.closed = False
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def close(self):
        self.closed = True

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    return client["pm_test"]


@pytest.fixture
def settings():
    s = Settings()
    s.jwt_secret = "test-secret"
    s.jwt_expires_minutes = 60
    s.google_client_id = "test-client-id"
    s.debug = False
    return s


@pytest.fixture
def channel():
    return LiveChannel()


@pytest.fixture
def client(db, settings, channel):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_channel] = lambda: channel
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(name: str, role: str = "member", password: str = "secret123") -> Dict[str, Any]:
        inserted = create_document(db, "user", {
            "name": name,
            "email": f"{name.lower()}@example.com",
            "password_hash": auth.hash_password(password),
            "role": role,
        })
        return db["user"].find_one({"_id": inserted})

    return _make


@pytest.fixture
def headers(settings):
    def _headers(user: Dict[str, Any]) -> Dict[str, str]:
        token = auth.create_access_token(str(user["_id"]), settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def listen(channel):
    """Subscribe a fake socket to a room and return it."""

    def _listen(room: str, fail: bool = False) -> FakeSocket:
        sock = FakeSocket(fail=fail)
        channel.join(room, sock)
        return sock

    return _listen
