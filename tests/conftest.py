"""
Shared fixtures.

``store`` is a DatabaseStorage over a throwaway SQLite file.  ``client`` is a
FastAPI TestClient entered as a context manager so the lifespan runs and
websocket sessions share the app's event loop.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient

from auth import hash_password
from database import make_engine, make_session_factory, init_db
from main import create_app
from storage import DatabaseStorage


class FakeConnection:
    """Stands in for a websocket connection; records pushed events."""

    def __init__(self, connection_id):
        self.connection_id = connection_id
        self.events = []
        self.closed = False

    def push(self, event):
        self.events.append(event)

    def close(self):
        self.closed = True


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'store.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return DatabaseStorage(session_factory)


@pytest.fixture
def make_user(store):
    def _make(username, password="pass12345"):
        return store.create_user(username, hash_password(password))
    return _make


@pytest.fixture
def app(tmp_path):
    return create_app(f"sqlite:///{tmp_path / 'app.db'}")


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def signup(client):
    """Register and log in a user; returns ``(user_id, token)``."""
    def _signup(username, password="pass12345"):
        resp = client.post("/register", json={"username": username, "password": password})
        assert resp.status_code == 201, resp.text
        login = client.post("/login", json={"username": username, "password": password})
        assert login.status_code == 200, login.text
        data = login.json()
        return data["userId"], data["token"]
    return _signup


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
