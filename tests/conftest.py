"""Shared fixtures: a throwaway app per test, fake clocks and an httpx bridge into Flask."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from shutterbox import Storage
from shutterbox.Application import create_app
from shutterbox.Helpers import TIMESTAMP_FORMAT, get_db


class FakeClock:
    """Manually advanced clock; sleep() just moves time forward."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class StallingSleep:
    """
    Async sleep stand-in: records the delay, then never returns, so a
    reconnect or polling loop parks until its task is cancelled.
    """

    def __init__(self):
        self.delays = []
        self.called = asyncio.Event()

    async def __call__(self, delay):
        self.delays.append(delay)
        self.called.set()
        await asyncio.Event().wait()


def iso_at(seconds):
    """Storage timestamp `seconds` after a fixed epoch."""
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return (base + timedelta(seconds=seconds)).strftime(TIMESTAMP_FORMAT)


def auth(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")


@pytest.fixture
def app(db_path):
    app = create_app({"TESTING": True, "DATABASE": db_path, "START_SWEEPERS": False})
    db = get_db(db_path)
    Storage.upsert_user(db, "alice", name="Alice", username="alice", avatar="a.png")
    Storage.upsert_user(db, "bob", name="Bob", username="bob", avatar="b.png")
    Storage.upsert_user(db, "carol", name="Carol", username="carol")
    db.close()
    yield app
    app.extensions["shutterbox"].stop()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(db_path, app):
    conn = get_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def conversation(client):
    """Direct conversation between alice and bob."""
    response = client.post("/conversations/start", json={"participantId": "bob"}, headers=auth("alice"))
    return response.get_json()["conversationId"]


def flask_bridge(flask_app):
    """
    httpx MockTransport handler that answers requests with the Flask test client,
    so the async controllers can talk to the real routes.
    """
    test_client = flask_app.test_client()

    def handler(request):
        response = test_client.open(
            request.url.raw_path.decode("ascii"),
            method=request.method,
            headers={k: v for k, v in request.headers.items() if k.lower() != "host"},
            data=request.content,
        )
        return httpx.Response(
            response.status_code,
            headers={"content-type": response.headers.get("Content-Type", "application/json")},
            content=response.get_data(),
        )

    return handler


@pytest.fixture
def http_client_for(app):
    """Factory of AsyncClients that act as the given user against the app."""
    clients = []

    def make(user_id):
        c = httpx.AsyncClient(
            transport=httpx.MockTransport(flask_bridge(app)),
            base_url="http://testserver",
            headers=auth(user_id),
        )
        clients.append(c)
        return c

    return make
