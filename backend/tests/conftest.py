"""Shared test fixtures and configuration for backend tests."""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from collera.config import AppConfig
from collera.main import create_app


def receive_event(ws, expected_type):
    """Receive the next realtime event and check its type."""
    event = ws.receive_json()
    assert event["type"] == expected_type, event
    return event


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def config():
    """Config with in-memory storage and a fixed signing key."""
    return AppConfig(
        database={"path": ":memory:"},
        secrets={"jwt": {"secret_key": "test-secret"}},
    )


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    """TestClient with the lifespan running, so app.state is populated.

    All websocket sessions opened from this client share one event loop.
    """
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def users(app, client):
    """Three verified users; alice and bob are connected, carol is not."""
    directory = app.state.oracle
    alice = directory.create_user("Alice", "Rao", college_name="IIT Delhi")["id"]
    bob = directory.create_user("Bob", "Mehta", college_name="IIT Delhi")["id"]
    carol = directory.create_user("Carol", "Singh", college_name="NIT Trichy")["id"]
    directory.add_connection(alice, bob)
    return SimpleNamespace(
        alice=alice,
        bob=bob,
        carol=carol,
        directory=directory,
        token=directory.issue_token,
    )
