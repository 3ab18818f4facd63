from __future__ import annotations

import os

# Must be set before server_init is imported (it picks the async mode at import).
os.environ["PULSE_SOCKETIO_ASYNC"] = "threading"

import pytest
from flask_jwt_extended import create_access_token

from config import get_default_settings
from memory_store import MemoryChatStore
from realtime.presence import MemoryPresenceStore
from server_init import create_app


@pytest.fixture
def settings():
    s = get_default_settings()
    s.update(
        storage_backend="memory",
        presence_backend="memory",
        secret_key="test-secret-key",
        jwt_secret="test-jwt-secret-with-enough-length-123",
        instance_id="node-a",
        redis_url="",
        socketio_message_queue="",
        janitor_enabled=False,
        turn_secret="turn-shared-secret",
        turn_domain="turn.example.com",
        rate_limit_send_message="1000 per minute",
        rate_limit_turn_credentials="1000 per minute",
    )
    return s


@pytest.fixture
def store():
    return MemoryChatStore()


@pytest.fixture
def presence():
    return MemoryPresenceStore()


@pytest.fixture
def users(store):
    return {
        "alice": store.create_user("alice", "Alice Archer", user_id="alice"),
        "bob": store.create_user("bob", "Bob Baker", user_id="bob"),
        "carol": store.create_user("carol", "Carol Cole", user_id="carol"),
    }


@pytest.fixture
def conversation(store, users):
    return store.create_conversation(["alice", "bob"])


@pytest.fixture
def app_bundle(settings, store, presence, monkeypatch):
    for var in ("REDIS_URL", "PULSE_SOCKETIO_MESSAGE_QUEUE", "SOCKETIO_MESSAGE_QUEUE", "JWT_SECRET_KEY"):
        monkeypatch.delenv(var, raising=False)
    app, socketio = create_app(settings, store=store, presence=presence)
    app.config["TESTING"] = True
    return app, socketio


@pytest.fixture
def app(app_bundle):
    return app_bundle[0]


@pytest.fixture
def socketio(app_bundle):
    return app_bundle[1]


@pytest.fixture
def services(app):
    return app.config["PULSE_SERVICES"]


@pytest.fixture
def token_for(app):
    def _make(user_id, **kwargs):
        with app.app_context():
            return create_access_token(identity=user_id, **kwargs)

    return _make


@pytest.fixture
def auth_headers(token_for):
    def _make(user_id):
        return {"Authorization": f"Bearer {token_for(user_id)}"}

    return _make


@pytest.fixture
def connect(app, socketio, token_for):
    clients = []

    def _connect(user_id=None, token=None, **kwargs):
        if "auth" not in kwargs and "headers" not in kwargs:
            kwargs["auth"] = {"token": token or token_for(user_id)}
        client = socketio.test_client(app, **kwargs)
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        if client.is_connected():
            client.disconnect()
