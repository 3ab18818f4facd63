from __future__ import annotations

import pytest

from janitor import run_janitor_cycle
from server_init import create_app, create_chat_store


def test_healthz(app, connect, users):
    connect("alice")

    resp = app.test_client().get("/healthz")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["instance"] == "node-a"
    assert body["connections"] == 1
    assert body["async_mode"] == "threading"


def test_boot_purges_locators_of_this_instance(settings, store, presence):
    presence.register("alice", "node-a:stale-sid")
    presence.register("bob", "node-b:live-sid")

    create_app(settings, store=store, presence=presence)

    assert presence.locate("alice") is None
    assert presence.locate("bob") == "node-b:live-sid"


def test_instance_id_is_generated_when_missing(settings, store, presence):
    settings["instance_id"] = ""

    create_app(settings, store=store, presence=presence)

    assert settings["instance_id"]


def test_seed_users_reach_the_store(settings):
    settings["seed_users"] = [{"id": "u1", "user_name": "dana", "full_name": "Dana Dale"}]

    store = create_chat_store(settings)

    assert store.get_user("u1")["user_name"] == "dana"


def test_service_errors_render_as_json(app, auth_headers, users):
    resp = app.test_client().post("/api/v1/chat/messages", data="nope", headers=auth_headers("alice"))

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "malformed_payload"


def test_janitor_cycle_purges_expired_scopes(settings, services):
    services.presence.touch_call_scope("gone", 0, initiator="alice")

    counts = run_janitor_cycle(settings, services)

    assert counts == {"missed_calls": 0, "expired_scopes": 1}


def test_run_web_server_closes_db_pool_on_exit(settings, monkeypatch):
    import database
    import server_init

    class FakePool:
        closed = False

        def closeall(self):
            self.closed = True

    pool = FakePool()
    monkeypatch.setattr(database, "_POOL", pool)

    def stop(self, app, **kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr(server_init.SocketIO, "run", stop)

    with pytest.raises(KeyboardInterrupt):
        server_init.run_web_server(settings)

    assert pool.closed
    assert database._POOL is None
