from __future__ import annotations

import fakeredis
import pytest

from realtime.presence import (
    MemoryPresenceStore,
    RedisPresenceStore,
    create_presence_store,
    make_locator,
    parse_locator,
)


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return MemoryPresenceStore()
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisPresenceStore(client, prefix="test")


@pytest.fixture
def memory_store():
    return MemoryPresenceStore()


def test_locator_round_trip():
    assert parse_locator(make_locator("node-a", "abc123")) == ("node-a", "abc123")


def test_instance_ids_may_contain_colons():
    assert parse_locator("host:8080:abc123") == ("host:8080", "abc123")


class TestSessions:
    def test_last_writer_wins(self, store):
        store.register("alice", "a:1")
        store.register("alice", "a:2")

        assert store.locate("alice") == "a:2"

    def test_unregister_repoints_to_remaining_session(self, store):
        store.register("alice", "a:1")
        store.register("alice", "b:2")

        assert store.unregister("alice", "b:2") == 1
        assert store.locate("alice") == "a:1"

    def test_unregister_of_stale_locator_keeps_current(self, store):
        store.register("alice", "a:1")
        store.register("alice", "a:2")

        assert store.unregister("alice", "a:1") == 1
        assert store.locate("alice") == "a:2"

    def test_last_session_removes_entry(self, store):
        store.register("alice", "a:1")

        assert store.unregister("alice", "a:1") == 0
        assert store.locate("alice") is None
        assert not store.is_online("alice")

    def test_unregister_unknown_user(self, store):
        assert store.unregister("ghost", "a:1") == 0

    def test_online_among(self, store):
        store.register("alice", "a:1")
        store.register("bob", "a:2")

        assert store.online_among(["alice", "carol", "bob"]) == {"alice", "bob"}

    def test_purge_instance(self, store):
        store.register("alice", "dead:1")
        store.register("bob", "dead:2")
        store.register("bob", "live:3")
        store.register("carol", "live:4")

        assert store.purge_instance("dead") == 2

        assert store.locate("alice") is None
        assert store.locate("bob") == "live:3"
        assert store.locate("carol") == "live:4"


class TestCallScope:
    def test_fields_are_set_only_once(self, store):
        store.touch_call_scope("c1", 60, initiator="alice", participants=["alice", "bob"])
        store.touch_call_scope("c1", 60, initiator="mallory")

        assert store.get_call_scope("c1") == {"initiator": "alice", "participants": ["alice", "bob"]}

    def test_expired_scope_disappears(self, store):
        store.touch_call_scope("c1", 0, initiator="alice")

        assert store.get_call_scope("c1") is None

    def test_purge_expired_counts(self, memory_store):
        memory_store.touch_call_scope("new", 60, initiator="alice")
        # Touching purges earlier expired scopes, so the expired one goes last.
        memory_store.touch_call_scope("old", 0, initiator="alice")

        assert memory_store.purge_expired() == 1
        assert memory_store.get_call_scope("new") is not None

    def test_clear(self, store):
        store.touch_call_scope("c1", 60, initiator="alice")

        assert store.clear_call_scope("c1") is True
        assert store.clear_call_scope("c1") is False


class TestBackendSelection:
    def test_auto_without_redis_is_memory(self):
        assert isinstance(create_presence_store({"presence_backend": "auto", "redis_url": ""}), MemoryPresenceStore)

    def test_redis_requires_url(self):
        with pytest.raises(ValueError):
            create_presence_store({"presence_backend": "redis", "redis_url": ""})

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_presence_store({"presence_backend": "etcd"})


class TestRedisLayout:
    @pytest.fixture
    def client(self):
        return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)

    @pytest.fixture
    def redis_store(self, client):
        return RedisPresenceStore(client, prefix="pulse")

    def test_keys(self, client, redis_store):
        redis_store.register("alice", "a:1")
        redis_store.touch_call_scope("c1", 60, initiator="alice", participants=["alice", "bob"])

        assert client.hget("pulse:online-users", "alice") == "a:1"
        assert client.smembers("pulse:sessions:alice") == {"a:1"}
        assert client.hget("pulse:call:c1", "participants") == '["alice", "bob"]'
        assert 0 < client.ttl("pulse:call:c1") <= 60

    def test_touch_refreshes_expiry(self, client, redis_store):
        redis_store.touch_call_scope("c1", 5, initiator="alice")
        redis_store.touch_call_scope("c1", 60)

        assert client.ttl("pulse:call:c1") > 5

    def test_last_unregister_drops_sessions_set(self, client, redis_store):
        redis_store.register("alice", "a:1")

        redis_store.unregister("alice", "a:1")

        assert not client.exists("pulse:sessions:alice")
        assert not client.hexists("pulse:online-users", "alice")

    def test_purge_instance_clears_orphaned_online_entries(self, client, redis_store):
        client.hset("pulse:online-users", "ghost", "dead:9")
        redis_store.register("bob", "live:1")

        assert redis_store.purge_instance("dead") == 1
        assert redis_store.locate("ghost") is None
        assert redis_store.locate("bob") == "live:1"

    def test_unreadable_participants_are_returned_raw(self, client, redis_store):
        client.hset("pulse:call:c1", mapping={"initiator": "alice", "participants": "not-json"})

        assert redis_store.get_call_scope("c1") == {"initiator": "alice", "participants": "not-json"}
