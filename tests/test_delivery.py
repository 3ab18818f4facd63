from __future__ import annotations

import threading

import pytest

from helpers import RecordingRouter, received, threaded_spawn
from realtime.delivery import DeliveryTracker


@pytest.fixture
def router():
    return RecordingRouter()


@pytest.fixture
def tracker(store, router):
    return DeliveryTracker(store, router, spawn=threaded_spawn)


@pytest.fixture
def group(store, users):
    return store.create_conversation(["alice", "bob", "carol"], is_group=True, group_name="Crew")


class TestDeliveryStateMachine:
    def test_mark_delivered_advances_sent_to_delivered(self, store, tracker, conversation):
        msg = store.create_message(conversation["id"], "alice", text="hi")
        assert msg["status"] == "sent"

        updated = tracker.mark_delivered(msg["id"], "bob")

        assert updated["status"] == "delivered"
        assert updated["delivered_to"] == ["bob"]

    def test_mark_delivered_is_idempotent(self, store, tracker, router, conversation):
        msg = store.create_message(conversation["id"], "alice", text="hi")

        tracker.mark_delivered(msg["id"], "bob")
        tracker.mark_delivered(msg["id"], "bob")

        stored = store.get_message(msg["id"])
        assert stored["delivered_to"] == ["bob"]
        assert stored["status"] == "delivered"
        assert len(router.events("message-status")) == 1

    def test_mark_seen_is_idempotent(self, store, tracker, conversation):
        msg = store.create_message(conversation["id"], "alice", text="hi")

        tracker.mark_seen(msg["id"], "bob")
        tracker.mark_seen(msg["id"], "bob")

        stored = store.get_message(msg["id"])
        assert stored["read_by"] == ["bob"]
        assert stored["status"] == "seen"

    def test_status_never_regresses_after_seen(self, store, tracker, conversation):
        msg = store.create_message(conversation["id"], "alice", text="hi")
        tracker.mark_seen(msg["id"], "bob")

        tracker.mark_delivered(msg["id"], "bob")

        stored = store.get_message(msg["id"])
        assert stored["status"] == "seen"
        assert stored["delivered_to"] == ["bob"]

    def test_group_seen_only_when_every_recipient_has_read(self, store, tracker, group):
        msg = store.create_message(group["id"], "alice", text="hello crew")
        tracker.mark_delivered(msg["id"], "bob")
        tracker.mark_delivered(msg["id"], "carol")

        after_bob = tracker.mark_seen(msg["id"], "bob")
        assert after_bob["status"] == "delivered"
        assert after_bob["read_by"] == ["bob"]

        after_carol = tracker.mark_seen(msg["id"], "carol")
        assert after_carol["status"] == "seen"
        assert set(after_carol["read_by"]) == {"bob", "carol"}

    def test_seen_without_prior_delivery_is_allowed(self, store, tracker, conversation):
        msg = store.create_message(conversation["id"], "alice", text="hi")

        updated = tracker.mark_seen(msg["id"], "bob")

        assert updated["status"] == "seen"
        assert updated["delivered_to"] == []

    def test_sender_and_outsider_acks_are_ignored(self, store, tracker, router, conversation):
        msg = store.create_message(conversation["id"], "alice", text="hi")

        tracker.mark_delivered(msg["id"], "alice")
        tracker.mark_seen(msg["id"], "carol")

        stored = store.get_message(msg["id"])
        assert stored["status"] == "sent"
        assert stored["delivered_to"] == []
        assert stored["read_by"] == []
        assert router.sent == []

    def test_unknown_message_is_a_noop(self, tracker, router):
        assert tracker.mark_delivered("does-not-exist", "bob") is None
        assert tracker.mark_seen("does-not-exist", "bob") is None
        assert router.sent == []

    def test_sender_is_told_about_status_changes(self, store, tracker, router, conversation):
        msg = store.create_message(conversation["id"], "alice", text="hi")

        tracker.mark_seen(msg["id"], "bob")

        [(kind, target, _event, payload)] = router.events("message-status")
        assert (kind, target) == ("user", "alice")
        assert payload["messageId"] == msg["id"]
        assert payload["status"] == "seen"
        assert payload["userId"] == "bob"


class TestConcurrentAcks:
    def test_concurrent_seen_acks_are_all_retained(self, store, tracker, users):
        members = ["alice"] + [f"user{i}" for i in range(8)]
        for m in members[1:]:
            store.create_user(m, user_id=m)
        conv = store.create_conversation(members, is_group=True, group_name="Big")
        msg = store.create_message(conv["id"], "alice", text="race")

        barrier = threading.Barrier(len(members) - 1)

        def ack(user_id):
            barrier.wait()
            tracker.mark_delivered(msg["id"], user_id)
            tracker.mark_seen(msg["id"], user_id)

        threads = [threading.Thread(target=ack, args=(m,)) for m in members[1:]]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = store.get_message(msg["id"])
        assert set(stored["delivered_to"]) == set(members[1:])
        assert set(stored["read_by"]) == set(members[1:])
        assert stored["status"] == "seen"

    def test_mark_seen_many_marks_every_message(self, store, tracker, conversation):
        ids = [store.create_message(conversation["id"], "alice", text=str(i))["id"] for i in range(5)]

        updated = tracker.mark_seen_many(ids, "bob")

        assert [m["id"] for m in updated] == ids
        assert all(store.get_message(i)["status"] == "seen" for i in ids)

    def test_mark_seen_many_skips_blank_and_unknown_ids(self, store, tracker, conversation):
        real = store.create_message(conversation["id"], "alice", text="x")["id"]

        updated = tracker.mark_seen_many([real, "", None, "missing"], "bob")

        assert [m["id"] for m in updated] == [real]


class TestDeliveryOverSockets:
    def test_online_recipient_gets_delivered_at_send_time(self, app, connect, conversation, auth_headers, store):
        connect("bob")
        alice = connect("alice")
        http = app.test_client()

        resp = http.post(
            "/api/v1/chat/messages",
            json={"conversationId": conversation["id"], "text": "M1"},
            headers=auth_headers("alice"),
        )

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["status"] == "delivered"
        assert body["deliveredTo"] == ["bob"]
        assert body["type"] == "text"
        assert store.get_message(body["id"])["status"] == "delivered"
        statuses = received(alice, "message-status")
        assert statuses and statuses[-1]["status"] == "delivered"

    def test_offline_recipient_leaves_message_sent(self, app, connect, conversation, auth_headers):
        connect("alice")
        http = app.test_client()

        resp = http.post(
            "/api/v1/chat/messages",
            json={"conversationId": conversation["id"], "text": "anyone?"},
            headers=auth_headers("alice"),
        )

        assert resp.status_code == 201
        assert resp.get_json()["status"] == "sent"
        assert resp.get_json()["deliveredTo"] == []

    def test_message_seen_event_marks_read(self, connect, conversation, store):
        alice = connect("alice")
        bob = connect("bob")
        msg = store.create_message(conversation["id"], "alice", text="M1")
        alice.get_received()

        ack = bob.emit("message-seen", msg["id"], callback=True)

        assert ack == {"ok": True, "status": "seen"}
        stored = store.get_message(msg["id"])
        assert stored["read_by"] == ["bob"]
        assert stored["status"] == "seen"
        assert [p["status"] for p in received(alice, "message-status")] == ["seen"]

    def test_message_delivered_event_accepts_object_payload(self, connect, conversation, store):
        connect("alice")
        bob = connect("bob")
        msg = store.create_message(conversation["id"], "alice", text="M1")

        ack = bob.emit("message-delivered", {"messageId": msg["id"]}, callback=True)

        assert ack == {"ok": True, "status": "delivered"}

    def test_batch_message_seen(self, connect, conversation, store):
        bob = connect("bob")
        ids = [store.create_message(conversation["id"], "alice", text=str(i))["id"] for i in range(3)]

        ack = bob.emit("batch-message-seen", ids, callback=True)

        assert ack == {"ok": True, "updated": 3}
        assert all(store.get_message(i)["status"] == "seen" for i in ids)

    def test_opening_a_conversation_marks_unread_seen(self, app, conversation, store, auth_headers):
        mine = store.create_message(conversation["id"], "bob", text="from bob")
        theirs = store.create_message(conversation["id"], "alice", text="from alice")
        http = app.test_client()

        resp = http.get(
            f"/api/v1/chat/conversations/{conversation['id']}/messages",
            headers=auth_headers("bob"),
        )

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["total"] == 2
        assert [m["id"] for m in body["messages"]] == [mine["id"], theirs["id"]]
        assert store.get_message(theirs["id"])["status"] == "seen"
        assert store.get_message(mine["id"])["read_by"] == []
