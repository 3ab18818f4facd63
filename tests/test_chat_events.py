from __future__ import annotations

from errors import AuthenticationError
from helpers import received


def _join(client, *room_ids):
    return client.emit("join-conversations", list(room_ids), callback=True)


class TestRooms:
    def test_join_is_idempotent(self, connect, services, conversation):
        alice = connect("alice")

        assert _join(alice, conversation["id"]) == {"ok": True, "joined": [conversation["id"]]}
        assert _join(alice, conversation["id"]) == {"ok": True, "joined": [conversation["id"]]}

        [sid] = services.registry.sids_for_user("alice")
        assert services.registry.get(sid).rooms == {"user_alice", conversation["id"]}

    def test_join_accepts_object_payload(self, connect, conversation):
        alice = connect("alice")

        ack = alice.emit("join-conversations", {"conversationIds": [conversation["id"]]}, callback=True)

        assert ack["joined"] == [conversation["id"]]

    def test_leave_stops_room_events(self, connect, conversation):
        alice = connect("alice")
        bob = connect("bob")
        _join(alice, conversation["id"])
        _join(bob, conversation["id"])
        bob.emit("leave-conversations", [conversation["id"]], callback=True)
        bob.get_received()

        alice.emit("typing", conversation["id"])

        assert received(bob, "typing") == []


class TestTyping:
    def test_typing_reaches_room_but_not_sender(self, connect, conversation):
        alice = connect("alice")
        bob = connect("bob")
        carol = connect("carol")
        _join(alice, conversation["id"])
        _join(bob, conversation["id"])
        for c in (alice, bob, carol):
            c.get_received()

        alice.emit("typing", conversation["id"])

        assert received(bob, "typing") == [{"userId": "alice", "conversationId": conversation["id"]}]
        assert received(alice, "typing") == []
        assert received(carol, "typing") == []

    def test_stop_typing(self, connect, conversation):
        alice = connect("alice")
        bob = connect("bob")
        _join(alice, conversation["id"])
        _join(bob, conversation["id"])
        bob.get_received()

        alice.emit("stop-typing", {"conversationId": conversation["id"]})

        assert received(bob, "stop-typing") == [{"userId": "alice", "conversationId": conversation["id"]}]

    def test_other_tab_of_sender_still_sees_typing(self, connect, conversation):
        tab1 = connect("alice")
        tab2 = connect("alice")
        _join(tab1, conversation["id"])
        _join(tab2, conversation["id"])
        tab2.get_received()

        tab1.emit("typing", conversation["id"])

        assert len(received(tab2, "typing")) == 1


class TestSendMessageRelay:
    def test_envelope_is_fanned_out_to_the_room(self, connect, conversation):
        alice = connect("alice")
        bob = connect("bob")
        _join(alice, conversation["id"])
        _join(bob, conversation["id"])
        envelope = {"id": "m1", "conversationId": conversation["id"], "text": "hello"}

        ack = alice.emit("send-message", envelope, callback=True)

        assert ack == {"ok": True}
        assert received(bob, "new-message") == [dict(envelope, senderId="alice")]
        assert received(alice, "new-message") == [dict(envelope, senderId="alice")]

    def test_sender_id_comes_from_the_connection(self, connect, conversation):
        alice = connect("alice")
        bob = connect("bob")
        _join(bob, conversation["id"])
        bob.get_received()

        alice.emit("send-message", {"conversationId": conversation["id"], "senderId": "bob", "text": "hi"})

        [relayed] = received(bob, "new-message")
        assert relayed["senderId"] == "alice"
        assert relayed["text"] == "hi"


class TestHandlerWrapper:
    def test_malformed_payload_reports_error_and_keeps_connection(self, connect, users):
        alice = connect("alice")
        alice.get_received()

        ack = alice.emit("join-conversations", "not-a-list", callback=True)

        assert ack["ok"] is False
        assert ack["error"] == "malformed_payload"
        [err] = received(alice, "error")
        assert err["event"] == "join-conversations"
        assert alice.is_connected()

    def test_unexpected_exception_is_isolated(self, connect, services, monkeypatch, conversation):
        alice = connect("alice")
        bob = connect("bob")
        bob.get_received()

        def boom(*args, **kwargs):
            raise RuntimeError("db exploded")

        monkeypatch.setattr(services.tracker, "mark_seen", boom)

        ack = alice.emit("message-seen", "m1", callback=True)

        assert ack["error"] == "handler_failure"
        assert received(alice, "error") == [
            {"message": "Event processing failed", "event": "message-seen", "code": "handler_failure"}
        ]
        assert alice.is_connected()
        assert received(bob, "error") == []

        # The connection keeps processing later events.
        _join(alice, conversation["id"])
        _join(bob, conversation["id"])
        bob.get_received()
        alice.emit("typing", conversation["id"])
        assert len(received(bob, "typing")) == 1

    def test_authentication_error_in_handler_disconnects(self, connect, services, monkeypatch, users):
        alice = connect("alice")

        def revoked(*args, **kwargs):
            raise AuthenticationError("session revoked")

        monkeypatch.setattr(services.tracker, "mark_delivered", revoked)

        alice.emit("message-delivered", "m1")

        assert not alice.is_connected()
        assert services.registry.sids_for_user("alice") == []
