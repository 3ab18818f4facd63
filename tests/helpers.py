"""Shared test doubles and helpers."""

from __future__ import annotations


class RecordingRouter:
    """Stand-in for FanoutRouter that records what would have been sent."""

    def __init__(self):
        self.sent = []

    def broadcast_to_user(self, user_id, event, payload):
        self.sent.append(("user", str(user_id), event, payload))

    def broadcast_to_room(self, room_id, event, payload, exclude_sid=None):
        self.sent.append(("room", str(room_id), event, payload))

    def send_to_locator(self, locator, event, payload):
        self.sent.append(("locator", locator, event, payload))

    def broadcast(self, event, payload, exclude_sid=None):
        self.sent.append(("all", None, event, payload))

    def join_rooms(self, sid, room_ids):
        return [str(r) for r in room_ids]

    def events(self, name):
        return [s for s in self.sent if s[2] == name]


def received(client, name):
    """Payloads of every `name` event the test client has received (drains the queue)."""
    return [e["args"][0] if e["args"] else None for e in client.get_received() if e["name"] == name]


def threaded_spawn(fn, *args):
    import threading

    t = threading.Thread(target=fn, args=args, daemon=True)
    t.start()
    return t
