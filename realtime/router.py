"""Fan-out router.

Routes events to sets of connections: conversation rooms (room id ==
conversation id), personal rooms (``user_<id>``) and single connections
addressed by presence locator. All sends are fire-and-forget; with a Redis
message queue configured, Flask-SocketIO relays them to every instance.

No capability checks happen here. Callers must only hand out room ids the
user is allowed to join.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from constants import room_for_user
from realtime.presence import parse_locator
from realtime.state import ConnectionRegistry


class FanoutRouter:
    def __init__(self, socketio, registry: ConnectionRegistry, namespace: str = "/"):
        self._socketio = socketio
        self._registry = registry
        self.namespace = namespace

    def join_rooms(self, sid: str, room_ids: Iterable[Any]) -> list[str]:
        """Add a connection to each room. Joining a room twice is a no-op."""
        rooms = [str(r) for r in room_ids if r is not None and str(r).strip()]
        for room in rooms:
            self._socketio.server.enter_room(sid, room, namespace=self.namespace)
        self._registry.record_rooms(sid, rooms, joined=True)
        return rooms

    def leave_rooms(self, sid: str, room_ids: Iterable[Any]) -> list[str]:
        rooms = [str(r) for r in room_ids if r is not None and str(r).strip()]
        for room in rooms:
            self._socketio.server.leave_room(sid, room, namespace=self.namespace)
        self._registry.record_rooms(sid, rooms, joined=False)
        return rooms

    def broadcast_to_room(self, room_id: str, event: str, payload: Any, exclude_sid: str | None = None) -> None:
        self._socketio.emit(event, payload, to=str(room_id), skip_sid=exclude_sid, namespace=self.namespace)

    def broadcast_to_user(self, user_id: str, event: str, payload: Any) -> None:
        self._socketio.emit(event, payload, to=room_for_user(user_id), namespace=self.namespace)

    def send_to_connection(self, sid: str, event: str, payload: Any) -> None:
        self._socketio.emit(event, payload, to=sid, namespace=self.namespace)

    def send_to_locator(self, locator: str, event: str, payload: Any) -> None:
        _instance, sid = parse_locator(locator)
        if not sid:
            logging.warning("[router] dropping %s for unparseable locator %r", event, locator)
            return
        self.send_to_connection(sid, event, payload)

    def broadcast(self, event: str, payload: Any, exclude_sid: str | None = None) -> None:
        """Send to every connection (on every instance)."""
        self._socketio.emit(event, payload, skip_sid=exclude_sid, namespace=self.namespace)
