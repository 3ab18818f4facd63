"""Per-instance connection registry.

Holds the live Socket.IO connections accepted by *this* process. It is only
mutated by this instance's own handlers, so a process-local lock is enough.
Cross-instance presence lives in realtime.presence.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass
class Connection:
    sid: str
    user_id: str
    rooms: set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)


class ConnectionRegistry:
    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def add(self, sid: str, user_id: str) -> Connection:
        conn = Connection(sid=sid, user_id=str(user_id))
        with self._lock:
            self._connections[sid] = conn
        return conn

    def remove(self, sid: str) -> Connection | None:
        with self._lock:
            return self._connections.pop(sid, None)

    def get(self, sid: str) -> Connection | None:
        with self._lock:
            return self._connections.get(sid)

    def user_for(self, sid: str) -> str | None:
        conn = self.get(sid)
        return conn.user_id if conn else None

    def sids_for_user(self, user_id: str) -> list[str]:
        """Return all live sids on this instance for a user."""
        user_id = str(user_id)
        with self._lock:
            return [sid for sid, c in self._connections.items() if c.user_id == user_id]

    def record_rooms(self, sid: str, rooms, joined: bool = True) -> None:
        with self._lock:
            conn = self._connections.get(sid)
            if conn is None:
                return
            if joined:
                conn.rooms.update(rooms)
            else:
                conn.rooms.difference_update(rooms)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, sid: str) -> bool:
        with self._lock:
            return sid in self._connections
