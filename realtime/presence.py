"""Presence store shared by every server instance.

A presence entry maps a user id to the *locator* of the connection that owns
the user's live session (``<instance-id>:<sid>``). Entries are last-writer-wins:
a second device replaces the first device's locator. Each user also keeps a
set of live locators so that any instance can tell, on disconnect, whether the
user still has a connection somewhere else.

The same store holds the short-lived call signaling-scope records
(``call:<id>``) that self-expire when a call attempt is abandoned.

Two backends:
  - RedisPresenceStore: shared across instances (production).
  - MemoryPresenceStore: single process (development, tests).
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Iterable

import redis


def make_locator(instance_id: str, sid: str) -> str:
    return f"{instance_id}:{sid}"


def parse_locator(locator: str) -> tuple[str, str]:
    """Split a locator into (instance_id, sid). Socket.IO sids contain no ':'."""
    instance_id, _, sid = str(locator).rpartition(":")
    return instance_id, sid


class PresenceStore:
    """Interface shared by the presence backends."""

    def register(self, user_id: str, locator: str) -> None:
        raise NotImplementedError

    def unregister(self, user_id: str, locator: str) -> int:
        """Drop one locator. Returns how many live locators the user still has."""
        raise NotImplementedError

    def locate(self, user_id: str) -> str | None:
        raise NotImplementedError

    def is_online(self, user_id: str) -> bool:
        return self.locate(user_id) is not None

    def online_among(self, user_ids: Iterable[str]) -> set[str]:
        return {str(u) for u in user_ids if self.is_online(str(u))}

    def touch_call_scope(self, call_id: str, ttl: int, **fields: Any) -> None:
        """Create the signaling-scope record (fields set only if absent) and reset its expiry."""
        raise NotImplementedError

    def get_call_scope(self, call_id: str) -> dict | None:
        raise NotImplementedError

    def clear_call_scope(self, call_id: str) -> bool:
        raise NotImplementedError

    def purge_instance(self, instance_id: str) -> int:
        """Remove every locator owned by an instance (crash recovery on boot)."""
        raise NotImplementedError

    def ping(self) -> bool:
        return True


# ----------------------------------------------------------------------
# In-memory backend
# ----------------------------------------------------------------------
class MemoryPresenceStore(PresenceStore):
    def __init__(self):
        self._online: dict[str, str] = {}
        self._sessions: dict[str, set[str]] = {}
        self._calls: dict[str, tuple[dict, float]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, locator: str) -> None:
        user_id = str(user_id)
        with self._lock:
            self._online[user_id] = locator
            self._sessions.setdefault(user_id, set()).add(locator)

    def unregister(self, user_id: str, locator: str) -> int:
        user_id = str(user_id)
        with self._lock:
            sessions = self._sessions.get(user_id, set())
            sessions.discard(locator)
            if not sessions:
                self._sessions.pop(user_id, None)
                self._online.pop(user_id, None)
                return 0
            if self._online.get(user_id) == locator:
                self._online[user_id] = next(iter(sessions))
            return len(sessions)

    def locate(self, user_id: str) -> str | None:
        with self._lock:
            return self._online.get(str(user_id))

    def online_among(self, user_ids: Iterable[str]) -> set[str]:
        with self._lock:
            return {str(u) for u in user_ids if str(u) in self._online}

    def _purge_expired_calls(self, now: float) -> None:
        stale = [cid for cid, (_, expires) in self._calls.items() if expires <= now]
        for cid in stale:
            del self._calls[cid]

    def touch_call_scope(self, call_id: str, ttl: int, **fields: Any) -> None:
        now = time.time()
        with self._lock:
            self._purge_expired_calls(now)
            record, _ = self._calls.get(str(call_id), ({}, now))
            for k, v in fields.items():
                if v is not None:
                    record.setdefault(k, v)
            self._calls[str(call_id)] = (record, now + float(ttl))

    def get_call_scope(self, call_id: str) -> dict | None:
        with self._lock:
            self._purge_expired_calls(time.time())
            entry = self._calls.get(str(call_id))
            return dict(entry[0]) if entry else None

    def clear_call_scope(self, call_id: str) -> bool:
        with self._lock:
            return self._calls.pop(str(call_id), None) is not None

    def purge_expired(self) -> int:
        with self._lock:
            before = len(self._calls)
            self._purge_expired_calls(time.time())
            return before - len(self._calls)

    def purge_instance(self, instance_id: str) -> int:
        prefix = f"{instance_id}:"
        removed = 0
        with self._lock:
            for user_id in list(self._sessions):
                sessions = self._sessions[user_id]
                owned = {loc for loc in sessions if loc.startswith(prefix)}
                if not owned:
                    continue
                removed += len(owned)
                sessions.difference_update(owned)
                if not sessions:
                    del self._sessions[user_id]
                    self._online.pop(user_id, None)
                elif self._online.get(user_id) in owned:
                    self._online[user_id] = next(iter(sessions))
        return removed


# ----------------------------------------------------------------------
# Redis backend
# ----------------------------------------------------------------------

# KEYS[1] = sessions set, KEYS[2] = online hash; ARGV[1] = user id, ARGV[2] = locator
_UNREGISTER_LUA = """
redis.call('SREM', KEYS[1], ARGV[2])
local remaining = redis.call('SCARD', KEYS[1])
if remaining == 0 then
  redis.call('HDEL', KEYS[2], ARGV[1])
elseif redis.call('HGET', KEYS[2], ARGV[1]) == ARGV[2] then
  redis.call('HSET', KEYS[2], ARGV[1], redis.call('SRANDMEMBER', KEYS[1]))
end
return remaining
"""


class RedisPresenceStore(PresenceStore):
    def __init__(self, client: redis.Redis, prefix: str = "pulse"):
        self._redis = client
        self._prefix = prefix.rstrip(":")
        self._online_key = f"{self._prefix}:online-users"
        self._unregister = client.register_script(_UNREGISTER_LUA)

    @classmethod
    def from_url(cls, url: str, prefix: str = "pulse") -> "RedisPresenceStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
        return cls(client, prefix=prefix)

    def _sessions_key(self, user_id: str) -> str:
        return f"{self._prefix}:sessions:{user_id}"

    def _call_key(self, call_id: str) -> str:
        return f"{self._prefix}:call:{call_id}"

    def register(self, user_id: str, locator: str) -> None:
        user_id = str(user_id)
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(self._online_key, user_id, locator)
        pipe.sadd(self._sessions_key(user_id), locator)
        pipe.execute()

    def unregister(self, user_id: str, locator: str) -> int:
        user_id = str(user_id)
        return int(self._unregister(keys=[self._sessions_key(user_id), self._online_key], args=[user_id, locator]))

    def locate(self, user_id: str) -> str | None:
        return self._redis.hget(self._online_key, str(user_id))

    def is_online(self, user_id: str) -> bool:
        return bool(self._redis.hexists(self._online_key, str(user_id)))

    def online_among(self, user_ids: Iterable[str]) -> set[str]:
        ids = [str(u) for u in user_ids]
        if not ids:
            return set()
        values = self._redis.hmget(self._online_key, ids)
        return {uid for uid, loc in zip(ids, values) if loc}

    def touch_call_scope(self, call_id: str, ttl: int, **fields: Any) -> None:
        key = self._call_key(call_id)
        pipe = self._redis.pipeline(transaction=True)
        for k, v in fields.items():
            if v is None:
                continue
            pipe.hsetnx(key, k, json.dumps(v) if isinstance(v, (list, dict)) else str(v))
        pipe.expire(key, int(ttl))
        pipe.execute()

    def get_call_scope(self, call_id: str) -> dict | None:
        raw = self._redis.hgetall(self._call_key(call_id))
        if not raw:
            return None
        out = dict(raw)
        if "participants" in out:
            try:
                out["participants"] = json.loads(out["participants"])
            except ValueError:
                logging.warning("[presence] unreadable participants in call scope %s", call_id)
        return out

    def clear_call_scope(self, call_id: str) -> bool:
        return bool(self._redis.delete(self._call_key(call_id)))

    def purge_instance(self, instance_id: str) -> int:
        prefix = f"{instance_id}:"
        removed = 0
        for key in self._redis.scan_iter(match=f"{self._prefix}:sessions:*"):
            user_id = key.split(":sessions:", 1)[1]
            for locator in self._redis.smembers(key):
                if locator.startswith(prefix):
                    self.unregister(user_id, locator)
                    removed += 1
        # Entries whose sessions set is already gone.
        for user_id, locator in self._redis.hscan_iter(self._online_key):
            if locator.startswith(prefix) and not self._redis.exists(self._sessions_key(user_id)):
                self._redis.hdel(self._online_key, user_id)
                removed += 1
        return removed

    def ping(self) -> bool:
        return bool(self._redis.ping())


def create_presence_store(settings: dict) -> PresenceStore:
    backend = str(settings.get("presence_backend") or "auto").strip().lower()
    redis_url = (settings.get("redis_url") or "").strip()
    prefix = str(settings.get("presence_key_prefix") or "pulse")

    if backend == "auto":
        backend = "redis" if redis_url else "memory"

    if backend == "redis":
        if not redis_url:
            raise ValueError("presence_backend=redis requires redis_url")
        logging.info("[presence] using Redis presence store (prefix=%s)", prefix)
        return RedisPresenceStore.from_url(redis_url, prefix=prefix)

    if backend == "memory":
        logging.info("[presence] using in-process presence store (single instance only)")
        return MemoryPresenceStore()

    raise ValueError(f"Unknown presence_backend: {backend!r}")
