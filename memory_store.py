#!/usr/bin/env python3
"""memory_store.py

In-process chat store with the same interface as database.PostgresChatStore.

Used for single-process development (``storage_backend=memory``) and the test
suite. Every mutation runs inside one critical section, which gives the same
add-to-set / compare-and-transition guarantees the SQL statements give.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class MemoryChatStore:
    def __init__(self):
        self._users: dict[str, dict] = {}
        self._conversations: dict[str, dict] = {}
        self._messages: dict[str, dict] = {}
        self._calls: dict[str, dict] = {}
        self._notifications: dict[str, dict] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def create_user(self, user_name: str, full_name: str = "", profile_photo: str | None = None,
                    user_id: str | None = None) -> dict:
        user = {
            "id": str(user_id or _new_id()),
            "user_name": user_name,
            "full_name": full_name,
            "profile_photo": profile_photo,
            "created_at": _now(),
        }
        with self._lock:
            self._users[user["id"]] = user
        return dict(user)

    def get_user(self, user_id: str) -> dict | None:
        with self._lock:
            user = self._users.get(str(user_id))
            return dict(user) if user else None

    def user_exists(self, user_id: str) -> bool:
        with self._lock:
            return str(user_id) in self._users

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    def create_conversation(self, participants: Iterable[str], is_group: bool = False,
                            group_name: str | None = None) -> dict:
        now = _now()
        conv = {
            "id": _new_id(),
            "participants": list(dict.fromkeys(str(p) for p in participants)),
            "is_group": bool(is_group),
            "group_name": group_name,
            "last_message_id": None,
            "created_at": now,
            "updated_at": now,
        }
        with self._lock:
            self._conversations[conv["id"]] = conv
        return copy.deepcopy(conv)

    def get_conversation(self, conversation_id: str) -> dict | None:
        with self._lock:
            conv = self._conversations.get(str(conversation_id))
            return copy.deepcopy(conv) if conv else None

    def list_conversations(self, user_id: str) -> list[dict]:
        """Conversations ``user_id`` takes part in, most recently active first."""
        user_id = str(user_id)
        with self._lock:
            rows = [copy.deepcopy(c) for c in self._conversations.values() if user_id in c["participants"]]
        rows.sort(key=lambda c: c["updated_at"] or c["created_at"], reverse=True)
        return rows

    def set_last_message(self, conversation_id: str, message_id: str) -> None:
        with self._lock:
            conv = self._conversations.get(str(conversation_id))
            if conv:
                conv["last_message_id"] = message_id
                conv["updated_at"] = _now()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def create_message(self, conversation_id: str, sender_id: str, text: str = "",
                       media: list[str] | None = None, call_id: str | None = None) -> dict:
        msg = {
            "id": _new_id(),
            "conversation_id": str(conversation_id),
            "sender_id": str(sender_id),
            "text": text or "",
            "media": list(media or []),
            "call_id": call_id,
            "delivered_to": [],
            "read_by": [],
            "status": "sent",
            "created_at": _now(),
        }
        with self._lock:
            self._messages[msg["id"]] = msg
        return copy.deepcopy(msg)

    def get_message(self, message_id: str) -> dict | None:
        with self._lock:
            msg = self._messages.get(str(message_id))
            return copy.deepcopy(msg) if msg else None

    def list_messages(self, conversation_id: str, offset: int = 0, limit: int = 50) -> list[dict]:
        with self._lock:
            rows = [m for m in self._messages.values() if m["conversation_id"] == str(conversation_id)]
            rows.sort(key=lambda m: m["created_at"])
            return copy.deepcopy(rows[offset:offset + limit])

    def count_messages(self, conversation_id: str) -> int:
        with self._lock:
            return sum(1 for m in self._messages.values() if m["conversation_id"] == str(conversation_id))

    def _recipient_guard(self, msg: dict, user_id: str) -> bool:
        if user_id == msg["sender_id"]:
            return False
        conv = self._conversations.get(msg["conversation_id"])
        return bool(conv) and user_id in conv["participants"]

    def add_delivered(self, message_id: str, user_id: str) -> tuple[dict | None, bool]:
        user_id = str(user_id)
        with self._lock:
            msg = self._messages.get(str(message_id))
            if msg is None:
                return None, False
            if not self._recipient_guard(msg, user_id) or user_id in msg["delivered_to"]:
                return copy.deepcopy(msg), False
            msg["delivered_to"].append(user_id)
            if msg["status"] == "sent":
                msg["status"] = "delivered"
            return copy.deepcopy(msg), True

    def add_read(self, message_id: str, user_id: str) -> tuple[dict | None, bool]:
        user_id = str(user_id)
        with self._lock:
            msg = self._messages.get(str(message_id))
            if msg is None:
                return None, False
            if not self._recipient_guard(msg, user_id) or user_id in msg["read_by"]:
                return copy.deepcopy(msg), False
            msg["read_by"].append(user_id)
            conv = self._conversations[msg["conversation_id"]]
            recipients = {p for p in conv["participants"] if p != msg["sender_id"]}
            if recipients.issubset(msg["read_by"]):
                msg["status"] = "seen"
            return copy.deepcopy(msg), True

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    def create_call(self, conversation_id: str | None, participants: Iterable[str], initiator_id: str,
                    call_type: str) -> dict:
        call = {
            "id": _new_id(),
            "conversation_id": conversation_id,
            "participants": list(dict.fromkeys(str(p) for p in participants)),
            "initiator_id": str(initiator_id),
            "call_type": call_type,
            "status": "initiated",
            "created_at": _now(),
            "started_at": None,
            "ended_at": None,
        }
        with self._lock:
            self._calls[call["id"]] = call
        return copy.deepcopy(call)

    def get_call(self, call_id: str) -> dict | None:
        with self._lock:
            call = self._calls.get(str(call_id))
            return copy.deepcopy(call) if call else None

    def transition_call(self, call_id: str, status: str, allowed_from: Iterable[str]) -> dict | None:
        """Move a call to `status` only if its current status is in `allowed_from`."""
        with self._lock:
            call = self._calls.get(str(call_id))
            if call is None or call["status"] not in set(allowed_from):
                return None
            call["status"] = status
            if status == "ongoing":
                call["started_at"] = _now()
            elif status == "ended":
                call["ended_at"] = _now()
            return copy.deepcopy(call)

    def list_stale_initiated_calls(self, older_than_seconds: float) -> list[str]:
        cutoff = _now() - timedelta(seconds=float(older_than_seconds))
        with self._lock:
            return [c["id"] for c in self._calls.values() if c["status"] == "initiated" and c["created_at"] < cutoff]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def create_notifications(self, items: Iterable[dict]) -> list[dict]:
        created = []
        with self._lock:
            for item in items:
                row = {
                    "id": _new_id(),
                    "user_id": str(item["user_id"]),
                    "type": item["type"],
                    "actor_id": item.get("actor_id"),
                    "conversation_id": item.get("conversation_id"),
                    "message_id": item.get("message_id"),
                    "post_id": item.get("post_id"),
                    "comment_id": item.get("comment_id"),
                    "extra": item.get("extra"),
                    "read": False,
                    "created_at": _now(),
                }
                self._notifications[row["id"]] = row
                created.append(self._populate_notification(row))
        return created

    def _populate_notification(self, row: dict) -> dict:
        out = copy.deepcopy(row)
        actor = self._users.get(row.get("actor_id") or "")
        out["actor"] = (
            {k: actor[k] for k in ("id", "user_name", "full_name", "profile_photo")} if actor else None
        )
        conv = self._conversations.get(row.get("conversation_id") or "")
        out["conversation"] = (
            {"id": conv["id"], "is_group": conv["is_group"], "group_name": conv["group_name"]} if conv else None
        )
        return out

    def list_notifications(self, user_id: str, offset: int = 0, limit: int = 20) -> list[dict]:
        with self._lock:
            rows = [n for n in self._notifications.values() if n["user_id"] == str(user_id)]
            rows.sort(key=lambda n: n["created_at"], reverse=True)
            return [self._populate_notification(n) for n in rows[offset:offset + limit]]

    def count_notifications(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for n in self._notifications.values() if n["user_id"] == str(user_id))

    def get_notification(self, notification_id: str) -> dict | None:
        with self._lock:
            row = self._notifications.get(str(notification_id))
            return self._populate_notification(row) if row else None

    def mark_notifications_read(self, notification_ids: Iterable[str]) -> int:
        changed = 0
        with self._lock:
            for nid in notification_ids:
                row = self._notifications.get(str(nid))
                if row and not row["read"]:
                    row["read"] = True
                    changed += 1
        return changed
