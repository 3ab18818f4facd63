"""notifications.py

Notification creation, realtime delivery and display strings.

``format_notification_message`` is the single place a notification's display
string is derived. Both the inbox listing and mark-as-read paths go through
``serialize_notification`` which calls it.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from constants import EVT_NEW_NOTIFICATION, iso_or_none


def format_notification_message(ntype: str, actor: Optional[dict], conversation: Optional[dict]) -> str:
    actor_name = (actor or {}).get("user_name") or "Someone"

    if ntype == "like":
        return f"{actor_name} liked your post"
    if ntype == "comment":
        return f"{actor_name} commented on your post"
    if ntype == "share":
        return f"{actor_name} shared your post"
    if ntype == "mention":
        return f"{actor_name} mentioned you"
    if ntype == "follow":
        return f"{actor_name} started following you"
    if ntype == "tag":
        return f"{actor_name} tagged you in a post"
    if ntype == "message":
        if conversation and conversation.get("is_group"):
            return f"New message in {conversation.get('group_name') or 'a group'}"
        return f"{actor_name} sent you a message"
    if ntype == "call":
        return f"{actor_name} is calling you"
    return "New notification"


def _actor_wire(actor: Optional[dict]) -> Optional[dict]:
    if not actor:
        return None
    return {
        "id": actor.get("id"),
        "userName": actor.get("user_name"),
        "fullName": actor.get("full_name"),
        "profilePhoto": actor.get("profile_photo"),
    }


def _conversation_wire(conversation: Optional[dict]) -> Optional[dict]:
    if not conversation:
        return None
    return {
        "id": conversation.get("id"),
        "isGroup": bool(conversation.get("is_group")),
        "groupName": conversation.get("group_name"),
    }


def serialize_notification(row: dict) -> dict:
    actor = row.get("actor")
    conversation = row.get("conversation")
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "type": row["type"],
        "read": bool(row.get("read")),
        "createdAt": iso_or_none(row.get("created_at")),
        "data": {
            "actor": _actor_wire(actor) or row.get("actor_id"),
            "conversation": _conversation_wire(conversation) or row.get("conversation_id"),
            "message": row.get("message_id"),
            "post": row.get("post_id"),
            "comment": row.get("comment_id"),
            "isGroup": bool((conversation or {}).get("is_group")),
            "groupName": (conversation or {}).get("group_name"),
            "extra": row.get("extra"),
        },
        "message": format_notification_message(row["type"], actor, conversation),
    }


class Notifier:
    """Persists notifications and pushes ``new-notification`` to each recipient's personal room.

    Delivery is best-effort: failures are logged and never fail the caller's
    operation (sending a message, starting a call).
    """

    def __init__(self, store, router):
        self._store = store
        self._router = router

    def notify_user(self, user_id: str, ntype: str, **data: Any) -> Optional[dict]:
        created = self._create_and_push([dict(data, user_id=str(user_id), type=ntype)])
        return created[0] if created else None

    def notify_participants(self, conversation: dict, message_id: str, sender_id: str, kind: str) -> list[dict]:
        """Notify every participant except the sender about a message or call."""
        ntype = "call" if kind == "call" else "message"
        items = [
            {
                "user_id": p,
                "type": ntype,
                "actor_id": str(sender_id),
                "conversation_id": conversation["id"],
                "message_id": message_id,
            }
            for p in conversation.get("participants") or []
            if str(p) != str(sender_id)
        ]
        return self._create_and_push(items)

    def _create_and_push(self, items: Iterable[dict]) -> list[dict]:
        items = list(items)
        if not items:
            return []
        try:
            rows = self._store.create_notifications(items)
        except Exception:
            logging.exception("[notify] failed to persist %d notification(s)", len(items))
            return []

        out = []
        for row in rows:
            payload = serialize_notification(row)
            self._router.broadcast_to_user(row["user_id"], EVT_NEW_NOTIFICATION, payload)
            out.append(payload)
        return out
