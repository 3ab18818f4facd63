"""chat_service.py

Request paths that drive the realtime core from HTTP:

  - start_conversation(): create a conversation (collaborator model)
  - list_conversations(): the caller's conversations, most recently active first
  - send_message(): persist, mark delivered for every recipient present
    right now, notify participants
  - get_messages(): oldest-first page, marks the caller's unread ones seen

The Socket.IO ``send-message`` event is the push half of sending: clients
POST the message here, then emit the stored envelope to the conversation room.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from constants import is_valid_media_url, iso_or_none
from errors import MalformedPayloadError, NotFoundError, PermissionDeniedError

MAX_TEXT_LENGTH = 5000
MAX_MEDIA_ITEMS = 10


def message_type(msg: dict) -> str:
    if msg.get("call_id"):
        return "call"
    if msg.get("media"):
        return "media"
    return "text"


def serialize_message(msg: dict) -> dict:
    return {
        "id": msg["id"],
        "conversationId": msg["conversation_id"],
        "senderId": msg["sender_id"],
        "text": msg.get("text") or "",
        "media": list(msg.get("media") or []),
        "call": msg.get("call_id"),
        "type": message_type(msg),
        "deliveredTo": list(msg.get("delivered_to") or []),
        "readBy": list(msg.get("read_by") or []),
        "status": msg["status"],
        "createdAt": iso_or_none(msg.get("created_at")),
    }


def serialize_conversation(conv: dict) -> dict:
    return {
        "id": conv["id"],
        "participants": list(conv.get("participants") or []),
        "isGroup": bool(conv.get("is_group")),
        "groupName": conv.get("group_name"),
        "lastMessage": conv.get("last_message_id"),
        "updatedAt": iso_or_none(conv.get("updated_at")),
    }


class ChatService:
    def __init__(self, store, presence, tracker, notifier=None):
        self._store = store
        self._presence = presence
        self._tracker = tracker
        self._notifier = notifier

    def _participant_conversation(self, conversation_id, user_id) -> dict:
        conv = self._store.get_conversation(conversation_id) if conversation_id else None
        if conv is None:
            raise NotFoundError("Conversation not found")
        if str(user_id) not in conv["participants"]:
            raise PermissionDeniedError("Not a participant")
        return conv

    def start_conversation(self, creator_id, participants: Iterable, is_group: bool = False,
                           group_name: Optional[str] = None) -> dict:
        if not isinstance(participants, (list, tuple)):
            raise MalformedPayloadError("Participants must be an array")
        members = [str(p) for p in participants if p is not None and str(p).strip()]
        if str(creator_id) not in members:
            members.insert(0, str(creator_id))
        if len(set(members)) < 2:
            raise MalformedPayloadError("A conversation needs at least two participants")
        for member in members:
            if not self._store.user_exists(member):
                raise NotFoundError(f"User {member} not found")
        if is_group and not (group_name or "").strip():
            raise MalformedPayloadError("Group conversations need a name")
        return self._store.create_conversation(members, is_group=bool(is_group),
                                               group_name=(group_name or "").strip() or None)

    def list_conversations(self, user_id) -> list[dict]:
        return [serialize_conversation(c) for c in self._store.list_conversations(str(user_id))]

    def send_message(self, sender_id, conversation_id, text: str = "", media: Optional[list] = None) -> dict:
        text = text if isinstance(text, str) else ""
        media = media or []
        if not isinstance(media, list) or len(media) > MAX_MEDIA_ITEMS:
            raise MalformedPayloadError("media must be a list of at most %d URLs" % MAX_MEDIA_ITEMS)
        if any(not is_valid_media_url(u) for u in media):
            raise MalformedPayloadError("Invalid media URL")
        if not text.strip() and not media:
            raise MalformedPayloadError("Message must have text or media")
        if len(text) > MAX_TEXT_LENGTH:
            raise MalformedPayloadError("Message too long")

        sender_id = str(sender_id)
        conv = self._participant_conversation(conversation_id, sender_id)

        msg = self._store.create_message(conv["id"], sender_id, text=text, media=media)
        self._store.set_last_message(conv["id"], msg["id"])

        recipients = [p for p in conv["participants"] if p != sender_id]
        for user_id in self._presence.online_among(recipients):
            msg = self._tracker.mark_delivered(msg["id"], user_id) or msg

        if self._notifier is not None:
            self._notifier.notify_participants(conv, msg["id"], sender_id, "message")

        logging.debug("[chat] %s -> %s message %s (%s)", sender_id, conv["id"], msg["id"], msg["status"])
        return msg

    def get_messages(self, user_id, conversation_id, page: int = 1, limit: int = 50) -> dict:
        page = max(1, int(page or 1))
        limit = max(1, min(int(limit or 50), 200))
        user_id = str(user_id)
        conv = self._participant_conversation(conversation_id, user_id)

        rows = self._store.list_messages(conv["id"], offset=(page - 1) * limit, limit=limit)
        unread = [m["id"] for m in rows if m["sender_id"] != user_id and user_id not in m["read_by"]]
        if unread:
            updated = {m["id"]: m for m in self._tracker.mark_seen_many(unread, user_id)}
            rows = [updated.get(m["id"], m) for m in rows]

        return {
            "page": page,
            "limit": limit,
            "total": self._store.count_messages(conv["id"]),
            "messages": [serialize_message(m) for m in rows],
        }
