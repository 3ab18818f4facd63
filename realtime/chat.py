"""Socket.IO handlers: conversations, typing, delivery/read acks, presence queries."""

from __future__ import annotations

from flask import request

from constants import EVT_NEW_MESSAGE, EVT_STOP_TYPING, EVT_TYPING
from errors import MalformedPayloadError


def _id_list(data, key: str) -> list[str]:
    """Accept either a bare array or ``{key: [...]}``."""
    if isinstance(data, dict):
        data = data.get(key)
    if not isinstance(data, (list, tuple)):
        raise MalformedPayloadError(f"Expected an array of ids ({key})")
    return [str(v) for v in data if v is not None and str(v).strip()]


def _single_id(data, key: str) -> str:
    """Accept either a bare id or ``{key: id}``."""
    if isinstance(data, dict):
        data = data.get(key)
    if isinstance(data, (str, int)) and str(data).strip():
        return str(data).strip()
    raise MalformedPayloadError(f"Missing {key}")


def register(socketio, settings, ctx):
    """Register Socket.IO event handlers for this module."""
    services = ctx.services
    safe_handler = ctx.safe_handler
    current_user = ctx.current_user

    @socketio.on("join-conversations")
    @safe_handler("join-conversations")
    def handle_join_conversations(data=None):
        current_user()
        rooms = services.router.join_rooms(request.sid, _id_list(data, "conversationIds"))
        return {"ok": True, "joined": rooms}

    @socketio.on("leave-conversations")
    @safe_handler("leave-conversations")
    def handle_leave_conversations(data=None):
        current_user()
        rooms = services.router.leave_rooms(request.sid, _id_list(data, "conversationIds"))
        return {"ok": True, "left": rooms}

    @socketio.on("send-message")
    @safe_handler("send-message")
    def handle_send_message(message=None):
        user_id = current_user()
        if not isinstance(message, dict):
            raise MalformedPayloadError("Message envelope must be an object")
        conversation_id = _single_id(message.get("conversationId"), "conversationId")
        # The sender is always the authenticated connection.
        message = dict(message, senderId=user_id)
        services.router.broadcast_to_room(conversation_id, EVT_NEW_MESSAGE, message)
        return {"ok": True}

    def _typing(event: str, data) -> dict:
        user_id = current_user()
        conversation_id = _single_id(data, "conversationId")
        services.router.broadcast_to_room(
            conversation_id,
            event,
            {"userId": user_id, "conversationId": conversation_id},
            exclude_sid=request.sid,
        )
        return {"ok": True}

    @socketio.on("typing")
    @safe_handler("typing")
    def handle_typing(data=None):
        return _typing(EVT_TYPING, data)

    @socketio.on("stop-typing")
    @safe_handler("stop-typing")
    def handle_stop_typing(data=None):
        return _typing(EVT_STOP_TYPING, data)

    @socketio.on("message-delivered")
    @safe_handler("message-delivered")
    def handle_message_delivered(data=None):
        msg = services.tracker.mark_delivered(_single_id(data, "messageId"), current_user())
        return {"ok": True, "status": msg["status"] if msg else None}

    @socketio.on("message-seen")
    @safe_handler("message-seen")
    def handle_message_seen(data=None):
        msg = services.tracker.mark_seen(_single_id(data, "messageId"), current_user())
        return {"ok": True, "status": msg["status"] if msg else None}

    @socketio.on("batch-message-seen")
    @safe_handler("batch-message-seen")
    def handle_batch_message_seen(data=None):
        updated = services.tracker.mark_seen_many(_id_list(data, "messageIds"), current_user())
        return {"ok": True, "updated": len(updated)}

    @socketio.on("get-online-status")
    @safe_handler("get-online-status")
    def handle_get_online_status(data=None):
        current_user()
        statuses = services.lifecycle.online_status(_id_list(data, "userIds"))
        socketio.emit("online-status", statuses, to=request.sid)
        return {"ok": True, "statuses": statuses}
