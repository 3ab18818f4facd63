#!/usr/bin/env python3
"""routes_chat.py

Chat-related HTTP endpoints (JSON, bearer JWT).

  POST  /api/v1/chat/conversations
  GET   /api/v1/chat/conversations
  POST  /api/v1/chat/messages
  GET   /api/v1/chat/conversations/<id>/messages?page&limit
  POST  /api/v1/chat/calls
  PATCH /api/v1/chat/calls/<id>
  POST  /api/v1/turn/credentials

Errors raised by the services (errors.RealtimeError) are rendered by the
app-level handler in server_init.py.
"""

from __future__ import annotations

import logging

from flask import current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from chat_service import serialize_conversation, serialize_message
from errors import MalformedPayloadError
from realtime.calls import serialize_call
from security import mint_turn_credentials


def _services():
    return current_app.config["PULSE_SERVICES"]


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise MalformedPayloadError("Expected a JSON object body")
    return data


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def register_chat_routes(app, settings, limiter=None):
    def _limit(rule, **kwargs):
        """Apply Flask-Limiter rule if available."""
        if limiter is None or not rule:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    @app.route("/api/v1/chat/conversations", methods=["POST"])
    @jwt_required()
    def api_start_conversation():
        data = _json_body()
        conv = _services().chat.start_conversation(
            get_jwt_identity(),
            data.get("participants"),
            is_group=bool(data.get("isGroup")),
            group_name=data.get("groupName"),
        )
        return jsonify(serialize_conversation(conv)), 201

    @app.route("/api/v1/chat/conversations", methods=["GET"])
    @jwt_required()
    def api_list_conversations():
        return jsonify({"conversations": _services().chat.list_conversations(get_jwt_identity())})

    @app.route("/api/v1/chat/messages", methods=["POST"])
    @jwt_required()
    @_limit(settings.get("rate_limit_send_message"))
    def api_send_message():
        data = _json_body()
        msg = _services().chat.send_message(
            get_jwt_identity(),
            data.get("conversationId"),
            text=data.get("text") or "",
            media=data.get("media") or [],
        )
        return jsonify(serialize_message(msg)), 201

    @app.route("/api/v1/chat/conversations/<conversation_id>/messages", methods=["GET"])
    @jwt_required()
    def api_get_messages(conversation_id):
        page = _services().chat.get_messages(
            get_jwt_identity(),
            conversation_id,
            page=_int_arg("page", 1),
            limit=_int_arg("limit", 50),
        )
        return jsonify(page)

    @app.route("/api/v1/chat/calls", methods=["POST"])
    @jwt_required()
    def api_start_call():
        data = _json_body()
        result = _services().calls.start_call(
            data.get("conversationId"),
            get_jwt_identity(),
            call_type=data.get("type") or "video",
        )
        return jsonify(result), 201

    @app.route("/api/v1/chat/calls/<call_id>", methods=["PATCH"])
    @jwt_required()
    def api_update_call(call_id):
        data = _json_body()
        call = _services().calls.update_call_status(call_id, data.get("status"), actor_id=get_jwt_identity())
        return jsonify(serialize_call(call))

    @app.route("/api/v1/turn/credentials", methods=["POST"])
    @jwt_required()
    @_limit(settings.get("rate_limit_turn_credentials"))
    def api_turn_credentials():
        secret = settings.get("turn_secret") or ""
        domain = settings.get("turn_domain") or ""
        if not secret or not domain:
            logging.warning("[turn] credentials requested but turn_secret/turn_domain are not configured")
            return jsonify({"ok": False, "error": "turn_not_configured"}), 503

        data = request.get_json(silent=True) or {}
        username = str(data.get("username") or get_jwt_identity())
        creds = mint_turn_credentials(
            secret,
            domain,
            username,
            ttl_seconds=int(settings.get("turn_credential_ttl_seconds") or 24 * 3600),
        )
        return jsonify(creds)
