#!/usr/bin/env python3
"""routes_notifications.py

Notification inbox.

  GET   /api/v1/notifications?page&limit   newest first; fetched ones are marked read
  PATCH /api/v1/notifications/<id>/read
"""

from __future__ import annotations

from flask import current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from errors import NotFoundError, PermissionDeniedError
from notifications import serialize_notification


def _store():
    return current_app.config["PULSE_SERVICES"].store


def register_notification_routes(app, settings, limiter=None):
    @app.route("/api/v1/notifications", methods=["GET"])
    @jwt_required()
    def api_list_notifications():
        user_id = str(get_jwt_identity())
        try:
            page = max(1, int(request.args.get("page", 1)))
            limit = max(1, min(int(request.args.get("limit", 20)), 100))
        except (TypeError, ValueError):
            page, limit = 1, 20

        store = _store()
        rows = store.list_notifications(user_id, offset=(page - 1) * limit, limit=limit)
        store.mark_notifications_read([r["id"] for r in rows if not r.get("read")])
        for r in rows:
            r["read"] = True

        return jsonify({
            "page": page,
            "limit": limit,
            "total": store.count_notifications(user_id),
            "notifications": [serialize_notification(r) for r in rows],
        })

    @app.route("/api/v1/notifications/<notification_id>/read", methods=["PATCH"])
    @jwt_required()
    def api_mark_notification_read(notification_id):
        store = _store()
        row = store.get_notification(notification_id)
        if row is None:
            raise NotFoundError("Notification not found")
        if row["user_id"] != str(get_jwt_identity()):
            raise PermissionDeniedError("Not authorized to mark this notification")

        if not row.get("read"):
            store.mark_notifications_read([row["id"]])
            row["read"] = True
        return jsonify(serialize_notification(row))
