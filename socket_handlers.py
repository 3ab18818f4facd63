#!/usr/bin/env python3
"""
socket_handlers.py

Socket.IO wiring for the Pulse realtime core.

Every inbound event handler is wrapped by ``safe_handler``: a failure while
processing one event is logged and reported to the originating connection as
an ``error`` event; the connection stays open and other connections are never
affected. Authentication errors raised inside a handler additionally
disconnect the connection.

Handler modules live in realtime/*.py and expose ``register(socketio, settings, ctx)``.
"""

from __future__ import annotations

import functools
import logging
from types import SimpleNamespace

from flask import request
from flask_socketio import disconnect

from constants import EVT_ERROR
from errors import AuthenticationError, HandlerFailure, RealtimeError


def register_socketio_handlers(socketio, settings, services):
    """Registers all Socket.IO event handlers against the given service container."""

    def _current_user() -> str:
        """Principal bound to the current connection at handshake."""
        user_id = services.registry.user_for(request.sid)
        if user_id is None:
            raise AuthenticationError("Connection is not authenticated")
        return user_id

    def _report(sid: str, event: str, message: str, code: str) -> dict:
        socketio.emit(EVT_ERROR, {"message": message, "event": event, "code": code}, to=sid)
        return {"ok": False, "error": code, "message": message}

    def safe_handler(event: str):
        """Wrap an event handler so one bad event never breaks the connection."""

        def deco(fn):
            @functools.wraps(fn)
            def wrapper(*args):
                sid = request.sid
                try:
                    return fn(*args)
                except AuthenticationError as exc:
                    logging.warning("[socket] auth failure in %s (sid=%s): %s", event, sid, exc)
                    ack = _report(sid, event, exc.reason, exc.code)
                    disconnect(sid=sid)
                    return ack
                except RealtimeError as exc:
                    logging.info("[socket] %s rejected (sid=%s): %s", event, sid, exc.message)
                    return _report(sid, event, exc.message, exc.code)
                except Exception as exc:
                    failure = HandlerFailure(event, exc)
                    logging.exception("[socket] handler failure (sid=%s): %s", sid, failure)
                    return _report(sid, event, "Event processing failed", failure.code)

            return wrapper

        return deco

    # ───────────────────────────────────────────────────────────────────
    # Register split handler modules (see realtime/*.py)
    # ───────────────────────────────────────────────────────────────────
    ctx = SimpleNamespace(
        services=services,
        safe_handler=safe_handler,
        current_user=_current_user,
    )
    from realtime import chat, lifecycle, voice
    lifecycle.register(socketio, settings, ctx)
    chat.register(socketio, settings, ctx)
    voice.register(socketio, settings, ctx)
    return ctx
