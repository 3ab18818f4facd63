"""Connection lifecycle: handshake auth, presence, online/offline broadcasts.

Connect:  verify credential -> registry add -> presence register (completed
          before anyone hears about it) -> join ``user_<id>`` -> broadcast
          ``user-online`` to every other connection.
Disconnect: registry remove -> presence unregister -> ``user-offline`` only
          when the user has no live connection left on any instance.

A second device simply becomes the presence entry's locator. The first device
stays connected and keeps receiving its personal-room and conversation-room
events; only locator-addressed signaling follows the newest connection.
"""

from __future__ import annotations

import logging
from typing import Iterable

from flask import request
from flask_socketio import ConnectionRefusedError

from constants import EVT_USER_OFFLINE, EVT_USER_ONLINE, room_for_user
from errors import AuthenticationError
from realtime.presence import make_locator
from security import extract_bearer_token, verify_access_token


class LifecycleController:
    def __init__(self, registry, presence, router, user_exists, instance_id: str):
        self._registry = registry
        self._presence = presence
        self._router = router
        self._user_exists = user_exists
        self.instance_id = instance_id

    def locator_for(self, sid: str) -> str:
        return make_locator(self.instance_id, sid)

    def connect(self, sid: str, auth=None, headers=None, args=None) -> str:
        """Authenticate and register a new connection. Returns the user id.

        Raises AuthenticationError / TokenExpiredError on a bad credential.
        Any other failure leaves no registry or presence state behind.
        """
        token = extract_bearer_token(auth, headers, args)
        user_id = verify_access_token(token, self._user_exists)

        locator = self.locator_for(sid)
        self._registry.add(sid, user_id)
        try:
            self._presence.register(user_id, locator)
        except Exception:
            self._registry.remove(sid)
            raise

        try:
            self._router.join_rooms(sid, [room_for_user(user_id)])
            self._router.broadcast(EVT_USER_ONLINE, {"userId": user_id}, exclude_sid=sid)
        except Exception:
            # A refused connection never gets a disconnect event, so undo everything here.
            self._registry.remove(sid)
            try:
                self._presence.unregister(user_id, locator)
            except Exception:
                logging.exception("[lifecycle] presence rollback failed for %s (sid=%s)", user_id, sid)
            raise
        logging.info("[lifecycle] %s connected (sid=%s, live=%d)", user_id, sid, len(self._registry))
        return user_id

    def disconnect(self, sid: str) -> bool:
        """Tear down a connection. Returns True if ``user-offline`` was broadcast."""
        conn = self._registry.remove(sid)
        if conn is None:
            return False
        user_id = conn.user_id

        try:
            remaining = self._presence.unregister(user_id, self.locator_for(sid))
        except Exception:
            logging.exception("[lifecycle] presence cleanup failed for %s (sid=%s)", user_id, sid)
            remaining = len(self._registry.sids_for_user(user_id))

        logging.info("[lifecycle] %s disconnected (sid=%s, remaining=%s)", user_id, sid, remaining)
        if remaining:
            return False
        self._router.broadcast(EVT_USER_OFFLINE, {"userId": user_id}, exclude_sid=sid)
        return True

    def online_status(self, user_ids: Iterable) -> dict:
        ids = [str(u) for u in user_ids if u is not None and str(u).strip()]
        online = self._presence.online_among(ids)
        return {uid: uid in online for uid in ids}


def register(socketio, settings, ctx):
    """Register connect/disconnect handlers."""
    lifecycle = ctx.services.lifecycle

    @socketio.on("connect")
    def handle_connect(auth=None):
        sid = request.sid
        try:
            lifecycle.connect(sid, auth=auth, headers=request.headers, args=request.args)
        except AuthenticationError as exc:
            logging.info("[lifecycle] refused sid=%s: %s", sid, exc)
            raise ConnectionRefusedError(exc.reason)
        except Exception:
            logging.exception("[lifecycle] handshake failed for sid=%s", sid)
            raise ConnectionRefusedError("Server error")

    @socketio.on("disconnect")
    def handle_disconnect(*args, **kwargs):
        try:
            lifecycle.disconnect(request.sid)
        except Exception:
            # Teardown must finish even if the broadcast fails.
            logging.exception("[lifecycle] disconnect cleanup error for sid=%s", request.sid)
