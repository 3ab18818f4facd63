#!/usr/bin/env python3
"""
server_init.py
Builds and runs the Pulse Flask + Socket.IO application.

create_app() wires the injected stores into the realtime services and returns
(app, socketio). It does not start a server, so wsgi.py and the tests can
import it.
"""

from __future__ import annotations

import json
import os
import logging

# Async mode
# - Default: auto (eventlet, for WebSocket transport)
# - Override with: PULSE_SOCKETIO_ASYNC=threading|eventlet
PULSE_SOCKETIO_ASYNC = os.environ.get("PULSE_SOCKETIO_ASYNC", "auto").strip().lower()
if PULSE_SOCKETIO_ASYNC in {"auto", "eventlet"}:
    import eventlet

    eventlet.monkey_patch()

import secrets
import uuid
from datetime import timedelta, datetime
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Optional

import redis
from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO

from chat_service import ChatService
from constants import APP_VERSION, get_db_connection_string, redact_postgres_dsn, redact_redis_url, postgres_dsn_parts
from errors import (
    AuthenticationError,
    InvalidCallStateError,
    MalformedPayloadError,
    NotFoundError,
    PermissionDeniedError,
    RealtimeError,
)
from janitor import start_janitor
from notifications import Notifier
from realtime.calls import CallSignalingRelay
from realtime.delivery import DeliveryTracker
from realtime.lifecycle import LifecycleController
from realtime.presence import create_presence_store
from realtime.router import FanoutRouter
from realtime.state import ConnectionRegistry
from routes_chat import register_chat_routes
from routes_notifications import register_notification_routes
from secrets_policy import persist_secrets_enabled
from socket_handlers import register_socketio_handlers

_HTTP_STATUS = (
    (AuthenticationError, 401),
    (MalformedPayloadError, 400),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (InvalidCallStateError, 409),
)


def _get_socketio_message_queue(settings: Dict[str, Any]) -> Optional[str]:
    """Resolve the Socket.IO message queue URL.

    Priority:
      1) PULSE_SOCKETIO_MESSAGE_QUEUE
      2) SOCKETIO_MESSAGE_QUEUE
      3) server_config.json -> socketio_message_queue
      4) settings redis_url / REDIS_URL (common convention)
    """
    for key in ("PULSE_SOCKETIO_MESSAGE_QUEUE", "SOCKETIO_MESSAGE_QUEUE"):
        v = (os.environ.get(key) or "").strip()
        if v:
            return v

    v = (settings.get("socketio_message_queue") or "").strip()
    if v:
        return v

    v = (settings.get("redis_url") or os.environ.get("REDIS_URL") or "").strip()
    return v or None


def _require_redis_connectivity(redis_url: str) -> None:
    """Fail fast if a Redis message queue is configured but not reachable."""
    if not redis_url:
        return

    if not (redis_url.startswith("redis://") or redis_url.startswith("rediss://")):
        # Only validate redis:// style URLs here.
        return

    try:
        client = redis.Redis.from_url(
            redis_url,
            socket_connect_timeout=1,
            socket_timeout=1,
            health_check_interval=10,
        )
        client.ping()
        logging.info("[socketio] Redis message queue reachable")
    except redis.RedisError as exc:
        logging.critical(
            "[socketio] Redis message queue configured (%s) but Redis is not reachable: %s",
            redact_redis_url(redis_url),
            exc,
        )
        raise SystemExit(2)


def _log_startup_banner(settings: Dict[str, Any], settings_file: Optional[Path] | None) -> None:
    """Log a boot banner that makes 'wrong DB / wrong config' obvious."""
    cfg_path = Path(settings_file) if settings_file else None
    cfg_exists = bool(cfg_path and cfg_path.exists())
    cfg_mtime = None
    if cfg_exists:
        cfg_mtime = datetime.fromtimestamp(cfg_path.stat().st_mtime).isoformat(timespec="seconds")

    logging.info("==================== Pulse Boot ====================")
    logging.info("Pulse version: %s (instance=%s)", APP_VERSION, settings.get("instance_id"))
    logging.info("Settings file: %s (exists=%s%s)", str(cfg_path) if cfg_path else "<none>", cfg_exists,
                 f", mtime={cfg_mtime}" if cfg_mtime else "")
    logging.info("Storage backend: %s", settings.get("storage_backend"))
    if settings.get("storage_backend") == "postgres":
        dsn = get_db_connection_string(settings)
        parts = postgres_dsn_parts(dsn)
        logging.info(
            "Configured DB: host=%s port=%s db=%s user=%s",
            parts.get("host"), parts.get("port"), parts.get("db"), parts.get("user"),
        )
        logging.info("Configured DSN: %s", redact_postgres_dsn(dsn))
    logging.info("Presence backend: %s (redis=%s)", settings.get("presence_backend"),
                 redact_redis_url(settings.get("redis_url")) or "<none>")
    logging.info("=====================================================")


def create_chat_store(settings: Dict[str, Any]):
    """Return the chat store for settings['storage_backend'] (postgres | memory)."""
    backend = str(settings.get("storage_backend") or "postgres").strip().lower()
    if backend == "memory":
        from memory_store import MemoryChatStore

        logging.info("[storage] using in-process chat store (data is lost on restart)")
        store = MemoryChatStore()
    elif backend == "postgres":
        from database import PostgresChatStore, init_database, init_db_pool

        init_db_pool(
            minconn=int(settings.get("db_pool_min", 1)),
            maxconn=int(settings.get("db_pool_max", 10)),
            dsn=get_db_connection_string(settings),
        )
        init_database()
        store = PostgresChatStore()
    else:
        raise ValueError(f"Unknown storage_backend: {backend!r}")

    for user in settings.get("seed_users") or []:
        store.create_user(
            user.get("user_name") or str(user["id"]),
            full_name=user.get("full_name") or "",
            profile_photo=user.get("profile_photo"),
            user_id=str(user["id"]),
        )
    return store


def build_services(settings: Dict[str, Any], socketio: SocketIO, store, presence) -> SimpleNamespace:
    """Wire the realtime core around the injected stores."""
    registry = ConnectionRegistry()
    router = FanoutRouter(socketio, registry)
    notifier = Notifier(store, router)
    tracker = DeliveryTracker(store, router, spawn=socketio.start_background_task)
    calls = CallSignalingRelay(
        store,
        presence,
        router,
        notifier=notifier,
        signal_ttl=int(settings.get("call_signal_ttl_seconds", 60)),
    )
    lifecycle = LifecycleController(registry, presence, router, store.user_exists, settings["instance_id"])
    chat = ChatService(store, presence, tracker, notifier=notifier)
    return SimpleNamespace(
        settings=settings,
        store=store,
        presence=presence,
        registry=registry,
        router=router,
        notifier=notifier,
        tracker=tracker,
        calls=calls,
        lifecycle=lifecycle,
        chat=chat,
    )


def create_app(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
    store=None,
    presence=None,
) -> tuple[Flask, SocketIO]:
    """Create and configure the Flask + Socket.IO application.

    ``store`` / ``presence`` may be injected (tests); otherwise they are built
    from settings.
    """

    settings_file = Path(settings_file) if isinstance(settings_file, str) else settings_file
    if not settings.get("instance_id"):
        settings["instance_id"] = uuid.uuid4().hex[:12]

    # ───── Flask App Core ─────
    app = Flask(__name__)
    app.config["PULSE_SETTINGS_FILE"] = str(settings_file) if settings_file else None
    app.config["PULSE_SETTINGS"] = settings

    app.secret_key = _ensure_secret_key(settings, settings_file)
    app.config.update(
        SECRET_KEY=app.secret_key,
        JWT_SECRET_KEY=_ensure_jwt_secret(settings, settings_file),
        JWT_TOKEN_LOCATION=["headers"],
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(minutes=int(settings.get("access_token_minutes", 30))),
    )
    JWTManager(app)

    cors_origins = _normalize_cors_origins(settings.get("cors_allowed_origins"))
    if cors_origins:
        CORS(app, origins=cors_origins)

    storage_uri = settings.get("rate_limit_storage_uri") or "memory://"
    if limiter is None:
        limiter = Limiter(
            key_func=get_remote_address,
            storage_uri=storage_uri,
        )
    limiter.init_app(app)

    _log_startup_banner(settings, settings_file)

    # ───── SocketIO Setup ─────
    async_mode = "eventlet" if PULSE_SOCKETIO_ASYNC in {"auto", "eventlet"} else "threading"
    app.config["PULSE_SOCKETIO_ASYNC_MODE"] = async_mode

    # Multi-instance fan-out: rooms and sid-addressed emits travel over Redis.
    message_queue = _get_socketio_message_queue(settings)
    if message_queue:
        _require_redis_connectivity(message_queue)

    socketio = SocketIO(
        app,
        async_mode=async_mode,
        cors_allowed_origins=cors_origins or "*",
        logger=False,
        engineio_logger=False,
        ping_interval=20,
        ping_timeout=15,
        message_queue=message_queue,
        # One event at a time per connection, in arrival order.
        async_handlers=False,
    )
    app.config["PULSE_SOCKETIO"] = socketio

    # ───── Realtime core ─────
    if store is None:
        store = create_chat_store(settings)
    if presence is None:
        presence = create_presence_store(settings)

    # Locators left behind by a previous crash of this instance id.
    purged = presence.purge_instance(settings["instance_id"])
    if purged:
        logging.info("[presence] purged %d stale locator(s) for instance %s", purged, settings["instance_id"])

    services = build_services(settings, socketio, store, presence)
    app.config["PULSE_SERVICES"] = services

    # ───── HTTP errors ─────
    @app.errorhandler(RealtimeError)
    def _realtime_error(exc: RealtimeError):
        status = next((code for cls, code in _HTTP_STATUS if isinstance(exc, cls)), 500)
        if status >= 500:
            logging.exception("Unhandled service error: %s", exc)
        return jsonify({"ok": False, "error": exc.code, "message": exc.message}), status

    @app.route("/healthz")
    def healthz():
        try:
            presence_ok = presence.ping()
        except redis.RedisError as exc:
            logging.warning("[healthz] presence store ping failed: %s", exc)
            presence_ok = False
        body = {
            "ok": presence_ok,
            "version": APP_VERSION,
            "instance": settings["instance_id"],
            "connections": len(services.registry),
            "async_mode": async_mode,
        }
        return jsonify(body), 200 if presence_ok else 503

    # ───── Routes ─────
    register_chat_routes(app, settings, limiter=limiter)
    register_notification_routes(app, settings, limiter=limiter)

    register_socketio_handlers(socketio, settings, services)

    return app, socketio


def run_web_server(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> None:
    """Bootstrap the Flask-SocketIO app, attach blueprints & handlers, then run it."""

    app, socketio = create_app(settings, limiter=limiter, settings_file=settings_file)

    # ───── Run Server (dev / single-process) ─────
    host = settings.get("host") or "0.0.0.0"
    port = int(settings.get("port") or 3030)
    debug = bool(settings.get("debug") or False)

    logging.info("Starting Pulse on http://%s:%s (debug=%s)", host, port, debug)

    # Background janitor: unanswered calls -> missed, expired call scopes.
    # NOTE: When running under Gunicorn with multiple workers, run this as a
    # separate service (see janitor_runner.py) to avoid N janitors.
    if settings.get("janitor_enabled", True):
        start_janitor(settings, app.config["PULSE_SERVICES"])

    # Reduce console spam from long-polling by filtering Werkzeug access logs for /socket.io.
    class _PulseSocketIOAccessFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:  # type: ignore
            return "/socket.io/" not in record.getMessage()

    logging.getLogger("werkzeug").addFilter(_PulseSocketIOAccessFilter())

    use_reloader = bool(debug and app.config.get("PULSE_SOCKETIO_ASYNC_MODE") == "threading")
    try:
        socketio.run(
            app,
            host=host,
            port=port,
            debug=debug,
            use_reloader=use_reloader,
            log_output=False,
        )
    finally:
        from database import close_db_pool

        close_db_pool()
        logging.info("Pulse stopped")


# ───── Helpers ─────
def _normalize_cors_origins(val):
    if not val:
        return []
    if isinstance(val, str):
        return [o.strip() for o in val.split(",") if o.strip()]
    return [str(o).strip() for o in val if str(o).strip()]


def _ensure_secret_key(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    key = settings.get("secret_key") or os.getenv("SECRET_KEY")
    if key:
        return key

    key = secrets.token_urlsafe(64)
    settings["secret_key"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("secret_key generated and saved to settings.")
    else:
        logging.warning("Generated a one-off secret_key (NOT saved).")
    return key


def _ensure_jwt_secret(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    # Prefer explicit config, then env var. Only persist if we *generated* it
    # and secret persistence is enabled.
    key = settings.get("jwt_secret")
    if key:
        return str(key)

    env_key = os.getenv("JWT_SECRET_KEY")
    if env_key and str(env_key).strip():
        return str(env_key).strip()

    key = secrets.token_hex(32)
    settings["jwt_secret"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("jwt_secret generated and saved to settings.")
    else:
        logging.warning("Generated a one-off jwt_secret (NOT saved). Tokens from the auth service will not verify.")
    return key


def _persist_generated_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> bool:
    # If persistence is disabled, never write secrets into server_config.json.
    if not persist_secrets_enabled():
        return False
    if not settings_file or settings_file.suffix.lower() != ".json":
        return False

    existing: dict = {}
    if settings_file.exists():
        try:
            with settings_file.open("r", encoding="utf-8") as fp:
                existing = json.load(fp)
        except (OSError, ValueError) as exc:
            logging.warning("Not persisting generated key; %s is unreadable: %s", settings_file, exc)
            return False

    merged = dict(existing if isinstance(existing, dict) else {})
    merged.update({k: settings[k] for k in ("secret_key", "jwt_secret") if settings.get(k)})
    try:
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        with settings_file.open("w", encoding="utf-8") as fp:
            json.dump(merged, fp, indent=2)
    except OSError as exc:
        logging.warning("Could not persist generated key to %s: %s", settings_file, exc)
        return False
    return True
