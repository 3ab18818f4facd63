#!/usr/bin/env python3
"""config.py

Settings for the Pulse realtime server.

``server_config.json`` is a *plaintext* JSON settings file. Keep secrets out of
it by preferring environment variables (``DATABASE_URL``, ``REDIS_URL``,
``JWT_SECRET_KEY``, ``TURN_SECRET``) and exporting ``PULSE_PERSIST_SECRETS=0``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from constants import DEFAULT_DB_CONNECTION_STRING, sanitize_postgres_dsn
from secrets_policy import scrub_secrets_for_persist


def get_default_settings() -> Dict[str, Any]:
    """Return the default settings.

    server_init.py generates (and, if allowed, persists) secret_key and
    jwt_secret when they are missing.
    """
    dsn = sanitize_postgres_dsn(
        os.getenv("DATABASE_URL")
        or os.getenv("DB_CONNECTION_STRING")
        or DEFAULT_DB_CONNECTION_STRING
    )

    return {
        # ── Core server ──────────────────────────────────────────────────
        "server_name": "Pulse",
        "host": "0.0.0.0",
        "port": 3030,
        "debug": False,
        # Identifies this process in presence locators. Empty = random per boot.
        "instance_id": "",

        # Secrets (server_init.py will generate/persist if missing)
        "secret_key": "",
        "jwt_secret": "",
        "access_token_minutes": 30,

        # ── Storage ──────────────────────────────────────────────────────
        # postgres | memory
        "storage_backend": "postgres",
        "database_url": dsn,
        "db_pool_min": 1,
        "db_pool_max": 10,
        # Dev only: [{"id": "...", "user_name": "...", "full_name": "..."}] upserted at boot.
        "seed_users": [],

        # ── Presence / multi-instance fan-out ────────────────────────────
        # redis | memory | auto (redis when redis_url is set)
        "presence_backend": "auto",
        "redis_url": "",
        "presence_key_prefix": "pulse",
        "socketio_message_queue": "",
        "cors_allowed_origins": "",

        # ── Calls ────────────────────────────────────────────────────────
        "call_signal_ttl_seconds": 60,
        "call_ring_timeout_seconds": 60,
        "turn_secret": "",
        "turn_domain": "",
        "turn_credential_ttl_seconds": 24 * 3600,

        # ── Rate limits (Flask-Limiter syntax) ───────────────────────────
        "rate_limit_storage_uri": "memory://",
        "rate_limit_send_message": "60 per minute",
        "rate_limit_turn_credentials": "30 per minute",

        # ── Background janitor ───────────────────────────────────────────
        "janitor_enabled": True,
        "janitor_interval_seconds": 15,

        # ── Logging ──────────────────────────────────────────────────────
        "log_level": "INFO",
        "log_format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "log_file_path": "logs/server.log",
    }


def load_settings(path: Path) -> dict:
    """Load settings from JSON on top of the defaults.

    Returns defaults if the file is missing. A corrupted file is backed up and
    ignored so generated secrets can be persisted into a fresh file.
    """
    settings = get_default_settings()
    if not path.exists():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            data = json.load(fp)
    except (OSError, ValueError) as exc:
        logging.warning("Could not parse %s as JSON: %s", path, exc)
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        bad_path = path.with_suffix(path.suffix + f".bad-{ts}")
        try:
            path.rename(bad_path)
            logging.warning("Backed up invalid settings file to: %s", bad_path)
        except OSError as e2:
            logging.warning("Could not back up invalid settings file: %s", e2)
        return settings

    if isinstance(data, dict):
        settings.update(data)
    return settings


def save_settings(path: Path, settings: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # If PULSE_PERSIST_SECRETS=0, secrets stay in env/.env only.
    to_save = scrub_secrets_for_persist(settings)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(to_save, fp, indent=2)


def apply_env_overrides(settings: dict) -> None:
    """Apply env overrides for secrets and runtime deployment."""

    def _str_env(*names: str) -> str | None:
        for n in names:
            v = os.getenv(n)
            if v is not None and v.strip() != "":
                return v.strip()
        return None

    def _int_env(*names: str) -> int | None:
        v = _str_env(*names)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    db = _str_env("DB_CONNECTION_STRING", "DATABASE_URL")
    if db:
        settings["database_url"] = str(sanitize_postgres_dsn(db))

    secret = _str_env("SECRET_KEY")
    if secret:
        settings["secret_key"] = secret

    jwt_secret = _str_env("JWT_SECRET_KEY", "JWT_SECRET", "PULSE_JWT_SECRET")
    if jwt_secret:
        settings["jwt_secret"] = jwt_secret

    redis_url = _str_env("PULSE_REDIS_URL", "REDIS_URL")
    if redis_url:
        settings["redis_url"] = redis_url

    mq = _str_env("PULSE_SOCKETIO_MESSAGE_QUEUE", "SOCKETIO_MESSAGE_QUEUE")
    if mq:
        settings["socketio_message_queue"] = mq

    instance_id = _str_env("PULSE_INSTANCE_ID")
    if instance_id:
        settings["instance_id"] = instance_id

    for key, env in (
        ("storage_backend", "PULSE_STORAGE_BACKEND"),
        ("presence_backend", "PULSE_PRESENCE_BACKEND"),
        ("turn_secret", "TURN_SECRET"),
        ("turn_domain", "TURN_DOMAIN"),
        ("cors_allowed_origins", "CLIENT_URL"),
        ("log_level", "PULSE_LOG_LEVEL"),
    ):
        v = _str_env(env)
        if v:
            settings[key] = v

    port = _int_env("PULSE_PORT", "PORT")
    if port:
        settings["port"] = port
