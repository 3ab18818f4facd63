"""wsgi.py

Gunicorn entrypoint for Pulse.

Run (example):
  PULSE_SOCKETIO_ASYNC=eventlet \
  REDIS_URL=redis://127.0.0.1:6379/0 \
  gunicorn -c gunicorn_conf.py wsgi:app

Notes:
- For multi-worker Socket.IO, a Redis message queue and the Redis presence
  backend are required.
- Do NOT start the janitor loop inside Gunicorn workers; run janitor_runner.py
  as a separate systemd service.
"""

from __future__ import annotations

import os

# ---- Ensure eventlet monkey_patch happens as early as possible ----
_async = (os.environ.get("PULSE_SOCKETIO_ASYNC", "auto") or "auto").strip().lower()
if _async in {"auto", "eventlet"}:
    import eventlet

    eventlet.monkey_patch()

from pathlib import Path

from constants import CONFIG_FILE
from config import load_settings, apply_env_overrides
from main import configure_logging
from server_init import create_app


def _resolve_config_path() -> Path:
    # Prefer explicit env path when running under systemd.
    p = os.environ.get("PULSE_CONFIG") or os.environ.get("PULSE_CONFIG_FILE") or CONFIG_FILE
    return Path(p)


_settings_path = _resolve_config_path()
_settings = load_settings(_settings_path)
apply_env_overrides(_settings)
configure_logging(_settings)

# Create the Flask app + Socket.IO integration.
app, socketio = create_app(_settings, limiter=None, settings_file=_settings_path)

# Expose these for tooling / introspection.
app.config["PULSE_GUNICORN"] = True
app.config["PULSE_SETTINGS_PATH"] = str(_settings_path)
