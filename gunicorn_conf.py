"""gunicorn_conf.py

Gunicorn config for Pulse + Flask-SocketIO using Eventlet.

Every worker is a separate Pulse instance: it gets its own instance id (used in
presence locators) and, with more than one worker, presence and Socket.IO
fan-out must go through Redis.

Environment variables:
  PULSE_BIND=0.0.0.0:3030
  PULSE_WORKERS=1
  PULSE_GUNICORN_LOGLEVEL=info
  PULSE_GUNICORN_TIMEOUT=60
  PULSE_INSTANCE_ID=<prefix>      worker ids become <prefix>-w<spawn number>
  REDIS_URL=redis://127.0.0.1:6379/0   required when PULSE_WORKERS > 1
"""

from __future__ import annotations

import os
import socket

bind = os.environ.get("PULSE_BIND", "0.0.0.0:3030")
workers = int(os.environ.get("PULSE_WORKERS", "1"))
worker_class = "eventlet"

# Long-lived WebSocket connections.
timeout = int(os.environ.get("PULSE_GUNICORN_TIMEOUT", "60"))
graceful_timeout = int(os.environ.get("PULSE_GUNICORN_GRACEFUL_TIMEOUT", "20"))

loglevel = os.environ.get("PULSE_GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("PULSE_GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("PULSE_GUNICORN_ERRORLOG", "-")

forwarded_allow_ips = os.environ.get("PULSE_FORWARDED_ALLOW_IPS", "*")

_INSTANCE_PREFIX = os.environ.get("PULSE_INSTANCE_ID") or socket.gethostname()


def on_starting(server):
    if workers > 1 and not (os.environ.get("REDIS_URL") or os.environ.get("PULSE_REDIS_URL")):
        raise RuntimeError("PULSE_WORKERS > 1 needs REDIS_URL for shared presence and fan-out")


def pre_fork(server, worker):
    # worker.age is unique per spawn, so a replacement worker never reuses a live id.
    os.environ["PULSE_INSTANCE_ID"] = f"{_INSTANCE_PREFIX}-w{worker.age}"


def post_fork(server, worker):
    server.log.info("Pulse worker %s running as instance %s", worker.pid, os.environ.get("PULSE_INSTANCE_ID"))
