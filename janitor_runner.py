#!/usr/bin/env python3
"""janitor_runner.py

Run the Pulse background cleanup loop as a dedicated process.

Why?
- Under Gunicorn with N workers, starting the janitor thread inside each
  worker creates N janitors racing for the same missed calls.
- Running this as a single service keeps cleanup predictable and light.

Usage:
  python janitor_runner.py --config server_config.json

Or via env:
  PULSE_CONFIG=/path/to/server_config.json python janitor_runner.py
"""

from __future__ import annotations

import argparse
import os
import time
from pathlib import Path

from constants import CONFIG_FILE
from config import load_settings, apply_env_overrides
from main import configure_logging
from janitor import start_janitor


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Pulse janitor runner")
    p.add_argument(
        "--config",
        default=os.environ.get("PULSE_CONFIG") or CONFIG_FILE,
        help="path to server config JSON",
    )
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings_path = Path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)

    # Use the same logging configuration as the server.
    configure_logging(settings)

    # Same services as a web worker, so call-status events still reach clients
    # through the Socket.IO message queue.
    from server_init import create_app

    app, _socketio = create_app(settings, settings_file=settings_path)
    start_janitor(settings, app.config["PULSE_SERVICES"])
    # Keep the process alive forever.
    while True:
        time.sleep(3600)


if __name__ == "__main__":
    main()
