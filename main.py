#!/usr/bin/env python3
"""main.py

Pulse realtime server entrypoint.

``server_config.json`` is a *plaintext* JSON settings file. Keep secrets out
of it with environment variables (``DATABASE_URL``, ``REDIS_URL``,
``JWT_SECRET_KEY``, ``TURN_SECRET``) and ``PULSE_PERSIST_SECRETS=0``.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from constants import CONFIG_FILE
from config import apply_env_overrides, load_settings, save_settings


def configure_logging(settings: dict) -> None:
    """Configure file + stdout logging."""
    log_level_str = str(settings.get("log_level", "INFO")).upper()
    log_format = settings.get(
        "log_format",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    log_file_path = settings.get("log_file_path", "logs/server.log")

    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    log_level = getattr(logging, log_level_str, logging.INFO)
    logging.basicConfig(level=log_level, format=log_format, filename=log_file_path, filemode="a")
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(logging.Formatter(log_format))
    logging.getLogger().addHandler(stream)
    logging.info("Logging configured (level=%s)", log_level_str)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Pulse realtime server")
    p.add_argument(
        "--config",
        default=os.environ.get("PULSE_CONFIG") or CONFIG_FILE,
        help="path to server config JSON",
    )
    p.add_argument("--write-config", action="store_true", help="write the merged settings to --config and exit")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings_path = Path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)

    if args.write_config:
        save_settings(settings_path, settings)
        print(f"Saved settings to {settings_path}")
        return

    configure_logging(settings)

    from server_init import run_web_server

    run_web_server(settings, limiter=None, settings_file=settings_path)


if __name__ == "__main__":
    main()
