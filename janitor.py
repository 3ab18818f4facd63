import logging
import threading
import time

from realtime.presence import MemoryPresenceStore


def run_janitor_cycle(settings: dict, services) -> dict:
    """One cleanup pass. Returns counts for logging/tests.

    - Calls still ringing after `call_ring_timeout_seconds` become `missed`
    - Expired call signaling scopes are purged (memory presence backend only;
      Redis expires them itself)
    """
    try:
        ring_timeout = int(settings.get("call_ring_timeout_seconds", 60))
    except (TypeError, ValueError):
        ring_timeout = 60
    ring_timeout = max(5, min(ring_timeout, 3600))

    counts = {"missed_calls": 0, "expired_scopes": 0}

    try:
        counts["missed_calls"] = services.calls.expire_unanswered(ring_timeout)
        if counts["missed_calls"]:
            logging.info("[JANITOR] marked %d unanswered call(s) as missed", counts["missed_calls"])
    except Exception:
        logging.exception("[JANITOR] unanswered call sweep error")

    if isinstance(services.presence, MemoryPresenceStore):
        counts["expired_scopes"] = services.presence.purge_expired()

    return counts


def start_janitor(settings: dict, services):
    """Start a lightweight background cleanup loop."""

    def _loop():
        while True:
            # Re-read settings each cycle so config reloads take effect live.
            try:
                interval = int(settings.get("janitor_interval_seconds", 15))
            except (TypeError, ValueError):
                interval = 15
            interval = max(5, min(interval, 3600))

            run_janitor_cycle(settings, services)
            time.sleep(interval)

    t = threading.Thread(target=_loop, name="pulse_janitor", daemon=True)
    t.start()
    return t
