"""secrets_policy.py

Central policy for whether Pulse should persist *secrets* into server_config.json.

In production secrets normally live in environment variables or a secret
manager, not in a config file that may be copied around.

Default behavior: secrets *may* be persisted unless you disable it via env.

Disable persistence:
  export PULSE_PERSIST_SECRETS=0
"""

from __future__ import annotations

import os
from typing import Any, Dict


def env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return default


def persist_secrets_enabled() -> bool:
    """Whether secret values should be written into server_config.json."""
    return env_bool("PULSE_PERSIST_SECRETS", True)


# Top-level keys in server_config.json that are treated as secrets.
SECRET_SETTING_KEYS = {
    # Flask/JWT secrets
    "secret_key",
    "jwt_secret",
    # DSNs often contain passwords
    "database_url",
    "redis_url",
    "socketio_message_queue",
    # TURN shared secret
    "turn_secret",
}


def scrub_secrets_for_persist(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of settings with secret keys removed if persistence is disabled."""
    out = dict(settings)
    if persist_secrets_enabled():
        return out
    for k in SECRET_SETTING_KEYS:
        out.pop(k, None)
    return out
