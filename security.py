#!/usr/bin/env python3
"""security.py

Credential helpers for the realtime core.

  - extract_bearer_token(): pull a bearer credential out of Socket.IO
    handshake metadata (auth payload, Authorization header, ?token=)
  - verify_access_token(): resolve a credential to a principal id, raising
    TokenExpiredError distinctly from AuthenticationError
  - mint_turn_credentials(): time-limited TURN REST credentials

Tokens are issued elsewhere (auth service); this module only verifies them.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Callable, Mapping, Optional

from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import ExpiredSignatureError, PyJWTError

from errors import AuthenticationError, TokenExpiredError


# ────────────────────────────────────────────────────────────
# Handshake credentials
# ────────────────────────────────────────────────────────────

def _bearer_from_header(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    parts = str(value).strip().split(None, 1)
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1].strip():
        return parts[1].strip()
    return None


def extract_bearer_token(
    auth: Any,
    headers: Optional[Mapping[str, str]] = None,
    args: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Return the bearer credential from handshake metadata, or None.

    Order: ``auth.token`` (Socket.IO auth payload), then the
    ``Authorization: Bearer`` header, then a ``token`` query parameter.
    """
    if isinstance(auth, Mapping):
        tok = auth.get("token")
        if isinstance(tok, str) and tok.strip():
            # Some clients send "Bearer <jwt>" in the auth payload too.
            return _bearer_from_header(tok) or tok.strip()

    if headers is not None:
        tok = _bearer_from_header(headers.get("Authorization"))
        if tok:
            return tok

    if args is not None:
        tok = args.get("token")
        if isinstance(tok, str) and tok.strip():
            return tok.strip()

    return None


def verify_access_token(token: Optional[str], user_exists: Callable[[str], bool]) -> str:
    """Verify a JWT access token and return the principal id.

    Must run inside a Flask app context (JWT settings come from app.config).
    """
    if not token:
        raise AuthenticationError("Missing credential")

    try:
        claims = decode_token(token)
    except ExpiredSignatureError as exc:
        raise TokenExpiredError("Access token expired") from exc
    except (PyJWTError, JWTExtendedException) as exc:
        raise AuthenticationError(f"Invalid credential: {exc}") from exc

    if claims.get("type") not in (None, "access"):
        raise AuthenticationError("Not an access token")

    subject = claims.get("sub")
    if subject is None or str(subject).strip() == "":
        raise AuthenticationError("Credential has no subject")

    user_id = str(subject)
    if not user_exists(user_id):
        raise AuthenticationError("Unknown principal")
    return user_id


# ────────────────────────────────────────────────────────────
# TURN REST credentials
# ────────────────────────────────────────────────────────────

def mint_turn_credentials(
    secret: str,
    domain: str,
    username: str,
    ttl_seconds: int = 24 * 3600,
    now: Optional[float] = None,
) -> dict:
    """Return coturn ``use-auth-secret`` style credentials.

    username   = "<expiry-unix-ts>:<username>"
    credential = base64(HMAC-SHA1(secret, username))
    """
    if not secret:
        raise ValueError("TURN server not configured")
    if not username:
        raise ValueError("Username is required")

    expires = int(now if now is not None else time.time()) + int(ttl_seconds)
    turn_user = f"{expires}:{username}"
    digest = hmac.new(secret.encode("utf-8"), turn_user.encode("utf-8"), hashlib.sha1).digest()
    credential = base64.b64encode(digest).decode("ascii")

    urls = [
        f"turn:{domain}:3478?transport=udp",
        f"turn:{domain}:3478?transport=tcp",
        f"turns:{domain}:5349?transport=tcp",
    ]
    logging.debug("[turn] minted credentials for %s (expires=%s)", username, expires)
    return {
        "urls": urls,
        "username": turn_user,
        "credential": credential,
        "ttl": int(ttl_seconds),
        "expiresAt": expires,
    }
