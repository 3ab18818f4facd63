#!/usr/bin/env python3
"""Smoke test: presence, typing fan-out, delivery/read state, offline broadcast.

What it checks
- Two users can connect to Socket.IO with a bearer token (handshake auth).
- `typing` reaches the other participant and not the sender.
- A message sent over HTTP while the recipient is online is `delivered`
  immediately, and becomes `seen` after a `message-seen` ack.
- Closing the recipient's only connection broadcasts `user-offline`.

The server does not issue tokens. This tool mints short-lived access tokens
with the server's JWT secret, so both users must already exist in the user
table (or be listed in `seed_users` for a dev server).

Usage:
  python tools/smoke_test_realtime.py --base http://127.0.0.1:3030 \
      --jwt-secret "$JWT_SECRET_KEY" --user-a alice --user-b bob
"""

from __future__ import annotations

import argparse
import os
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field

import jwt
import requests
import socketio


def mint_token(secret: str, user_id: str, minutes: int = 10) -> str:
    now = int(time.time())
    claims = {
        "sub": user_id,
        "type": "access",
        "fresh": False,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "nbf": now,
        "exp": now + minutes * 60,
    }
    return jwt.encode(claims, secret, algorithm="HS256")


@dataclass
class SioWrap:
    sio: socketio.Client
    events: dict = field(default_factory=dict)
    cond: threading.Condition = field(default_factory=threading.Condition)

    def record(self, name: str, data) -> None:
        with self.cond:
            self.events.setdefault(name, []).append(data)
            self.cond.notify_all()

    def wait_for(self, name: str, predicate=lambda d: True, timeout: float = 10.0):
        deadline = time.time() + timeout
        with self.cond:
            while True:
                for d in self.events.get(name, []):
                    if predicate(d):
                        return d
                remaining = deadline - time.time()
                if remaining <= 0:
                    return None
                self.cond.wait(remaining)


def make_client(base: str, token: str) -> SioWrap:
    sio = socketio.Client(logger=False, engineio_logger=False)
    wrap = SioWrap(sio=sio)

    for name in ("user-online", "user-offline", "typing", "new-message", "message-status", "error"):
        sio.on(name, (lambda n: lambda data=None: wrap.record(n, data))(name))

    sio.connect(base, auth={"token": token}, transports=["websocket"], wait_timeout=10)
    return wrap


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--base", default=os.environ.get("PULSE_BASE", "http://127.0.0.1:3030"))
    ap.add_argument("--jwt-secret", default=os.environ.get("JWT_SECRET_KEY", ""))
    ap.add_argument("--user-a", required=True)
    ap.add_argument("--user-b", required=True)
    args = ap.parse_args()

    if not args.jwt_secret:
        print("❌ --jwt-secret (or JWT_SECRET_KEY) is required")
        return 1

    base = args.base.rstrip("/")
    ta = mint_token(args.jwt_secret, args.user_a)
    tb = mint_token(args.jwt_secret, args.user_b)
    ha = {"Authorization": f"Bearer {ta}"}

    # 1) Conversation
    r = requests.post(f"{base}/api/v1/chat/conversations", json={"participants": [args.user_b]}, headers=ha, timeout=10)
    if r.status_code != 201:
        print(f"❌ create conversation failed: {r.status_code} {r.text[:200]}")
        return 2
    conv_id = r.json()["id"]

    # 2) Socket.IO connect + join
    A = make_client(base, ta)
    B = make_client(base, tb)
    try:
        for c in (A, B):
            c.sio.call("join-conversations", [conv_id], timeout=10)

        # 3) Typing excludes the sender
        A.sio.emit("typing", conv_id)
        if not B.wait_for("typing", lambda d: d.get("conversationId") == conv_id):
            print("❌ typing not received by the other participant")
            return 3
        if A.wait_for("typing", timeout=1.0):
            print("❌ sender received its own typing event")
            return 3
        print("✅ typing fan-out OK")

        # 4) Auto-delivery for an online recipient
        r = requests.post(
            f"{base}/api/v1/chat/messages",
            json={"conversationId": conv_id, "text": "smoke"},
            headers=ha,
            timeout=10,
        )
        if r.status_code != 201:
            print(f"❌ send message failed: {r.status_code} {r.text[:200]}")
            return 4
        msg = r.json()
        if msg["status"] != "delivered" or args.user_b not in msg["deliveredTo"]:
            print(f"❌ expected delivered to {args.user_b}, got {msg['status']} {msg['deliveredTo']}")
            return 4
        print("✅ auto-delivery OK")

        # 5) Seen ack
        B.sio.emit("message-seen", msg["id"])
        if not A.wait_for("message-status", lambda d: d.get("messageId") == msg["id"] and d.get("status") == "seen"):
            print("❌ sender did not observe seen status")
            return 5
        print("✅ seen ack OK")

        # 6) Offline broadcast
        B.sio.disconnect()
        if not A.wait_for("user-offline", lambda d: str(d.get("userId")) == args.user_b):
            print("❌ user-offline not broadcast")
            return 6
        print("✅ offline broadcast OK")

        print("\n🎉 Smoke test PASSED")
        return 0

    finally:
        for c in (A, B):
            if c.sio.connected:
                c.sio.disconnect()


if __name__ == "__main__":
    sys.exit(main())
