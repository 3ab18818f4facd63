"""Call signaling relay.

Call records move through ``initiated -> ongoing -> ended`` with ``missed``
as the alternate terminal reachable only from ``initiated``. Transitions are
compare-and-transition updates in the store, so two racing updates cannot
both win and a terminal call never moves again.

Each call also has a signaling-scope record in the presence store
(``call:<id>``) holding the initiator and participants. It carries a short
expiry, is refreshed by every offer and is deleted when the call reaches a
terminal state, so abandoned attempts clean themselves up.

Offer/answer/ICE relay is pure forwarding to the target's presence locator.
An offline target is an expected condition: the event is dropped and nothing
is reported back to the sender.
"""

from __future__ import annotations

import logging
from typing import Any

from constants import (
    CALL_STATUSES,
    CALL_TYPES,
    EVT_CALL_STATUS,
    EVT_INCOMING_CALL,
    SIGNALING_EVENTS,
    TERMINAL_CALL_STATUSES,
    iso_or_none,
)
from errors import (
    DeliveryTargetOfflineError,
    InvalidCallStateError,
    MalformedPayloadError,
    NotFoundError,
    PermissionDeniedError,
)

# requested status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    "ongoing": ("initiated",),
    "ended": ("initiated", "ongoing"),
    "missed": ("initiated",),
}

# Older clients send the SDP/candidate under an event-specific key.
_LEGACY_PAYLOAD_KEYS = {
    "webrtc-offer": "offer",
    "webrtc-answer": "answer",
    "webrtc-ice-candidate": "candidate",
}


def signaling_room(call_id: str) -> str:
    return f"call-signal-{call_id}"


def serialize_call(call: dict) -> dict:
    return {
        "id": call["id"],
        "conversationId": call.get("conversation_id"),
        "participants": list(call.get("participants") or []),
        "initiator": call.get("initiator_id"),
        "type": call.get("call_type"),
        "status": call.get("status"),
        "createdAt": iso_or_none(call.get("created_at")),
        "startedAt": iso_or_none(call.get("started_at")),
        "endedAt": iso_or_none(call.get("ended_at")),
    }


class CallSignalingRelay:
    def __init__(self, store, presence, router, notifier=None, signal_ttl: int = 60):
        self._store = store
        self._presence = presence
        self._router = router
        self._notifier = notifier
        self.signal_ttl = int(signal_ttl)

    # ------------------------------------------------------------------
    # Call records
    # ------------------------------------------------------------------
    def start_call(self, conversation_id, initiator_id, call_type: str = "video") -> dict:
        call_type = (call_type or "video").strip().lower()
        if call_type not in CALL_TYPES:
            raise MalformedPayloadError(f"Unsupported call type: {call_type!r}")

        conversation = self._store.get_conversation(conversation_id) if conversation_id else None
        if conversation is None:
            raise NotFoundError("Conversation not found")

        initiator_id = str(initiator_id)
        participants = [str(p) for p in conversation["participants"]]
        if initiator_id not in participants:
            raise PermissionDeniedError("Not a participant")

        call = self._store.create_call(conversation["id"], participants, initiator_id, call_type)
        message = self._store.create_message(conversation["id"], initiator_id, call_id=call["id"])
        self._store.set_last_message(conversation["id"], message["id"])

        self._presence.touch_call_scope(
            call["id"], self.signal_ttl, initiator=initiator_id, participants=participants
        )

        if self._notifier is not None:
            self._notifier.notify_participants(conversation, message["id"], initiator_id, "call")

        ring = {
            "callId": call["id"],
            "conversationId": conversation["id"],
            "from": initiator_id,
            "type": call_type,
            "signalingRoom": signaling_room(call["id"]),
        }
        for p in participants:
            if p != initiator_id:
                self._router.broadcast_to_user(p, EVT_INCOMING_CALL, ring)

        logging.info("[calls] %s started %s call %s in %s", initiator_id, call_type, call["id"], conversation["id"])
        return {
            "callId": call["id"],
            "messageId": message["id"],
            "signalingRoom": signaling_room(call["id"]),
        }

    def update_call_status(self, call_id, status: str, actor_id=None) -> dict:
        """Compare-and-transition a call. Raises InvalidCallStateError on an illegal move."""
        status = str(status or "").strip().lower()
        if status not in CALL_STATUSES:
            raise MalformedPayloadError(f"Unknown call status: {status!r}")

        if actor_id is not None:
            current = self._store.get_call(call_id)
            if current is None:
                raise NotFoundError("Call not found")
            if str(actor_id) not in current["participants"]:
                raise PermissionDeniedError("Not a participant")

        allowed = ALLOWED_TRANSITIONS.get(status, ())
        updated = self._store.transition_call(call_id, status, allowed) if allowed else None
        if updated is None:
            current = self._store.get_call(call_id)
            if current is None:
                raise NotFoundError("Call not found")
            raise InvalidCallStateError(str(call_id), current["status"], status)

        if status in TERMINAL_CALL_STATUSES:
            self._presence.clear_call_scope(updated["id"])

        payload = serialize_call(updated)
        for p in updated["participants"]:
            self._router.broadcast_to_user(p, EVT_CALL_STATUS, payload)

        logging.info("[calls] call %s -> %s", updated["id"], status)
        return updated

    def expire_unanswered(self, ring_timeout_seconds: float) -> int:
        """Mark calls still ringing after ring_timeout_seconds as missed."""
        missed = 0
        for call_id in self._store.list_stale_initiated_calls(ring_timeout_seconds):
            try:
                self.update_call_status(call_id, "missed")
                missed += 1
            except InvalidCallStateError:
                # Answered or hung up between the scan and the transition.
                continue
        return missed

    # ------------------------------------------------------------------
    # Signaling relay
    # ------------------------------------------------------------------
    def relay(self, event: str, sender_id, data: Any) -> bool:
        """Forward an offer/answer/ICE candidate. Returns True if it was sent."""
        if event not in SIGNALING_EVENTS:
            raise ValueError(f"Not a signaling event: {event}")

        if not isinstance(data, dict) or not data.get("to"):
            logging.debug("[calls] dropping %s from %s without a target", event, sender_id)
            return False

        target = str(data["to"])
        call_id = data.get("callId")
        legacy_key = _LEGACY_PAYLOAD_KEYS[event]
        payload = data.get("payload")
        if payload is None:
            payload = data.get(legacy_key)

        if event == "webrtc-offer" and call_id:
            call = self._store.get_call(call_id)
            if call is not None and call["status"] in TERMINAL_CALL_STATUSES:
                logging.debug("[calls] dropping offer for %s call %s", call["status"], call_id)
                return False
            self._presence.touch_call_scope(str(call_id), self.signal_ttl, initiator=str(sender_id))

        try:
            locator = self._locate(target)
        except DeliveryTargetOfflineError as exc:
            logging.debug("[calls] %s dropped: %s", event, exc)
            return False

        self._router.send_to_locator(
            locator,
            event,
            {"from": str(sender_id), "payload": payload, "callId": call_id, legacy_key: payload},
        )
        return True

    def _locate(self, user_id: str) -> str:
        locator = self._presence.locate(user_id)
        if not locator:
            raise DeliveryTargetOfflineError(user_id)
        return locator
