"""Message delivery tracker.

Per-message state machine ``sent -> delivered -> seen``. The store performs
each acknowledgement as one atomic add-to-set, so concurrent acks for the same
message from different recipients are all retained and the status never
regresses. When an ack changes state, the sender is told through their
personal room with a ``message-status`` event.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from constants import EVT_MESSAGE_STATUS


def _status_payload(msg: dict, user_id: str) -> dict:
    return {
        "messageId": msg["id"],
        "conversationId": msg["conversation_id"],
        "status": msg["status"],
        "userId": str(user_id),
        "deliveredTo": list(msg.get("delivered_to") or []),
        "readBy": list(msg.get("read_by") or []),
    }


class DeliveryTracker:
    def __init__(self, store, router, spawn: Optional[Callable] = None):
        self._store = store
        self._router = router
        # spawn(fn, *args) -> handle with .join(); socketio.start_background_task in production.
        self._spawn = spawn

    def mark_delivered(self, message_id, user_id) -> Optional[dict]:
        """Record delivery of a message to user_id. Idempotent."""
        return self._apply(self._store.add_delivered, "delivered", message_id, user_id)

    def mark_seen(self, message_id, user_id) -> Optional[dict]:
        """Record that user_id has read the message. Idempotent.

        Status becomes ``seen`` only once every recipient (participants minus
        the sender) is in read_by.
        """
        return self._apply(self._store.add_read, "seen", message_id, user_id)

    def mark_seen_many(self, message_ids: Iterable, user_id) -> list[dict]:
        ids = [str(m) for m in message_ids if m is not None and str(m).strip()]
        if not ids:
            return []

        if self._spawn is None or len(ids) == 1:
            results = [self.mark_seen(mid, user_id) for mid in ids]
            return [r for r in results if r]

        results: dict[str, Optional[dict]] = {}

        def _one(mid: str) -> None:
            try:
                results[mid] = self.mark_seen(mid, user_id)
            except Exception:
                logging.exception("[delivery] batch seen failed for message %s", mid)
                results[mid] = None

        tasks = [self._spawn(_one, mid) for mid in ids]
        for task in tasks:
            task.join()
        return [results[mid] for mid in ids if results.get(mid)]

    def _apply(self, op, label: str, message_id, user_id) -> Optional[dict]:
        if message_id is None or str(message_id).strip() == "":
            return None
        msg, changed = op(str(message_id), str(user_id))
        if msg is None:
            logging.debug("[delivery] %s ack for unknown message %s", label, message_id)
            return None
        if changed:
            self._router.broadcast_to_user(msg["sender_id"], EVT_MESSAGE_STATUS, _status_payload(msg, user_id))
        return msg
