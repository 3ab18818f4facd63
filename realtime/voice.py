"""Socket.IO handlers: WebRTC call signaling (offer / answer / ICE candidate).

Payload: ``{to, payload, callId}``. Delivery goes to the target's presence
locator; an offline or missing target drops the event without telling the
sender.
"""

from __future__ import annotations

from constants import SIGNALING_EVENTS


def register(socketio, settings, ctx):
    """Register Socket.IO event handlers for this module."""
    services = ctx.services
    safe_handler = ctx.safe_handler
    current_user = ctx.current_user

    def _bind(event: str):
        @socketio.on(event)
        @safe_handler(event)
        def handle_signal(data=None):
            # Same ack whether or not the target was reached.
            services.calls.relay(event, current_user(), data)
            return {"ok": True}

        return handle_signal

    for event in SIGNALING_EVENTS:
        _bind(event)
