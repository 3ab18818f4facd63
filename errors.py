"""errors.py

Exception taxonomy for the realtime core.

Handshake errors (AuthenticationError / TokenExpiredError) are terminal for a
connection. Everything else raised while handling a single event is isolated
to that event by socket_handlers.safe_handler.
"""

from __future__ import annotations


class RealtimeError(Exception):
    """Base class for all errors raised by the realtime core."""

    code = "error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class AuthenticationError(RealtimeError):
    """Missing, malformed or unresolvable credential."""

    code = "authentication_failed"
    reason = "Authentication failed"


class TokenExpiredError(AuthenticationError):
    """Credential was well-formed but has expired (client should refresh)."""

    code = "token_expired"
    reason = "Token expired"


class InvalidCallStateError(RealtimeError):
    """Illegal call status transition. Call state is left unchanged."""

    code = "invalid_call_state"

    def __init__(self, call_id: str, current: str | None, requested: str):
        super().__init__(f"Cannot move call {call_id} from {current!r} to {requested!r}")
        self.call_id = call_id
        self.current = current
        self.requested = requested


class DeliveryTargetOfflineError(RealtimeError):
    """Signaling target has no presence entry. Expected; dropped silently."""

    code = "target_offline"

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} is not online")
        self.user_id = user_id


class HandlerFailure(RealtimeError):
    """Unexpected exception inside an inbound event handler."""

    code = "handler_failure"

    def __init__(self, event: str, cause: BaseException):
        super().__init__(f"{event}: {cause}")
        self.event = event
        self.cause = cause


class MalformedPayloadError(RealtimeError, ValueError):
    code = "malformed_payload"


class NotFoundError(RealtimeError):
    code = "not_found"


class PermissionDeniedError(RealtimeError):
    code = "forbidden"
