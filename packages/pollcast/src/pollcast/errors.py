"""Error taxonomy.

Learn: Every failure the client can observe has a *kind* string. Network
calls never raise into the subscribe loop; they return a RequestResult that
carries the kind, and the loop inspects it. The exception classes below are
only raised where a caller is waiting synchronously (validation, one-shot
calls like time()), or handed out via ErrorEnvelope.exception().

Retry policy by kind:
- transport, server, malformed_response -> retried inside the loops
- validation -> raised before any request is sent, never retried
- presence_heartbeat -> reported once per failure streak, never fatal
"""

from typing import Optional

TRANSPORT = "transport"
SERVER = "server"
MALFORMED_RESPONSE = "malformed_response"
VALIDATION = "validation"
PRESENCE_HEARTBEAT = "presence_heartbeat"

RETRYABLE_KINDS = frozenset({TRANSPORT, SERVER, MALFORMED_RESPONSE})


class PollcastError(Exception):
    kind = "error"

    def __init__(self, message: str = "", *, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class TransportError(PollcastError):
    """Connection failure or locally observed timeout."""

    kind = TRANSPORT


class ServerError(PollcastError):
    """Non-2xx response; `status` holds the HTTP status code."""

    kind = SERVER


class MalformedResponseError(PollcastError):
    """Body could not be decoded into the expected shape."""

    kind = MALFORMED_RESPONSE


class ValidationError(PollcastError):
    """Bad caller arguments, detected before any request is sent."""

    kind = VALIDATION


class PresenceHeartbeatError(PollcastError):
    kind = PRESENCE_HEARTBEAT


_BY_KIND: dict[str, type[PollcastError]] = {
    cls.kind: cls
    for cls in (
        TransportError,
        ServerError,
        MalformedResponseError,
        ValidationError,
        PresenceHeartbeatError,
    )
}


def error_for(kind: str, detail: str, status: Optional[int] = None) -> PollcastError:
    """Build the exception instance matching an error kind."""
    cls = _BY_KIND.get(kind, PollcastError)
    return cls(detail, status=status)
