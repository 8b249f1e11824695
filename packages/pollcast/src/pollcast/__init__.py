"""pollcast — asyncio long-poll subscribe client for a hosted pub/sub service."""

__version__ = "0.1.0"

from pollcast.client import Client  # noqa: E402
from pollcast.config import Settings  # noqa: E402
from pollcast.envelope import CallbackHandler, Envelope, ErrorEnvelope, Handler  # noqa: E402
from pollcast.errors import (  # noqa: E402
    MalformedResponseError,
    PollcastError,
    PresenceHeartbeatError,
    ServerError,
    TransportError,
    ValidationError,
)
from pollcast.subscribe import LoopState  # noqa: E402

__all__ = [
    "__version__",
    "CallbackHandler",
    "Client",
    "Envelope",
    "ErrorEnvelope",
    "Handler",
    "LoopState",
    "MalformedResponseError",
    "PollcastError",
    "PresenceHeartbeatError",
    "ServerError",
    "Settings",
    "TransportError",
    "ValidationError",
]
