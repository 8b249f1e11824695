"""Client configuration via environment variables.

Uses pydantic-settings to load config from env vars with POLLCAST_ prefix.
Keyword arguments passed to Settings(...) override the environment, so a
Client can be built entirely in code:

    Settings(subscribe_key="demo", heartbeat=60)

Learn: pydantic-settings validates types and applies defaults. The Client
wraps any validation failure into pollcast.errors.ValidationError so callers
only deal with one error taxonomy.
"""

import uuid as _uuid
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

DEFAULT_ORIGIN = "pubsub.pubnub.com"


class Settings(BaseSettings):
    """Everything the subscribe core consumes. Set via POLLCAST_* env vars."""

    # Keys
    subscribe_key: str = ""
    publish_key: str = ""
    auth_key: str = ""
    cipher_key: str = ""  # payload decoding is delegated to a decoder callable

    # Identity
    uuid: str = Field(default_factory=lambda: str(_uuid.uuid4()))

    # Origin
    origin: str = DEFAULT_ORIGIN
    ssl: bool = False

    # Presence
    heartbeat: int = 0  # presence timeout sent to the server, 0 = disabled
    heartbeat_interval: Optional[float] = None  # derived from heartbeat if unset

    # Timeouts (seconds). The server holds a long-poll open for up to ~300s,
    # so subscribe_timeout must stay above that.
    subscribe_timeout: float = 310.0
    non_subscribe_timeout: float = 10.0

    # Reconnect policy: fixed interval, not exponential
    max_retries: int = 5
    reconnect_interval: float = 10.0

    model_config = {"env_prefix": "POLLCAST_"}

    @model_validator(mode="after")
    def validate_client_settings(self):
        """Reject settings the subscribe loop cannot run with."""
        if not self.subscribe_key:
            raise ValueError(
                "subscribe_key is required (pass it or set POLLCAST_SUBSCRIBE_KEY)"
            )
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.subscribe_timeout <= 0 or self.non_subscribe_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.reconnect_interval < 0:
            raise ValueError("reconnect_interval cannot be negative")
        if self.heartbeat < 0:
            raise ValueError("heartbeat cannot be negative")
        return self

    @property
    def scheme(self) -> str:
        return "https" if self.ssl else "http"

    def base_url(self, origin: Optional[str] = None) -> str:
        return f"{self.scheme}://{origin or self.origin}"

    @property
    def heartbeat_period(self) -> float:
        """Seconds between heartbeat ticks; 0 when heartbeats are disabled.

        An explicit heartbeat_interval wins. Otherwise tick a little faster
        than half the presence timeout, so one lost heartbeat does not
        expire the uuid.
        """
        if self.heartbeat_interval is not None:
            return max(self.heartbeat_interval, 0.0)
        if self.heartbeat <= 0:
            return 0.0
        return max(self.heartbeat / 2 - 1, 1.0)
