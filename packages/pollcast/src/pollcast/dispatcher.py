"""Request dispatcher pool — one keep-alive httpx client per slot.

Learn: A slot is the tuple (origin, event_type, sync). Long-poll requests
(event_type SUBSCRIBE) need a read timeout longer than the server's hold
time; everything else (SINGLE: heartbeat, leave, time) uses the short
non-subscribe timeout. Sync callers get an httpx.Client, async callers an
httpx.AsyncClient. That gives at most four live clients per origin, each
created on first use and reused afterwards so the TCP connection stays
alive between polls.

reset() closes one slot; the next request re-creates it. The subscribe
loop does this whenever it restarts, so a connection that saw a failure or
a cancelled long-poll is never reused.

request() never raises for network trouble. It returns a RequestResult,
and callers inspect `.ok` / `.kind` instead of catching exceptions.
"""

import threading
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import quote

import httpx
import structlog

from pollcast import __version__
from pollcast.config import Settings
from pollcast.errors import (
    MALFORMED_RESPONSE,
    SERVER,
    TRANSPORT,
    error_for,
)

logger = structlog.get_logger()

SUBSCRIBE = "subscribe"
SINGLE = "single"
EVENT_TYPES = (SUBSCRIBE, SINGLE)

SlotKey = tuple[str, str, bool]
HttpClient = Union[httpx.Client, httpx.AsyncClient]


@dataclass
class RequestResult:
    """Outcome of one HTTP call: a parsed body, or a failure kind + detail."""

    status: Optional[int] = None
    body: Any = None
    kind: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.kind is None

    @classmethod
    def failure(
        cls, kind: str, detail: str, status: Optional[int] = None
    ) -> "RequestResult":
        return cls(status=status, kind=kind, detail=detail)

    def raise_for_error(self) -> None:
        if not self.ok:
            raise error_for(self.kind, self.detail, self.status)


def path_segment(names) -> str:
    """Comma-join names for a URL path; ',' stands for "no channels"."""
    joined = ",".join(quote(str(name), safe="") for name in names)
    return joined or ","


def identity_params(settings: Settings) -> dict[str, str]:
    """uuid and auth, read at request-build time so changes apply to the next call."""
    params = {"uuid": settings.uuid}
    if settings.auth_key:
        params["auth"] = settings.auth_key
    return params


def _decode(response: httpx.Response) -> RequestResult:
    if not response.is_success:
        text = response.text[:200]
        return RequestResult.failure(
            SERVER, f"HTTP {response.status_code}: {text}", response.status_code
        )
    try:
        body = response.json()
    except ValueError as e:
        return RequestResult.failure(
            MALFORMED_RESPONSE, f"invalid JSON: {e}", response.status_code
        )
    return RequestResult(status=response.status_code, body=body)


def _transport_failure(error: httpx.HTTPError) -> RequestResult:
    if isinstance(error, httpx.TimeoutException):
        return RequestResult.failure(TRANSPORT, f"timeout: {error!r}")
    return RequestResult.failure(TRANSPORT, f"{type(error).__name__}: {error}")


class DispatcherPool:
    """Concurrency-safe map from SlotKey to a lazily created httpx client.

    `transport` / `sync_transport` are handed to the async / sync clients;
    tests pass an httpx.MockTransport here, production leaves them unset.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport
        self._sync_transport = sync_transport
        self._slots: dict[SlotKey, HttpClient] = {}
        self._lock = threading.Lock()
        self.created = 0

    # ─── Slots ────────────────────────────────────────────

    def timeout_for(self, event_type: str) -> httpx.Timeout:
        if event_type == SUBSCRIBE:
            return httpx.Timeout(
                self.settings.subscribe_timeout,
                connect=self.settings.non_subscribe_timeout,
            )
        return httpx.Timeout(self.settings.non_subscribe_timeout)

    def dispatcher(self, origin: str, event_type: str, sync: bool) -> HttpClient:
        """Return the live client for a slot, creating it on first use."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type '{event_type}'")
        key = (origin, event_type, sync)
        with self._lock:
            client = self._slots.get(key)
            if client is None:
                client = self._create(origin, event_type, sync)
                self._slots[key] = client
            return client

    def _create(self, origin: str, event_type: str, sync: bool) -> HttpClient:
        options = dict(
            base_url=self.settings.base_url(origin),
            timeout=self.timeout_for(event_type),
            headers={"User-Agent": f"pollcast/{__version__}"},
        )
        self.created += 1
        logger.debug(
            "pollcast.dispatcher.created",
            origin=origin,
            event_type=event_type,
            sync=sync,
        )
        if sync:
            return httpx.Client(transport=self._sync_transport, **options)
        return httpx.AsyncClient(transport=self._transport, **options)

    def live(self) -> list[SlotKey]:
        with self._lock:
            return sorted(self._slots)

    def _pop(self, key: SlotKey) -> Optional[HttpClient]:
        with self._lock:
            return self._slots.pop(key, None)

    async def reset(self, origin: str, event_type: str, sync: bool = False) -> None:
        """Tear down one slot; the next request builds a fresh client."""
        client = self._pop((origin, event_type, sync))
        if client is None:
            return
        logger.debug(
            "pollcast.dispatcher.reset", origin=origin, event_type=event_type, sync=sync
        )
        if isinstance(client, httpx.AsyncClient):
            await client.aclose()
        else:
            client.close()

    def reset_sync(self, origin: str, event_type: str) -> None:
        client = self._pop((origin, event_type, True))
        if client is not None:
            client.close()

    async def close(self) -> None:
        """Close every slot (sync and async)."""
        with self._lock:
            clients = list(self._slots.values())
            self._slots.clear()
        for client in clients:
            if isinstance(client, httpx.AsyncClient):
                await client.aclose()
            else:
                client.close()

    # ─── Requests ─────────────────────────────────────────

    async def request(
        self, origin: str, event_type: str, path: str, params: dict
    ) -> RequestResult:
        client = self.dispatcher(origin, event_type, sync=False)
        try:
            response = await client.get(path, params=params)
        except httpx.HTTPError as e:
            return _transport_failure(e)
        return _decode(response)

    def request_sync(
        self, origin: str, event_type: str, path: str, params: dict
    ) -> RequestResult:
        client = self.dispatcher(origin, event_type, sync=True)
        try:
            response = client.get(path, params=params)
        except httpx.HTTPError as e:
            return _transport_failure(e)
        return _decode(response)
