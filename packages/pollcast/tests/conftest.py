"""Test fixtures — a scripted fake of the hosted service behind httpx.MockTransport.

Learn: The client never opens a socket in tests. Every dispatcher slot is
built with the FakeOrigin's MockTransport, so each request lands in
FakeOrigin.handle(), which records it and pops the next scripted reply for
that endpoint:

- a dict/list body -> 200 with that JSON
- an httpx.Response -> returned as is (non-2xx, broken JSON, ...)
- FAIL -> raises httpx.ConnectError, like a refused connection
- HANG -> never answers; the long-poll is held open until cancelled
- Gate(event, body) -> answers with body once the event is set

When a queue is empty the endpoint's default reply is used.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any

import httpx
import pytest
import pytest_asyncio

from pollcast.client import Client
from pollcast.config import Settings

SUB_KEY = "sub-key"
ORIGIN = "test.origin"

HANG = object()
FAIL = object()


@dataclass
class Gate:
    event: asyncio.Event
    body: Any


def bootstrap(timetoken, region=1) -> dict:
    """A zero-message response carrying a fresh cursor."""
    return {"t": {"t": str(timetoken), "r": region}, "m": []}


def messages(timetoken, *items, region=1) -> dict:
    """A response delivering (channel, payload[, match]) items at `timetoken`."""
    body = []
    for item in items:
        channel, payload = item[0], item[1]
        match = item[2] if len(item) > 2 else channel
        body.append(
            {"c": channel, "b": match, "d": payload, "p": {"t": str(timetoken), "r": region}}
        )
    return {"t": {"t": str(timetoken), "r": region}, "m": body}


class FakeOrigin:
    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.replies = {
            "subscribe": deque(),
            "heartbeat": deque(),
            "leave": deque(),
            "time": deque(),
        }
        self.defaults = {
            "subscribe": HANG,
            "heartbeat": {"status": 200, "message": "OK"},
            "leave": {"status": 200, "action": "leave"},
            "time": [14607577960933500],
        }
        self.transport = httpx.MockTransport(self.handle)
        self.sync_transport = httpx.MockTransport(self.handle_sync)

    @staticmethod
    def endpoint(request: httpx.Request) -> str:
        path = request.url.path
        if path.startswith("/v2/subscribe/"):
            return "subscribe"
        if path.endswith("/heartbeat"):
            return "heartbeat"
        if path.endswith("/leave"):
            return "leave"
        if path.startswith("/time/"):
            return "time"
        return "unknown"

    def script(self, endpoint: str, *replies) -> None:
        self.replies[endpoint].extend(replies)

    def sent(self, endpoint: str) -> list[httpx.Request]:
        return [r for r in self.requests if self.endpoint(r) == endpoint]

    def _next(self, request: httpx.Request):
        self.requests.append(request)
        endpoint = self.endpoint(request)
        if endpoint == "unknown":
            return httpx.Response(404, text="no such endpoint")
        queue = self.replies[endpoint]
        return queue.popleft() if queue else self.defaults[endpoint]

    @staticmethod
    def _respond(reply, request: httpx.Request) -> httpx.Response:
        if reply is FAIL:
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        reply = self._next(request)
        if reply is HANG:
            await asyncio.Event().wait()
        if isinstance(reply, Gate):
            await reply.event.wait()
            reply = reply.body
        return self._respond(reply, request)

    def handle_sync(self, request: httpx.Request) -> httpx.Response:
        return self._respond(self._next(request), request)


class Recorder:
    """Async callback that keeps everything it receives."""

    def __init__(self):
        self.items = []

    async def __call__(self, item):
        self.items.append(item)

    def __len__(self):
        return len(self.items)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll `predicate` until it holds; fail the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_settings(**overrides) -> Settings:
    values = dict(
        subscribe_key=SUB_KEY,
        uuid="test-uuid",
        origin=ORIGIN,
        reconnect_interval=0,
        max_retries=3,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def origin():
    return FakeOrigin()


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def received():
    return Recorder()


@pytest.fixture()
def errors():
    return Recorder()


@pytest.fixture()
def statuses():
    return Recorder()


@pytest_asyncio.fixture()
async def client(settings, origin, received, errors, statuses):
    """Client wired to the fake origin, closed after the test."""
    c = Client(
        settings,
        callback=received,
        error_callback=errors,
        connect_callback=statuses,
        disconnect_callback=statuses,
        reconnect_callback=statuses,
        transport=origin.transport,
        sync_transport=origin.sync_transport,
    )
    try:
        yield c
    finally:
        await c.close()
