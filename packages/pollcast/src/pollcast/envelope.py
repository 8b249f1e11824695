"""Delivery results and callback fan-out.

Learn: A poll response turns into one Envelope per message, in server
order. Envelopes are not handed to user code on the loop task: they are
queued on a per-origin CallbackFanout whose worker task delivers them. The
subscribe loop therefore issues its next poll as soon as a response is
parsed, and a slow or failing callback can never delay reading the next
response.

Wire shape of a subscribe response (v2):

    {"t": {"t": "14607577960933500", "r": 1},
     "m": [{"c": "news", "b": "news", "d": "hello",
            "p": {"t": "14607577970933500", "r": 1}}]}

`b` is the subscription that matched; when it differs from the channel
the message arrived through a channel group.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import structlog

from pollcast.errors import PollcastError, ValidationError, error_for

logger = structlog.get_logger()


# ─── Delivery types ───────────────────────────────────────


@dataclass(frozen=True)
class Envelope:
    """One delivered message."""

    channel: str
    message: Any
    timetoken: str
    group: Optional[str] = None
    region: Optional[int] = None
    origin: Optional[str] = None

    @property
    def payload(self) -> Any:
        return self.message


@dataclass(frozen=True)
class ErrorEnvelope:
    """One delivered failure. `kind` is one of the pollcast.errors kinds."""

    kind: str
    message: str
    channel: Optional[str] = None
    timetoken: Optional[str] = None
    status: Optional[int] = None
    origin: Optional[str] = None

    def exception(self) -> PollcastError:
        return error_for(self.kind, self.message, self.status)


# ─── Handlers ─────────────────────────────────────────────


class Handler(ABC):
    """Receives envelopes for a channel, a group, or a whole origin."""

    @abstractmethod
    async def deliver(self, envelope: Union[Envelope, ErrorEnvelope]) -> None:
        """Handle one envelope. Exceptions are logged by the fan-out."""


class CallbackHandler(Handler):
    """Adapts a plain callable or coroutine function to a Handler.

    Synchronous callables run in a worker thread so they cannot block the
    event loop that is reading the next poll.
    """

    def __init__(self, callback: Callable[[Any], Any]):
        if not callable(callback):
            raise ValidationError("callback must be callable")
        self.callback = callback
        self.is_async = inspect.iscoroutinefunction(
            callback
        ) or inspect.iscoroutinefunction(getattr(callback, "__call__", None))

    async def deliver(self, envelope):
        if self.is_async:
            await self.callback(envelope)
        else:
            await asyncio.to_thread(self.callback, envelope)

    def __eq__(self, other):
        return isinstance(other, CallbackHandler) and other.callback == self.callback

    def __hash__(self):
        return hash(self.callback)

    def __repr__(self):
        return f"CallbackHandler({self.callback!r})"


def as_handler(callback: Any) -> Optional[Handler]:
    """Accept None, a Handler, or any callable."""
    if callback is None or isinstance(callback, Handler):
        return callback
    return CallbackHandler(callback)


# ─── Response decoding ────────────────────────────────────


@dataclass
class RawMessage:
    channel: str
    payload: Any
    timetoken: str
    group: Optional[str] = None
    region: Optional[int] = None


@dataclass
class SubscribeResponse:
    timetoken: str
    region: Optional[int] = None
    messages: list[RawMessage] = field(default_factory=list)


def _region(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def decode_subscribe(body: Any) -> tuple[Optional[SubscribeResponse], Optional[str]]:
    """Decode a parsed JSON subscribe body.

    Returns (response, None) on success or (None, reason) when the body does
    not have the expected shape. Never raises for bad input, so the loop can
    treat the reason like any other retryable failure.
    """
    if not isinstance(body, dict):
        return None, "expected a JSON object"

    cursor = body.get("t")
    if not isinstance(cursor, dict) or cursor.get("t") is None:
        return None, "missing timetoken"

    timetoken = str(cursor["t"])
    if not timetoken.isdigit():
        return None, f"invalid timetoken {timetoken!r}"

    raw = body.get("m", [])
    if raw is None:
        raw = []
    if not isinstance(raw, list):
        return None, "messages must be a list"

    messages = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("c"), str):
            return None, "message without a channel"
        published = item.get("p")
        if not isinstance(published, dict):
            published = {}
        message_tt = str(published.get("t", timetoken))
        if not message_tt.isdigit():
            return None, f"invalid message timetoken {message_tt!r}"
        match = item.get("b")
        messages.append(
            RawMessage(
                channel=item["c"],
                payload=item.get("d"),
                timetoken=message_tt,
                group=match if isinstance(match, str) and match != item["c"] else None,
                region=_region(published.get("r")),
            )
        )

    return SubscribeResponse(timetoken, _region(cursor.get("r")), messages), None


# ─── Fan-out ──────────────────────────────────────────────


class CallbackFanout:
    """Per-origin delivery queue drained by a single worker task.

    One worker keeps server order per origin. The worker is created lazily
    on the first put(), so the fan-out can be built outside a running loop.
    """

    def __init__(self, origin: str, error_handler: Optional[Handler] = None):
        self.origin = origin
        self.error_handler = error_handler
        self.delivered = 0
        self.failed = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def put(self, handler: Optional[Handler], envelope) -> None:
        if handler is None:
            logger.warning(
                "pollcast.fanout.no_handler",
                origin=self.origin,
                channel=getattr(envelope, "channel", None),
            )
            return
        self._ensure_worker()
        self._queue.put_nowait((handler, envelope))

    def put_error(self, envelope: ErrorEnvelope) -> None:
        logger.warning(
            "pollcast.error_envelope",
            origin=self.origin,
            kind=envelope.kind,
            detail=envelope.message,
            channel=envelope.channel,
        )
        if self.error_handler is not None:
            self.put(self.error_handler, envelope)

    def pending(self) -> int:
        return self._queue.qsize()

    async def drain(self) -> None:
        """Wait until every queued envelope has been handed to its handler."""
        if self._worker is None or self._worker is asyncio.current_task():
            return
        await self._queue.join()

    async def close(self, drain: bool = True) -> None:
        if drain:
            await self.drain()
        worker = self._worker
        self._worker = None
        if worker is None or worker is asyncio.current_task():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            handler, envelope = await self._queue.get()
            try:
                await handler.deliver(envelope)
                self.delivered += 1
            except Exception:
                self.failed += 1
                logger.exception(
                    "pollcast.callback_failed",
                    origin=self.origin,
                    channel=getattr(envelope, "channel", None),
                    timetoken=getattr(envelope, "timetoken", None),
                )
            finally:
                self._queue.task_done()
