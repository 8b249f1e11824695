"""Subscribe loop — the per-origin long-poll state machine.

Learn: Each origin runs exactly one loop task. The task repeats:

1. Snapshot the registry (channels, groups, state) under its lock
2. Bootstrap (timetoken 0) or long-poll with the current cursor
3. On success: queue one Envelope per message on the fan-out, advance
   the cursor, reset the retry counter, go to 1
4. On failure: count it; below max_retries wait the fixed reconnect
   interval and go to 1 with the same cursor, otherwise report one
   ErrorEnvelope and stop

States:

    IDLE ──start/add──▶ CONNECTING ──bootstrap ok──▶ LISTENING ◀─┐
                          │  ▲                          │  │     │ poll ok
                          │  └──── backoff elapsed ─────┼──┘─────┘
                          ▼                             ▼
                     RECONNECTING ◀──── poll failed ────┘
                          │ retries exhausted
                          ▼
                       STOPPED  (also: stop(), last channel removed)

A channel/group change cancels the loop task (and with it the in-flight
poll) and launches a new one at CONNECTING with the cursor unchanged. A
generation counter makes sure a response that belongs to a cancelled or
stopped loop is dropped, never delivered.
"""

import asyncio
import enum
from typing import Iterable, Optional

import structlog

from pollcast.config import Settings
from pollcast.cursor import Cursor
from pollcast.dispatcher import (
    SUBSCRIBE,
    DispatcherPool,
    RequestResult,
    identity_params,
    path_segment,
)
from pollcast.envelope import (
    CallbackFanout,
    Envelope,
    ErrorEnvelope,
    Handler,
    SubscribeResponse,
    decode_subscribe,
)
from pollcast.errors import MALFORMED_RESPONSE
from pollcast.registry import Snapshot, SubscriptionRegistry

logger = structlog.get_logger()


class LoopState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


ACTIVE_STATES = frozenset(
    {LoopState.CONNECTING, LoopState.LISTENING, LoopState.RECONNECTING}
)


def subscribe_path(settings: Settings, channels: Iterable[str]) -> str:
    return f"/v2/subscribe/{settings.subscribe_key}/{path_segment(channels)}/0"


class SubscribeLoop:
    """Long-poll loop for one origin.

    `default_handler` receives envelopes for names without an override.
    `status_handlers` may hold "connect", "disconnect" and "reconnect"
    handlers; they receive a short text message.
    """

    def __init__(
        self,
        origin: str,
        settings: Settings,
        registry: SubscriptionRegistry,
        pool: DispatcherPool,
        fanout: CallbackFanout,
        *,
        default_handler: Optional[Handler] = None,
        status_handlers: Optional[dict[str, Handler]] = None,
        decoder=None,
    ):
        self.origin = origin
        self.settings = settings
        self.registry = registry
        self.pool = pool
        self.fanout = fanout
        self.default_handler = default_handler
        self.status_handlers = status_handlers or {}
        self.decoder = decoder

        self.state = LoopState.IDLE
        self.cursor = Cursor()
        self.snapshot: Optional[Snapshot] = None
        self.retries = 0
        self.polls = 0

        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._control = asyncio.Lock()
        self._announced = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ─── Control ──────────────────────────────────────────

    async def start(self) -> bool:
        """Begin (or resume) polling. Returns True if a loop is running after the call.

        From STOPPED this resumes with the registry and cursor as they are,
        so a loop that gave up after max_retries continues where it failed.
        """
        async with self._control:
            if self.running:
                return True
            if self.registry.is_empty():
                logger.info("pollcast.subscribe.nothing_to_start", origin=self.origin)
                return False
            self.retries = 0
            self._launch()
            return True

    async def add_channels(
        self,
        channels: Iterable[str] = (),
        groups: Iterable[str] = (),
        *,
        handler: Optional[Handler] = None,
        state: Optional[dict] = None,
    ) -> bool:
        """Add names to the registry; restart the in-flight poll if the set changed."""
        async with self._control:
            changed = self.registry.add(channels, groups, handler=handler, state=state)
            if changed and self.state != LoopState.STOPPED:
                await self._restart()
            return changed

    async def remove_channels(
        self, channels: Iterable[str] = (), groups: Iterable[str] = ()
    ) -> bool:
        """Remove names; restart, or stop when nothing is left."""
        async with self._control:
            changed = self.registry.remove(channels, groups)
            if not changed or self.state == LoopState.STOPPED:
                return changed
            if self.registry.is_empty():
                await self._halt(clear=False)
            else:
                await self._restart()
            return changed

    async def stop(self) -> None:
        """Stop polling, discard any in-flight response, forget subscriptions."""
        async with self._control:
            await self._halt(clear=True)

    # ─── Internals ────────────────────────────────────────

    def _launch(self) -> None:
        self._generation += 1
        self.state = LoopState.CONNECTING
        self._announced = False
        self._task = asyncio.create_task(self._run(self._generation))

    async def _cancel(self) -> None:
        self._generation += 1
        task = self._task
        self._task = None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _restart(self) -> None:
        had_poll = self.running
        await self._cancel()
        if had_poll:
            # The cancelled long-poll may have left a half-read connection.
            await self.pool.reset(self.origin, SUBSCRIBE)
        logger.info(
            "pollcast.subscribe.restart",
            origin=self.origin,
            timetoken=self.cursor.timetoken,
            channels=self.registry.channels(),
            groups=self.registry.groups(),
        )
        self._launch()

    async def _halt(self, clear: bool) -> None:
        await self._cancel()
        await self.pool.reset(self.origin, SUBSCRIBE)
        if clear:
            self.registry.clear()
        self.cursor.reset()
        self.snapshot = None
        self.state = LoopState.STOPPED
        logger.info("pollcast.subscribe.stopped", origin=self.origin)

    def _status(self, name: str, message: str) -> None:
        handler = self.status_handlers.get(name)
        if handler is not None:
            self.fanout.put(handler, message)

    def _params(self, snapshot: Snapshot) -> dict:
        params = identity_params(self.settings)
        params.update(self.cursor.params())
        if snapshot.groups:
            params["channel-group"] = ",".join(snapshot.groups)
        state = snapshot.state_param()
        if state is not None:
            params["state"] = state
        if self.settings.heartbeat > 0:
            params["heartbeat"] = str(self.settings.heartbeat)
        return params

    async def _run(self, generation: int) -> None:
        while True:
            snapshot = self.registry.snapshot()
            if snapshot.is_empty():
                self.state = LoopState.STOPPED
                return
            self.snapshot = snapshot

            bootstrap = self.cursor.needs_bootstrap
            if not bootstrap and self.state == LoopState.CONNECTING:
                self.state = LoopState.LISTENING

            result = await self.pool.request(
                self.origin,
                SUBSCRIBE,
                subscribe_path(self.settings, snapshot.channels),
                self._params(snapshot),
            )
            self.polls += 1

            if generation != self._generation:
                # Superseded by a restart or stop while the call was in flight.
                return

            response = None
            if result.ok:
                response, reason = decode_subscribe(result.body)
                if response is None:
                    result = RequestResult.failure(
                        MALFORMED_RESPONSE, reason, result.status
                    )

            if response is None:
                if not await self._on_failure(result, generation):
                    return
                continue

            self._on_success(response, bootstrap)

    def _on_success(self, response: SubscribeResponse, bootstrap: bool) -> None:
        recovered = self.retries > 0
        self.retries = 0

        if bootstrap:
            self.cursor.update(response.timetoken, response.region)
        else:
            for message in response.messages:
                self._deliver(message)
            self.cursor.update(response.timetoken, response.region)

        self.state = LoopState.LISTENING
        if recovered:
            logger.info("pollcast.subscribe.reconnected", origin=self.origin)
            self._status("reconnect", f"reconnected to {self.origin}")
        if not self._announced:
            self._announced = True
            logger.info(
                "pollcast.subscribe.connected",
                origin=self.origin,
                timetoken=self.cursor.timetoken,
            )
            self._status("connect", f"connected to {self.origin}")

    def _deliver(self, message) -> None:
        payload = message.payload
        if self.decoder is not None and self.settings.cipher_key:
            try:
                payload = self.decoder(self.settings.cipher_key, payload)
            except Exception as e:
                self.fanout.put_error(
                    ErrorEnvelope(
                        kind=MALFORMED_RESPONSE,
                        message=f"could not decode payload: {e}",
                        channel=message.channel,
                        timetoken=message.timetoken,
                        origin=self.origin,
                    )
                )
                return

        envelope = Envelope(
            channel=message.channel,
            message=payload,
            timetoken=message.timetoken,
            group=message.group,
            region=message.region,
            origin=self.origin,
        )
        handler = self.registry.handler_for(message.channel, message.group)
        self.fanout.put(handler or self.default_handler, envelope)

    async def _on_failure(self, result: RequestResult, generation: int) -> bool:
        """Account for a failed poll. Returns True to retry, False when stopped."""
        self.retries += 1
        self.state = LoopState.RECONNECTING
        logger.warning(
            "pollcast.subscribe.poll_failed",
            origin=self.origin,
            retries=self.retries,
            max_retries=self.settings.max_retries,
            kind=result.kind,
            detail=result.detail,
            timetoken=self.cursor.timetoken,
        )

        # Never reuse a connection that just failed.
        await self.pool.reset(self.origin, SUBSCRIBE)

        if self.retries >= self.settings.max_retries:
            self.fanout.put_error(
                ErrorEnvelope(
                    kind=result.kind,
                    message=result.detail,
                    timetoken=str(self.cursor.timetoken),
                    status=result.status,
                    origin=self.origin,
                )
            )
            self.state = LoopState.STOPPED
            self._task = None
            logger.error(
                "pollcast.subscribe.gave_up",
                origin=self.origin,
                retries=self.retries,
            )
            return False

        self._status("disconnect", f"lost connection to {self.origin}, retrying")
        await asyncio.sleep(self.settings.reconnect_interval)
        if generation != self._generation:
            return False
        self.state = LoopState.CONNECTING
        return True
