"""Presence — heartbeat scheduler and leave announcements.

Learn: Presence is best-effort liveness, separate from message delivery.

- The HeartbeatScheduler ticks on its own clock and tells the server
  "this uuid is still here" for every subscribed channel and group. It has
  its own retry counter: a heartbeat failure never touches the subscribe
  loop, and a subscribe failure never stops the heartbeat. Each run of
  max_retries consecutive failures ends that tick with one ErrorEnvelope;
  the scheduler keeps ticking and the next tick counts from zero.
- leave() tells the server a channel was dropped, so presence marks the
  departure now instead of waiting for the heartbeat timeout. It is fire
  and forget: failures are logged, never raised.
"""

import asyncio
from typing import Iterable, Optional

import structlog

from pollcast.config import Settings
from pollcast.dispatcher import (
    SINGLE,
    DispatcherPool,
    RequestResult,
    identity_params,
    path_segment,
)
from pollcast.envelope import CallbackFanout, ErrorEnvelope
from pollcast.errors import PRESENCE_HEARTBEAT
from pollcast.registry import Snapshot, SubscriptionRegistry

logger = structlog.get_logger()


def heartbeat_path(settings: Settings, channels: Iterable[str]) -> str:
    return (
        f"/v2/presence/sub-key/{settings.subscribe_key}"
        f"/channel/{path_segment(channels)}/heartbeat"
    )


def leave_path(settings: Settings, channels: Iterable[str]) -> str:
    return (
        f"/v2/presence/sub-key/{settings.subscribe_key}"
        f"/channel/{path_segment(channels)}/leave"
    )


async def leave(
    pool: DispatcherPool,
    settings: Settings,
    origin: str,
    channels: list[str],
    groups: Optional[list[str]] = None,
) -> bool:
    """Announce departure from channels. Returns True on a 2xx response."""
    params = identity_params(settings)
    if groups:
        params["channel-group"] = ",".join(groups)

    result = await pool.request(origin, SINGLE, leave_path(settings, channels), params)
    if not result.ok:
        logger.warning(
            "pollcast.presence.leave_failed",
            origin=origin,
            channels=channels,
            kind=result.kind,
            detail=result.detail,
        )
        return False
    logger.debug("pollcast.presence.left", origin=origin, channels=channels)
    return True


class HeartbeatScheduler:
    """Periodic presence heartbeat for one origin."""

    def __init__(
        self,
        origin: str,
        settings: Settings,
        registry: SubscriptionRegistry,
        pool: DispatcherPool,
        fanout: CallbackFanout,
    ):
        self.origin = origin
        self.settings = settings
        self.registry = registry
        self.pool = pool
        self.fanout = fanout
        self.retries = 0
        self.sent = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.settings.heartbeat_period > 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking. No-op when disabled or already running."""
        if not self.enabled or self.running:
            return
        logger.info(
            "pollcast.presence.heartbeat_started",
            origin=self.origin,
            period=self.settings.heartbeat_period,
        )
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("pollcast.presence.heartbeat_stopped", origin=self.origin)

    async def _run(self) -> None:
        # One beat at a time: the next tick waits for the previous beat,
        # including its retries, to finish.
        while True:
            await asyncio.sleep(self.settings.heartbeat_period)
            await self.beat()

    def _params(self, snapshot: Snapshot) -> dict:
        params = identity_params(self.settings)
        if self.settings.heartbeat > 0:
            params["heartbeat"] = str(self.settings.heartbeat)
        if snapshot.groups:
            params["channel-group"] = ",".join(snapshot.groups)
        state = snapshot.state_param()
        if state is not None:
            params["state"] = state
        return params

    async def beat(self) -> bool:
        """Send one heartbeat, retrying up to max_retries on failure.

        Returns True when the server accepted it or there was nothing to
        announce. Exhausting the retries reports a PRESENCE_HEARTBEAT
        ErrorEnvelope, once per exhaustion.
        """
        snapshot = self.registry.snapshot()
        if snapshot.is_empty():
            return True

        path = heartbeat_path(self.settings, snapshot.channels)
        while True:
            result: RequestResult = await self.pool.request(
                self.origin, SINGLE, path, self._params(snapshot)
            )
            self.sent += 1
            if result.ok:
                self.retries = 0
                return True

            self.failures += 1
            self.retries += 1
            logger.warning(
                "pollcast.presence.heartbeat_failed",
                origin=self.origin,
                retries=self.retries,
                kind=result.kind,
                detail=result.detail,
            )

            if self.retries >= self.settings.max_retries:
                self.retries = 0
                self.fanout.put_error(
                    ErrorEnvelope(
                        kind=PRESENCE_HEARTBEAT,
                        message=f"heartbeat failed: {result.detail}",
                        channel=",".join(snapshot.channels) or None,
                        status=result.status,
                        origin=self.origin,
                    )
                )
                return False

            await asyncio.sleep(
                min(self.settings.reconnect_interval, self.settings.heartbeat_period)
            )
