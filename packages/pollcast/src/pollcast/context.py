"""Client context — owns every per-origin object.

Learn: Nothing in pollcast is module-global. A Context is built once per
Client and holds the dispatcher pool plus, for each origin that has been
used, an OriginContext bundling that origin's registry, subscribe loop,
heartbeat scheduler and callback fan-out. When the last active loop stops,
the pool's connections are closed; slots are re-created on next use.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog

from pollcast.config import Settings
from pollcast.dispatcher import DispatcherPool
from pollcast.envelope import CallbackFanout, Handler
from pollcast.presence import HeartbeatScheduler, leave
from pollcast.registry import SubscriptionRegistry
from pollcast.subscribe import LoopState, SubscribeLoop

logger = structlog.get_logger()


@dataclass
class OriginContext:
    origin: str
    registry: SubscriptionRegistry
    loop: SubscribeLoop
    heartbeat: HeartbeatScheduler
    fanout: CallbackFanout
    leaves: set = field(default_factory=set)

    @property
    def active(self) -> bool:
        return self.loop.running or self.heartbeat.running

    async def stop(self) -> None:
        await self.heartbeat.stop()
        await self.loop.stop()


class Context:
    def __init__(
        self,
        settings: Settings,
        *,
        default_handler: Optional[Handler] = None,
        error_handler: Optional[Handler] = None,
        status_handlers: Optional[dict[str, Handler]] = None,
        decoder=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings
        self.default_handler = default_handler
        self.error_handler = error_handler
        self.status_handlers = status_handlers or {}
        self.decoder = decoder
        self.pool = DispatcherPool(
            settings, transport=transport, sync_transport=sync_transport
        )
        self.origins: dict[str, OriginContext] = {}

    def origin(self, name: Optional[str] = None) -> OriginContext:
        """Get (or lazily build) the per-origin bundle."""
        name = name or self.settings.origin
        ctx = self.origins.get(name)
        if ctx is not None:
            return ctx

        fanout = CallbackFanout(name, self.error_handler)
        registry = SubscriptionRegistry(name)
        loop = SubscribeLoop(
            name,
            self.settings,
            registry,
            self.pool,
            fanout,
            default_handler=self.default_handler,
            status_handlers=self.status_handlers,
            decoder=self.decoder,
        )
        heartbeat = HeartbeatScheduler(name, self.settings, registry, self.pool, fanout)
        ctx = OriginContext(name, registry, loop, heartbeat, fanout)
        registry.on_leave = lambda channels, groups: self._announce_leave(
            ctx, channels, groups
        )
        self.origins[name] = ctx
        logger.debug("pollcast.context.origin_created", origin=name)
        return ctx

    def _announce_leave(self, ctx: OriginContext, channels, groups) -> None:
        """Fire-and-forget leave; keeps a reference so the task is not collected."""
        task = asyncio.create_task(
            leave(self.pool, self.settings, ctx.origin, list(channels), list(groups))
        )
        ctx.leaves.add(task)
        task.add_done_callback(ctx.leaves.discard)

    def all_stopped(self) -> bool:
        return not any(ctx.active for ctx in self.origins.values())

    async def teardown_if_idle(self) -> bool:
        """Close pooled connections once no origin has a running loop."""
        if not self.all_stopped():
            return False
        pending = [task for ctx in self.origins.values() for task in ctx.leaves]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.pool.close()
        logger.debug("pollcast.context.torn_down")
        return True

    async def close(self) -> None:
        for ctx in list(self.origins.values()):
            await ctx.stop()
            if ctx.leaves:
                await asyncio.gather(*ctx.leaves, return_exceptions=True)
            await ctx.fanout.close(drain=True)
        await self.pool.close()

    def states(self) -> dict[str, LoopState]:
        return {name: ctx.loop.state for name, ctx in self.origins.items()}
