"""Client — the public facade over the subscribe core.

Usage:
    async with Client(subscribe_key="demo", callback=print) as client:
        await client.subscribe(["news"])
        ...

Learn: The Client validates arguments and turns them into calls on the
per-origin objects held by its Context. Validation failures are raised
here, synchronously, before anything touches the network. Everything the
loops observe afterwards (deliveries, exhausted retries, heartbeat
trouble) reaches user code only through callbacks.
"""

import json
from typing import Any, Iterable, Optional, Union

import httpx
import structlog
from pydantic import ValidationError as SettingsError

from pollcast.config import Settings
from pollcast.context import Context, OriginContext
from pollcast.dispatcher import SINGLE, RequestResult, identity_params
from pollcast.envelope import as_handler
from pollcast.errors import MalformedResponseError, ValidationError
from pollcast.subscribe import LoopState

logger = structlog.get_logger()

TIME_PATH = "/time/0"
PRESENCE_SUFFIX = "-pnpres"

Names = Union[str, Iterable[str], None]


# ─── Argument validation ──────────────────────────────────


def _names(names: Names, what: str) -> list[str]:
    """Normalise a name argument: None, "a,b" or an iterable of strings."""
    if names is None:
        return []
    if isinstance(names, str):
        names = names.split(",")
    result = []
    for name in names:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{what} names must be non-empty strings, got {name!r}")
        result.append(name.strip())
    return result


def _check_state(state: Any) -> None:
    if state is None:
        return
    if not isinstance(state, dict):
        raise ValidationError("state must be a dict")
    try:
        json.dumps(state)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"state must be JSON serialisable: {e}") from e


def _check_callback(callback: Any, what: str) -> None:
    if callback is not None and not callable(callback):
        raise ValidationError(f"{what} must be callable")


def presence_names(names: list[str]) -> list[str]:
    return [n if n.endswith(PRESENCE_SUFFIX) else n + PRESENCE_SUFFIX for n in names]


def _settings_error(error: SettingsError) -> ValidationError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or 'settings'}: {e['msg']}"
        for e in error.errors()
    )
    return ValidationError(f"invalid settings: {problems}")


def _timetoken(result: RequestResult) -> int:
    result.raise_for_error()
    body = result.body
    if not isinstance(body, list) or not body or not str(body[0]).isdigit():
        raise MalformedResponseError(
            f"unexpected time response: {body!r}", status=result.status
        )
    return int(body[0])


# ─── Client ───────────────────────────────────────────────


class Client:
    """Subscribe to channels and channel groups on one or more origins.

    Callbacks may be plain functions (run in a worker thread) or coroutine
    functions. `callback` receives Envelopes for names without their own
    override, `error_callback` receives ErrorEnvelopes, and the three
    status callbacks receive a short text message.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        callback=None,
        error_callback=None,
        connect_callback=None,
        disconnect_callback=None,
        reconnect_callback=None,
        decoder=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_transport: Optional[httpx.BaseTransport] = None,
        **overrides,
    ):
        try:
            if settings is None:
                settings = Settings(**overrides)
            elif overrides:
                settings = Settings(**{**settings.model_dump(), **overrides})
        except SettingsError as e:
            raise _settings_error(e) from e

        for name, value in (
            ("callback", callback),
            ("error_callback", error_callback),
            ("connect_callback", connect_callback),
            ("disconnect_callback", disconnect_callback),
            ("reconnect_callback", reconnect_callback),
            ("decoder", decoder),
        ):
            _check_callback(value, name)
        if settings.cipher_key and decoder is None:
            raise ValidationError("cipher_key is set but no decoder was given")

        status_handlers = {
            name: as_handler(cb)
            for name, cb in (
                ("connect", connect_callback),
                ("disconnect", disconnect_callback),
                ("reconnect", reconnect_callback),
            )
            if cb is not None
        }

        self.settings = settings
        self.context = Context(
            settings,
            default_handler=as_handler(callback),
            error_handler=as_handler(error_callback),
            status_handlers=status_handlers,
            decoder=decoder,
            transport=transport,
            sync_transport=sync_transport,
        )

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _origin(self, origin: Optional[str]) -> OriginContext:
        return self.context.origin(origin)

    def _known(self, origin: Optional[str]) -> Optional[OriginContext]:
        """The origin's bundle if it was ever used; reads never create one."""
        return self.context.origins.get(origin or self.settings.origin)

    # ─── Subscriptions ────────────────────────────────────

    async def subscribe(
        self,
        channels: Names = None,
        groups: Names = None,
        *,
        callback=None,
        state: Optional[dict] = None,
        origin: Optional[str] = None,
    ) -> bool:
        """Add channels/groups and make sure the loop (and heartbeat) run.

        `callback` overrides the default callback for these names.
        Returns True when the origin's loop is running afterwards.
        """
        channels = _names(channels, "channel")
        groups = _names(groups, "group")
        if not channels and not groups:
            raise ValidationError("subscribe needs at least one channel or group")
        _check_callback(callback, "callback")
        _check_state(state)

        ctx = self._origin(origin)
        await ctx.loop.add_channels(
            channels, groups, handler=as_handler(callback), state=state
        )
        running = await ctx.loop.start()
        ctx.heartbeat.start()
        return running

    async def unsubscribe(
        self,
        channels: Names = None,
        groups: Names = None,
        *,
        origin: Optional[str] = None,
    ) -> bool:
        """Drop channels/groups. Dropped channels get a presence leave.

        Removing the last name stops the loop and the heartbeat.
        """
        channels = _names(channels, "channel")
        groups = _names(groups, "group")
        if not channels and not groups:
            raise ValidationError("unsubscribe needs at least one channel or group")

        ctx = self._known(origin)
        if ctx is None:
            return False
        changed = await ctx.loop.remove_channels(channels, groups)
        if ctx.registry.is_empty():
            await ctx.heartbeat.stop()
            await self.context.teardown_if_idle()
        return changed

    async def presence(
        self,
        channels: Names = None,
        groups: Names = None,
        *,
        callback=None,
        origin: Optional[str] = None,
    ) -> bool:
        """Watch join/leave/timeout events for channels or groups.

        Each name is registered as its `-pnpres` twin, so presence events
        ride the same long-poll as messages. `callback` overrides the
        default callback for those events only.
        """
        channels = _names(channels, "channel")
        groups = _names(groups, "group")
        if not channels and not groups:
            raise ValidationError("presence needs at least one channel or group")
        _check_callback(callback, "callback")
        return await self.subscribe(
            presence_names(channels),
            presence_names(groups),
            callback=callback,
            origin=origin,
        )

    async def unsubscribe_presence(
        self,
        channels: Names = None,
        groups: Names = None,
        *,
        origin: Optional[str] = None,
    ) -> bool:
        """Stop watching presence events; message subscriptions stay."""
        channels = _names(channels, "channel")
        groups = _names(groups, "group")
        if not channels and not groups:
            raise ValidationError("unsubscribe_presence needs at least one channel or group")
        return await self.unsubscribe(
            presence_names(channels), presence_names(groups), origin=origin
        )

    async def start(self, origin: Optional[str] = None) -> bool:
        """Restart a stopped loop with its current channels and cursor."""
        ctx = self._origin(origin)
        running = await ctx.loop.start()
        if running:
            ctx.heartbeat.start()
        return running

    async def stop(self, origin: Optional[str] = None) -> None:
        """Stop one origin: cancel the poll, forget its channels."""
        ctx = self._known(origin)
        if ctx is not None:
            await ctx.stop()
        await self.context.teardown_if_idle()

    async def close(self) -> None:
        """Stop every origin, deliver what is queued, close all connections."""
        await self.context.close()
        logger.info("pollcast.client.closed")

    # ─── Introspection ────────────────────────────────────

    def subscribed(self, origin: Optional[str] = None) -> bool:
        """True when `origin` (or, without one, any origin) has a subscription."""
        if origin is not None:
            ctx = self.context.origins.get(origin)
            return ctx is not None and not ctx.registry.is_empty()
        return any(not ctx.registry.is_empty() for ctx in self.context.origins.values())

    def channels(self, origin: Optional[str] = None) -> list[str]:
        ctx = self._known(origin)
        return ctx.registry.channels() if ctx else []

    def groups(self, origin: Optional[str] = None) -> list[str]:
        ctx = self._known(origin)
        return ctx.registry.groups() if ctx else []

    def loop_state(self, origin: Optional[str] = None) -> LoopState:
        ctx = self._known(origin)
        return ctx.loop.state if ctx else LoopState.IDLE

    # ─── Identity ─────────────────────────────────────────

    @property
    def uuid(self) -> str:
        return self.settings.uuid

    def change_uuid(self, uuid: str) -> None:
        if not isinstance(uuid, str) or not uuid.strip():
            raise ValidationError("uuid must be a non-empty string")
        if self.subscribed():
            raise ValidationError("cannot change uuid while subscribed")
        self.settings.uuid = uuid

    def set_auth_key(self, auth_key: Optional[str]) -> None:
        """Use a new auth key from the next request on."""
        if auth_key is not None and not isinstance(auth_key, str):
            raise ValidationError("auth_key must be a string")
        self.settings.auth_key = auth_key or ""

    async def set_heartbeat(self, seconds: int, interval: Optional[float] = None) -> None:
        """Change the presence timeout while running.

        Schedulers restart on the new period for every origin with
        subscriptions, or stop when the period drops to zero. The next
        subscribe poll carries the new timeout.
        """
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds < 0:
            raise ValidationError(f"heartbeat must be a non-negative integer, got {seconds!r}")
        if interval is not None and (
            isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0
        ):
            raise ValidationError(f"heartbeat interval must be positive, got {interval!r}")

        self.settings.heartbeat = seconds
        self.settings.heartbeat_interval = interval
        logger.info(
            "pollcast.client.heartbeat_changed",
            heartbeat=seconds,
            period=self.settings.heartbeat_period,
        )
        for ctx in self.context.origins.values():
            await ctx.heartbeat.stop()
            if not ctx.registry.is_empty():
                ctx.heartbeat.start()

    # ─── Cursor ───────────────────────────────────────────

    def timetoken(self, origin: Optional[str] = None) -> int:
        ctx = self._known(origin)
        return ctx.loop.cursor.timetoken if ctx else 0

    def seek(
        self,
        timetoken: Union[int, str],
        region: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> None:
        """Position the cursor for the next subscribe on `origin`."""
        if not str(timetoken).isdigit():
            raise ValidationError(f"timetoken must be a non-negative integer, got {timetoken!r}")
        ctx = self._origin(origin)
        if not ctx.registry.is_empty():
            raise ValidationError("cannot seek while subscribed")
        ctx.loop.cursor.seek(timetoken, region)

    # ─── Presence state ───────────────────────────────────

    def set_state(
        self,
        state: Optional[dict],
        channels: Names = None,
        groups: Names = None,
        *,
        origin: Optional[str] = None,
    ) -> list[str]:
        """Replace presence state on subscribed names; returns the names updated.

        The next poll and the next heartbeat carry the new state.
        """
        channels = _names(channels, "channel")
        groups = _names(groups, "group")
        _check_state(state)
        ctx = self._known(origin)
        return ctx.registry.set_state(state, channels, groups) if ctx else []

    def get_state(self, origin: Optional[str] = None) -> dict:
        ctx = self._known(origin)
        return ctx.registry.snapshot().state if ctx else {}

    # ─── One-shot calls ───────────────────────────────────

    async def time(self, origin: Optional[str] = None) -> int:
        """Server time as a timetoken. Raises PollcastError subclasses."""
        result = await self.context.pool.request(
            origin or self.settings.origin,
            SINGLE,
            TIME_PATH,
            identity_params(self.settings),
        )
        return _timetoken(result)

    def time_sync(self, origin: Optional[str] = None) -> int:
        """Blocking variant of time(), served by the sync dispatcher slot."""
        result = self.context.pool.request_sync(
            origin or self.settings.origin,
            SINGLE,
            TIME_PATH,
            identity_params(self.settings),
        )
        return _timetoken(result)
