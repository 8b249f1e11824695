"""Subscription registry — the per-origin set of channels and groups.

Learn: The registry is the only shared mutable state between the caller
and the subscribe loop. Callers mutate it through add()/remove(); the loop
and the heartbeat never read the live maps, they take a Snapshot under the
same lock. Any mutation that completed before a snapshot is therefore
visible in the request built from it.

Each name maps to a Subscription holding an optional handler override and
an optional presence state (any JSON-serialisable dict).
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import structlog

from pollcast.envelope import Handler

logger = structlog.get_logger()


def _own(state: Optional[dict]) -> Optional[dict]:
    # Each name keeps its own copy; later edits by the caller don't leak in.
    return dict(state) if state is not None else None


@dataclass
class Subscription:
    name: str
    handler: Optional[Handler] = None
    state: Optional[dict] = None


@dataclass(frozen=True)
class Snapshot:
    """Immutable view used to build exactly one outgoing request."""

    channels: tuple[str, ...] = ()
    groups: tuple[str, ...] = ()
    state: dict = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.channels and not self.groups

    def state_param(self) -> Optional[str]:
        if not self.state:
            return None
        return json.dumps(self.state, separators=(",", ":"), sort_keys=True)


class SubscriptionRegistry:
    """Channels and groups for one origin.

    `on_leave` is called with the channel names that a remove() actually
    dropped; the owner uses it to fire a presence leave request.
    """

    def __init__(
        self,
        origin: str,
        on_leave: Optional[Callable[[list[str], list[str]], None]] = None,
    ):
        self.origin = origin
        self.on_leave = on_leave
        self._channels: dict[str, Subscription] = {}
        self._groups: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    # ─── Mutation ─────────────────────────────────────────

    def add(
        self,
        channels: Iterable[str] = (),
        groups: Iterable[str] = (),
        *,
        handler: Optional[Handler] = None,
        state: Optional[dict] = None,
    ) -> bool:
        """Add names; return True if the channel/group set changed.

        Idempotent: an existing name only gets its handler and state
        updated (when given).
        """
        channels, groups = list(channels), list(groups)
        changed = False
        with self._lock:
            for table, names in ((self._channels, channels), (self._groups, groups)):
                for name in names:
                    entry = table.get(name)
                    if entry is None:
                        table[name] = Subscription(name, handler, _own(state))
                        changed = True
                        continue
                    if handler is not None:
                        entry.handler = handler
                    if state is not None:
                        entry.state = _own(state)
        if changed:
            logger.debug(
                "pollcast.registry.added",
                origin=self.origin,
                channels=list(channels),
                groups=list(groups),
            )
        return changed

    def remove(self, channels: Iterable[str] = (), groups: Iterable[str] = ()) -> bool:
        """Remove names; return True if the channel/group set changed.

        Unknown names are ignored. Dropped names are announced through
        `on_leave`; its failures are logged, never raised.
        """
        with self._lock:
            dropped_channels = [n for n in channels if self._channels.pop(n, None)]
            dropped_groups = [n for n in groups if self._groups.pop(n, None)]

        if not dropped_channels and not dropped_groups:
            return False

        logger.debug(
            "pollcast.registry.removed",
            origin=self.origin,
            channels=dropped_channels,
            groups=dropped_groups,
        )
        if self.on_leave is not None and dropped_channels:
            try:
                self.on_leave(dropped_channels, dropped_groups)
            except Exception:
                logger.exception("pollcast.registry.leave_hook_failed", origin=self.origin)
        return True

    def set_state(
        self, state: Optional[dict], channels: Iterable[str] = (), groups: Iterable[str] = ()
    ) -> list[str]:
        """Replace presence state on subscribed names; returns the names updated."""
        updated = []
        with self._lock:
            for table, names in ((self._channels, channels), (self._groups, groups)):
                for name in names:
                    entry = table.get(name)
                    if entry is not None:
                        entry.state = _own(state)
                        updated.append(name)
        return updated

    def clear(self) -> None:
        """Drop all bookkeeping without announcing leaves."""
        with self._lock:
            self._channels.clear()
            self._groups.clear()

    # ─── Reads ────────────────────────────────────────────

    def channels(self) -> list[str]:
        with self._lock:
            return list(self._channels)

    def groups(self) -> list[str]:
        with self._lock:
            return list(self._groups)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._channels and not self._groups

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._channels or name in self._groups

    def snapshot(self) -> Snapshot:
        with self._lock:
            state = {}
            for table in (self._channels, self._groups):
                for name, entry in table.items():
                    if entry.state is not None:
                        state[name] = dict(entry.state)
            return Snapshot(
                channels=tuple(sorted(self._channels)),
                groups=tuple(sorted(self._groups)),
                state=state,
            )

    def handler_for(self, channel: str, group: Optional[str] = None) -> Optional[Handler]:
        """Channel override first, then group override; None means origin default."""
        with self._lock:
            entry = self._channels.get(channel)
            if entry is not None and entry.handler is not None:
                return entry.handler
            if group is not None:
                entry = self._groups.get(group)
                if entry is not None and entry.handler is not None:
                    return entry.handler
        return None
