"""
change_feed.py — Push-based subscriptions to row-level changes.

═══════════════════════════════════════════════════════════════════════════
CONTRACT
═══════════════════════════════════════════════════════════════════════════

Every committed store write is published as a raw payload:

    {
        "table": "sos_alerts",
        "eventType": "INSERT" | "UPDATE" | "DELETE",
        "new": {...row...} | {},
        "old": {...row...} | {},
        "commit_timestamp": "2026-10-19T09:30:00+00:00",
    }

Subscribers hold a *Channel*, keyed by a logical name. A channel carries one
or more listeners (table + optional event type + optional column equality
filter) and one bounded queue. Asking for a channel name that already
exists returns the existing channel; removing a channel is idempotent.

Several consumers of the same logical subscription (two tabs of one admin)
each `acquire()` the channel and get a ChannelHold with a private queue.
Listeners are shared and an identical listener is registered once. The
channel is closed when its last holder releases it.

Delivery guarantees:
    • at-least-once — a payload matching two listeners on one channel is
      queued twice; consumers deduplicate
    • no cross-entity ordering
    • nothing is replayed — payloads published while a channel is
      disconnected are dropped; the channel gets a DISCONNECTED marker when
      it drops and a RECONNECTED marker when it comes back, after which the
      consumer must re-fetch a full snapshot

A channel whose queue overflows is treated as a dropped connection: its
backlog is discarded and it receives DISCONNECTED then RECONNECTED.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from backend.app.core.config import settings
from backend.app.relay.models import utcnow

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class FeedSignal(str, Enum):
    """Connection-state markers interleaved with payloads on a channel."""
    DISCONNECTED = "disconnected"
    RECONNECTED  = "reconnected"


FeedItem = Union[Dict[str, Any], FeedSignal]
Forwarder = Callable[[Dict[str, Any]], Awaitable[None]]


# ═══════════════════════════════════════════════════════════════════════════
# Payloads
# ═══════════════════════════════════════════════════════════════════════════

def build_payload(
    table: str,
    kind: ChangeKind,
    new: Optional[Mapping[str, Any]] = None,
    old: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "table": table,
        "eventType": kind.value.upper(),
        "new": dict(new or {}),
        "old": dict(old or {}),
        "commit_timestamp": utcnow().isoformat(),
    }


def to_wire(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of a payload (datetimes → ISO strings)."""
    def _convert(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Mapping):
            return {k: _convert(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_convert(v) for v in value]
        return value

    return _convert(payload)


@dataclass(frozen=True)
class ChangeFilter:
    """Coarse server-side predicate for one listener."""
    table: str
    event: str = "*"                 # * | insert | update | delete
    column: Optional[str] = None
    value: Any = None

    def matches(self, payload: Mapping[str, Any]) -> bool:
        if payload.get("table") != self.table:
            return False
        kind = str(payload.get("eventType", "")).lower()
        if self.event != "*" and kind != self.event:
            return False
        if self.column is None:
            return True
        row = payload.get("new") or payload.get("old") or {}
        return row.get(self.column) == self.value


def parse_filter(table: str, event: str = "*", expr: Optional[str] = None) -> ChangeFilter:
    """
    Build a ChangeFilter from a `column=eq.value` expression.

    >>> parse_filter("notifications", "insert", "user_id=eq.u1")
    ChangeFilter(table='notifications', event='insert', column='user_id', value='u1')
    """
    event = event.lower()
    if event not in ("*", "insert", "update", "delete"):
        raise ValueError(f"Unknown event type: {event}")
    if not expr:
        return ChangeFilter(table=table, event=event)
    column, sep, rest = expr.partition("=")
    op, dot, value = rest.partition(".")
    if not sep or not dot or op != "eq" or not column:
        raise ValueError(f"Unsupported filter expression: {expr!r}")
    return ChangeFilter(table=table, event=event, column=column, value=value)


# ═══════════════════════════════════════════════════════════════════════════
# Channel
# ═══════════════════════════════════════════════════════════════════════════

class _Inbox:
    """Bounded queue of payloads and FeedSignal markers; None ends iteration."""

    name: str
    closed: bool

    def __init__(self, maxsize: int):
        self._queue: "asyncio.Queue[Optional[FeedItem]]" = asyncio.Queue(maxsize=maxsize)

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def _put(self, payload: Mapping[str, Any]) -> bool:
        """Queue one copy. On overflow, reset to DISCONNECTED + RECONNECTED."""
        try:
            self._queue.put_nowait(dict(payload))
            return True
        except asyncio.QueueFull:
            logger.warning(
                "Channel %s overflowed; forcing reconnect", self.name,
                extra={"channel": self.name},
            )
            self._overflow()
            return False

    def _clear(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def _signal(self, signal: Optional[FeedSignal]) -> None:
        try:
            self._queue.put_nowait(signal)
        except asyncio.QueueFull:
            self._clear()
            self._queue.put_nowait(signal)

    def _overflow(self) -> None:
        self._clear()
        self._signal(FeedSignal.DISCONNECTED)
        self._signal(FeedSignal.RECONNECTED)

    def _end(self) -> None:
        self._clear()
        self._queue.put_nowait(None)

    async def get(self) -> Optional[FeedItem]:
        """Next item, or None once closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> "_Inbox":
        return self

    async def __anext__(self) -> FeedItem:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class ChannelHold(_Inbox):
    """
    One holder's private queue on a shared channel.

    Several live views with the same scope hold the same channel; each gets
    every matching payload and every connection marker. `release()` detaches
    this holder; the channel closes once its last holder is gone.
    """

    def __init__(self, channel: "Channel", maxsize: int):
        super().__init__(maxsize)
        self.channel = channel
        self.name = channel.name
        self.closed = False

    @property
    def connected(self) -> bool:
        return self.channel.connected and not self.closed

    def release(self) -> None:
        self.channel.release(self)


class Channel(_Inbox):
    """
    One logical subscription: listeners + a bounded queue.

    Used directly, the channel is its own single consumer: iterate with
    `async for item in channel`. Used through `hold()`, every holder gets a
    private queue and the channel's own queue stays idle. Items are payload
    dicts or FeedSignal markers; iteration ends when the channel (or the
    hold) is closed.
    """

    def __init__(
        self,
        name: str,
        *,
        maxsize: int,
        on_close: Optional[Callable[["Channel"], None]] = None,
    ):
        super().__init__(maxsize)
        self.name = name
        self.connected = True
        self.closed = False
        self._maxsize = maxsize
        self._filters: List[ChangeFilter] = []
        self._holds: List[ChannelHold] = []
        self._on_close = on_close

    def on(
        self,
        table: str,
        event: str = "*",
        *,
        column: Optional[str] = None,
        value: Any = None,
    ) -> "Channel":
        """Add a listener. Returns self for chaining."""
        return self.add_filter(
            ChangeFilter(table=table, event=event.lower(), column=column, value=value)
        )

    def add_filter(self, change_filter: ChangeFilter) -> "Channel":
        """Add a listener; an identical listener already present is kept once."""
        if change_filter not in self._filters:
            self._filters.append(change_filter)
        return self

    @property
    def filters(self) -> List[ChangeFilter]:
        return list(self._filters)

    # ── Holders ──

    @property
    def holders(self) -> int:
        return len(self._holds)

    def hold(self) -> ChannelHold:
        """Attach a holder with its own queue."""
        if self.closed:
            raise RuntimeError(f"Channel {self.name} is closed")
        hold = ChannelHold(self, self._maxsize)
        self._holds.append(hold)
        return hold

    def release(self, hold: ChannelHold) -> bool:
        """Detach `hold`. Closes the channel after the last holder. Idempotent."""
        if hold not in self._holds:
            return False
        self._holds.remove(hold)
        hold.closed = True
        hold._end()
        if not self._holds:
            self.close()
        return True

    def _inboxes(self) -> List[_Inbox]:
        return list(self._holds) if self._holds else [self]

    # ── Delivery ──

    def offer(self, payload: Mapping[str, Any]) -> int:
        """Queue `payload` once per matching listener per holder. Returns copies queued."""
        if self.closed or not self.connected:
            return 0
        matching = sum(1 for f in self._filters if f.matches(payload))
        queued = 0
        for inbox in self._inboxes():
            for _ in range(matching):
                if not inbox._put(payload):
                    break
                queued += 1
        return queued

    def disconnect(self) -> None:
        """Transport dropped: stop delivering until reconnect()."""
        if self.closed or not self.connected:
            return
        self.connected = False
        for inbox in self._inboxes():
            inbox._signal(FeedSignal.DISCONNECTED)
        logger.info("Channel %s disconnected", self.name, extra={"channel": self.name})

    def reconnect(self) -> None:
        if self.closed or self.connected:
            return
        self.connected = True
        for inbox in self._inboxes():
            inbox._signal(FeedSignal.RECONNECTED)
        logger.info("Channel %s reconnected", self.name, extra={"channel": self.name})

    def close(self) -> None:
        """Tear down, ending every holder too. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self.connected = False
        for hold in self._holds:
            hold.closed = True
            hold._end()
        self._holds.clear()
        self._end()
        if self._on_close:
            self._on_close(self)
        logger.debug("Channel %s closed", self.name, extra={"channel": self.name})


# ═══════════════════════════════════════════════════════════════════════════
# Feed
# ═══════════════════════════════════════════════════════════════════════════

class ChangeFeed:
    """
    In-process change feed. Stores call `publish()` after each committed
    write; forwarders (e.g. the Redis relay) receive every local publish.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = queue_size or settings.CHANGEFEED_QUEUE_SIZE
        self._channels: Dict[str, Channel] = {}
        self._forwarders: List[Forwarder] = []

    # ── Channels ──

    def channel(self, name: str) -> Channel:
        """Return the live channel called `name`, creating it if missing."""
        existing = self._channels.get(name)
        if existing is not None and not existing.closed:
            return existing
        channel = Channel(name, maxsize=self._queue_size, on_close=self._forget)
        self._channels[name] = channel
        logger.debug("Channel %s created", name, extra={"channel": name})
        return channel

    def acquire(self, name: str) -> ChannelHold:
        """Hold the channel called `name` (creating it if missing) with a private queue."""
        return self.channel(name).hold()

    def get_channel(self, name: str) -> Optional[Channel]:
        return self._channels.get(name)

    def remove_channel(self, name: str) -> bool:
        """Close and forget a channel, ending all its holders. False if it did not exist."""
        channel = self._channels.pop(name, None)
        if channel is None:
            return False
        channel.close()
        return True

    def _forget(self, channel: Channel) -> None:
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]

    @property
    def channel_names(self) -> List[str]:
        return sorted(self._channels)

    # ── Delivery ──

    def add_forwarder(self, forwarder: Forwarder) -> None:
        self._forwarders.append(forwarder)

    def deliver(self, payload: Mapping[str, Any]) -> int:
        """Fan a payload out to local channels only."""
        delivered = 0
        for channel in list(self._channels.values()):
            delivered += channel.offer(payload)
        return delivered

    async def publish(
        self,
        table: str,
        kind: ChangeKind,
        new: Optional[Mapping[str, Any]] = None,
        old: Optional[Mapping[str, Any]] = None,
    ) -> int:
        payload = build_payload(table, kind, new, old)
        delivered = self.deliver(payload)
        logger.debug(
            "Published %s on %s to %d listener(s)",
            kind.value, table, delivered,
            extra={"table": table, "event_type": kind.value},
        )
        for forward in self._forwarders:
            try:
                await forward(payload)
            except Exception as exc:
                # Local subscribers already have the change; remote
                # processes resync when their own connection recovers.
                logger.warning("Change forwarder failed: %s", exc)
        return delivered

    # ── Transport state ──

    def disconnect_all(self) -> None:
        for channel in list(self._channels.values()):
            channel.disconnect()

    def reconnect_all(self) -> None:
        for channel in list(self._channels.values()):
            channel.reconnect()
