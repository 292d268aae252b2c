"""Change feed: typed change events, a subscription hub and an SSE listener.

The same ``ChangeFeed`` hub is used on both sides of the wire. The reference
store publishes committed writes into it and streams them out as SSE; the
client's ``RealtimeListener`` reads that stream and republishes each event
into a local hub that the sync engine subscribes to.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional

import httpx

from ..core.config import settings
from ..core.sse import parse_sse
from .query import Filter

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A single committed row change. ``new`` is empty for deletes."""

    table: str
    type: EventType
    new: Mapping[str, Any] = field(default_factory=dict)
    old: Mapping[str, Any] = field(default_factory=dict)

    @property
    def row(self) -> Mapping[str, Any]:
        return self.old if self.type is EventType.DELETE else self.new

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "type": self.type.value, "new": self.new, "old": self.old},
            default=str,
        )

    @classmethod
    def from_json(cls, payload: str) -> "ChangeEvent":
        data = json.loads(payload)
        return cls(
            table=str(data["table"]),
            type=EventType(data["type"]),
            new=data.get("new") or {},
            old=data.get("old") or {},
        )


_CLOSED = object()


class Subscription:
    """Async iterator over the events matching one topic."""

    def __init__(
        self,
        tables: frozenset[str],
        events: frozenset[EventType],
        row_filter: Optional[Filter],
        maxsize: int,
    ) -> None:
        self.tables = tables
        self.events = events
        self.row_filter = row_filter
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def accepts(self, event: ChangeEvent) -> bool:
        if self.closed or event.table not in self.tables or event.type not in self.events:
            return False
        return self.row_filter is None or self.row_filter.matches(event.row)

    def offer(self, event: ChangeEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Dropping %s %s event; subscription queue is full", event.type.value, event.table
            )
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake a consumer blocked on get(); drop the oldest event if needed.
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        events = ",".join(sorted(item.value for item in self.events))
        return f"Subscription(tables={sorted(self.tables)}, events={events}, filter={self.row_filter!r})"


class ChangeFeed:
    """In-process publish/subscribe hub keyed by table, event type and row filter."""

    def __init__(self, *, queue_size: int | None = None) -> None:
        self.queue_size = queue_size or settings.REALTIME_QUEUE_SIZE
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        table: str | Iterable[str],
        *,
        events: Iterable[EventType | str] | None = None,
        row_filter: Optional[Filter] = None,
    ) -> Subscription:
        tables = frozenset([table] if isinstance(table, str) else table)
        wanted = frozenset(EventType(item) for item in events) if events else frozenset(EventType)
        subscription = Subscription(tables, wanted, row_filter, self.queue_size)
        self._subscriptions.append(subscription)
        logger.debug("Subscribed %r", subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscription; return the count."""

        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.accepts(event) and subscription.offer(event):
                delivered += 1
        return delivered

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)


class RealtimeListener:
    """Consume the store's SSE change stream and republish it locally.

    Delivery is best effort: while disconnected, events are lost and the
    sync engine's poll loop is expected to cover the gap.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        *,
        base_url: str | None = None,
        tables: Iterable[str] = ("messages", "message_reactions", "conversations"),
        api_key: str | None = None,
        timeout: float | None = None,
        reconnect_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.feed = feed
        self.base_url = base_url or settings.STORE_URL
        self.tables = tuple(tables)
        self.reconnect_delay = (
            settings.REALTIME_RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        )
        headers: Dict[str, str] = {"Accept": "text/event-stream"}
        key = api_key if api_key is not None else settings.STORE_API_KEY
        if key:
            headers["apikey"] = key
        self._headers = headers
        self._timeout = httpx.Timeout(timeout or settings.STORE_TIMEOUT, read=None)
        self._transport = transport
        self._task: asyncio.Task[None] | None = None

    async def listen_once(self) -> int:
        """Read one connection until the server closes it; return events seen."""

        received = 0
        params = [("table", table) for table in self.tables]
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            headers=self._headers,
            transport=self._transport,
        ) as client:
            async with client.stream("GET", "/realtime/stream", params=params) as response:
                response.raise_for_status()
                async for _, data in parse_sse(response.aiter_lines()):
                    try:
                        event = ChangeEvent.from_json(data)
                    except (KeyError, ValueError, TypeError):
                        logger.warning("Ignoring malformed change event: %.200s", data)
                        continue
                    received += 1
                    self.feed.publish(event)
        return received

    async def run(self) -> None:
        """Listen forever, reconnecting after a fixed delay on failures."""

        while True:
            try:
                await self.listen_once()
                logger.info("Realtime stream closed by server; reconnecting")
            except (httpx.TransportError, httpx.HTTPStatusError) as exc:
                logger.warning(
                    "Realtime stream dropped (%s); retrying in %.1fs", exc, self.reconnect_delay
                )
            await asyncio.sleep(self.reconnect_delay)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="realtime-listener")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
