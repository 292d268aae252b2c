"""Conversation synchronization engine.

Keeps one open conversation's timeline consistent while three sources race
to change it: page fetches (initial and older history), the realtime change
feed, and a fixed-interval poll that covers events the feed silently lost.

Every asynchronous operation captures the engine generation when it starts
and discards its result if the generation moved on while it was suspended,
so a slow response for conversation A can never land in conversation B.
Events for the open conversation that arrive before its first page is in
place are dropped; the first page or the next poll picks them up.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Mapping, Optional, Set

from pydantic import ValidationError as SchemaError

from ..core.config import settings
from ..core.errors import EnrichmentFailure, FetchFailure, StoreError
from ..core.metrics import record_sync_event
from .fetch import MessageFetchService
from .merge import Timeline, apply_update, append_if_new, merge_polled, merge_reactions, prepend_older
from .notifications import LoggingNotifier, Notifier, Sound
from .query import eq
from .read_state import ReadStateTracker
from .realtime import ChangeEvent, ChangeFeed, EventType, Subscription
from .schemas import Message, MessageWithDetails

logger = logging.getLogger(__name__)

Listener = Callable[["SyncEngine"], None]


class SyncEngine:
    """Owns the ordered, deduplicated message list of the open conversation."""

    def __init__(
        self,
        fetcher: MessageFetchService,
        tracker: ReadStateTracker,
        feed: ChangeFeed,
        *,
        viewer_id: str,
        notifier: Optional[Notifier] = None,
        page_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.tracker = tracker
        self.feed = feed
        self.viewer_id = viewer_id
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.page_size = page_size or settings.MESSAGES_PER_PAGE
        self.poll_interval = (
            settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )

        self.is_loading = False
        self.error: Optional[str] = None

        self._messages: Timeline = ()
        self._has_more = False
        self._conversation_id: Optional[str] = None
        self._generation = 0
        self._ready = False
        self._loading_older = False
        self._visible = True
        self._wake = asyncio.Event()
        self._listeners: List[Listener] = []
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task[None]] = []
        self._side_tasks: Set[asyncio.Task[Any]] = set()

    # -- observable state -------------------------------------------------

    @property
    def messages(self) -> Timeline:
        return self._messages

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def visible(self) -> bool:
        return self._visible

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Call ``callback(engine)`` after every state change."""

        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    # -- lifecycle ----------------------------------------------------------

    async def open(self, conversation_id: str) -> None:
        """Make ``conversation_id`` the active conversation.

        Subscribes to the feed, loads the first page and starts polling.
        A failed first load is re-raised after polling has started, so the
        poll loop keeps retrying in the background.
        """

        await self.close()
        self._conversation_id = conversation_id
        row_filter = eq("conversation_id", conversation_id)
        self._subscriptions = [
            self.feed.subscribe("messages", events=[EventType.INSERT], row_filter=row_filter),
            self.feed.subscribe("messages", events=[EventType.UPDATE], row_filter=row_filter),
            self.feed.subscribe("message_reactions"),
        ]
        self._tasks = [
            asyncio.create_task(self._consume(item), name="sync-consumer")
            for item in self._subscriptions
        ]
        try:
            await self.initialize(conversation_id)
        finally:
            if self._conversation_id == conversation_id:
                self._tasks.append(asyncio.create_task(self._poll_loop(), name="sync-poll"))

    async def close(self) -> None:
        """Release subscriptions and timers and forget the timeline."""

        self._generation += 1
        for subscription in self._subscriptions:
            self.feed.unsubscribe(subscription)
        self._subscriptions = []
        tasks, self._tasks = self._tasks, []
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

        had_state = self._conversation_id is not None or bool(self._messages)
        self._conversation_id = None
        self._messages = ()
        self._has_more = False
        self._ready = False
        self._loading_older = False
        self.is_loading = False
        self.error = None
        if had_state:
            self._notify()

    def set_visible(self, visible: bool) -> None:
        """Pause polling in the background; poll at once when back in front."""

        became_visible = visible and not self._visible
        self._visible = visible
        if became_visible:
            self._wake.set()

    # -- page loads -----------------------------------------------------------

    async def initialize(self, conversation_id: str) -> bool:
        """Replace the timeline with the newest page of ``conversation_id``.

        Raises ``FetchFailure`` after recording it in ``error``. Returns
        ``False`` if another conversation became active meanwhile.
        """

        self._generation += 1
        generation = self._generation
        self._conversation_id = conversation_id
        self._messages = ()
        self._has_more = False
        self._ready = False
        self._loading_older = False
        self.is_loading = True
        self.error = None
        self._notify()

        try:
            page = await self.fetcher.fetch_page(conversation_id)
        except FetchFailure as exc:
            if generation == self._generation:
                self.is_loading = False
                self.error = str(exc)
                self._notify()
            record_sync_event("initialize", "failed")
            raise

        if generation != self._generation:
            record_sync_event("initialize", "stale")
            return False

        self._messages = tuple(page)
        self._has_more = len(page) >= self.page_size
        self._ready = True
        self.is_loading = False
        self._notify()
        record_sync_event("initialize", "applied")
        logger.debug("Loaded %s messages for conversation %s", len(page), conversation_id)
        self._schedule_mark_read()
        return True

    async def load_older(self) -> int:
        """Prepend the page preceding the oldest held message.

        Returns the number of messages fetched; repeated calls while a load
        is in flight are ignored.
        """

        if self._loading_older or not self._has_more or not self._messages or not self._ready:
            return 0
        conversation_id = self._conversation_id
        if conversation_id is None:
            return 0
        self._loading_older = True
        generation = self._generation
        cursor = self._messages[0].created_at
        try:
            older = await self.fetcher.fetch_page(conversation_id, cursor)
        except FetchFailure:
            logger.warning("Loading older messages for %s failed", conversation_id)
            record_sync_event("load_older", "failed")
            return 0
        finally:
            if generation == self._generation:
                self._loading_older = False

        if generation != self._generation:
            record_sync_event("load_older", "stale")
            return 0
        self._has_more = len(older) >= self.page_size
        if not self._set_messages(prepend_older(self._messages, older)):
            self._notify()
        record_sync_event("load_older", "applied")
        return len(older)

    # -- realtime merges ------------------------------------------------------

    async def on_realtime_insert(self, row: Mapping[str, Any]) -> bool:
        """Add a message delivered by the feed unless it is already held."""

        if not self._accepts(row):
            record_sync_event("insert", "dropped")
            return False
        generation = self._generation
        try:
            detail = await self._enrich(row)
        except EnrichmentFailure as exc:
            logger.warning("Dropping realtime insert: %s", exc)
            record_sync_event("insert", "failed")
            return False
        if generation != self._generation:
            record_sync_event("insert", "stale")
            return False

        if not self._set_messages(append_if_new(self._messages, detail)):
            record_sync_event("insert", "duplicate")
            return False
        record_sync_event("insert", "applied")
        if detail.message.sender_id != self.viewer_id:
            self._schedule_mark_read()
            self.notifier.play_sound(Sound.RECEIVE)
        return True

    async def on_realtime_update(self, row: Mapping[str, Any]) -> bool:
        """Apply content and deletion changes to a held message in place."""

        if not self._accepts(row):
            record_sync_event("update", "dropped")
            return False
        changed = self._set_messages(apply_update(self._messages, row))
        record_sync_event("update", "applied" if changed else "ignored")
        return changed

    async def on_reaction_event(self, event: Optional[ChangeEvent] = None) -> bool:
        """Refresh reaction sets after any reaction change.

        The payload is ignored: the newest page is refetched and merged
        without dropping older history, and reactions of held messages
        outside that page are looked up by id.
        """

        conversation_id = self._conversation_id
        if not self._ready or conversation_id is None:
            record_sync_event("reaction", "dropped")
            return False
        generation = self._generation
        try:
            snapshot = await self.fetcher.fetch_page(conversation_id)
            covered = {item.id for item in snapshot}
            older_ids = [item.id for item in self._messages if item.id not in covered]
            extra = await self.fetcher.fetch_reactions(older_ids) if older_ids else {}
        except FetchFailure:
            logger.warning("Reaction refresh for %s failed", conversation_id)
            record_sync_event("reaction", "failed")
            return False
        if generation != self._generation:
            record_sync_event("reaction", "stale")
            return False
        polled = merge_polled(self._messages, snapshot)
        changed = self._set_messages(merge_reactions(polled.messages, snapshot, extra))
        record_sync_event("reaction", "applied" if changed else "ignored")
        # The snapshot can pick up messages the feed dropped, same as a poll.
        if any(item.message.sender_id != self.viewer_id for item in polled.added):
            self._schedule_mark_read()
        return changed

    # -- polling ------------------------------------------------------------------

    def reconcile(self, polled: List[MessageWithDetails]) -> bool:
        """Fold a polled newest page into the timeline without removing anything."""

        if not self._ready:
            return False
        result = merge_polled(self._messages, polled)
        if not result.changed:
            record_sync_event("poll", "ignored")
            return False
        self._set_messages(result.messages)
        record_sync_event("poll", "applied")
        if any(item.message.sender_id != self.viewer_id for item in result.added):
            self._schedule_mark_read()
        if result.added:
            logger.info(
                "Poll picked up %s message(s) missed by the feed in %s",
                len(result.added),
                self._conversation_id,
            )
        return True

    async def poll_once(self) -> bool:
        """Fetch the newest page and reconcile it; retries a failed first load."""

        conversation_id = self._conversation_id
        if conversation_id is None or self.is_loading:
            return False
        if not self._ready:
            try:
                return await self.initialize(conversation_id)
            except FetchFailure:
                return False
        generation = self._generation
        try:
            polled = await self.fetcher.fetch_page(conversation_id)
        except FetchFailure:
            logger.warning("Poll for %s failed", conversation_id)
            record_sync_event("poll", "failed")
            return False
        if generation != self._generation:
            record_sync_event("poll", "stale")
            return False
        return self.reconcile(polled)

    # -- read state -----------------------------------------------------------------

    async def mark_read(self, conversation_id: str, user_id: str) -> bool:
        try:
            await self.tracker.mark_read(conversation_id, user_id)
        except StoreError as exc:
            logger.warning("Could not mark %s read: %s", conversation_id, exc)
            return False
        return True

    # -- internals --------------------------------------------------------------------

    def _accepts(self, row: Mapping[str, Any]) -> bool:
        return (
            self._ready
            and self._conversation_id is not None
            and str(row.get("conversation_id")) == self._conversation_id
        )

    async def _enrich(self, row: Mapping[str, Any]) -> MessageWithDetails:
        try:
            message = Message.model_validate(row)
        except SchemaError as exc:
            raise EnrichmentFailure(f"malformed message row {row.get('id')!r}") from exc
        try:
            sender = await self.fetcher.fetch_profile(message.sender_id)
        except FetchFailure as exc:
            raise EnrichmentFailure(f"sender lookup for {message.id} failed") from exc
        if sender is None:
            raise EnrichmentFailure(f"sender {message.sender_id} of {message.id} not found")
        return MessageWithDetails(message=message, sender=sender)

    def _set_messages(self, messages: Timeline) -> bool:
        if messages is self._messages:
            return False
        self._messages = messages
        self._notify()
        return True

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("Sync engine listener failed")

    def _schedule_mark_read(self) -> None:
        conversation_id = self._conversation_id
        if conversation_id is None:
            return
        task = asyncio.create_task(self.mark_read(conversation_id, self.viewer_id))
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    async def _dispatch(self, event: ChangeEvent) -> None:
        if event.table == "message_reactions":
            await self.on_reaction_event(event)
        elif event.type is EventType.INSERT:
            await self.on_realtime_insert(event.new)
        elif event.type is EventType.UPDATE:
            await self.on_realtime_update(event.new)

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Failed to merge %s %s event", event.type.value, event.table)

    async def _poll_loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if not self._visible:
                continue
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Poll cycle failed")
