"""Side effects (sounds, OS notifications, badge) and the global unread watcher."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Dict, List, Mapping, Protocol

from ..core.errors import FetchFailure
from .conversations import ConversationService
from .read_state import total_unread
from .realtime import ChangeEvent, ChangeFeed, EventType, Subscription
from .schemas import ConversationWithDetails

logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_TITLE = "New message"
IMAGE_NOTIFICATION_BODY = "\U0001F4F7 Image"


class Sound(str, enum.Enum):
    SEND = "send"
    RECEIVE = "receive"


class Notifier(Protocol):
    """Presentation hooks; implementations must not raise."""

    def play_sound(self, sound: Sound) -> None:
        ...

    def show_notification(self, title: str, body: str) -> None:
        ...

    def set_badge(self, count: int) -> None:
        ...


class LoggingNotifier:
    """Default notifier for headless use: every side effect becomes a log line."""

    def play_sound(self, sound: Sound) -> None:
        logger.debug("Playing %s sound", sound.value)

    def show_notification(self, title: str, body: str) -> None:
        logger.info("Notification: %s: %s", title, body)

    def set_badge(self, count: int) -> None:
        logger.debug("Badge count set to %s", count)


def notification_body(row: Mapping[str, object]) -> str:
    if row.get("image_url"):
        return IMAGE_NOTIFICATION_BODY
    return str(row.get("content") or "")


class UnreadWatcher:
    """Keeps unread counts, the app badge and message notifications current.

    Watches every ``messages`` insert and ``conversations`` update regardless
    of which conversation is open, and refreshes the conversation list on each.
    """

    def __init__(
        self,
        conversations: ConversationService,
        feed: ChangeFeed,
        notifier: Notifier,
        *,
        viewer_id: str,
    ) -> None:
        self.conversations = conversations
        self.feed = feed
        self.notifier = notifier
        self.viewer_id = viewer_id
        self.items: List[ConversationWithDetails] = []
        self._listeners: List[Callable[["UnreadWatcher"], None]] = []
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def unread_counts(self) -> Dict[str, int]:
        return {item.conversation.id: item.unread_count for item in self.items}

    @property
    def total_unread(self) -> int:
        return total_unread(self.items)

    def add_listener(self, callback: Callable[["UnreadWatcher"], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    async def start(self) -> None:
        if self._subscriptions:
            return
        inserts = self.feed.subscribe("messages", events=[EventType.INSERT])
        updates = self.feed.subscribe("conversations", events=[EventType.UPDATE])
        self._subscriptions = [inserts, updates]
        self._tasks = [
            asyncio.create_task(self._consume(inserts), name="unread-messages"),
            asyncio.create_task(self._consume(updates), name="unread-conversations"),
        ]
        await self.refresh()

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.feed.unsubscribe(subscription)
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._subscriptions = []

    async def refresh(self) -> bool:
        """Reload the conversation list; returns ``False`` if the load failed."""

        try:
            items = await self.conversations.list_conversations(self.viewer_id)
        except FetchFailure:
            logger.warning("Unread refresh failed; keeping previous counts")
            return False
        self.items = items
        self.notifier.set_badge(self.total_unread)
        for callback in list(self._listeners):
            callback(self)
        return True

    async def handle(self, event: ChangeEvent) -> None:
        # Resolve the title from the list cached before this refresh.
        if event.table == "messages" and event.type is EventType.INSERT:
            sender_id = str(event.new.get("sender_id") or "")
            if sender_id and sender_id != self.viewer_id:
                self.notifier.show_notification(
                    self._sender_name(sender_id), notification_body(event.new)
                )
        await self.refresh()

    def _sender_name(self, sender_id: str) -> str:
        for item in self.items:
            member = item.member(sender_id)
            if member is not None:
                return member.profile.display_name
        return DEFAULT_NOTIFICATION_TITLE

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self.handle(event)
            except Exception:
                logger.exception("Unread watcher failed to handle %s event", event.table)
