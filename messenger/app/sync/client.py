"""Facade that wires the sync services for one signed-in user."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from ..core.errors import FetchFailure, SendFailure
from .compose import ComposeService
from .conversations import ConversationService
from .engine import Listener, SyncEngine
from .fetch import MessageFetchService
from .friends import FriendService
from .merge import Timeline
from .notifications import LoggingNotifier, Notifier, Sound, UnreadWatcher
from .read_state import ReadStateTracker
from .realtime import ChangeFeed
from .schemas import Conversation, ConversationWithDetails, Message, Profile, Reaction
from .store import Store

logger = logging.getLogger(__name__)


class MessengerClient:
    """Everything a chat screen needs, built from an explicit store and feed.

    The feed is the local hub the realtime listener (or, in tests, a fake
    store) publishes into. Nothing here is a module-level singleton; two
    clients for two users can run side by side in one process.
    """

    def __init__(
        self,
        store: Store,
        feed: ChangeFeed,
        *,
        viewer_id: str,
        notifier: Optional[Notifier] = None,
        page_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.viewer_id = viewer_id
        self.notifier: Notifier = notifier or LoggingNotifier()

        self.tracker = ReadStateTracker(store)
        self.fetcher = MessageFetchService(store, page_size=page_size)
        self.compose = ComposeService(store)
        self.conversations = ConversationService(store, self.tracker)
        self.friends = FriendService(store)
        self.engine = SyncEngine(
            self.fetcher,
            self.tracker,
            feed,
            viewer_id=viewer_id,
            notifier=self.notifier,
            page_size=page_size,
            poll_interval=poll_interval,
        )
        self.watcher = UnreadWatcher(
            self.conversations, feed, self.notifier, viewer_id=viewer_id
        )

    async def start(self) -> None:
        await self.watcher.start()

    async def aclose(self) -> None:
        await self.engine.close()
        await self.watcher.stop()

    # -- open conversation ---------------------------------------------------

    @property
    def messages(self) -> Timeline:
        return self.engine.messages

    @property
    def has_more(self) -> bool:
        return self.engine.has_more

    @property
    def error(self) -> Optional[str]:
        return self.engine.error

    @property
    def conversation_id(self) -> Optional[str]:
        return self.engine.conversation_id

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        return self.engine.add_listener(callback)

    async def open_conversation(self, conversation_id: str) -> bool:
        """Show ``conversation_id``; on failure ``error`` is set and polling retries."""

        try:
            await self.engine.open(conversation_id)
        except FetchFailure:
            logger.warning("Opening conversation %s failed", conversation_id)
            return False
        return True

    async def close_conversation(self) -> None:
        await self.engine.close()

    async def load_older_messages(self) -> int:
        return await self.engine.load_older()

    def set_visible(self, visible: bool) -> None:
        self.engine.set_visible(visible)

    # -- writes ---------------------------------------------------------------------

    async def send_message(
        self,
        content: Optional[str] = None,
        *,
        image_url: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> tuple[Optional[Message], Optional[str]]:
        """Send to the open conversation.

        Returns ``(message, None)`` on success and ``(None, draft)`` when the
        store rejected the write, so the input box can be restored. The
        timeline is not touched; the realtime echo adds the message.
        """

        target = conversation_id or self.engine.conversation_id
        if target is None:
            raise RuntimeError("No conversation is open")
        try:
            message = await self.compose.send(
                target, self.viewer_id, content, image_url=image_url, reply_to_id=reply_to_id
            )
        except SendFailure as exc:
            logger.warning("Send to %s failed: %s", target, exc)
            return None, exc.draft
        self.notifier.play_sound(Sound.SEND)
        return message, None

    async def delete_message(self, message_id: str) -> None:
        await self.compose.delete(message_id)

    async def add_reaction(self, message_id: str, emoji: str) -> Reaction:
        return await self.compose.add_reaction(message_id, self.viewer_id, emoji)

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self.compose.remove_reaction(message_id, self.viewer_id, emoji)

    # -- friends ------------------------------------------------------------------------

    async def list_friends(self) -> List[Profile]:
        return await self.friends.list_friends(self.viewer_id)

    async def find_by_friend_code(self, friend_code: str) -> Optional[Profile]:
        return await self.friends.profile_by_friend_code(friend_code)

    async def add_friend(self, friend_code: str) -> Profile:
        return await self.friends.add_by_code(self.viewer_id, friend_code)

    async def remove_friend(self, friend_id: str) -> None:
        await self.friends.remove(self.viewer_id, friend_id)

    async def start_direct_chat(self, friend_id: str) -> Conversation:
        """Return (creating if needed) the direct conversation with a friend."""

        return await self.conversations.create_direct(self.viewer_id, friend_id)

    # -- conversation list ------------------------------------------------------------

    @property
    def conversation_list(self) -> List[ConversationWithDetails]:
        return self.watcher.items

    @property
    def unread_counts(self) -> Dict[str, int]:
        return self.watcher.unread_counts

    @property
    def total_unread(self) -> int:
        return self.watcher.total_unread
