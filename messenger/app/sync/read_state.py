"""Read watermarks and unread counts."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ..core.errors import FetchFailure, StoreError
from ..core.metrics import record_fetch_failure
from .query import eq, gt, neq
from .schemas import ConversationWithDetails, Message
from .store import Store

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReadStateTracker:
    """Owns ``conversation_members.last_read_at`` for the signed-in user."""

    def __init__(self, store: Store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def mark_read(self, conversation_id: str, user_id: str) -> datetime:
        """Advance the watermark to now. Raises ``StoreError`` on failure."""

        read_at = self.clock()
        await self.store.update(
            "conversation_members",
            {"last_read_at": read_at.isoformat()},
            filters=[eq("conversation_id", conversation_id), eq("user_id", user_id)],
        )
        logger.debug("Marked conversation %s read for %s at %s", conversation_id, user_id, read_at)
        return read_at

    async def count_unread(
        self, conversation_id: str, user_id: str, last_read_at: Optional[datetime]
    ) -> int:
        """Count messages newer than the watermark that ``user_id`` did not send."""

        filters = [eq("conversation_id", conversation_id), neq("sender_id", user_id)]
        if last_read_at is not None:
            filters.append(gt("created_at", last_read_at))
        try:
            return await self.store.count("messages", filters=filters)
        except StoreError as exc:
            record_fetch_failure("count_unread")
            raise FetchFailure(f"Could not count unread messages in {conversation_id}") from exc


def unread_count(
    messages: Iterable[Message], last_read_at: Optional[datetime], viewer_id: str
) -> int:
    """Pure unread derivation over already-loaded messages.

    A missing watermark means nothing has been read yet.
    """

    return sum(
        1
        for message in messages
        if message.sender_id != viewer_id
        and (last_read_at is None or message.created_at > last_read_at)
    )


def total_unread(conversations: Iterable[ConversationWithDetails]) -> int:
    return sum(item.unread_count for item in conversations)
