"""Outgoing writes: messages, soft deletes and reactions.

Nothing here touches the sync engine's timeline. A sent message shows up
when the realtime insert echoes it back, and a delete when the update event
arrives.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ..core.config import settings
from ..core.errors import SendFailure, StoreError, ValidationError
from .query import eq
from .read_state import utcnow
from .schemas import Message, Reaction
from .store import Store

logger = logging.getLogger(__name__)


class ComposeService:
    def __init__(
        self,
        store: Store,
        *,
        max_length: int | None = None,
        reaction_emojis: tuple[str, ...] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_length = max_length or settings.MESSAGE_MAX_LENGTH
        self.reaction_emojis = reaction_emojis or settings.REACTION_EMOJIS
        self.clock = clock

    def validate(
        self, content: Optional[str] = None, image_url: Optional[str] = None
    ) -> tuple[Optional[str], Optional[str]]:
        """Normalise a draft; exactly one of text and image must remain."""

        text = content.strip() if content is not None else ""
        image = image_url.strip() if image_url is not None else ""
        if text and image:
            raise ValidationError("A message carries either text or an image, not both")
        if not text and not image:
            raise ValidationError("Message is empty")
        if len(text) > self.max_length:
            raise ValidationError(f"Message exceeds {self.max_length} characters")
        return (text or None, image or None)

    async def send(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> Message:
        """Insert a message and bump the conversation's ``updated_at``."""

        text, image = self.validate(content, image_url)
        row: dict[str, object] = {"conversation_id": conversation_id, "sender_id": sender_id}
        if text is not None:
            row["content"] = text
        if image is not None:
            row["image_url"] = image
        if reply_to_id is not None:
            row["reply_to_id"] = reply_to_id

        try:
            inserted = await self.store.insert("messages", [row])
        except StoreError as exc:
            raise SendFailure("Message could not be sent", draft=text) from exc
        if not inserted:
            raise SendFailure("Store did not return the sent message", draft=text)
        message = Message.model_validate(inserted[0])

        try:
            await self.store.update(
                "conversations",
                {"updated_at": self.clock().isoformat()},
                filters=[eq("id", conversation_id)],
            )
        except StoreError:
            # The message is stored; a stale list order is the only casualty.
            logger.warning("Could not bump updated_at for conversation %s", conversation_id)

        logger.info("Sent message %s to conversation %s", message.id, conversation_id)
        return message

    async def delete(self, message_id: str) -> None:
        """Soft delete: clear text and image and set ``is_deleted``."""

        try:
            await self.store.update(
                "messages",
                {"is_deleted": True, "content": None, "image_url": None},
                filters=[eq("id", message_id)],
            )
        except StoreError as exc:
            raise SendFailure(f"Message {message_id} could not be deleted") from exc

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Reaction:
        self._check_emoji(emoji)
        try:
            rows = await self.store.insert(
                "message_reactions",
                [{"message_id": message_id, "user_id": user_id, "emoji": emoji}],
            )
        except StoreError as exc:
            raise SendFailure("Reaction could not be added") from exc
        if not rows:
            raise SendFailure("Store did not return the added reaction")
        return Reaction.model_validate(rows[0])

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        self._check_emoji(emoji)
        try:
            await self.store.delete(
                "message_reactions",
                filters=[eq("message_id", message_id), eq("user_id", user_id), eq("emoji", emoji)],
            )
        except StoreError as exc:
            raise SendFailure("Reaction could not be removed") from exc

    def _check_emoji(self, emoji: str) -> None:
        if emoji not in self.reaction_emojis:
            raise ValidationError(f"Unsupported reaction {emoji!r}")


def validate_image(
    content_type: str,
    size: int,
    *,
    allowed_types: tuple[str, ...] | None = None,
    max_bytes: int | None = None,
) -> None:
    """Check an image before upload; the upload itself happens elsewhere."""

    allowed = {value.lower() for value in (allowed_types or settings.ALLOWED_IMAGE_TYPES)}
    limit = max_bytes or settings.IMAGE_MAX_SIZE_BYTES
    normalized = content_type.split(";", 1)[0].strip().lower()
    if normalized not in allowed:
        raise ValidationError(f"Unsupported image type {content_type!r}")
    if size <= 0:
        raise ValidationError("Image is empty")
    if size > limit:
        raise ValidationError(f"Image exceeds {limit} bytes")
