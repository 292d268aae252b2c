"""Paginated message reads joined with senders, reactions and reply targets."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError as SchemaError

from ..core.config import settings
from ..core.errors import FetchFailure, StoreError
from ..core.metrics import record_fetch_failure
from .query import Order, eq, in_, lt
from .schemas import Message, MessageWithDetails, Profile, Reaction, ReplyTarget
from .store import Row, Store

logger = logging.getLogger(__name__)

# Keeps ``id=in.(...)`` query strings well below common URL length limits.
LOOKUP_BATCH_SIZE = 100


class MessageFetchService:
    """Read side of the message timeline.

    The store cannot embed a self-referencing relation, so every page is
    assembled from batched key lookups: the page itself, its reply targets,
    the reactions on the page and finally every profile referenced by any of
    those rows.
    """

    def __init__(self, store: Store, *, page_size: int | None = None) -> None:
        self.store = store
        self.page_size = page_size or settings.MESSAGES_PER_PAGE

    async def fetch_page(
        self, conversation_id: str, cursor: datetime | str | None = None
    ) -> List[MessageWithDetails]:
        """Return up to ``page_size`` messages in chronological order.

        Without ``cursor`` the most recent page is returned; with it, only
        messages created strictly before ``cursor``.
        """

        filters = [eq("conversation_id", conversation_id)]
        if cursor is not None:
            filters.append(lt("created_at", cursor))

        try:
            rows = await self.store.select(
                "messages",
                filters=filters,
                order=Order("created_at", descending=True),
                limit=self.page_size,
            )
            messages = [Message.model_validate(row) for row in rows]
            reply_ids = {item.reply_to_id for item in messages if item.reply_to_id}
            replies = await self._fetch_messages_by_id(reply_ids)
            reactions = await self._fetch_reaction_rows(item.id for item in messages)
            profile_ids = {item.sender_id for item in messages}
            profile_ids.update(item.sender_id for item in replies.values())
            profile_ids.update(str(row["user_id"]) for row in reactions)
            profiles = await self._fetch_profiles(profile_ids)
        except StoreError as exc:
            record_fetch_failure("fetch_page")
            raise FetchFailure(f"Could not load messages for {conversation_id}") from exc
        except SchemaError as exc:
            record_fetch_failure("fetch_page")
            raise FetchFailure(f"Store returned malformed rows for {conversation_id}") from exc

        grouped = _group_reactions(reactions, profiles)
        page: List[MessageWithDetails] = []
        for message in messages:
            sender = profiles.get(message.sender_id)
            if sender is None:
                logger.warning("Skipping message %s: sender %s not found", message.id, message.sender_id)
                continue
            page.append(
                MessageWithDetails(
                    message=message,
                    sender=sender,
                    reactions=grouped.get(message.id, ()),
                    reply_to=_reply_target(message, replies, profiles),
                )
            )
        page.reverse()
        return page

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        try:
            row = await self.store.select_one("profiles", filters=[eq("id", user_id)])
            return Profile.model_validate(row) if row is not None else None
        except (StoreError, SchemaError) as exc:
            record_fetch_failure("fetch_profile")
            raise FetchFailure(f"Could not load profile {user_id}") from exc

    async def fetch_reactions(self, message_ids: Iterable[str]) -> Dict[str, tuple[Reaction, ...]]:
        """Return the reaction set of every requested message (empty if none)."""

        wanted = list(dict.fromkeys(message_ids))
        try:
            rows = await self._fetch_reaction_rows(wanted)
            profiles = await self._fetch_profiles({str(row["user_id"]) for row in rows})
        except (StoreError, SchemaError) as exc:
            record_fetch_failure("fetch_reactions")
            raise FetchFailure("Could not load reactions") from exc
        grouped = _group_reactions(rows, profiles)
        return {message_id: grouped.get(message_id, ()) for message_id in wanted}

    async def _fetch_messages_by_id(self, ids: Iterable[str]) -> Dict[str, Message]:
        rows = await self._batched_select("messages", "id", ids)
        return {message.id: message for message in (Message.model_validate(row) for row in rows)}

    async def _fetch_reaction_rows(self, message_ids: Iterable[str]) -> List[Row]:
        rows = await self._batched_select("message_reactions", "message_id", message_ids)
        return sorted(rows, key=lambda row: str(row.get("created_at") or ""))

    async def _fetch_profiles(self, ids: Iterable[str]) -> Dict[str, Profile]:
        rows = await self._batched_select("profiles", "id", ids)
        return {profile.id: profile for profile in (Profile.model_validate(row) for row in rows)}

    async def _batched_select(self, table: str, column: str, values: Iterable[str]) -> List[Row]:
        unique = list(dict.fromkeys(values))
        rows: List[Row] = []
        for start in range(0, len(unique), LOOKUP_BATCH_SIZE):
            chunk = unique[start : start + LOOKUP_BATCH_SIZE]
            rows.extend(await self.store.select(table, filters=[in_(column, chunk)]))
        return rows


def _group_reactions(
    rows: Sequence[Row], profiles: Mapping[str, Profile]
) -> Dict[str, tuple[Reaction, ...]]:
    grouped: Dict[str, list[Reaction]] = {}
    for row in rows:
        reaction = Reaction.model_validate({**row, "user": profiles.get(str(row["user_id"]))})
        grouped.setdefault(reaction.message_id, []).append(reaction)
    return {key: tuple(value) for key, value in grouped.items()}


def _reply_target(
    message: Message, replies: Mapping[str, Message], profiles: Mapping[str, Profile]
) -> Optional[ReplyTarget]:
    if message.reply_to_id is None:
        return None
    target = replies.get(message.reply_to_id)
    if target is None:
        return None
    sender = profiles.get(target.sender_id)
    if sender is None:
        return None
    return ReplyTarget(message=target, sender=sender)
