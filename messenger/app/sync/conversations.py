"""Conversation list read models and direct/group conversation management."""
from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError as SchemaError

from ..core.config import settings
from ..core.errors import FetchFailure, NotFoundError, SendFailure, StoreError, ValidationError
from ..core.metrics import record_fetch_failure
from .query import Order, eq, in_
from .read_state import ReadStateTracker
from .schemas import (
    Conversation,
    ConversationMember,
    ConversationWithDetails,
    MemberWithProfile,
    Message,
    Profile,
)
from .store import Row, Store

logger = logging.getLogger(__name__)

GROUP_FIELDS = ("name", "icon_text", "icon_color")


class ConversationService:
    """Builds ``ConversationWithDetails`` views and manages memberships."""

    def __init__(
        self,
        store: Store,
        tracker: ReadStateTracker,
        *,
        page_size: int | None = None,
        invite_code_length: int | None = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.page_size = page_size or settings.CONVERSATIONS_PER_PAGE
        self.invite_code_length = invite_code_length or settings.INVITE_CODE_LENGTH

    async def list_conversations(self, user_id: str) -> List[ConversationWithDetails]:
        """Return the user's conversations, most recently active first."""

        try:
            memberships = await self.store.select(
                "conversation_members", filters=[eq("user_id", user_id)]
            )
            conversation_ids = [str(row["conversation_id"]) for row in memberships]
            if not conversation_ids:
                return []

            rows = await self.store.select(
                "conversations",
                filters=[in_("id", conversation_ids)],
                order=Order("updated_at", descending=True),
                limit=self.page_size,
            )
            conversations = [Conversation.model_validate(row) for row in rows]
            members = await self._members_with_profiles([item.id for item in conversations])

            results: List[ConversationWithDetails] = []
            for conversation in conversations:
                own_members = tuple(
                    item for item in members if item.member.conversation_id == conversation.id
                )
                latest = await self._latest_message(conversation.id)
                unread = 0
                mine = next((item for item in own_members if item.member.user_id == user_id), None)
                if mine is not None and latest is not None:
                    unread = await self.tracker.count_unread(
                        conversation.id, user_id, mine.member.last_read_at
                    )
                results.append(
                    ConversationWithDetails(
                        conversation=conversation,
                        members=own_members,
                        latest_message=latest,
                        unread_count=unread,
                    )
                )
        except (StoreError, SchemaError) as exc:
            record_fetch_failure("list_conversations")
            raise FetchFailure(f"Could not load conversations for {user_id}") from exc
        return results

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            row = await self.store.select_one("conversations", filters=[eq("id", conversation_id)])
        except StoreError as exc:
            record_fetch_failure("get_conversation")
            raise FetchFailure(f"Could not load conversation {conversation_id}") from exc
        return Conversation.model_validate(row) if row is not None else None

    async def list_members(self, conversation_id: str) -> List[MemberWithProfile]:
        try:
            return await self._members_with_profiles([conversation_id])
        except (StoreError, SchemaError) as exc:
            record_fetch_failure("list_members")
            raise FetchFailure(f"Could not load members of {conversation_id}") from exc

    async def create_direct(self, user_id: str, friend_id: str) -> Conversation:
        """Return the direct conversation between two users, creating it if needed."""

        if user_id == friend_id:
            raise ValidationError("A direct conversation needs two different users")
        try:
            existing = await self._find_direct(user_id, friend_id)
        except StoreError as exc:
            raise FetchFailure("Could not look up existing conversations") from exc
        if existing is not None:
            return existing

        conversation = await self._insert_conversation({"type": "direct", "created_by": user_id})
        await self._add_members(conversation.id, [user_id, friend_id])
        logger.info("Created direct conversation %s", conversation.id)
        return conversation

    async def create_group(
        self,
        user_id: str,
        name: str,
        icon_text: str,
        icon_color: str,
        member_ids: Sequence[str],
    ) -> Conversation:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Group name is required")
        conversation = await self._insert_conversation(
            {
                "type": "group",
                "name": clean_name,
                "icon_text": icon_text,
                "icon_color": icon_color,
                "invite_code": self._new_invite_code(),
                "created_by": user_id,
            }
        )
        everyone = list(dict.fromkeys([user_id, *member_ids]))
        await self._add_members(conversation.id, everyone)
        logger.info("Created group %s with %s members", conversation.id, len(everyone))
        return conversation

    async def join_by_invite_code(self, user_id: str, invite_code: str) -> Conversation:
        try:
            row = await self.store.select_one(
                "conversations",
                filters=[eq("invite_code", invite_code.strip()), eq("type", "group")],
            )
            if row is None:
                raise NotFoundError(f"Invite code {invite_code!r} not found")
            conversation = Conversation.model_validate(row)
            membership = await self.store.select_one(
                "conversation_members",
                filters=[eq("conversation_id", conversation.id), eq("user_id", user_id)],
            )
        except StoreError as exc:
            raise FetchFailure("Could not look up invite code") from exc
        if membership is None:
            await self._add_members(conversation.id, [user_id])
        return conversation

    async def leave(self, user_id: str, conversation_id: str) -> None:
        try:
            await self.store.delete(
                "conversation_members",
                filters=[eq("conversation_id", conversation_id), eq("user_id", user_id)],
            )
        except StoreError as exc:
            raise SendFailure(f"Could not leave conversation {conversation_id}") from exc

    async def update_group(self, conversation_id: str, **changes: Optional[str]) -> Conversation:
        unknown = set(changes) - set(GROUP_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update group fields: {', '.join(sorted(unknown))}")
        values = {key: value for key, value in changes.items() if value is not None}
        if not values:
            raise ValidationError("Nothing to update")
        try:
            rows = await self.store.update(
                "conversations", values, filters=[eq("id", conversation_id), eq("type", "group")]
            )
        except StoreError as exc:
            raise SendFailure(f"Could not update group {conversation_id}") from exc
        if not rows:
            raise NotFoundError(f"Group {conversation_id} not found")
        return Conversation.model_validate(rows[0])

    async def _find_direct(self, user_id: str, friend_id: str) -> Optional[Conversation]:
        mine = await self.store.select("conversation_members", filters=[eq("user_id", user_id)])
        if not mine:
            return None
        shared = await self.store.select(
            "conversation_members",
            filters=[
                eq("user_id", friend_id),
                in_("conversation_id", [str(row["conversation_id"]) for row in mine]),
            ],
        )
        if not shared:
            return None
        rows = await self.store.select(
            "conversations",
            filters=[
                in_("id", [str(row["conversation_id"]) for row in shared]),
                eq("type", "direct"),
            ],
            limit=1,
        )
        return Conversation.model_validate(rows[0]) if rows else None

    async def _insert_conversation(self, row: Dict[str, object]) -> Conversation:
        try:
            rows = await self.store.insert("conversations", [row])
        except StoreError as exc:
            raise SendFailure("Conversation could not be created") from exc
        if not rows:
            raise SendFailure("Store did not return the created conversation")
        return Conversation.model_validate(rows[0])

    async def _add_members(self, conversation_id: str, user_ids: Sequence[str]) -> None:
        try:
            await self.store.insert(
                "conversation_members",
                [{"conversation_id": conversation_id, "user_id": item} for item in user_ids],
            )
        except StoreError as exc:
            raise SendFailure(f"Members could not be added to {conversation_id}") from exc

    async def _members_with_profiles(self, conversation_ids: Sequence[str]) -> List[MemberWithProfile]:
        if not conversation_ids:
            return []
        rows = await self.store.select(
            "conversation_members", filters=[in_("conversation_id", conversation_ids)]
        )
        members = [ConversationMember.model_validate(row) for row in rows]
        profiles = await self._profiles({item.user_id for item in members})
        return [
            MemberWithProfile(member=item, profile=profiles[item.user_id])
            for item in members
            if item.user_id in profiles
        ]

    async def _profiles(self, ids: set[str]) -> Dict[str, Profile]:
        if not ids:
            return {}
        rows: List[Row] = await self.store.select("profiles", filters=[in_("id", sorted(ids))])
        return {profile.id: profile for profile in (Profile.model_validate(row) for row in rows)}

    async def _latest_message(self, conversation_id: str) -> Optional[Message]:
        rows = await self.store.select(
            "messages",
            filters=[eq("conversation_id", conversation_id)],
            order=Order("created_at", descending=True),
            limit=1,
        )
        return Message.model_validate(rows[0]) if rows else None

    def _new_invite_code(self) -> str:
        return uuid.uuid4().hex[: self.invite_code_length]
