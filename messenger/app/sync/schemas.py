"""Client-side read models for messenger rows and their joined views."""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ConversationType = Literal["direct", "group"]


class _Row(BaseModel):
    """Immutable snapshot of a store row; unknown columns are ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore")


class Profile(_Row):
    id: str
    display_name: str
    avatar_url: Optional[str] = None
    avatar_color: Optional[str] = None
    friend_code: Optional[str] = None


class Friendship(_Row):
    """One direction of a friend relation; both directions are stored."""

    id: Optional[str] = None
    user_id: str
    friend_id: str
    created_at: Optional[datetime] = None


class Message(_Row):
    """A message row. ``created_at`` is the authoritative ordering key."""

    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    image_url: Optional[str] = None
    reply_to_id: Optional[str] = None
    is_deleted: bool = False
    created_at: datetime


class Reaction(_Row):
    id: str
    message_id: str
    user_id: str
    emoji: str
    created_at: Optional[datetime] = None
    user: Optional[Profile] = None


class ReplyTarget(_Row):
    """The message being replied to, resolved one level deep."""

    message: Message
    sender: Profile


class MessageWithDetails(_Row):
    message: Message
    sender: Profile
    reactions: tuple[Reaction, ...] = ()
    reply_to: Optional[ReplyTarget] = None

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def created_at(self) -> datetime:
        return self.message.created_at


class Conversation(_Row):
    id: str
    type: ConversationType
    name: Optional[str] = None
    icon_text: Optional[str] = None
    icon_color: Optional[str] = None
    invite_code: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationMember(_Row):
    """Membership row; ``last_read_at`` is the read watermark."""

    id: Optional[str] = None
    conversation_id: str
    user_id: str
    last_read_at: Optional[datetime] = None


class MemberWithProfile(_Row):
    member: ConversationMember
    profile: Profile


class ConversationWithDetails(_Row):
    """Conversation list entry assembled on demand, never persisted."""

    conversation: Conversation
    members: tuple[MemberWithProfile, ...] = ()
    latest_message: Optional[Message] = None
    unread_count: int = Field(default=0, ge=0)

    def member(self, user_id: str) -> MemberWithProfile | None:
        for item in self.members:
            if item.member.user_id == user_id:
                return item
        return None
