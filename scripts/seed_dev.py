"""Seed the development store with two friends, a direct chat and a group."""
from __future__ import annotations

import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, ContextManager

from sqlalchemy.orm import Session

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from messenger.app.core.db import ENGINE, get_session
from messenger.app.models import Base, Conversation, ConversationMember, Friendship, Message, Profile


def _get_or_create_profile(session: Session, friend_code: str, display_name: str, color: str) -> Profile:
    profile = session.query(Profile).filter(Profile.friend_code == friend_code).one_or_none()
    if profile is None:
        profile = Profile(friend_code=friend_code, display_name=display_name, avatar_color=color)
        session.add(profile)
        session.flush()
    return profile


def _ensure_friends(session: Session, first: Profile, second: Profile) -> None:
    for user, friend in ((first, second), (second, first)):
        exists = (
            session.query(Friendship)
            .filter(Friendship.user_id == user.id, Friendship.friend_id == friend.id)
            .one_or_none()
        )
        if exists is None:
            session.add(Friendship(user_id=user.id, friend_id=friend.id))
    session.flush()


def _get_or_create_group(session: Session, invite_code: str, name: str, owner: Profile) -> Conversation:
    group = session.query(Conversation).filter(Conversation.invite_code == invite_code).one_or_none()
    if group is None:
        group = Conversation(
            type="group",
            name=name,
            icon_text=name[:1].upper(),
            icon_color="#4f46e5",
            invite_code=invite_code,
            created_by=owner.id,
        )
        session.add(group)
        session.flush()
    return group


def _get_or_create_direct(session: Session, first: Profile, second: Profile) -> Conversation:
    shared = (
        session.query(Conversation)
        .join(ConversationMember, ConversationMember.conversation_id == Conversation.id)
        .filter(Conversation.type == "direct", ConversationMember.user_id == first.id)
        .all()
    )
    for conversation in shared:
        members = {
            row.user_id
            for row in session.query(ConversationMember).filter(
                ConversationMember.conversation_id == conversation.id
            )
        }
        if second.id in members:
            return conversation
    conversation = Conversation(type="direct", created_by=first.id)
    session.add(conversation)
    session.flush()
    return conversation


def _ensure_members(session: Session, conversation: Conversation, *profiles: Profile) -> None:
    for profile in profiles:
        exists = (
            session.query(ConversationMember)
            .filter(
                ConversationMember.conversation_id == conversation.id,
                ConversationMember.user_id == profile.id,
            )
            .one_or_none()
        )
        if exists is None:
            session.add(ConversationMember(conversation_id=conversation.id, user_id=profile.id))
    session.flush()


def _ensure_greeting(session: Session, conversation: Conversation, sender: Profile, text: str) -> None:
    has_messages = (
        session.query(Message.id).filter(Message.conversation_id == conversation.id).first()
    )
    if has_messages is None:
        session.add(Message(conversation_id=conversation.id, sender_id=sender.id, content=text))
        session.flush()


def main(context: Callable[[], ContextManager[Session]] | None = None) -> None:
    """Entry point for seeding data."""

    Base.metadata.create_all(ENGINE)
    session_ctx = context or contextmanager(get_session)
    with session_ctx() as session:
        alice = _get_or_create_profile(session, "ALICE001", "Alice", "#f97316")
        bob = _get_or_create_profile(session, "BOB00002", "Bob", "#22c55e")
        _ensure_friends(session, alice, bob)

        direct = _get_or_create_direct(session, alice, bob)
        _ensure_members(session, direct, alice, bob)
        _ensure_greeting(session, direct, alice, "Hi Bob!")

        group = _get_or_create_group(session, "devgroup", "Developers", alice)
        _ensure_members(session, group, alice, bob)
        _ensure_greeting(session, group, bob, "Welcome to the group")

        print("Seeded development data:")
        print(f"  Alice: {alice.id}")
        print(f"  Bob: {bob.id}")
        print(f"  Direct conversation: {direct.id}")
        print(f"  Group conversation: {group.id} (invite code {group.invite_code})")


if __name__ == "__main__":
    main()
