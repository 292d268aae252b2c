"""Friend list and friend-code lookups.

A friendship is stored as two rows, ``(user, friend)`` and ``(friend, user)``,
so either side can list it with a single equality filter.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError as SchemaError

from ..core.errors import FetchFailure, NotFoundError, SendFailure, StoreError, ValidationError
from ..core.metrics import record_fetch_failure
from .query import Order, eq, in_
from .schemas import Friendship, Profile
from .store import Store

logger = logging.getLogger(__name__)


class FriendService:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def list_friends(self, user_id: str) -> List[Profile]:
        """Return the profiles of ``user_id``'s friends, by display name."""

        try:
            outgoing = await self.store.select("friendships", filters=[eq("user_id", user_id)])
            incoming = await self.store.select("friendships", filters=[eq("friend_id", user_id)])
            friend_ids = list(
                dict.fromkeys(
                    [str(row["friend_id"]) for row in outgoing]
                    + [str(row["user_id"]) for row in incoming]
                )
            )
            if not friend_ids:
                return []
            rows = await self.store.select(
                "profiles",
                filters=[in_("id", friend_ids)],
                order=Order("display_name"),
            )
            return [Profile.model_validate(row) for row in rows]
        except (StoreError, SchemaError) as exc:
            record_fetch_failure("list_friends")
            raise FetchFailure(f"Could not load friends of {user_id}") from exc

    async def profile_by_friend_code(self, friend_code: str) -> Optional[Profile]:
        code = friend_code.strip()
        if not code:
            return None
        try:
            row = await self.store.select_one("profiles", filters=[eq("friend_code", code)])
        except StoreError as exc:
            record_fetch_failure("profile_by_friend_code")
            raise FetchFailure(f"Could not look up friend code {code!r}") from exc
        return Profile.model_validate(row) if row is not None else None

    async def add_by_code(self, user_id: str, friend_code: str) -> Profile:
        """Befriend the owner of ``friend_code`` and return their profile.

        Raises ``NotFoundError`` for an unknown code and ``ValidationError``
        for the user's own code or an existing friendship. If the second
        direction cannot be written the first one is deleted again.
        """

        friend = await self.profile_by_friend_code(friend_code)
        if friend is None:
            raise NotFoundError(f"Friend code {friend_code!r} not found")
        if friend.id == user_id:
            raise ValidationError("You cannot add yourself as a friend")
        if await self.are_friends(user_id, friend.id):
            raise ValidationError(f"{friend.display_name} is already a friend")

        try:
            await self.store.insert("friendships", [{"user_id": user_id, "friend_id": friend.id}])
        except StoreError as exc:
            raise SendFailure(f"Could not add friend {friend.id}") from exc
        try:
            await self.store.insert("friendships", [{"user_id": friend.id, "friend_id": user_id}])
        except StoreError as exc:
            await self._rollback(user_id, friend.id)
            raise SendFailure(f"Could not add friend {friend.id}") from exc

        logger.info("User %s added friend %s", user_id, friend.id)
        return friend

    async def are_friends(self, user_id: str, friend_id: str) -> bool:
        try:
            for first, second in ((user_id, friend_id), (friend_id, user_id)):
                row = await self.store.select_one(
                    "friendships", filters=[eq("user_id", first), eq("friend_id", second)]
                )
                if row is not None:
                    return True
        except StoreError as exc:
            record_fetch_failure("are_friends")
            raise FetchFailure("Could not look up friendship") from exc
        return False

    async def remove(self, user_id: str, friend_id: str) -> List[Friendship]:
        """Delete both directions; returns the rows that were removed."""

        removed: List[Friendship] = []
        try:
            for first, second in ((user_id, friend_id), (friend_id, user_id)):
                rows = await self.store.delete(
                    "friendships", filters=[eq("user_id", first), eq("friend_id", second)]
                )
                removed.extend(Friendship.model_validate(row) for row in rows)
        except StoreError as exc:
            raise SendFailure(f"Could not remove friend {friend_id}") from exc
        return removed

    async def _rollback(self, user_id: str, friend_id: str) -> None:
        try:
            await self.store.delete(
                "friendships", filters=[eq("user_id", user_id), eq("friend_id", friend_id)]
            )
        except StoreError:
            logger.exception("Could not undo half-written friendship %s -> %s", user_id, friend_id)
