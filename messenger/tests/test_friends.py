from __future__ import annotations

import asyncio

import pytest

from messenger.app.core.errors import FetchFailure, NotFoundError, SendFailure, ValidationError
from messenger.app.sync.friends import FriendService


def _pairs(store) -> set[tuple[str, str]]:
    return {(row["user_id"], row["friend_id"]) for row in store.rows("friendships")}


def test_add_by_code_stores_both_directions(store, people) -> None:
    alice, bob = people["alice"], people["bob"]
    service = FriendService(store)

    friend = asyncio.run(service.add_by_code(alice["id"], " BOB00002 "))

    assert friend.id == bob["id"]
    assert _pairs(store) == {(alice["id"], bob["id"]), (bob["id"], alice["id"])}
    assert [item.display_name for item in asyncio.run(service.list_friends(alice["id"]))] == ["Bob"]
    assert [item.display_name for item in asyncio.run(service.list_friends(bob["id"]))] == ["Alice"]


def test_add_by_code_rejects_unknown_own_and_existing(store, people) -> None:
    alice, bob = people["alice"], people["bob"]
    service = FriendService(store)

    with pytest.raises(NotFoundError):
        asyncio.run(service.add_by_code(alice["id"], "NOPE0000"))
    with pytest.raises(ValidationError):
        asyncio.run(service.add_by_code(alice["id"], "ALICE001"))

    store.add_friendship(bob["id"], alice["id"])
    with pytest.raises(ValidationError):
        asyncio.run(service.add_by_code(alice["id"], "BOB00002"))
    assert len(store.rows("friendships")) == 2


def test_failed_second_direction_is_rolled_back(store, people) -> None:
    alice = people["alice"]
    store.fail("insert", "friendships", after=1)

    with pytest.raises(SendFailure):
        asyncio.run(FriendService(store).add_by_code(alice["id"], "BOB00002"))

    assert store.rows("friendships") == []
    assert ("delete", "friendships") in store.calls


def test_list_friends_sorted_and_deduplicated(store, people) -> None:
    alice, bob = people["alice"], people["bob"]
    carol = store.add_profile("Carol")
    store.add_friendship(alice["id"], carol["id"])
    store.add_friendship(alice["id"], bob["id"])

    friends = asyncio.run(FriendService(store).list_friends(alice["id"]))

    assert [item.display_name for item in friends] == ["Bob", "Carol"]
    assert asyncio.run(FriendService(store).list_friends(store.add_profile("Loner")["id"])) == []


def test_list_friends_wraps_store_errors(store, people) -> None:
    store.fail("select", "friendships")
    with pytest.raises(FetchFailure):
        asyncio.run(FriendService(store).list_friends(people["alice"]["id"]))


def test_profile_by_friend_code(store, people) -> None:
    service = FriendService(store)
    assert asyncio.run(service.profile_by_friend_code("BOB00002")).display_name == "Bob"
    assert asyncio.run(service.profile_by_friend_code("missing")) is None
    assert asyncio.run(service.profile_by_friend_code("   ")) is None


def test_remove_deletes_both_directions(store, people) -> None:
    alice, bob = people["alice"], people["bob"]
    carol = store.add_profile("Carol")
    store.add_friendship(alice["id"], bob["id"])
    store.add_friendship(alice["id"], carol["id"])
    service = FriendService(store)

    removed = asyncio.run(service.remove(bob["id"], alice["id"]))

    assert {(item.user_id, item.friend_id) for item in removed} == {
        (alice["id"], bob["id"]),
        (bob["id"], alice["id"]),
    }
    assert _pairs(store) == {(alice["id"], carol["id"]), (carol["id"], alice["id"])}
    assert asyncio.run(service.are_friends(alice["id"], bob["id"])) is False


def test_remove_wraps_store_errors(store, people) -> None:
    store.fail("delete", "friendships")
    with pytest.raises(SendFailure):
        asyncio.run(FriendService(store).remove(people["alice"]["id"], people["bob"]["id"]))
