from __future__ import annotations

import asyncio

from messenger.app.sync.conversations import ConversationService
from messenger.app.sync.notifications import UnreadWatcher, notification_body
from messenger.app.sync.read_state import ReadStateTracker
from messenger.app.sync.realtime import EventType


def _watcher(store, feed, notifier, viewer_id: str) -> UnreadWatcher:
    return UnreadWatcher(ConversationService(store, ReadStateTracker(store)), feed, notifier, viewer_id=viewer_id)


def test_notification_body_prefers_image_marker() -> None:
    assert notification_body({"content": "hi", "image_url": None}) == "hi"
    assert notification_body({"content": None, "image_url": "https://img/1.png"}) == "\U0001F4F7 Image"
    assert notification_body({}) == ""


def test_watcher_tracks_unread_and_notifies_for_others(store, feed, notifier, people, settle) -> None:
    alice, bob, conversation = people["alice"], people["bob"], people["conversation"]

    async def scenario() -> None:
        watcher = _watcher(store, feed, notifier, alice["id"])
        totals: list[int] = []
        watcher.add_listener(lambda current: totals.append(current.total_unread))
        await watcher.start()
        assert watcher.unread_counts == {conversation["id"]: 0}

        await store.insert(
            "messages", [{"conversation_id": conversation["id"], "sender_id": bob["id"], "content": "hello"}]
        )
        await store.insert(
            "messages", [{"conversation_id": conversation["id"], "sender_id": bob["id"], "image_url": "https://img/1.png"}]
        )
        await store.insert(
            "messages", [{"conversation_id": conversation["id"], "sender_id": alice["id"], "content": "mine"}]
        )
        await settle()

        assert notifier.notifications == [("Bob", "hello"), ("Bob", "\U0001F4F7 Image")]
        assert watcher.unread_counts == {conversation["id"]: 2}
        assert watcher.total_unread == 2
        assert notifier.badges[-1] == 2
        assert totals[0] == 0 and totals[-1] == 2
        await watcher.stop()
        assert feed.subscription_count == 0

    asyncio.run(scenario())


def test_unknown_sender_uses_default_title(store, feed, notifier, people, settle) -> None:
    alice, conversation = people["alice"], people["conversation"]

    async def scenario() -> None:
        watcher = _watcher(store, feed, notifier, alice["id"])
        await watcher.start()
        stranger = store.add_profile("Stranger")
        store.emit(
            "messages",
            EventType.INSERT,
            {"conversation_id": conversation["id"], "sender_id": stranger["id"], "content": "psst"},
        )
        await settle()
        assert notifier.notifications == [("New message", "psst")]
        await watcher.stop()

    asyncio.run(scenario())


def test_failed_refresh_keeps_previous_counts(store, feed, notifier, people, settle) -> None:
    alice, bob, conversation = people["alice"], people["bob"], people["conversation"]

    async def scenario() -> None:
        watcher = _watcher(store, feed, notifier, alice["id"])
        await watcher.start()
        before = watcher.items

        store.fail("select", "conversation_members")
        assert await watcher.refresh() is False
        assert watcher.items is before

        store.add_message(conversation["id"], bob["id"], "later")
        store.emit("conversations", EventType.UPDATE, {"id": conversation["id"]})
        await settle()
        assert watcher.unread_counts == {conversation["id"]: 1}
        await watcher.stop()

    asyncio.run(scenario())
