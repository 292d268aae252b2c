from __future__ import annotations

import asyncio
import itertools
import sys
import uuid
from collections import defaultdict
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from messenger.app.api import routes_rest
from messenger.app.core import db as db_module
from messenger.app.core.errors import StoreError
from messenger.app.main import create_app
from messenger.app.models import Base
from messenger.app.sync.notifications import Sound
from messenger.app.sync.query import Filter, Order, matches_all
from messenger.app.sync.realtime import ChangeEvent, ChangeFeed, EventType

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

UNIQUE_KEYS = {
    "conversation_members": ("conversation_id", "user_id"),
    "message_reactions": ("message_id", "user_id", "emoji"),
    "friendships": ("user_id", "friend_id"),
}

ROW_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "profiles": {"avatar_url": None, "avatar_color": None, "friend_code": None},
    "conversations": {
        "type": "direct",
        "name": None,
        "icon_text": None,
        "icon_color": None,
        "invite_code": None,
        "created_by": None,
    },
    "conversation_members": {"last_read_at": None},
    "messages": {"content": None, "image_url": None, "reply_to_id": None, "is_deleted": False},
    "message_reactions": {},
    "friendships": {},
}


def _sort_key(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return value


class FakeStore:
    """In-memory ``Store`` that publishes every write to a ``ChangeFeed``.

    ``realtime`` can be switched off to simulate a dropped subscription,
    ``fail(op, table, after=n)`` makes the matching call after ``n`` successful
    ones raise ``StoreError`` and
    ``pause(table)`` holds selects on ``table`` until the returned event is set.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self.feed = feed
        self.realtime = True
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.calls: List[tuple[str, str]] = []
        self._failures: List[List[Any]] = []
        self._pauses: Dict[str, asyncio.Event] = {}
        self._ticks = itertools.count(1)

    # -- test controls ----------------------------------------------------

    def fail(self, op: str, table: str, *, always: bool = False, after: int = 0) -> None:
        self._failures.append([op, table, always, after])

    def heal(self) -> None:
        self._failures.clear()

    def pause(self, table: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._pauses[table] = gate
        return gate

    def next_timestamp(self) -> str:
        return (BASE_TIME + timedelta(seconds=next(self._ticks))).isoformat()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.tables[table]]

    def get(self, table: str, row_id: str) -> Dict[str, Any]:
        for row in self.tables[table]:
            if row["id"] == row_id:
                return row
        raise KeyError(row_id)

    # -- silent seeding -----------------------------------------------------

    def add_profile(self, display_name: str, **extra: Any) -> Dict[str, Any]:
        return self._insert_row("profiles", {"display_name": display_name, **extra}, publish=False)

    def add_conversation(self, *member_ids: str, **extra: Any) -> Dict[str, Any]:
        conversation = self._insert_row("conversations", dict(extra), publish=False)
        for user_id in member_ids:
            self.add_member(conversation["id"], user_id)
        return conversation

    def add_member(self, conversation_id: str, user_id: str, **extra: Any) -> Dict[str, Any]:
        row = {"conversation_id": conversation_id, "user_id": user_id, **extra}
        return self._insert_row("conversation_members", row, publish=False)

    def add_message(
        self, conversation_id: str, sender_id: str, content: Optional[str] = "hi", **extra: Any
    ) -> Dict[str, Any]:
        row = {"conversation_id": conversation_id, "sender_id": sender_id, "content": content, **extra}
        return self._insert_row("messages", row, publish=False)

    def add_reaction(self, message_id: str, user_id: str, emoji: str = "\U0001F44D") -> Dict[str, Any]:
        row = {"message_id": message_id, "user_id": user_id, "emoji": emoji}
        return self._insert_row("message_reactions", row, publish=False)

    def add_friendship(self, user_id: str, friend_id: str) -> None:
        for first, second in ((user_id, friend_id), (friend_id, user_id)):
            self._insert_row("friendships", {"user_id": first, "friend_id": second}, publish=False)

    def emit(self, table: str, kind: EventType, new: Mapping[str, Any], old: Mapping[str, Any] | None = None) -> int:
        assert self.feed is not None
        return self.feed.publish(ChangeEvent(table=table, type=kind, new=dict(new), old=dict(old or {})))

    # -- Store protocol -----------------------------------------------------------

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        await self._enter("select", table)
        rows = [dict(row) for row in self.tables[table] if matches_all(filters, row)]
        if order is not None:
            rows.sort(key=lambda row: _sort_key(row.get(order.column)), reverse=order.descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def select_one(self, table: str, *, filters: Sequence[Filter]) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, filters=filters, limit=2)
        if len(rows) > 1:
            raise StoreError(f"Expected a single {table} row, got several")
        return rows[0] if rows else None

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        await self._enter("insert", table)
        return [dict(self._insert_row(table, dict(row), publish=True)) for row in rows]

    async def update(
        self, table: str, values: Mapping[str, Any], *, filters: Sequence[Filter]
    ) -> List[Dict[str, Any]]:
        await self._enter("update", table)
        changed = []
        for row in self.tables[table]:
            if not matches_all(filters, row):
                continue
            old = dict(row)
            row.update({key: _jsonable(value) for key, value in values.items()})
            changed.append(dict(row))
            self._publish(table, EventType.UPDATE, dict(row), old)
        return changed

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        await self._enter("delete", table)
        removed = [row for row in self.tables[table] if matches_all(filters, row)]
        self.tables[table] = [row for row in self.tables[table] if not matches_all(filters, row)]
        for row in removed:
            self._publish(table, EventType.DELETE, {}, dict(row))
        return [dict(row) for row in removed]

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        await self._enter("count", table)
        return sum(1 for row in self.tables[table] if matches_all(filters, row))

    # -- internals ------------------------------------------------------------------

    async def _enter(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        gate = self._pauses.get(table) if op == "select" else None
        if gate is not None:
            await gate.wait()
        for index, failure in enumerate(self._failures):
            fail_op, fail_table, always, after = failure
            if fail_op == op and fail_table == table:
                if after > 0:
                    failure[3] -= 1
                    continue
                if not always:
                    del self._failures[index]
                raise StoreError(f"{op} on {table} failed", status_code=503)

    def _insert_row(self, table: str, values: Dict[str, Any], *, publish: bool) -> Dict[str, Any]:
        row: Dict[str, Any] = {**ROW_DEFAULTS.get(table, {}), **values}
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", self.next_timestamp())
        if table == "conversations":
            row.setdefault("updated_at", row["created_at"])
        row = {key: _jsonable(value) for key, value in row.items()}
        keys = UNIQUE_KEYS.get(table)
        if keys is not None:
            for existing in self.tables[table]:
                if all(existing.get(key) == row.get(key) for key in keys):
                    raise StoreError(f"duplicate {table} row", status_code=409)
        self.tables[table].append(row)
        if publish:
            self._publish(table, EventType.INSERT, dict(row), {})
        return row

    def _publish(self, table: str, kind: EventType, new: Dict[str, Any], old: Dict[str, Any]) -> None:
        if self.feed is not None and self.realtime:
            self.feed.publish(ChangeEvent(table=table, type=kind, new=new, old=old))


class RecordingNotifier:
    def __init__(self) -> None:
        self.sounds: List[Sound] = []
        self.notifications: List[tuple[str, str]] = []
        self.badges: List[int] = []

    def play_sound(self, sound: Sound) -> None:
        self.sounds.append(sound)

    def show_notification(self, title: str, body: str) -> None:
        self.notifications.append((title, body))

    def set_badge(self, count: int) -> None:
        self.badges.append(count)


class RecordingFeed(ChangeFeed):
    """Change feed that also keeps every published event for assertions."""

    def __init__(self) -> None:
        super().__init__(queue_size=64)
        self.published: List[ChangeEvent] = []

    def publish(self, event: ChangeEvent) -> int:
        self.published.append(event)
        return super().publish(event)


async def _settle(rounds: int = 25) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def settle():
    """Let consumer tasks drain their queues."""

    return _settle


@pytest.fixture()
def feed() -> ChangeFeed:
    return ChangeFeed(queue_size=64)


@pytest.fixture()
def store(feed: ChangeFeed) -> FakeStore:
    return FakeStore(feed)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def people(store: FakeStore) -> Dict[str, Dict[str, Any]]:
    """Alice (the viewer) and Bob sharing a direct conversation."""

    alice = store.add_profile("Alice", friend_code="ALICE001")
    bob = store.add_profile("Bob", friend_code="BOB00002")
    conversation = store.add_conversation(alice["id"], bob["id"])
    return {"alice": alice, "bob": bob, "conversation": conversation}


@pytest.fixture()
def engine() -> Iterator:
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)


def _session_ctx(factory: sessionmaker):
    def _get_session() -> Iterator[Session]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _get_session


@pytest.fixture()
def recording_feed() -> RecordingFeed:
    return RecordingFeed()


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch, session_factory: sessionmaker, recording_feed: RecordingFeed) -> TestClient:
    session_ctx = _session_ctx(session_factory)

    monkeypatch.setattr(db_module, "SessionLocal", session_factory)

    app = create_app(recording_feed, create_tables=False)
    app.dependency_overrides[db_module.get_session] = session_ctx
    app.dependency_overrides[routes_rest.get_session] = session_ctx
    return TestClient(app)
