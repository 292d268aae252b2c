from __future__ import annotations

import asyncio
import json
from typing import Any, List

import httpx
import pytest

from messenger.app.core.errors import StoreError
from messenger.app.sync.query import Order, eq, in_, lt
from messenger.app.sync.store import HttpStore


class Recorder:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = status_code
        self.payload = [] if payload is None else payload

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


def _store(handler: Any, **kwargs: Any) -> HttpStore:
    return HttpStore("http://store.test", transport=httpx.MockTransport(handler), **kwargs)


def test_select_encodes_filters_order_and_limit() -> None:
    recorder = Recorder(payload=[{"id": "m1"}])

    async def scenario() -> List[dict]:
        async with _store(recorder, api_key="secret") as store:
            return await store.select(
                "messages",
                filters=[eq("conversation_id", "c1"), lt("created_at", "2024-05-01T12:00:00+00:00"), in_("id", ["a", "b"])],
                order=Order("created_at", descending=True),
                limit=50,
            )

    assert asyncio.run(scenario()) == [{"id": "m1"}]
    request = recorder.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/messages"
    assert request.url.params.multi_items() == [
        ("conversation_id", "eq.c1"),
        ("created_at", "lt.2024-05-01T12:00:00+00:00"),
        ("id", "in.(a,b)"),
        ("order", "created_at.desc"),
        ("limit", "50"),
    ]
    assert request.headers["apikey"] == "secret"


def test_writes_send_json_and_filters() -> None:
    recorder = Recorder(payload=[{"id": "m1", "is_deleted": True}])

    async def scenario() -> None:
        async with _store(recorder) as store:
            await store.insert("messages", [{"content": "hi"}])
            await store.update("messages", {"is_deleted": True}, filters=[eq("id", "m1")])
            await store.delete("message_reactions", filters=[eq("id", "r1")])

    asyncio.run(scenario())
    insert, update, delete = recorder.requests
    assert (insert.method, json.loads(insert.content)) == ("POST", [{"content": "hi"}])
    assert update.method == "PATCH"
    assert json.loads(update.content) == {"is_deleted": True}
    assert update.url.params["id"] == "eq.m1"
    assert delete.method == "DELETE"
    assert "apikey" not in delete.headers


def test_unfiltered_writes_are_refused_locally() -> None:
    recorder = Recorder()

    async def scenario() -> None:
        async with _store(recorder) as store:
            with pytest.raises(StoreError):
                await store.update("messages", {"content": "x"}, filters=[])
            with pytest.raises(StoreError):
                await store.delete("messages", filters=[])

    asyncio.run(scenario())
    assert recorder.requests == []


def test_select_one_and_count() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/count"):
            return httpx.Response(200, json={"count": 7})
        if request.url.params.get("id") == "eq.many":
            return httpx.Response(200, json=[{"id": "1"}, {"id": "2"}])
        return httpx.Response(200, json=[])

    async def scenario() -> None:
        async with _store(handler) as store:
            assert await store.count("messages", filters=[eq("conversation_id", "c1")]) == 7
            assert await store.select_one("profiles", filters=[eq("id", "missing")]) is None
            with pytest.raises(StoreError):
                await store.select_one("profiles", filters=[eq("id", "many")])

    asyncio.run(scenario())


def test_http_errors_become_store_errors_with_detail() -> None:
    recorder = Recorder(409, {"detail": "duplicate reaction"})

    async def scenario() -> None:
        async with _store(recorder) as store:
            await store.insert("message_reactions", [{"emoji": "x"}])

    with pytest.raises(StoreError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code == 409
    assert str(excinfo.value) == "duplicate reaction"


def test_transport_errors_become_store_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario() -> None:
        async with _store(handler) as store:
            await store.select("messages")

    with pytest.raises(StoreError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code is None
