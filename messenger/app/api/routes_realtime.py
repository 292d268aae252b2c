"""Server-sent change stream consumed by ``RealtimeListener``."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from ..core.config import settings
from ..core.sse import format_sse, stream
from ..sync.realtime import ChangeFeed, Subscription
from .routes_rest import TABLES

logger = logging.getLogger(__name__)

router = APIRouter()


async def _events(
    request: Request, feed: ChangeFeed, subscription: Subscription, keepalive: float
) -> AsyncIterator[str]:
    try:
        yield ": connected\n\n"
        while True:
            try:
                event = await asyncio.wait_for(subscription.__anext__(), timeout=keepalive)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ": keepalive\n\n"
                continue
            except StopAsyncIteration:
                break
            yield format_sse(event.to_json(), event=event.type.value)
    finally:
        feed.unsubscribe(subscription)
        logger.info("Realtime subscriber for %s disconnected", sorted(subscription.tables))


@router.get("/stream", summary="Stream committed row changes over SSE")
async def realtime_stream(
    request: Request, table: List[str] = Query(...)
) -> StreamingResponse:
    unknown = sorted(set(table) - set(TABLES))
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown table(s): {', '.join(unknown)}"
        )
    feed: ChangeFeed = request.app.state.feed
    # Subscribe before the response starts so no committed write is missed.
    subscription = feed.subscribe(table)
    logger.info("Realtime subscriber attached to %s", sorted(subscription.tables))
    return stream(
        _events(request, feed, subscription, settings.REALTIME_KEEPALIVE_SECONDS)
    )
