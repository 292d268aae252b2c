"""FastAPI application entry point for the reference messenger store."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .api import routes_admin, routes_realtime, routes_rest
from .core.config import settings
from .core.db import ENGINE
from .core.middleware import ApiKeyMiddleware, RequestLoggingMiddleware
from .models import Base
from .sync.realtime import ChangeFeed


def create_app(feed: ChangeFeed | None = None, *, create_tables: bool | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    should_create = settings.DATABASE_CREATE_TABLES if create_tables is None else create_tables

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if should_create:
            Base.metadata.create_all(ENGINE)
        yield
        app.state.feed.close()

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
    app.state.feed = feed or ChangeFeed()

    app.add_middleware(ApiKeyMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])
    app.include_router(routes_rest.router, prefix="/rest", tags=["rest"])
    app.include_router(routes_realtime.router, prefix="/realtime", tags=["realtime"])

    return app


app = create_app()
