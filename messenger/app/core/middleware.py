"""Custom ASGI middleware for API key checks and request logging."""
from __future__ import annotations

import hmac
import logging
import time
from typing import Awaitable, Callable, Sequence

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .config import settings
from .metrics import record_request


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """Require the ``apikey`` header on store routes when a key is configured."""

    def __init__(
        self,
        app: Callable,
        protected_prefixes: Sequence[str] = ("/rest", "/realtime"),
        api_key: str | None = None,
    ) -> None:
        super().__init__(app)
        self.protected_prefixes = tuple(protected_prefixes)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        expected = self.api_key if self.api_key is not None else settings.STORE_API_KEY
        if expected and request.url.path.startswith(self.protected_prefixes):
            provided = request.headers.get("apikey", "")
            if not hmac.compare_digest(provided, expected):
                return JSONResponse({"detail": "Invalid API key"}, status_code=status.HTTP_401_UNAUTHORIZED)
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log structured request summaries and emit metrics."""

    def __init__(self, app: Callable) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("messenger.request")

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        method = request.method
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            duration = time.perf_counter() - start
            record_request(method, _route_path(request), status_code, duration)
            self.logger.exception(
                "HTTP %s %s raised an unhandled exception", method, _route_path(request)
            )
            raise
        duration = time.perf_counter() - start
        route_path = _route_path(request)

        self.logger.info(
            "HTTP %s %s status=%s client=%s duration=%.3f",
            method,
            route_path,
            status_code,
            request.headers.get("X-Client-Id") or "anonymous",
            duration,
        )
        record_request(method, route_path, status_code, duration)
        response.headers.setdefault("X-Process-Time", f"{duration:.6f}")
        return response


def _route_path(request: Request) -> str:
    # The matched route template keeps metric label cardinality bounded.
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)
