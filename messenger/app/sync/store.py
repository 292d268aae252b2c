"""Request/response access to the messenger store."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from ..core.config import settings
from ..core.errors import StoreError
from .query import Filter, Order, to_params

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class Store(Protocol):
    """Protocol implemented by store backends used by the sync services."""

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Return the rows of ``table`` matching every filter."""

    async def select_one(self, table: str, *, filters: Sequence[Filter]) -> Optional[Row]:
        """Return the single matching row or ``None``."""

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        """Insert rows and return them as stored."""

    async def update(
        self, table: str, values: Mapping[str, Any], *, filters: Sequence[Filter]
    ) -> List[Row]:
        """Update matching rows and return them as stored."""

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> List[Row]:
        """Delete matching rows and return what was removed."""

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        """Return the number of matching rows."""


class HttpStore:
    """``Store`` implementation speaking to the reference REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        key = api_key if api_key is not None else settings.STORE_API_KEY
        if key:
            headers["apikey"] = key
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.STORE_URL,
            timeout=timeout or settings.STORE_TIMEOUT,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        params = to_params(filters)
        if order is not None:
            params.append(("order", order.to_param()))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._request("GET", f"/rest/{table}", params=params)

    async def select_one(self, table: str, *, filters: Sequence[Filter]) -> Optional[Row]:
        rows = await self.select(table, filters=filters, limit=2)
        if len(rows) > 1:
            raise StoreError(f"Expected a single {table} row, got several")
        return rows[0] if rows else None

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        return await self._request("POST", f"/rest/{table}", json=[dict(row) for row in rows])

    async def update(
        self, table: str, values: Mapping[str, Any], *, filters: Sequence[Filter]
    ) -> List[Row]:
        if not filters:
            raise StoreError(f"Refusing to update every row of {table}")
        return await self._request(
            "PATCH", f"/rest/{table}", params=to_params(filters), json=dict(values)
        )

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> List[Row]:
        if not filters:
            raise StoreError(f"Refusing to delete every row of {table}")
        return await self._request("DELETE", f"/rest/{table}", params=to_params(filters))

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        payload = await self._request("GET", f"/rest/{table}/count", params=to_params(filters))
        try:
            return int(payload["count"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Malformed count response for {table}") from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(exc.response)
            logger.warning("Store %s %s failed with %s: %s", method, path, exc.response.status_code, detail)
            raise StoreError(detail, status_code=exc.response.status_code) from exc
        except httpx.TransportError as exc:
            logger.warning("Store %s %s unreachable: %s", method, path, exc)
            raise StoreError(f"Store unreachable: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise StoreError(f"Store returned a non-JSON body for {path}") from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)
