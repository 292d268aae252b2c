"""Generic table endpoints backing the sync client's ``HttpStore``.

``GET /rest/{table}?column=op.value&order=column.desc&limit=N`` selects rows,
``POST`` inserts a JSON list, ``PATCH`` updates the filtered rows and
``DELETE`` removes them. Every committed write is published to the app's
change feed so that ``/realtime/stream`` subscribers see it.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Type

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy import Boolean, DateTime, Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.db import get_session
from ..models import Base, Conversation, ConversationMember, Friendship, Message, MessageReaction, Profile
from ..sync.query import Filter, Order
from ..sync.realtime import ChangeEvent, ChangeFeed, EventType

logger = logging.getLogger(__name__)

router = APIRouter()

TABLES: Dict[str, Type[Base]] = {
    "profiles": Profile,
    "conversations": Conversation,
    "conversation_members": ConversationMember,
    "messages": Message,
    "message_reactions": MessageReaction,
    "friendships": Friendship,
}

RESERVED_PARAMS = {"order", "limit", "select"}
MAX_LIMIT = 1000


def _model_for(table: str) -> Type[Base]:
    model = TABLES.get(table)
    if model is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown table {table!r}")
    return model


def _column(model: Type[Base], name: str) -> Any:
    column = model.__table__.columns.get(name)
    if column is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown column {name!r} on {model.__tablename__}",
        )
    return column


def _coerce(column: Any, value: Any) -> Any:
    """Convert a JSON or query-string value to the column's Python type."""

    if value is None:
        return None
    try:
        if isinstance(column.type, DateTime):
            parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        if isinstance(column.type, Boolean):
            if isinstance(value, bool):
                return value
            lowered = str(value).lower()
            if lowered not in {"true", "false"}:
                raise ValueError(value)
            return lowered == "true"
        python_type = column.type.python_type
        if python_type is uuid.UUID:
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        if python_type is int:
            return int(value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid value {value!r} for column {column.name!r}",
        ) from exc


def _clause(model: Type[Base], item: Filter) -> Any:
    column = _column(model, item.column)
    if item.op == "is":
        return column.is_(item.value)
    if item.op == "in":
        return column.in_([_coerce(column, value) for value in item.value])
    if item.op == "eq" and item.value == "null":
        return column.is_(None)
    value = _coerce(column, item.value)
    if item.op == "eq":
        return column == value
    if item.op == "neq":
        return column != value
    if item.op == "lt":
        return column < value
    if item.op == "lte":
        return column <= value
    if item.op == "gt":
        return column > value
    return column >= value


def _filters(request: Request, model: Type[Base]) -> List[Any]:
    clauses = []
    for name, raw in request.query_params.multi_items():
        if name in RESERVED_PARAMS:
            continue
        try:
            item = Filter.parse(name, raw)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        clauses.append(_clause(model, item))
    return clauses


def _serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


def serialize(obj: Base) -> Dict[str, Any]:
    """Return the row as a JSON-ready dict keyed by column name."""

    return {
        column.name: _serialize_value(getattr(obj, column.key))
        for column in obj.__table__.columns
    }


def _values(model: Type[Base], payload: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Rows must be JSON objects")
    return {name: _coerce(_column(model, name), value) for name, value in payload.items()}


def _feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def _publish(request: Request, table: str, kind: EventType, rows: Sequence[tuple[Dict[str, Any], Dict[str, Any]]]) -> None:
    feed = _feed(request)
    for new, old in rows:
        feed.publish(ChangeEvent(table=table, type=kind, new=new, old=old))


def _commit(session: Session, table: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.info("Rejected write to %s: %s", table, exc.orig)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Write to {table} violates a uniqueness or reference constraint",
        ) from exc


def _guard_deleted_message(obj: Message, values: Dict[str, Any]) -> None:
    """Refuse any change that would bring a soft-deleted message back."""

    if not obj.is_deleted:
        return
    revived = values.get("is_deleted") is False or any(
        values.get(name) is not None for name in ("content", "image_url")
    )
    if revived:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Message {obj.id} is deleted and cannot be modified",
        )


def _select(model: Type[Base], clauses: List[Any]) -> Select[Any]:
    return select(model).where(*clauses)


@router.get("/{table}", summary="Select rows")
async def select_rows(
    table: str,
    request: Request,
    order: Optional[str] = None,
    limit: Optional[int] = None,
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    model = _model_for(table)
    stmt = _select(model, _filters(request, model))
    if order:
        try:
            ordering = Order.parse(order)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        column = _column(model, ordering.column)
        stmt = stmt.order_by(column.desc() if ordering.descending else column.asc())
    if limit is not None:
        if limit < 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="limit must be >= 0")
        stmt = stmt.limit(min(limit, MAX_LIMIT))
    return [serialize(obj) for obj in session.execute(stmt).scalars()]


@router.get("/{table}/count", summary="Count rows")
async def count_rows(
    table: str, request: Request, session: Session = Depends(get_session)
) -> Dict[str, int]:
    model = _model_for(table)
    stmt = select(func.count()).select_from(model).where(*_filters(request, model))
    return {"count": int(session.execute(stmt).scalar_one())}


@router.post("/{table}", status_code=status.HTTP_201_CREATED, summary="Insert rows")
async def insert_rows(
    table: str,
    request: Request,
    payload: Any = Body(...),
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    model = _model_for(table)
    rows = payload if isinstance(payload, list) else [payload]
    objects = [model(**_values(model, row)) for row in rows]
    if table == "messages":
        for obj in objects:
            if obj.is_deleted:
                obj.content = None
                obj.image_url = None
    session.add_all(objects)
    _commit(session, table)
    created = [serialize(obj) for obj in objects]
    _publish(request, table, EventType.INSERT, [(row, {}) for row in created])
    logger.debug("Inserted %s row(s) into %s", len(created), table)
    return created


@router.patch("/{table}", summary="Update filtered rows")
async def update_rows(
    table: str,
    request: Request,
    payload: Dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    model = _model_for(table)
    clauses = _filters(request, model)
    if not clauses:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Updates require a filter")
    values = _values(model, payload)
    if "id" in values:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Row ids are immutable")
    if table == "messages" and values.get("is_deleted") is True:
        values["content"] = None
        values["image_url"] = None

    objects = list(session.execute(_select(model, clauses)).scalars())
    changes = []
    for obj in objects:
        if table == "messages":
            _guard_deleted_message(obj, values)
        old = serialize(obj)
        for name, value in values.items():
            setattr(obj, _column(model, name).key, value)
        changes.append((obj, old))
    _commit(session, table)

    updated = [(serialize(obj), old) for obj, old in changes]
    _publish(request, table, EventType.UPDATE, updated)
    return [new for new, _ in updated]


@router.delete("/{table}", summary="Delete filtered rows")
async def delete_rows(
    table: str, request: Request, session: Session = Depends(get_session)
) -> List[Dict[str, Any]]:
    model = _model_for(table)
    clauses = _filters(request, model)
    if not clauses:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deletes require a filter")
    objects = list(session.execute(_select(model, clauses)).scalars())
    removed = [serialize(obj) for obj in objects]
    for obj in objects:
        session.delete(obj)
    _commit(session, table)
    _publish(request, table, EventType.DELETE, [({}, row) for row in removed])
    return removed
