"""Row filters and ordering shared by the store client, change feed and backend.

Filters travel as query parameters of the form ``column=op.value``, for
example ``conversation_id=eq.42`` or ``id=in.(a,b,c)``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

OPERATORS = ("eq", "neq", "lt", "lte", "gt", "gte", "in", "is")


@dataclass(frozen=True, slots=True)
class Filter:
    """A single ``column <op> value`` predicate."""

    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def to_param(self) -> tuple[str, str]:
        """Encode the filter as a ``(column, "op.value")`` query pair."""

        if self.op == "in":
            values = ",".join(_encode_value(item) for item in self.value)
            return self.column, f"in.({values})"
        return self.column, f"{self.op}.{_encode_value(self.value)}"

    @classmethod
    def parse(cls, column: str, raw: str) -> "Filter":
        """Decode a ``op.value`` query parameter back into a filter.

        Values stay strings (``in`` yields a tuple of strings, ``is`` yields
        ``None``/``True``/``False``); type coercion is left to the consumer.
        """

        op, sep, value = raw.partition(".")
        if not sep or op not in OPERATORS:
            raise ValueError(f"Malformed filter for {column!r}: {raw!r}")
        if op == "in":
            if not (value.startswith("(") and value.endswith(")")):
                raise ValueError(f"Malformed list filter for {column!r}: {raw!r}")
            inner = value[1:-1]
            items = tuple(item for item in inner.split(",") if item) if inner else ()
            return cls(column, op, items)
        if op == "is":
            lowered = value.lower()
            if lowered not in {"null", "true", "false"}:
                raise ValueError(f"Unsupported IS value for {column!r}: {value!r}")
            return cls(column, op, {"null": None, "true": True, "false": False}[lowered])
        return cls(column, op, value)

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Evaluate the filter against a raw row dictionary."""

        actual = row.get(self.column)
        if self.op == "is":
            return actual is self.value
        if self.op == "in":
            return any(_equal(actual, item) for item in self.value)
        if self.op == "eq":
            return _equal(actual, self.value)
        if self.op == "neq":
            return not _equal(actual, self.value)
        if actual is None:
            return False
        left, right = _comparable(actual), _comparable(self.value)
        try:
            if self.op == "lt":
                return left < right
            if self.op == "lte":
                return left <= right
            if self.op == "gt":
                return left > right
            return left >= right
        except TypeError:
            return False


@dataclass(frozen=True, slots=True)
class Order:
    """Sort order encoded as ``column.asc`` or ``column.desc``."""

    column: str
    descending: bool = False

    def to_param(self) -> str:
        return f"{self.column}.{'desc' if self.descending else 'asc'}"

    @classmethod
    def parse(cls, raw: str) -> "Order":
        column, _, direction = raw.partition(".")
        direction = direction or "asc"
        if not column or direction not in {"asc", "desc"}:
            raise ValueError(f"Malformed order clause: {raw!r}")
        return cls(column, direction == "desc")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def matches_all(filters: Sequence[Filter], row: Mapping[str, Any]) -> bool:
    return all(item.matches(row) for item in filters)


def to_params(filters: Sequence[Filter]) -> list[tuple[str, str]]:
    return [item.to_param() for item in filters]


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if value is None:
        return "null"
    return str(value)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        try:
            return _as_utc(datetime.fromisoformat(value))
        except ValueError:
            return value
    return value


def _equal(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is expected
    if isinstance(actual, bool) or isinstance(expected, bool):
        return _encode_value(actual) == _encode_value(expected)
    return str(actual) == str(expected)
