"""Column helpers shared by the store tables."""
from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    # Python-side defaults keep microsecond precision on SQLite as well.
    return datetime.now(timezone.utc)
