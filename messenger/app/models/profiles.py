"""User profile model."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, String, Uuid

from . import Base
from ._columns import utcnow


class Profile(Base):
    """Public profile of a messenger user."""

    __tablename__ = "profiles"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    display_name = Column(String, nullable=False)
    avatar_url = Column(String, nullable=True)
    avatar_color = Column(String, nullable=True)
    friend_code = Column(String, nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"Profile(id={self.id!s}, display_name={self.display_name!r})"
