"""Conversation model for direct chats and groups."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Uuid

from . import Base
from ._columns import utcnow


class Conversation(Base):
    """A direct or group conversation; ``updated_at`` orders the inbox."""

    __tablename__ = "conversations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(String(16), nullable=False, default="direct")
    name = Column(String, nullable=True)
    icon_text = Column(String, nullable=True)
    icon_color = Column(String, nullable=True)
    invite_code = Column(String, nullable=True, unique=True, index=True)
    created_by = Column(
        Uuid(as_uuid=True),
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"Conversation(id={self.id!s}, type={self.type!r})"
