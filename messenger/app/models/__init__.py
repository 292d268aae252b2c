"""SQLAlchemy declarative base for the reference store tables."""
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Imported last: the model modules import ``Base`` from this package.
from .conversation_members import ConversationMember  # noqa: F401
from .conversations import Conversation  # noqa: F401
from .friendships import Friendship  # noqa: F401
from .message_reactions import MessageReaction  # noqa: F401
from .messages import Message  # noqa: F401
from .profiles import Profile  # noqa: F401


__all__ = [
    "Base",
    "Conversation",
    "ConversationMember",
    "Friendship",
    "Message",
    "MessageReaction",
    "Profile",
]
