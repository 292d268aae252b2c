"""Client-side conversation sync library."""

from .client import MessengerClient
from .engine import SyncEngine
from .realtime import ChangeEvent, ChangeFeed, EventType, RealtimeListener
from .store import HttpStore, Store

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "EventType",
    "HttpStore",
    "MessengerClient",
    "RealtimeListener",
    "Store",
    "SyncEngine",
]
