"""Error taxonomy shared by the sync client and the reference store."""
from __future__ import annotations


class MessengerError(RuntimeError):
    """Base class for every error raised by the messenger package."""


class StoreError(MessengerError):
    """Raised when the store cannot be reached or rejects a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FetchFailure(MessengerError):
    """A read against the store failed; callers keep their previous state."""


class EnrichmentFailure(FetchFailure):
    """A realtime row could not be joined with its sender profile."""


class SendFailure(MessengerError):
    """An outgoing write failed; ``draft`` holds the text to restore."""

    def __init__(self, message: str, *, draft: str | None = None) -> None:
        super().__init__(message)
        self.draft = draft


class ValidationError(MessengerError):
    """Raised when outgoing input is rejected before reaching the store."""


class NotFoundError(MessengerError):
    """Raised when a looked-up entity does not exist."""
