"""Pure merge functions over an ordered message timeline.

Timelines are tuples sorted by ``created_at`` ascending, ties kept in arrival
order, with at most one entry per message id. Every function returns the
*same* tuple object when the merge changes nothing, so callers can skip
notifying observers with a cheap identity check.

A deleted message stays deleted: no merge re-populates ``content`` or
``image_url`` once ``is_deleted`` is set locally.
"""
from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from .schemas import Message, MessageWithDetails, Reaction

Timeline = tuple[MessageWithDetails, ...]


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Outcome of a poll merge; ``updated`` flags in-place entry changes."""

    messages: Timeline
    added: Timeline = ()
    updated: bool = False

    @property
    def changed(self) -> bool:
        return self.updated or bool(self.added)


def index_of(messages: Timeline, message_id: str) -> Optional[int]:
    for index, item in enumerate(messages):
        if item.id == message_id:
            return index
    return None


def append_if_new(messages: Timeline, detail: MessageWithDetails) -> Timeline:
    """Add ``detail`` unless its id is already present."""

    if index_of(messages, detail.id) is not None:
        return messages
    return _insert_sorted(messages, detail)


def apply_update(messages: Timeline, row: Mapping[str, Any]) -> Timeline:
    """Overwrite the mutable fields of the entry matching ``row['id']``.

    Unknown ids are ignored; the row may have arrived before the entry did.
    """

    index = index_of(messages, str(row.get("id")))
    if index is None:
        return messages
    current = messages[index]
    if current.message.is_deleted:
        return messages

    is_deleted = bool(row.get("is_deleted", current.message.is_deleted))
    if is_deleted:
        changes: dict[str, Any] = {"content": None, "image_url": None, "is_deleted": True}
    else:
        changes = {
            "content": row.get("content", current.message.content),
            "image_url": row.get("image_url", current.message.image_url),
            "is_deleted": False,
        }
    message = current.message.model_copy(update=changes)
    if message == current.message:
        return messages
    return _replace(messages, index, current.model_copy(update={"message": message}))


def prepend_older(messages: Timeline, older: Sequence[MessageWithDetails]) -> Timeline:
    """Put an older, already chronological page in front of the timeline."""

    held = {item.id for item in messages}
    fresh = tuple(item for item in older if item.id not in held)
    if not fresh:
        return messages
    return fresh + messages


def merge_polled(messages: Timeline, polled: Sequence[MessageWithDetails]) -> MergeResult:
    """Conservatively fold a polled recent page into the timeline.

    Picks up messages missing locally, deletions the timeline has not seen
    and reply targets for entries that arrived without one. Entries absent
    from the poll are kept: the poll only covers the most recent page.
    """

    positions = {item.id: index for index, item in enumerate(messages)}
    updated = list(messages)
    changed = False
    added: list[MessageWithDetails] = []

    for remote in polled:
        index = positions.get(remote.id)
        if index is None:
            if all(item.id != remote.id for item in added):
                added.append(remote)
            continue
        local = updated[index]
        merged = local
        if remote.message.is_deleted and not local.message.is_deleted:
            merged = merged.model_copy(update={"message": _deleted(local.message)})
        if merged.reply_to is None and remote.reply_to is not None:
            merged = merged.model_copy(update={"reply_to": remote.reply_to})
        if merged is not local:
            updated[index] = merged
            changed = True

    result: Timeline = tuple(updated) if changed else messages
    for item in added:
        result = _insert_sorted(result, item)
    return MergeResult(result, tuple(added), changed)


def merge_reactions(
    messages: Timeline,
    snapshot: Sequence[MessageWithDetails],
    extra: Optional[Mapping[str, tuple[Reaction, ...]]] = None,
) -> Timeline:
    """Refresh reaction sets from an authoritative snapshot.

    ``snapshot`` is a freshly fetched recent page; ``extra`` maps ids of older
    held messages to their reaction sets. Held history outside both is left
    untouched instead of being truncated to the snapshot.
    """

    base = merge_polled(messages, snapshot).messages
    reaction_sets: dict[str, tuple[Reaction, ...]] = dict(extra or {})
    reaction_sets.update((item.id, item.reactions) for item in snapshot)

    updated = list(base)
    changed = False
    for index, item in enumerate(updated):
        reactions = reaction_sets.get(item.id)
        if reactions is not None and reactions != item.reactions:
            updated[index] = item.model_copy(update={"reactions": reactions})
            changed = True
    return tuple(updated) if changed else base


def _deleted(message: Message) -> Message:
    return message.model_copy(update={"content": None, "image_url": None, "is_deleted": True})


def _replace(messages: Timeline, index: int, detail: MessageWithDetails) -> Timeline:
    return messages[:index] + (detail,) + messages[index + 1 :]


def _insert_sorted(messages: Timeline, detail: MessageWithDetails) -> Timeline:
    if not messages or messages[-1].created_at <= detail.created_at:
        return messages + (detail,)
    keys = [item.created_at for item in messages]
    position = bisect_right(keys, detail.created_at)
    return messages[:position] + (detail,) + messages[position:]
