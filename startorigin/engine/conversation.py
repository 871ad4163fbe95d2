"""
startorigin.engine.conversation — Per-Conversation State Reducer
================================================================

Pure state machine for one open conversation.  Nothing in here touches the
database or the live channel; the :class:`~startorigin.services.messenger.Messenger`
feeds it events and renders whatever comes back.

Two independent axes:

* ``SendState``:  IDLE → SENDING → SENT | FAILED  (→ SENDING on the next send)
* ``SyncPhase``:  LOADED → RECEIVING_LIVE → LOADED

Merge rule for every path that adds messages (initial load, optimistic send,
live insert echo): de-duplicate by message id, the most recently applied
version wins, the list stays ordered by ``(created_at, id)``.  The viewer's
own messages always project ``is_read = True``.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any


class SendState(enum.StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class SyncPhase(enum.StrEnum):
    LOADED = "loaded"
    RECEIVING_LIVE = "receiving_live"


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# View records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ReactionView:
    id: str
    message_id: str
    user_id: str
    emoji: str

    @classmethod
    def from_row(cls, row: Any) -> ReactionView:
        return cls(
            id=row.id, message_id=row.message_id, user_id=row.user_id, emoji=row.emoji,
        )


@dataclass(frozen=True, slots=True)
class MessageView:
    id: str
    chat_id: str
    sender_id: str
    content: str
    created_at: datetime
    is_read: bool = False
    reactions: tuple[ReactionView, ...] = ()

    @classmethod
    def from_row(cls, row: Any, reactions: Iterable[Any] = ()) -> MessageView:
        """Build from a ``Message`` ORM row (or anything shaped like one)."""
        return cls(
            id=row.id,
            chat_id=row.chat_id,
            sender_id=row.sender_id,
            content=row.content,
            created_at=as_utc(row.created_at),
            is_read=bool(row.is_read),
            reactions=tuple(
                r if isinstance(r, ReactionView) else ReactionView.from_row(r)
                for r in reactions
            ),
        )

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "is_read": self.is_read,
            "reactions": [
                {"id": r.id, "user_id": r.user_id, "emoji": r.emoji}
                for r in self.reactions
            ],
        }


@dataclass(frozen=True, slots=True)
class ReactionGroup:
    emoji: str
    count: int
    mine: bool


def group_reactions(message: MessageView, viewer_id: str) -> list[ReactionGroup]:
    """Aggregate reactions by emoji in first-seen order."""
    counts: dict[str, int] = {}
    mine: set[str] = set()
    for r in message.reactions:
        counts[r.emoji] = counts.get(r.emoji, 0) + 1
        if r.user_id == viewer_id:
            mine.add(r.emoji)
    return [ReactionGroup(emoji, n, emoji in mine) for emoji, n in counts.items()]


def reaction_click(message: MessageView, emoji: str, viewer_id: str) -> str:
    """``"remove"`` when the viewer already holds *emoji*, else ``"add"``."""
    held = any(r.emoji == emoji and r.user_id == viewer_id for r in message.reactions)
    return "remove" if held else "add"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ConversationState:
    viewer_id: str
    chat_id: str | None = None
    messages: tuple[MessageView, ...] = ()
    send_state: SendState = SendState.IDLE
    sync_phase: SyncPhase = SyncPhase.LOADED
    pending_live: frozenset[str] = field(default_factory=frozenset)
    last_error: str | None = None

    @property
    def message_ids(self) -> list[str]:
        return [m.id for m in self.messages]

    @property
    def unread_count(self) -> int:
        return sum(
            1 for m in self.messages if not m.is_read and m.sender_id != self.viewer_id
        )

    @property
    def is_sending(self) -> bool:
        return self.send_state == SendState.SENDING

    def get(self, message_id: str) -> MessageView | None:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Loaded:
    chat_id: str
    messages: tuple[MessageView, ...]


@dataclass(frozen=True, slots=True)
class Cleared:
    pass


@dataclass(frozen=True, slots=True)
class SendStarted:
    pass


@dataclass(frozen=True, slots=True)
class SendSucceeded:
    message: MessageView


@dataclass(frozen=True, slots=True)
class SendFailed:
    error: str


@dataclass(frozen=True, slots=True)
class LiveReceived:
    chat_id: str
    message_id: str


@dataclass(frozen=True, slots=True)
class LiveApplied:
    """Outcome of fetching a live-inserted row.  ``message`` is ``None`` when
    the row vanished or is hidden from the viewer."""

    message_id: str
    message: MessageView | None


@dataclass(frozen=True, slots=True)
class MessageRemoved:
    message_id: str


@dataclass(frozen=True, slots=True)
class MarkedRead:
    pass


@dataclass(frozen=True, slots=True)
class ReactionAdded:
    reaction: ReactionView


@dataclass(frozen=True, slots=True)
class ReactionRemoved:
    message_id: str
    user_id: str
    emoji: str


Event = (
    Loaded | Cleared | SendStarted | SendSucceeded | SendFailed | LiveReceived
    | LiveApplied | MessageRemoved | MarkedRead | ReactionAdded | ReactionRemoved
)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------
def _project(msg: MessageView, viewer_id: str) -> MessageView:
    if msg.sender_id == viewer_id and not msg.is_read:
        return replace(msg, is_read=True)
    return msg


def merge_messages(
    current: Iterable[MessageView], incoming: Iterable[MessageView], viewer_id: str,
) -> tuple[MessageView, ...]:
    """De-duplicate by id (incoming wins) and order by ``(created_at, id)``."""
    by_id: dict[str, MessageView] = {m.id: m for m in current}
    for m in incoming:
        by_id[m.id] = _project(m, viewer_id)
    return tuple(sorted(by_id.values(), key=lambda m: m.sort_key))


def _update_message(state: ConversationState, message_id: str, fn) -> ConversationState:
    changed = False
    out = []
    for m in state.messages:
        if m.id == message_id:
            new = fn(m)
            changed = changed or new is not m
            out.append(new)
        else:
            out.append(m)
    return replace(state, messages=tuple(out)) if changed else state


def reduce(state: ConversationState, event: Event) -> ConversationState:
    """Apply *event* to *state*, returning the new state (or *state* itself
    when nothing changes)."""
    if isinstance(event, Loaded):
        return replace(
            state,
            chat_id=event.chat_id,
            messages=merge_messages((), event.messages, state.viewer_id),
            sync_phase=SyncPhase.LOADED,
            pending_live=frozenset(),
            send_state=SendState.IDLE,
            last_error=None,
        )

    if isinstance(event, Cleared):
        return ConversationState(viewer_id=state.viewer_id)

    if isinstance(event, SendStarted):
        if state.send_state == SendState.SENDING:
            return state
        return replace(state, send_state=SendState.SENDING, last_error=None)

    if isinstance(event, SendSucceeded):
        msg = event.message
        if msg.chat_id != state.chat_id:
            return replace(state, send_state=SendState.SENT)
        return replace(
            state,
            messages=merge_messages(state.messages, (msg,), state.viewer_id),
            send_state=SendState.SENT,
        )

    if isinstance(event, SendFailed):
        return replace(state, send_state=SendState.FAILED, last_error=event.error)

    if isinstance(event, LiveReceived):
        if event.chat_id != state.chat_id:
            return state
        return replace(
            state,
            sync_phase=SyncPhase.RECEIVING_LIVE,
            pending_live=state.pending_live | {event.message_id},
        )

    if isinstance(event, LiveApplied):
        if event.message_id not in state.pending_live:
            return state
        pending = state.pending_live - {event.message_id}
        messages = state.messages
        if event.message is not None and event.message.chat_id == state.chat_id:
            messages = merge_messages(messages, (event.message,), state.viewer_id)
        return replace(
            state,
            messages=messages,
            pending_live=pending,
            sync_phase=SyncPhase.RECEIVING_LIVE if pending else SyncPhase.LOADED,
        )

    if isinstance(event, MessageRemoved):
        if state.get(event.message_id) is None:
            return state
        return replace(
            state,
            messages=tuple(m for m in state.messages if m.id != event.message_id),
        )

    if isinstance(event, MarkedRead):
        if state.unread_count == 0:
            return state
        return replace(
            state,
            messages=tuple(
                m if m.is_read or m.sender_id == state.viewer_id
                else replace(m, is_read=True)
                for m in state.messages
            ),
        )

    if isinstance(event, ReactionAdded):
        r = event.reaction

        def _add(m: MessageView) -> MessageView:
            for existing in m.reactions:
                if (existing.user_id, existing.emoji) == (r.user_id, r.emoji):
                    return m
            return replace(m, reactions=m.reactions + (r,))

        return _update_message(state, r.message_id, _add)

    if isinstance(event, ReactionRemoved):

        def _remove(m: MessageView) -> MessageView:
            kept = tuple(
                x for x in m.reactions
                if not (x.user_id == event.user_id and x.emoji == event.emoji)
            )
            return m if len(kept) == len(m.reactions) else replace(m, reactions=kept)

        return _update_message(state, event.message_id, _remove)

    raise TypeError(f"Unknown conversation event: {event!r}")
