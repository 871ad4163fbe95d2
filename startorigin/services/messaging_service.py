"""
startorigin.services.messaging_service — Chats, Messages, Reactions, Blocks
============================================================================

Stateless store operations behind the chat view.  Every function takes the
engine (and the live channel where it publishes) explicitly; nothing here
holds view state.  See :mod:`startorigin.services.messenger` for the
stateful per-view wrapper.

Deletion semantics:
  * ``delete_message`` hides a message from the caller's own view by
    appending them to ``messages.deleted_by``.  The other participant still
    sees it.
  * ``delete_message(..., for_everyone=True)`` is the sender-only hard
    delete: reactions are removed and committed first, then the message row.
    A failure between the two commits leaves the message without reactions.
  * ``delete_chat`` removes reactions, messages, participants and the chat.

Chat creation commits the ``chats`` row before attaching participants.  If
the second commit fails the orphan chat is logged and
:class:`ChatCreationError` is raised; it is never visible in anyone's list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from startorigin.constants import REACTION_EMOJIS, USER_SEARCH_LIMIT
from startorigin.database.models import (
    Block,
    Chat,
    ChatParticipant,
    Message,
    MessageReaction,
    Profile,
)
from startorigin.engine.conversation import MessageView, ReactionView, as_utc
from startorigin.engine.live import ChangeKind, RowChange
from startorigin.errors import (
    BlockedRecipient,
    ChatCreationError,
    ChatDisabled,
    Forbidden,
    NotAParticipant,
    NotFound,
    ValidationFailed,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from startorigin.engine.live import LiveChannel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# View records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class UserStub:
    id: str
    username: str | None
    display_name: str | None
    avatar_url: str | None

    @classmethod
    def from_profile(cls, profile: Profile) -> UserStub:
        return cls(
            id=profile.id,
            username=profile.username,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
        )

    @property
    def label(self) -> str:
        return self.display_name or self.username or "Anonymous"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }


@dataclass(frozen=True, slots=True)
class ChatSummary:
    id: str
    other: UserStub | None
    last_message: MessageView | None
    unread_count: int
    created_at: datetime

    @property
    def activity_at(self) -> datetime:
        if self.last_message is not None:
            return self.last_message.created_at
        return self.created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "other": self.other.to_dict() if self.other else None,
            "last_message": self.last_message.to_dict() if self.last_message else None,
            "unread_count": self.unread_count,
            "created_at": self.created_at.isoformat(),
        }


def message_record(msg: Message) -> dict:
    """Row payload published on the live channel."""
    return {
        "id": msg.id,
        "chat_id": msg.chat_id,
        "sender_id": msg.sender_id,
        "content": msg.content,
        "is_read": msg.is_read,
        "created_at": as_utc(msg.created_at).isoformat() if msg.created_at else None,
    }


def _publish(live: LiveChannel | None, change: RowChange) -> None:
    # The write is already committed; a lost notification only delays peers
    # until their next reload.
    if live is None:
        return
    try:
        live.publish(change)
    except SQLAlchemyError:
        logger.exception("Live publish failed for %s %s", change.kind, change.table)


# ---------------------------------------------------------------------------
# Internal lookups
# ---------------------------------------------------------------------------
def _participant_ids(session: Session, chat_id: str) -> list[str]:
    return list(session.scalars(
        select(ChatParticipant.user_id).where(ChatParticipant.chat_id == chat_id)
    ).all())


def _require_participant(session: Session, chat_id: str, user_id: str) -> list[str]:
    if session.get(Chat, chat_id) is None:
        raise NotFound(f"Chat {chat_id} not found")
    members = _participant_ids(session, chat_id)
    if user_id not in members:
        raise NotAParticipant("You are not part of this conversation.")
    return members


def _blocked_between(session: Session, a: str, b: str) -> bool:
    return session.scalar(
        select(Block.id).where(
            or_(
                and_(Block.blocker_id == a, Block.blocked_user_id == b),
                and_(Block.blocker_id == b, Block.blocked_user_id == a),
            )
        ).limit(1)
    ) is not None


def _hidden_from(msg: Message, viewer_id: str) -> bool:
    return viewer_id in (msg.deleted_by or [])


def _reactions_by_message(
    session: Session, message_ids: list[str],
) -> dict[str, list[MessageReaction]]:
    out: dict[str, list[MessageReaction]] = {mid: [] for mid in message_ids}
    if not message_ids:
        return out
    rows = session.scalars(
        select(MessageReaction)
        .where(MessageReaction.message_id.in_(message_ids))
        .order_by(MessageReaction.created_at, MessageReaction.id)
    ).all()
    for r in rows:
        out[r.message_id].append(r)
    return out


def _find_chat_between(session: Session, user_id: str, other_id: str) -> str | None:
    mine = select(ChatParticipant.chat_id).where(ChatParticipant.user_id == user_id)
    return session.scalar(
        select(ChatParticipant.chat_id)
        .join(Chat, Chat.id == ChatParticipant.chat_id)
        .where(
            ChatParticipant.user_id == other_id,
            ChatParticipant.chat_id.in_(mine),
        )
        .order_by(Chat.created_at, Chat.id)
        .limit(1)
    )


# ---------------------------------------------------------------------------
# Chat resolution
# ---------------------------------------------------------------------------
def find_chat_between(engine: Engine, user_id: str, other_id: str) -> str | None:
    """Oldest chat that has both users as participants, if any."""
    with Session(engine) as session:
        return _find_chat_between(session, user_id, other_id)


def open_chat_with(engine: Engine, user_id: str, target_id: str) -> tuple[str, bool]:
    """Resolve the 1:1 chat with *target_id*, creating it on first contact.

    Returns ``(chat_id, created)``.

    Raises
    ------
    ValidationFailed   chatting with yourself
    NotFound           unknown target
    BlockedRecipient   a block exists in either direction
    ChatDisabled       the target turned chat off
    ChatCreationError  participants could not be attached to a new chat
    """
    if target_id == user_id:
        raise ValidationFailed("You can't start a chat with yourself.")

    with Session(engine) as session:
        target = session.get(Profile, target_id)
        if target is None:
            raise NotFound(f"User {target_id} not found")
        if _blocked_between(session, user_id, target_id):
            logger.warning("Chat refused: block between %s and %s", user_id, target_id)
            raise BlockedRecipient(target_id)
        if target.disable_chat:
            raise ChatDisabled(target_id)

        existing = _find_chat_between(session, user_id, target_id)
        if existing is not None:
            return existing, False

        chat = Chat()
        session.add(chat)
        session.flush()
        chat_id = chat.id
        session.commit()

    try:
        with Session(engine) as session:
            session.add_all([
                ChatParticipant(chat_id=chat_id, user_id=user_id),
                ChatParticipant(chat_id=chat_id, user_id=target_id),
            ])
            session.commit()
    except SQLAlchemyError as exc:
        logger.exception(
            "Orphan chat %s: participants insert failed (%s ↔ %s)",
            chat_id, user_id, target_id,
        )
        raise ChatCreationError(chat_id) from exc

    logger.info("Chat %s created between %s and %s", chat_id, user_id, target_id)
    return chat_id, True


# ---------------------------------------------------------------------------
# Listing & loading
# ---------------------------------------------------------------------------
def list_chats(engine: Engine, user_id: str) -> list[ChatSummary]:
    """Caller's chats, most recent activity first."""
    with Session(engine) as session:
        chats = session.scalars(
            select(Chat)
            .join(ChatParticipant, ChatParticipant.chat_id == Chat.id)
            .where(ChatParticipant.user_id == user_id)
        ).all()

        summaries: list[ChatSummary] = []
        for chat in chats:
            other_id = next(
                (uid for uid in _participant_ids(session, chat.id) if uid != user_id),
                None,
            )
            other = session.get(Profile, other_id) if other_id else None

            last = None
            for msg in session.scalars(
                select(Message)
                .where(Message.chat_id == chat.id)
                .order_by(Message.created_at.desc(), Message.id.desc())
            ):
                if not _hidden_from(msg, user_id):
                    last = MessageView.from_row(msg)
                    break

            unread_rows = session.scalars(
                select(Message).where(
                    Message.chat_id == chat.id,
                    Message.sender_id != user_id,
                    Message.is_read.is_(False),
                )
            ).all()
            unread = sum(1 for m in unread_rows if not _hidden_from(m, user_id))

            summaries.append(ChatSummary(
                id=chat.id,
                other=UserStub.from_profile(other) if other else None,
                last_message=last,
                unread_count=unread,
                created_at=as_utc(chat.created_at),
            ))

    summaries.sort(key=lambda s: s.activity_at, reverse=True)
    return summaries


def load_messages(engine: Engine, chat_id: str, viewer_id: str) -> list[MessageView]:
    """Messages visible to *viewer_id*, oldest first, with reactions."""
    with Session(engine) as session:
        _require_participant(session, chat_id, viewer_id)
        rows = [
            m for m in session.scalars(
                select(Message)
                .where(Message.chat_id == chat_id)
                .order_by(Message.created_at, Message.id)
            )
            if not _hidden_from(m, viewer_id)
        ]
        reactions = _reactions_by_message(session, [m.id for m in rows])
        return [MessageView.from_row(m, reactions[m.id]) for m in rows]


def get_message(engine: Engine, message_id: str, viewer_id: str) -> MessageView | None:
    """One message with reactions, or ``None`` if gone or hidden from *viewer_id*."""
    with Session(engine) as session:
        msg = session.get(Message, message_id)
        if msg is None or _hidden_from(msg, viewer_id):
            return None
        reactions = _reactions_by_message(session, [msg.id])
        return MessageView.from_row(msg, reactions[msg.id])


# ---------------------------------------------------------------------------
# Send / delete
# ---------------------------------------------------------------------------
def send_message(
    engine: Engine,
    live: LiveChannel | None,
    chat_id: str,
    sender_id: str,
    content: str,
) -> MessageView:
    """Insert a message and publish it on ``chat:{chat_id}``.

    The returned view is already projected as read for the sender.
    """
    text = (content or "").strip()
    if not text:
        raise ValidationFailed("Message cannot be empty.")

    with Session(engine, expire_on_commit=False) as session:
        members = _require_participant(session, chat_id, sender_id)
        for other_id in members:
            if other_id != sender_id and _blocked_between(session, sender_id, other_id):
                raise BlockedRecipient(other_id)

        msg = Message(chat_id=chat_id, sender_id=sender_id, content=text, is_read=False)
        session.add(msg)
        session.commit()

    _publish(live, RowChange("messages", ChangeKind.INSERT, record=message_record(msg)))
    return replace(MessageView.from_row(msg), is_read=True)


def delete_message(
    engine: Engine,
    live: LiveChannel | None,
    message_id: str,
    user_id: str,
    *,
    for_everyone: bool = False,
) -> None:
    """Hide a message from the caller's view, or hard-delete it for both
    participants when *for_everyone* is set (sender only)."""
    with Session(engine) as session:
        msg = session.get(Message, message_id)
        if msg is None:
            raise NotFound(f"Message {message_id} not found")
        _require_participant(session, msg.chat_id, user_id)

        if not for_everyone:
            hidden = list(msg.deleted_by or [])
            if user_id not in hidden:
                # reassign so the JSON column is flagged dirty
                msg.deleted_by = hidden + [user_id]
                session.commit()
            return

        if msg.sender_id != user_id:
            raise Forbidden("Only the sender can delete a message for everyone.")
        old = message_record(msg)

        # phase 1: reactions
        session.execute(delete(MessageReaction).where(MessageReaction.message_id == message_id))
        session.commit()

        # phase 2: the message itself
        session.execute(delete(Message).where(Message.id == message_id))
        session.commit()

    logger.info("Message %s deleted for everyone by %s", message_id, user_id)
    _publish(live, RowChange("messages", ChangeKind.DELETE, old_record=old))


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------
def add_reaction(engine: Engine, message_id: str, user_id: str, emoji: str) -> ReactionView:
    """Attach *emoji*; adding one the user already holds returns the existing row."""
    if emoji not in REACTION_EMOJIS:
        raise ValidationFailed(f"Unsupported reaction: {emoji!r}")

    with Session(engine, expire_on_commit=False) as session:
        msg = session.get(Message, message_id)
        if msg is None:
            raise NotFound(f"Message {message_id} not found")
        _require_participant(session, msg.chat_id, user_id)

        reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
        try:
            with session.begin_nested():
                session.add(reaction)
        except IntegrityError:
            reaction = session.scalar(
                select(MessageReaction).where(
                    MessageReaction.message_id == message_id,
                    MessageReaction.user_id == user_id,
                    MessageReaction.emoji == emoji,
                )
            )
            logger.debug("Duplicate reaction %s on %s by %s", emoji, message_id, user_id)
        session.commit()
        return ReactionView.from_row(reaction)


def remove_reaction(engine: Engine, message_id: str, user_id: str, emoji: str) -> int:
    """Delete every matching reaction; returns rows removed."""
    with Session(engine) as session:
        result = session.execute(
            delete(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        session.commit()
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Read state
# ---------------------------------------------------------------------------
def mark_as_read(engine: Engine, chat_id: str, user_id: str) -> int:
    """Mark every unread message from the other side as read.

    Returns the number of rows updated; ``0`` when already read.
    """
    with Session(engine) as session:
        _require_participant(session, chat_id, user_id)
        result = session.execute(
            update(Message)
            .where(
                Message.chat_id == chat_id,
                Message.sender_id != user_id,
                Message.is_read.is_(False),
            )
            .values(is_read=True)
        )
        session.commit()
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------
def blocked_ids(engine: Engine, user_id: str) -> set[str]:
    """Users *user_id* has blocked."""
    with Session(engine) as session:
        return set(session.scalars(
            select(Block.blocked_user_id).where(Block.blocker_id == user_id)
        ).all())


def is_blocked_between(engine: Engine, a: str, b: str) -> bool:
    with Session(engine) as session:
        return _blocked_between(session, a, b)


def block_user(
    engine: Engine, live: LiveChannel | None, blocker_id: str, blocked_id: str,
) -> str | None:
    """Block *blocked_id* and delete any chat with them.

    Returns the id of the deleted chat, if there was one.
    """
    if blocker_id == blocked_id:
        raise ValidationFailed("You can't block yourself.")

    with Session(engine) as session:
        if session.get(Profile, blocked_id) is None:
            raise NotFound(f"User {blocked_id} not found")
        try:
            with session.begin_nested():
                session.add(Block(blocker_id=blocker_id, blocked_user_id=blocked_id))
        except IntegrityError:
            logger.debug("Block %s -> %s already exists", blocker_id, blocked_id)
        session.commit()
        chat_id = _find_chat_between(session, blocker_id, blocked_id)

    logger.info("User %s blocked %s", blocker_id, blocked_id)
    if chat_id is not None:
        delete_chat(engine, live, chat_id, blocker_id)
    return chat_id


def unblock_user(engine: Engine, blocker_id: str, blocked_id: str) -> bool:
    """Remove the block.  Chats deleted by the block are not restored."""
    with Session(engine) as session:
        result = session.execute(
            delete(Block).where(
                Block.blocker_id == blocker_id, Block.blocked_user_id == blocked_id,
            )
        )
        session.commit()
        removed = bool(result.rowcount)
    if removed:
        logger.info("User %s unblocked %s", blocker_id, blocked_id)
    return removed


# ---------------------------------------------------------------------------
# Chat deletion
# ---------------------------------------------------------------------------
def delete_chat(engine: Engine, live: LiveChannel | None, chat_id: str, user_id: str) -> None:
    """Delete a chat and everything in it.  Either participant may do this."""
    with Session(engine) as session:
        _require_participant(session, chat_id, user_id)
        message_ids = select(Message.id).where(Message.chat_id == chat_id)
        session.execute(delete(MessageReaction).where(MessageReaction.message_id.in_(message_ids)))
        session.execute(delete(Message).where(Message.chat_id == chat_id))
        session.execute(delete(ChatParticipant).where(ChatParticipant.chat_id == chat_id))
        session.execute(delete(Chat).where(Chat.id == chat_id))
        session.commit()

    logger.info("Chat %s deleted by %s", chat_id, user_id)
    _publish(live, RowChange("chats", ChangeKind.DELETE, old_record={"id": chat_id}))


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_users(
    engine: Engine, user_id: str, query: str, *, limit: int = USER_SEARCH_LIMIT,
) -> list[UserStub]:
    """Case-insensitive partial match on username or display name.

    An empty query returns ``[]`` without touching the store.
    """
    q = (query or "").strip()
    if not q:
        return []
    pattern = _like_pattern(q)
    with Session(engine) as session:
        rows = session.scalars(
            select(Profile)
            .where(
                Profile.id != user_id,
                or_(
                    Profile.username.ilike(pattern, escape="\\"),
                    Profile.display_name.ilike(pattern, escape="\\"),
                ),
            )
            .order_by(func.lower(func.coalesce(Profile.username, Profile.display_name)))
            .limit(limit)
        ).all()
        return [UserStub.from_profile(p) for p in rows]
