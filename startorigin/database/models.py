"""
startorigin.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- profiles            — Community members (id issued by the session provider)
- problems            — Posted problems with a denormalized upvote counter
- projects            — Showcased projects
- upvotes             — One row per (problem, user); presence is the toggle
- chats               — 1:1 conversation containers
- chat_participants   — Exactly two rows per chat
- messages            — Chat messages with per-viewer soft delete
- message_reactions   — Emoji reactions, unique per (message, user, emoji)
- blocks              — Directional block edges
- user_aliases        — Extra usernames resolving to a profile
- user_badges         — Admin-granted badges
- customization_items — Shop catalogue
- user_customizations — Purchased items
- point_transactions  — Append-only points ledger
- admin_log           — Append-only audit trail of admin mutations
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all StartOrigin ORM models."""


# ---------------------------------------------------------------------------
# Profiles — one row per signed-up user
# ---------------------------------------------------------------------------
class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str | None] = mapped_column(String(50), unique=True, default=None)
    display_name: Mapped[str | None] = mapped_column(String(100), default=None)
    avatar_url: Mapped[str | None] = mapped_column(String(500), default=None)
    bio: Mapped[str | None] = mapped_column(Text, default=None)
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    disable_chat: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
        onupdate=_utcnow,
    )

    aliases: Mapped[list[UserAlias]] = relationship(
        back_populates="profile", cascade="all, delete-orphan"
    )
    badges: Mapped[list[UserBadge]] = relationship(
        back_populates="profile", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_profiles_points_desc", "points"),
    )

    def __repr__(self) -> str:
        return f"<Profile id={self.id} username={self.username!r} pts={self.points}>"


# ---------------------------------------------------------------------------
# Problems & projects — feed content
# ---------------------------------------------------------------------------
class Problem(Base):
    __tablename__ = "problems"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    author_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(50), default=None)
    tags: Mapped[list | None] = mapped_column(JSONB, default=None)
    contact: Mapped[str | None] = mapped_column(String(200), default=None)
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False)
    looking_for_cofounder: Mapped[bool] = mapped_column(Boolean, default=False)
    upvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
        onupdate=_utcnow,
    )

    author: Mapped[Profile] = relationship()

    __table_args__ = (
        Index("ix_problems_created_at", "created_at"),
        Index("ix_problems_upvotes", "upvotes"),
        Index("ix_problems_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Problem id={self.id} title={self.title!r} upvotes={self.upvotes}>"


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    author_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    short_description: Mapped[str] = mapped_column(String(500), nullable=False)
    detailed_description: Mapped[str | None] = mapped_column(Text, default=None)
    category: Mapped[str | None] = mapped_column(String(50), default=None)
    tags: Mapped[list | None] = mapped_column(JSONB, default=None)
    logo_url: Mapped[str | None] = mapped_column(String(500), default=None)
    looking_for_cofounder: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    upvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    author: Mapped[Profile] = relationship()

    __table_args__ = (
        Index("ix_projects_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id} title={self.title!r}>"


class Upvote(Base):
    __tablename__ = "upvotes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    problem_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("problems.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("problem_id", "user_id", name="uq_upvotes_problem_user"),
    )

    def __repr__(self) -> str:
        return f"<Upvote problem={self.problem_id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# Messaging — chats, participants, messages, reactions
# ---------------------------------------------------------------------------
class Chat(Base):
    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    participants: Mapped[list[ChatParticipant]] = relationship(
        back_populates="chat", cascade="all, delete-orphan", passive_deletes=True
    )
    messages: Mapped[list[Message]] = relationship(
        back_populates="chat", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Chat id={self.id}>"


class ChatParticipant(Base):
    __tablename__ = "chat_participants"

    chat_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )

    chat: Mapped[Chat] = relationship(back_populates="participants")
    user: Mapped[Profile] = relationship()

    __table_args__ = (
        Index("ix_chat_participants_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<ChatParticipant chat={self.chat_id} user={self.user_id}>"


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    chat_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # User ids that hid this message from their own view
    deleted_by: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    chat: Mapped[Chat] = relationship(back_populates="messages")
    reactions: Mapped[list[MessageReaction]] = relationship(
        back_populates="message", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_messages_chat_time", "chat_id", "created_at"),
        Index("ix_messages_unread", "chat_id", "is_read"),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} chat={self.chat_id} sender={self.sender_id}>"


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    emoji: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    message: Mapped[Message] = relationship(back_populates="reactions")

    __table_args__ = (
        UniqueConstraint(
            "message_id", "user_id", "emoji", name="uq_reactions_message_user_emoji",
        ),
    )

    def __repr__(self) -> str:
        return f"<MessageReaction message={self.message_id} emoji={self.emoji!r}>"


class Block(Base):
    __tablename__ = "blocks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    blocker_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    blocked_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("blocker_id", "blocked_user_id", name="uq_blocks_pair"),
    )

    def __repr__(self) -> str:
        return f"<Block {self.blocker_id} -> {self.blocked_user_id}>"


# ---------------------------------------------------------------------------
# Aliases & badges
# ---------------------------------------------------------------------------
class UserAlias(Base):
    __tablename__ = "user_aliases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    alias: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    profile: Mapped[Profile] = relationship(back_populates="aliases")

    def __repr__(self) -> str:
        return f"<UserAlias alias={self.alias!r} user={self.user_id}>"


class UserBadge(Base):
    __tablename__ = "user_badges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    badge_type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(36), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    profile: Mapped[Profile] = relationship(back_populates="badges")

    __table_args__ = (
        UniqueConstraint("user_id", "badge_type", name="uq_user_badges_type"),
    )

    def __repr__(self) -> str:
        return f"<UserBadge user={self.user_id} type={self.badge_type!r}>"


# ---------------------------------------------------------------------------
# Points economy — shop catalogue, purchases, ledger
# ---------------------------------------------------------------------------
class CustomizationItem(Base):
    __tablename__ = "customization_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    value: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[str | None] = mapped_column(String(30), default=None)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    rarity: Mapped[str] = mapped_column(String(20), default="common", nullable=False)

    def __repr__(self) -> str:
        return f"<CustomizationItem name={self.name!r} price={self.price}>"


class UserCustomization(Base):
    __tablename__ = "user_customizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customization_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    item: Mapped[CustomizationItem] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "item_id", name="uq_user_customizations_item"),
    )

    def __repr__(self) -> str:
        return f"<UserCustomization user={self.user_id} item={self.item_id}>"


class PointTransaction(Base):
    __tablename__ = "point_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    points: Mapped[int] = mapped_column(Integer, nullable=False)  # signed
    type: Mapped[str] = mapped_column(String(10), nullable=False)  # earned | spent
    description: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_point_transactions_user_time", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PointTransaction user={self.user_id} points={self.points} type={self.type}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"
