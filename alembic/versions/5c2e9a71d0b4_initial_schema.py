"""Initial StartOrigin schema

Revision ID: 5c2e9a71d0b4
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c2e9a71d0b4"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def _profile_fk(name: str = "user_id", *, primary_key: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.String(36),
        sa.ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        primary_key=primary_key,
    )


def upgrade() -> None:
    """Create every table, index and constraint."""
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("username", sa.String(50), unique=True),
        sa.Column("display_name", sa.String(100)),
        sa.Column("avatar_url", sa.String(500)),
        sa.Column("bio", sa.Text()),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disable_chat", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_profiles_points_desc", "profiles", ["points"])

    op.create_table(
        "problems",
        sa.Column("id", sa.String(36), primary_key=True),
        _profile_fk("author_id"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(50)),
        sa.Column("tags", postgresql.JSONB()),
        sa.Column("contact", sa.String(200)),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("looking_for_cofounder", sa.Boolean(), server_default=sa.false()),
        sa.Column("upvotes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("comment_count", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_problems_created_at", "problems", ["created_at"])
    op.create_index("ix_problems_upvotes", "problems", ["upvotes"])
    op.create_index("ix_problems_category", "problems", ["category"])

    op.create_table(
        "projects",
        sa.Column("id", sa.String(36), primary_key=True),
        _profile_fk("author_id"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("short_description", sa.String(500), nullable=False),
        sa.Column("detailed_description", sa.Text()),
        sa.Column("category", sa.String(50)),
        sa.Column("tags", postgresql.JSONB()),
        sa.Column("logo_url", sa.String(500)),
        sa.Column("looking_for_cofounder", sa.Boolean(), server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("upvotes", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_projects_created_at", "projects", ["created_at"])

    op.create_table(
        "upvotes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "problem_id", sa.String(36),
            sa.ForeignKey("problems.id", ondelete="CASCADE"), nullable=False,
        ),
        _profile_fk(),
        _created_at(),
        sa.UniqueConstraint("problem_id", "user_id", name="uq_upvotes_problem_user"),
    )

    # -- messaging --------------------------------------------------------
    op.create_table(
        "chats",
        sa.Column("id", sa.String(36), primary_key=True),
        _created_at(),
    )
    op.create_table(
        "chat_participants",
        sa.Column(
            "chat_id", sa.String(36),
            sa.ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True,
        ),
        _profile_fk(primary_key=True),
    )
    op.create_index("ix_chat_participants_user", "chat_participants", ["user_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "chat_id", sa.String(36),
            sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False,
        ),
        _profile_fk("sender_id"),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "deleted_by", postgresql.JSONB(), nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        _created_at(),
    )
    op.create_index("ix_messages_chat_time", "messages", ["chat_id", "created_at"])
    op.create_index("ix_messages_unread", "messages", ["chat_id", "is_read"])

    op.create_table(
        "message_reactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "message_id", sa.String(36),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), nullable=False,
        ),
        _profile_fk(),
        sa.Column("emoji", sa.String(16), nullable=False),
        _created_at(),
        sa.UniqueConstraint(
            "message_id", "user_id", "emoji", name="uq_reactions_message_user_emoji",
        ),
    )

    op.create_table(
        "blocks",
        sa.Column("id", sa.String(36), primary_key=True),
        _profile_fk("blocker_id"),
        _profile_fk("blocked_user_id"),
        _created_at(),
        sa.UniqueConstraint("blocker_id", "blocked_user_id", name="uq_blocks_pair"),
    )

    # -- aliases & badges -------------------------------------------------
    op.create_table(
        "user_aliases",
        sa.Column("id", sa.String(36), primary_key=True),
        _profile_fk(),
        sa.Column("alias", sa.String(50), nullable=False, unique=True),
        _created_at(),
    )
    op.create_table(
        "user_badges",
        sa.Column("id", sa.String(36), primary_key=True),
        _profile_fk(),
        sa.Column("badge_type", sa.String(20), nullable=False),
        sa.Column("created_by", sa.String(36)),
        _created_at(),
        sa.UniqueConstraint("user_id", "badge_type", name="uq_user_badges_type"),
    )

    # -- points economy ---------------------------------------------------
    op.create_table(
        "customization_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("value", sa.String(100), nullable=False),
        sa.Column("icon", sa.String(30)),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("rarity", sa.String(20), nullable=False, server_default="common"),
    )
    op.create_table(
        "user_customizations",
        sa.Column("id", sa.String(36), primary_key=True),
        _profile_fk(),
        sa.Column(
            "item_id", sa.String(36),
            sa.ForeignKey("customization_items.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at("purchased_at"),
        sa.UniqueConstraint("user_id", "item_id", name="uq_user_customizations_item"),
    )
    op.create_table(
        "point_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        _profile_fk(),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(10), nullable=False),
        sa.Column("description", sa.Text()),
        _created_at(),
    )
    op.create_index(
        "ix_point_transactions_user_time", "point_transactions", ["user_id", "created_at"],
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(36), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100)),
        sa.Column("before_snapshot", postgresql.JSONB()),
        sa.Column("after_snapshot", postgresql.JSONB()),
        sa.Column("reason", sa.Text()),
        _created_at("timestamp"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    for index, table in (
        ("ix_admin_log_target", "admin_log"),
        ("ix_admin_log_actor_time", "admin_log"),
        ("ix_point_transactions_user_time", "point_transactions"),
        ("ix_messages_unread", "messages"),
        ("ix_messages_chat_time", "messages"),
        ("ix_chat_participants_user", "chat_participants"),
        ("ix_projects_created_at", "projects"),
        ("ix_problems_category", "problems"),
        ("ix_problems_upvotes", "problems"),
        ("ix_problems_created_at", "problems"),
        ("ix_profiles_points_desc", "profiles"),
    ):
        op.drop_index(index, table_name=table)

    for table in (
        "admin_log",
        "point_transactions",
        "user_customizations",
        "customization_items",
        "user_badges",
        "user_aliases",
        "blocks",
        "message_reactions",
        "messages",
        "chat_participants",
        "chats",
        "upvotes",
        "projects",
        "problems",
        "profiles",
    ):
        op.drop_table(table)
