"""
startorigin.services.admin_service — Admin Mutation Service Layer
==================================================================

Moderation and account-management writes for admins.  Every write follows
the pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSON
  5. Commit

Callers are expected to have checked the admin role already (see
``api.deps.get_current_admin``); ``actor_id`` is the admin's user id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from startorigin.constants import BADGE_TYPES
from startorigin.database.models import (
    AdminLog,
    Problem,
    Profile,
    Upvote,
    UserAlias,
    UserBadge,
)
from startorigin.errors import NotFound, UsernameTaken, ValidationFailed
from startorigin.services.profile_service import normalize_username, username_in_use

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------

def _row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: str,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


def _audited_create(
    engine: Engine,
    row: Any,
    *,
    table_name: str,
    actor_id: str,
    reason: str | None = None,
) -> Any:
    """Generic audited CREATE: add -> flush -> log -> commit -> return."""
    with Session(engine, expire_on_commit=False) as session:
        session.add(row)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type="CREATE",
            target_table=table_name,
            target_id=str(row.id),
            before=None,
            after=_row_to_dict(row),
            reason=reason,
        )
        session.commit()
        session.refresh(row)
        session.expunge(row)
        return row


def _audited_delete(
    engine: Engine,
    model_cls: type,
    pk: Any,
    *,
    table_name: str,
    actor_id: str,
    reason: str | None = None,
    before_delete: Callable[[Session, Any], None] | None = None,
) -> bool:
    """Generic audited DELETE: get -> log -> (dependents) -> delete -> commit.

    Returns ``True`` if the row existed and was deleted.
    """
    with Session(engine) as session:
        obj = session.get(model_cls, pk)
        if obj is None:
            return False
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type="DELETE",
            target_table=table_name,
            target_id=str(obj.id),
            before=_row_to_dict(obj),
            after=None,
            reason=reason,
        )
        if before_delete is not None:
            before_delete(session, obj)
        session.delete(obj)
        session.commit()
        return True


# ---------------------------------------------------------------------------
# Problems
# ---------------------------------------------------------------------------

def list_problems(engine: Engine, *, limit: int = 200) -> list[Problem]:
    """All problems, newest first, with authors loaded."""
    with Session(engine) as session:
        return list(session.scalars(
            select(Problem)
            .options(selectinload(Problem.author))
            .order_by(Problem.created_at.desc(), Problem.id)
            .limit(limit)
        ).all())


def delete_problem(
    engine: Engine, problem_id: str, *, actor_id: str, reason: str | None = None,
) -> bool:
    """Remove any problem: its upvotes first, then the row."""

    def _drop_upvotes(session: Session, problem: Problem) -> None:
        session.execute(delete(Upvote).where(Upvote.problem_id == problem.id))

    deleted = _audited_delete(
        engine, Problem, problem_id,
        table_name="problems", actor_id=actor_id, reason=reason,
        before_delete=_drop_upvotes,
    )
    if deleted:
        logger.warning("Admin %s deleted problem %s", actor_id, problem_id)
    return deleted


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def find_user(engine: Engine, name: str) -> Profile | None:
    """Look a user up by username or stored alias."""
    name = (name or "").strip().lower()
    if not name:
        return None
    with Session(engine) as session:
        alias_owner = select(UserAlias.user_id).where(UserAlias.alias == name)
        return session.scalar(
            select(Profile).where(or_(Profile.username == name, Profile.id.in_(alias_owner)))
        )


# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------

def list_aliases(engine: Engine) -> list[dict]:
    with Session(engine) as session:
        rows = session.execute(
            select(UserAlias, Profile)
            .join(Profile, Profile.id == UserAlias.user_id)
            .order_by(UserAlias.created_at.desc(), UserAlias.alias)
        ).all()
        return [
            {
                "id": alias.id,
                "alias": alias.alias,
                "user_id": alias.user_id,
                "username": profile.username,
                "display_name": profile.display_name,
                "created_at": alias.created_at.isoformat() if alias.created_at else None,
            }
            for alias, profile in rows
        ]


def add_alias(engine: Engine, user_id: str, alias: str, *, actor_id: str) -> UserAlias:
    """Give *user_id* an extra username.

    Raises ``ValidationFailed`` for malformed aliases, ``UsernameTaken`` when
    the name is any user's username or alias.
    """
    name = normalize_username(alias)
    if name is None:
        raise ValidationFailed("Alias is required.")

    with Session(engine) as session:
        if session.get(Profile, user_id) is None:
            raise NotFound(f"User {user_id} not found")
        if username_in_use(session, name):
            raise UsernameTaken(name)

    try:
        row = _audited_create(
            engine, UserAlias(user_id=user_id, alias=name),
            table_name="user_aliases", actor_id=actor_id,
        )
    except IntegrityError as exc:
        raise UsernameTaken(name) from exc
    logger.info("Admin %s added alias %r for %s", actor_id, name, user_id)
    return row


def delete_alias(engine: Engine, alias_id: str, *, actor_id: str) -> bool:
    return _audited_delete(
        engine, UserAlias, alias_id, table_name="user_aliases", actor_id=actor_id,
    )


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------

def list_user_badges(engine: Engine) -> list[dict]:
    with Session(engine) as session:
        rows = session.execute(
            select(UserBadge, Profile)
            .join(Profile, Profile.id == UserBadge.user_id)
            .order_by(UserBadge.created_at.desc(), UserBadge.id)
        ).all()
        return [
            {
                "id": badge.id,
                "user_id": badge.user_id,
                "badge_type": badge.badge_type,
                "username": profile.username,
                "display_name": profile.display_name,
                "created_by": badge.created_by,
            }
            for badge, profile in rows
        ]


def add_badge(engine: Engine, user_id: str, badge_type: str, *, actor_id: str) -> UserBadge:
    if badge_type not in BADGE_TYPES:
        raise ValidationFailed(f"Unknown badge type: {badge_type}")

    with Session(engine) as session:
        if session.get(Profile, user_id) is None:
            raise NotFound(f"User {user_id} not found")
        duplicate = session.scalar(
            select(UserBadge.id).where(
                UserBadge.user_id == user_id, UserBadge.badge_type == badge_type,
            )
        )
    if duplicate is not None:
        raise ValidationFailed("User already has this badge.")

    try:
        row = _audited_create(
            engine, UserBadge(user_id=user_id, badge_type=badge_type, created_by=actor_id),
            table_name="user_badges", actor_id=actor_id,
        )
    except IntegrityError as exc:
        raise ValidationFailed("User already has this badge.") from exc
    logger.info("Admin %s granted %s badge to %s", actor_id, badge_type, user_id)
    return row


def delete_badge(engine: Engine, badge_id: str, *, actor_id: str) -> bool:
    return _audited_delete(
        engine, UserBadge, badge_id, table_name="user_badges", actor_id=actor_id,
    )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

def list_admin_logs(
    engine: Engine, *, limit: int = 100, target_table: str | None = None,
) -> list[AdminLog]:
    with Session(engine) as session:
        stmt = select(AdminLog).order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
        if target_table:
            stmt = stmt.where(AdminLog.target_table == target_table)
        return list(session.scalars(stmt.limit(limit)).all())
