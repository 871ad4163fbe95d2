"""
startorigin.services.profile_service — Profiles, Aliases & Badges
==================================================================

Profile rows are keyed by the session provider's user id and created on
first sight (:func:`get_or_create_profile`).  Usernames are letters, digits
and underscores, stored lowercase, and unique across both main usernames
and aliases.

A public profile can be reached by its username or any alias.  Lookup
order: stored alias, then main username, then the ``static_aliases`` map
from ``config.yaml``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from startorigin.constants import USERNAME_PATTERN
from startorigin.database.engine import get_session
from startorigin.database.models import Problem, Profile, UserAlias, UserBadge
from startorigin.errors import NotFound, UsernameTaken, ValidationFailed

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_UNSET = object()


def normalize_username(username: str | None) -> str | None:
    """Validate and lowercase; blank → ``None``."""
    if username is None:
        return None
    username = username.strip()
    if not username:
        return None
    if not USERNAME_PATTERN.match(username):
        raise ValidationFailed("Username can only contain letters, numbers, and underscores")
    return username.lower()


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def username_in_use(session: Session, username: str, *, exclude_user: str | None = None) -> bool:
    """True if *username* is someone's main username or any stored alias."""
    stmt = select(Profile.id).where(Profile.username == username)
    if exclude_user is not None:
        stmt = stmt.where(Profile.id != exclude_user)
    if session.scalar(stmt) is not None:
        return True
    return session.scalar(select(UserAlias.id).where(UserAlias.alias == username)) is not None


# ---------------------------------------------------------------------------
# Profile CRUD
# ---------------------------------------------------------------------------
def get_profile(engine: Engine, user_id: str) -> Profile:
    with Session(engine) as session:
        profile = session.get(Profile, user_id)
        if profile is None:
            raise NotFound(f"User {user_id} not found")
        return profile


def get_or_create_profile(
    engine: Engine, user_id: str, *, display_name: str | None = None,
) -> Profile:
    """Fetch the caller's profile, inserting an empty one on first sight."""
    with get_session(engine) as session:
        profile = session.get(Profile, user_id)
        if profile is not None:
            return profile
        try:
            with session.begin_nested():
                profile = Profile(id=user_id, display_name=_blank_to_none(display_name))
                session.add(profile)
        except IntegrityError:
            profile = session.get(Profile, user_id)
        else:
            logger.info("Profile created for %s", user_id)
        return profile


def update_profile(
    engine: Engine,
    user_id: str,
    *,
    username=_UNSET,
    display_name=_UNSET,
    bio=_UNSET,
    avatar_url=_UNSET,
    disable_chat=_UNSET,
) -> Profile:
    """Edit the caller's profile.  Only the fields passed are touched;
    blank strings clear a field."""
    with get_session(engine) as session:
        profile = session.get(Profile, user_id)
        if profile is None:
            raise NotFound(f"User {user_id} not found")

        if username is not _UNSET:
            name = normalize_username(username)
            if name is not None and name != profile.username:
                if username_in_use(session, name, exclude_user=user_id):
                    raise UsernameTaken(name)
            profile.username = name
        if display_name is not _UNSET:
            profile.display_name = _blank_to_none(display_name)
        if bio is not _UNSET:
            profile.bio = _blank_to_none(bio)
        if avatar_url is not _UNSET:
            profile.avatar_url = _blank_to_none(avatar_url)
        if disable_chat is not _UNSET:
            profile.disable_chat = bool(disable_chat)

        try:
            session.flush()
        except IntegrityError as exc:
            raise UsernameTaken(profile.username or "") from exc
    return profile


# ---------------------------------------------------------------------------
# Alias resolution
# ---------------------------------------------------------------------------
def _static_main(name: str, static_aliases: Mapping[str, list[str]]) -> str | None:
    for main, aliases in static_aliases.items():
        if name == main or name in aliases:
            return main
    return None


def resolve_profile(
    engine: Engine,
    name: str,
    static_aliases: Mapping[str, list[str]] | None = None,
) -> Profile | None:
    """Profile reachable as *name* (alias or username), or ``None``."""
    name = (name or "").strip().lower()
    if not name:
        return None
    with Session(engine) as session:
        alias = session.scalar(select(UserAlias).where(UserAlias.alias == name))
        if alias is not None:
            profile = session.get(Profile, alias.user_id)
            if profile is not None:
                return profile

        profile = session.scalar(select(Profile).where(Profile.username == name))
        if profile is not None:
            return profile

        main = _static_main(name, static_aliases or {})
        if main is not None:
            return session.scalar(select(Profile).where(Profile.username == main))
    return None


def main_username(
    engine: Engine, name: str, static_aliases: Mapping[str, list[str]] | None = None,
) -> str:
    """Canonical username for *name*; *name* itself when nothing matches."""
    name = (name or "").strip().lower()
    profile = resolve_profile(engine, name, static_aliases)
    if profile is not None and profile.username:
        return profile.username
    return _static_main(name, static_aliases or {}) or name


def all_usernames(
    engine: Engine,
    profile: Profile,
    static_aliases: Mapping[str, list[str]] | None = None,
) -> list[str]:
    """Main username first, then stored aliases, then static ones."""
    names: list[str] = [profile.username] if profile.username else []
    with Session(engine) as session:
        for alias in session.scalars(
            select(UserAlias.alias)
            .where(UserAlias.user_id == profile.id)
            .order_by(UserAlias.created_at, UserAlias.alias)
        ):
            if alias not in names:
                names.append(alias)
    for alias in (static_aliases or {}).get(profile.username or "", []):
        if alias not in names:
            names.append(alias)
    return names


# ---------------------------------------------------------------------------
# Badges & authored content
# ---------------------------------------------------------------------------
def list_badges(engine: Engine, user_id: str) -> list[str]:
    with Session(engine) as session:
        return list(session.scalars(
            select(UserBadge.badge_type)
            .where(UserBadge.user_id == user_id)
            .order_by(UserBadge.created_at, UserBadge.badge_type)
        ).all())


def list_user_problems(engine: Engine, user_id: str) -> list[Problem]:
    """Problems authored by *user_id*, newest first."""
    with Session(engine) as session:
        return list(session.scalars(
            select(Problem)
            .where(Problem.author_id == user_id)
            .order_by(Problem.created_at.desc(), Problem.id)
        ).all())
