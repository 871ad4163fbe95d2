"""
startorigin.services.engagement_service — Upvotes, Points & Customization Shop
===============================================================================

Problems and projects, the upvote toggle, the points ledger and the
customization shop.

Points rules:
  * Publishing a problem credits ``POINTS_PER_PROBLEM`` and appends one
    ``earned`` ledger row.
  * Buying an item inserts the purchase, appends a ``spent`` row and
    decrements the balance.
  * In both cases the balance write and the ledger append share one
    transaction.  ``reconciliation_service`` recomputes balances from the
    ledger for rows written before that was true.

Upvotes: the row's presence is the toggle state.  ``problems.upvotes`` moves
by ±1 in the same transaction.  :class:`UpvoteToggle` keeps the per-card
optimistic counter the UI shows; it does not re-read the server total.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from startorigin.constants import (
    MAX_TAGS,
    POINTS_PER_PROBLEM,
    PROBLEM_CATEGORIES,
    PROBLEM_STATUSES,
    TITLE_MAX_LENGTH,
    TRANSACTION_EARNED,
    TRANSACTION_SPENT,
)
from startorigin.database.engine import get_session
from startorigin.database.models import (
    CustomizationItem,
    PointTransaction,
    Problem,
    Profile,
    Project,
    Upvote,
    UserCustomization,
)
from startorigin.errors import (
    AlreadyOwned,
    AuthenticationRequired,
    Forbidden,
    InsufficientPoints,
    NotFound,
    StartOriginError,
    ValidationFailed,
)
from startorigin.notices import Notice, NotifyFn

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------
def _clean_tags(tags: list[str] | None) -> list[str] | None:
    if not tags:
        return None
    seen: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    if len(seen) > MAX_TAGS:
        raise ValidationFailed(f"At most {MAX_TAGS} tags are allowed.")
    return seen or None


def _clean_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationFailed("Title is required.")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationFailed(f"Title must be at most {TITLE_MAX_LENGTH} characters.")
    return title


def _clean_category(category: str | None) -> str | None:
    if not category:
        return None
    if category not in PROBLEM_CATEGORIES:
        raise ValidationFailed(f"Unknown category: {category}")
    return category


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Points ledger
# ---------------------------------------------------------------------------
def _apply_points(
    session: Session, user_id: str, points: int, kind: str, description: str,
) -> PointTransaction:
    """Move the balance and append the ledger row in the caller's transaction."""
    session.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values(points=Profile.points + points)
    )
    entry = PointTransaction(user_id=user_id, points=points, type=kind, description=description)
    session.add(entry)
    return entry


def get_balance(engine: Engine, user_id: str) -> int:
    with Session(engine) as session:
        profile = session.get(Profile, user_id)
        if profile is None:
            raise NotFound(f"User {user_id} not found")
        return profile.points


def list_transactions(engine: Engine, user_id: str, *, limit: int = 50) -> list[PointTransaction]:
    """Newest ledger rows first."""
    with Session(engine) as session:
        return list(session.scalars(
            select(PointTransaction)
            .where(PointTransaction.user_id == user_id)
            .order_by(PointTransaction.created_at.desc(), PointTransaction.id)
            .limit(limit)
        ).all())


# ---------------------------------------------------------------------------
# Problems
# ---------------------------------------------------------------------------
def create_problem(
    engine: Engine,
    author_id: str,
    *,
    title: str,
    description: str,
    category: str | None = None,
    tags: list[str] | None = None,
    contact: str | None = None,
    looking_for_cofounder: bool = False,
) -> Problem:
    """Publish a problem and credit the author ``POINTS_PER_PROBLEM``."""
    title = _clean_title(title)
    description = (description or "").strip()
    if not description:
        raise ValidationFailed("Description is required.")

    with get_session(engine) as session:
        if session.get(Profile, author_id) is None:
            raise NotFound(f"User {author_id} not found")
        problem = Problem(
            author_id=author_id,
            title=title,
            description=description,
            category=_clean_category(category),
            tags=_clean_tags(tags),
            contact=_blank_to_none(contact),
            looking_for_cofounder=looking_for_cofounder,
        )
        session.add(problem)
        session.flush()
        _apply_points(
            session, author_id, POINTS_PER_PROBLEM, TRANSACTION_EARNED,
            f"Published problem: {title}",
        )

    logger.info("Problem %s published by %s (+%d pts)", problem.id, author_id, POINTS_PER_PROBLEM)
    return problem


_PROBLEM_EDITABLE = frozenset({
    "title", "description", "category", "tags", "status", "contact",
    "looking_for_cofounder",
})


def update_problem(engine: Engine, problem_id: str, author_id: str, **fields: Any) -> Problem:
    """Edit a problem.  Only its author may do this."""
    unknown = set(fields) - _PROBLEM_EDITABLE
    if unknown:
        raise ValidationFailed(f"Unknown fields: {sorted(unknown)}")
    if "title" in fields:
        fields["title"] = _clean_title(fields["title"])
    if "description" in fields:
        fields["description"] = (fields["description"] or "").strip()
        if not fields["description"]:
            raise ValidationFailed("Description is required.")
    if "category" in fields:
        fields["category"] = _clean_category(fields["category"])
    if "tags" in fields:
        fields["tags"] = _clean_tags(fields["tags"])
    if "contact" in fields:
        fields["contact"] = _blank_to_none(fields["contact"])
    if "status" in fields and fields["status"] not in PROBLEM_STATUSES:
        raise ValidationFailed(f"Unknown status: {fields['status']}")

    with get_session(engine) as session:
        problem = session.get(Problem, problem_id)
        if problem is None:
            raise NotFound(f"Problem {problem_id} not found")
        if problem.author_id != author_id:
            raise Forbidden("Only the author can edit this problem.")
        for key, value in fields.items():
            setattr(problem, key, value)
    return problem


def delete_problem(engine: Engine, problem_id: str, author_id: str) -> None:
    """Author deletes their problem (upvotes first).  Points are kept."""
    with get_session(engine) as session:
        problem = session.get(Problem, problem_id)
        if problem is None:
            raise NotFound(f"Problem {problem_id} not found")
        if problem.author_id != author_id:
            raise Forbidden("Only the author can delete this problem.")
        session.execute(delete(Upvote).where(Upvote.problem_id == problem_id))
        session.delete(problem)
    logger.info("Problem %s deleted by author %s", problem_id, author_id)


def get_problem(engine: Engine, problem_id: str) -> Problem:
    with Session(engine, expire_on_commit=False) as session:
        problem = session.get(Problem, problem_id)
        if problem is None:
            raise NotFound(f"Problem {problem_id} not found")
        # load the author before the session closes
        _ = problem.author
        return problem


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------
def create_project(
    engine: Engine,
    author_id: str,
    *,
    title: str,
    short_description: str,
    detailed_description: str | None = None,
    category: str | None = None,
    tags: list[str] | None = None,
    logo_url: str | None = None,
    looking_for_cofounder: bool = False,
) -> Project:
    title = _clean_title(title)
    short_description = (short_description or "").strip()
    if not short_description:
        raise ValidationFailed("Short description is required.")

    with get_session(engine) as session:
        if session.get(Profile, author_id) is None:
            raise NotFound(f"User {author_id} not found")
        project = Project(
            author_id=author_id,
            title=title,
            short_description=short_description,
            detailed_description=_blank_to_none(detailed_description),
            category=_clean_category(category),
            tags=_clean_tags(tags),
            logo_url=_blank_to_none(logo_url),
            looking_for_cofounder=looking_for_cofounder,
            status="active",
        )
        session.add(project)
    logger.info("Project %s created by %s", project.id, author_id)
    return project


def get_project(engine: Engine, project_id: str) -> Project:
    with Session(engine, expire_on_commit=False) as session:
        project = session.get(Project, project_id)
        if project is None:
            raise NotFound(f"Project {project_id} not found")
        _ = project.author
        return project


# ---------------------------------------------------------------------------
# Upvotes
# ---------------------------------------------------------------------------
def has_upvoted(engine: Engine, problem_id: str, user_id: str) -> bool:
    with Session(engine) as session:
        return session.scalar(
            select(Upvote.id).where(Upvote.problem_id == problem_id, Upvote.user_id == user_id)
        ) is not None


def toggle_upvote(engine: Engine, problem_id: str, user_id: str) -> tuple[bool, int]:
    """Flip the (problem, user) upvote.

    Returns ``(upvoted_now, stored_counter)``.
    """
    with get_session(engine) as session:
        problem = session.get(Problem, problem_id)
        if problem is None:
            raise NotFound(f"Problem {problem_id} not found")

        existing = session.scalar(
            select(Upvote).where(Upvote.problem_id == problem_id, Upvote.user_id == user_id)
        )
        if existing is not None:
            session.delete(existing)
            delta, upvoted = -1, False
        else:
            try:
                with session.begin_nested():
                    session.add(Upvote(problem_id=problem_id, user_id=user_id))
            except IntegrityError:
                # a concurrent toggle got there first
                return True, problem.upvotes
            delta, upvoted = 1, True

        session.execute(
            update(Problem)
            .where(Problem.id == problem_id)
            .values(upvotes=Problem.upvotes + delta)
        )
        session.flush()
        session.refresh(problem)
        return upvoted, problem.upvotes


class UpvoteToggle:
    """Per-card upvote state with an optimistic local counter.

    The existing upvote is looked up once, on first use.  ``toggle()`` moves
    the local count by ±1 regardless of what other users did meanwhile.
    """

    def __init__(
        self, engine: Engine, problem_id: str, user_id: str | None, count: int,
    ) -> None:
        self._engine = engine
        self.problem_id = problem_id
        self.user_id = user_id
        self.count = count
        self._upvoted: bool | None = None
        self.is_loading = False

    @property
    def upvoted(self) -> bool:
        if self.user_id is None:
            return False
        if self._upvoted is None:
            self._upvoted = has_upvoted(self._engine, self.problem_id, self.user_id)
        return self._upvoted

    def toggle(self) -> bool:
        if self.user_id is None:
            raise AuthenticationRequired()
        self.is_loading = True
        try:
            upvoted, _ = toggle_upvote(self._engine, self.problem_id, self.user_id)
        finally:
            self.is_loading = False
        self.count += 1 if upvoted else -1
        self._upvoted = upvoted
        return upvoted


# ---------------------------------------------------------------------------
# Customization shop
# ---------------------------------------------------------------------------
def list_items(engine: Engine) -> list[CustomizationItem]:
    with Session(engine) as session:
        return list(session.scalars(
            select(CustomizationItem).order_by(CustomizationItem.price, CustomizationItem.name)
        ).all())


def list_user_customizations(engine: Engine, user_id: str) -> list[UserCustomization]:
    with Session(engine, expire_on_commit=False) as session:
        rows = list(session.scalars(
            select(UserCustomization)
            .where(UserCustomization.user_id == user_id)
            .order_by(UserCustomization.purchased_at)
        ).all())
        for row in rows:
            _ = row.item
        return rows


def purchase_item(engine: Engine, user_id: str, item_id: str) -> UserCustomization:
    """Buy *item_id* for *user_id*.

    Raises
    ------
    NotFound            unknown user or item
    AlreadyOwned        the user has this item
    InsufficientPoints  balance below price (carries the shortfall)
    """
    with get_session(engine) as session:
        item = session.get(CustomizationItem, item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found")
        profile = session.scalar(
            select(Profile).where(Profile.id == user_id).with_for_update()
        )
        if profile is None:
            raise NotFound(f"User {user_id} not found")

        owned = session.scalar(
            select(UserCustomization.id).where(
                UserCustomization.user_id == user_id,
                UserCustomization.item_id == item_id,
            )
        )
        if owned is not None:
            raise AlreadyOwned(item_id)
        if profile.points < item.price:
            raise InsufficientPoints(item.price, profile.points)

        purchase = UserCustomization(user_id=user_id, item_id=item_id, is_active=True)
        session.add(purchase)
        session.flush()
        _apply_points(session, user_id, -item.price, TRANSACTION_SPENT, f"Purchased: {item.name}")
        _ = purchase.item

    logger.info("User %s purchased %s for %d pts", user_id, item.name, item.price)
    return purchase


def set_customization_active(
    engine: Engine, user_id: str, customization_id: str, active: bool,
) -> UserCustomization:
    with get_session(engine) as session:
        row = session.get(UserCustomization, customization_id)
        if row is None or row.user_id != user_id:
            raise NotFound(f"Customization {customization_id} not found")
        row.is_active = active
        _ = row.item
    return row


class CustomizationShop:
    """Purchase flow for one shop view.  ``purchasing_id`` is the single-flight
    guard: a second purchase while one is in flight is ignored."""

    def __init__(
        self, engine: Engine, user_id: str, *, notify: NotifyFn,
    ) -> None:
        self._engine = engine
        self.user_id = user_id
        self._notify = notify
        self.purchasing_id: str | None = None

    def purchase(self, item_id: str) -> UserCustomization | None:
        if self.purchasing_id is not None:
            return None
        self.purchasing_id = item_id
        try:
            purchase = purchase_item(self._engine, self.user_id, item_id)
        except InsufficientPoints as exc:
            self._notify(Notice("error", "Not enough points", str(exc)))
            raise
        except (StartOriginError, SQLAlchemyError) as exc:
            if isinstance(exc, SQLAlchemyError):
                logger.exception("Purchase of %s failed", item_id)
            self._notify(Notice("error", "Purchase failed", str(exc)))
            raise
        finally:
            self.purchasing_id = None

        self._notify(Notice(
            "success", "Success!",
            f"Purchased {purchase.item.name} for {purchase.item.price} points",
        ))
        return purchase
