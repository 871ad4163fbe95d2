"""
startorigin.services.feed_service — Paginated Problem & Project Feeds
======================================================================

Search (substring on title / description, case-insensitive), category
filter (exact) and sort (``recent`` or ``popular``), served in fixed pages
of ``FEED_PAGE_SIZE``.

:class:`FeedPager` is the "load more" state behind a feed view: any filter
change resets to page 1; the feed is exhausted once a short page comes back
or the loaded count reaches the known total, so a total of at most one
page never triggers a second request.  :class:`Debouncer` delays search-box
re-queries and :class:`FeedView` ties both together for a live feed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from startorigin.constants import FEED_PAGE_SIZE, FEED_SORTS
from startorigin.database.models import Problem, Project
from startorigin.errors import ValidationFailed

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

FEED_KINDS = ("problems", "projects")


@dataclass(frozen=True, slots=True)
class FeedQuery:
    search: str = ""
    category: str | None = None
    sort: str = "recent"

    def __post_init__(self) -> None:
        if self.sort not in FEED_SORTS:
            raise ValidationFailed(f"Unknown sort: {self.sort}")


@dataclass(frozen=True, slots=True)
class FeedPage:
    items: list
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return len(self.items) == self.page_size and self.page * self.page_size < self.total


def _like(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _model_for(kind: str):
    if kind == "problems":
        return Problem, Problem.description
    if kind == "projects":
        return Project, Project.short_description
    raise ValidationFailed(f"Unknown feed: {kind}")


def fetch_page(
    engine: Engine,
    kind: str,
    query: FeedQuery,
    page: int = 1,
    *,
    page_size: int = FEED_PAGE_SIZE,
) -> FeedPage:
    """One page of *kind* (``"problems"`` or ``"projects"``) plus the total."""
    if page < 1:
        raise ValidationFailed("page must be >= 1")
    model, body = _model_for(kind)

    filters = []
    search = (query.search or "").strip()
    if search:
        pattern = _like(search)
        filters.append(or_(
            model.title.ilike(pattern, escape="\\"),
            body.ilike(pattern, escape="\\"),
        ))
    if query.category:
        filters.append(model.category == query.category)

    if query.sort == "popular":
        order = (model.upvotes.desc(), model.created_at.desc(), model.id)
    else:
        order = (model.created_at.desc(), model.id)

    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(model).where(*filters)) or 0
        items = list(session.scalars(
            select(model)
            .options(selectinload(model.author))
            .where(*filters)
            .order_by(*order)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all())

    return FeedPage(items=items, total=total, page=page, page_size=page_size)


def list_categories(engine: Engine, kind: str = "problems") -> list[str]:
    """Distinct non-empty categories present in *kind*."""
    model, _ = _model_for(kind)
    with Session(engine) as session:
        return list(session.scalars(
            select(model.category)
            .where(model.category.is_not(None))
            .distinct()
            .order_by(model.category)
        ).all())


# ---------------------------------------------------------------------------
# Pager
# ---------------------------------------------------------------------------
class FeedPager:
    """"Load more" state for one feed view."""

    def __init__(
        self,
        engine: Engine,
        kind: str,
        query: FeedQuery | None = None,
        *,
        page_size: int = FEED_PAGE_SIZE,
        fetch: Callable[..., FeedPage] = fetch_page,
    ) -> None:
        self._engine = engine
        self.kind = kind
        self.query = query or FeedQuery()
        self.page_size = page_size
        self._fetch = fetch
        self.items: list[Any] = []
        self.page = 0
        self.total = 0
        self.exhausted = False
        self.requests = 0
        self.is_loading = False

    def _load(self, page: int) -> list[Any]:
        self.is_loading = True
        try:
            self.requests += 1
            result = self._fetch(
                self._engine, self.kind, self.query, page, page_size=self.page_size,
            )
        finally:
            self.is_loading = False
        self.page = page
        self.total = result.total
        self.items.extend(result.items)
        self.exhausted = (
            len(result.items) < self.page_size or len(self.items) >= self.total
        )
        return result.items

    def reset(self, query: FeedQuery | None = None) -> list[Any]:
        """Start over at page 1 (optionally with a new query)."""
        if query is not None:
            self.query = query
        self.items = []
        self.page = 0
        self.total = 0
        self.exhausted = False
        return self._load(1)

    def load_more(self) -> list[Any]:
        if self.exhausted:
            return []
        if self.page == 0:
            return self.reset()
        return self._load(self.page + 1)

    def set_search(self, search: str) -> list[Any]:
        return self.reset(replace(self.query, search=search))

    def set_category(self, category: str | None) -> list[Any]:
        return self.reset(replace(self.query, category=category or None))

    def set_sort(self, sort: str) -> list[Any]:
        return self.reset(replace(self.query, sort=sort))


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------
class Debouncer:
    """Run *fn* once calls have stopped for *delay_ms* milliseconds.

    Only the arguments of the last call are used.
    """

    def __init__(self, delay_ms: int, fn: Callable[..., Any]) -> None:
        self.delay = delay_ms / 1000.0
        self._fn = fn
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._pending: tuple[tuple, dict] | None = None

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = (args, kwargs)
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, None
            self._timer = None
        if pending is None:
            return
        args, kwargs = pending
        try:
            self._fn(*args, **kwargs)
        except Exception:
            logger.exception("Debounced call failed")

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def flush(self) -> None:
        """Run the pending call now, if any."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
        self._fire()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending = None


# ---------------------------------------------------------------------------
# Live feed view
# ---------------------------------------------------------------------------
class FeedView:
    """A :class:`FeedPager` driven by a search box.

    Keystrokes go through :meth:`type_search` and re-query once typing
    pauses for *debounce_ms*; category and sort changes re-query at once.
    Every fresh result list is handed to *on_change*; a debounced query
    that fails is handed to *on_error* since no caller is waiting on it.
    """

    def __init__(
        self,
        engine: Engine,
        kind: str,
        *,
        debounce_ms: int,
        on_change: Callable[[FeedPager], None],
        on_error: Callable[[Exception], None],
        fetch: Callable[..., FeedPage] = fetch_page,
    ) -> None:
        self.pager = FeedPager(engine, kind, fetch=fetch)
        self._on_change = on_change
        self._on_error = on_error
        self._lock = threading.Lock()
        self._typed = ""
        self._search = Debouncer(debounce_ms, self._apply_search)

    def load(self) -> FeedPager:
        with self._lock:
            self.pager.reset()
        return self.pager

    def type_search(self, text: str) -> None:
        self._typed = text
        self._search(text)

    def _apply_search(self, text: str) -> None:
        try:
            with self._lock:
                self.pager.set_search(text)
        except (ValidationFailed, SQLAlchemyError) as exc:
            logger.warning("Feed search %r failed: %s", text, exc)
            self._on_error(exc)
            return
        self._on_change(self.pager)

    def set_category(self, category: str | None) -> FeedPager:
        return self._requery(category=category or None)

    def set_sort(self, sort: str) -> FeedPager:
        return self._requery(sort=sort)

    def _requery(self, **changes: Any) -> FeedPager:
        # a pending keystroke is folded into this query instead of firing later
        self._search.cancel()
        with self._lock:
            self.pager.reset(replace(self.pager.query, search=self._typed, **changes))
        return self.pager

    def load_more(self) -> FeedPager:
        with self._lock:
            self.pager.load_more()
        return self.pager

    def close(self) -> None:
        self._search.cancel()
