"""
startorigin.api.routes.problems — Problem feed, CRUD & upvotes
===============================================================

The feed is public.  Publishing credits the author; only the author may
edit or delete.  Upvoting without a session answers 401 with the login
URL so the client can redirect.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from startorigin.api.deps import get_current_user, get_engine, get_optional_user
from startorigin.constants import POINTS_PER_PROBLEM, PROBLEM_CATEGORIES
from startorigin.database.models import Problem
from startorigin.errors import AuthenticationRequired
from startorigin.services import engagement_service, feed_service
from startorigin.services.feed_service import FeedQuery
from startorigin.services.messaging_service import UserStub

router = APIRouter(prefix="/problems", tags=["problems"])


def problem_to_dict(problem: Problem) -> dict:
    author = problem.__dict__.get("author")
    return {
        "id": problem.id,
        "title": problem.title,
        "description": problem.description,
        "category": problem.category,
        "tags": problem.tags or [],
        "contact": problem.contact,
        "status": problem.status,
        "looking_for_cofounder": problem.looking_for_cofounder,
        "upvotes": problem.upvotes,
        "comment_count": problem.comment_count,
        "author_id": problem.author_id,
        "author": UserStub.from_profile(author).to_dict() if author is not None else None,
        "created_at": problem.created_at.isoformat(),
    }


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ProblemCreate(BaseModel):
    title: str
    description: str
    category: str | None = None
    tags: list[str] | None = None
    contact: str | None = None
    looking_for_cofounder: bool = False


class ProblemUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    category: str | None = None
    tags: list[str] | None = None
    contact: str | None = None
    status: str | None = None
    looking_for_cofounder: bool | None = None


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------
@router.get("")
def list_problems(
    search: str = Query("", max_length=200),
    category: str | None = Query(None),
    sort: str = Query("recent"),
    page: int = Query(1, ge=1),
    engine=Depends(get_engine),
):
    result = feed_service.fetch_page(
        engine, "problems", FeedQuery(search=search, category=category or None, sort=sort), page,
    )
    return {
        "items": [problem_to_dict(p) for p in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "has_more": result.has_more,
    }


@router.get("/categories")
def categories():
    return {"categories": list(PROBLEM_CATEGORIES)}


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_problem(
    body: ProblemCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    problem = engagement_service.create_problem(engine, user["sub"], **body.model_dump())
    return {**problem_to_dict(problem), "points_awarded": POINTS_PER_PROBLEM}


@router.get("/{problem_id}")
def get_problem(
    problem_id: str,
    user: dict | None = Depends(get_optional_user),
    engine=Depends(get_engine),
):
    problem = engagement_service.get_problem(engine, problem_id)
    body = problem_to_dict(problem)
    body["upvoted"] = (
        engagement_service.has_upvoted(engine, problem_id, user["sub"]) if user else False
    )
    return body


@router.patch("/{problem_id}")
def update_problem(
    problem_id: str,
    body: ProblemUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    fields = body.model_dump(exclude_unset=True)
    problem = engagement_service.update_problem(engine, problem_id, user["sub"], **fields)
    return problem_to_dict(problem)


@router.delete("/{problem_id}")
def delete_problem(
    problem_id: str,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    engagement_service.delete_problem(engine, problem_id, user["sub"])
    return {"deleted": problem_id}


# ---------------------------------------------------------------------------
# Upvotes
# ---------------------------------------------------------------------------
@router.post("/{problem_id}/upvote")
def toggle_upvote(
    problem_id: str,
    user: dict | None = Depends(get_optional_user),
    engine=Depends(get_engine),
):
    if user is None:
        raise AuthenticationRequired()
    upvoted, count = engagement_service.toggle_upvote(engine, problem_id, user["sub"])
    return {"problem_id": problem_id, "upvoted": upvoted, "upvotes": count}


@router.get("/{problem_id}/upvote")
def upvote_status(
    problem_id: str,
    user: dict | None = Depends(get_optional_user),
    engine=Depends(get_engine),
):
    if user is None:
        return {"problem_id": problem_id, "upvoted": False}
    return {
        "problem_id": problem_id,
        "upvoted": engagement_service.has_upvoted(engine, problem_id, user["sub"]),
    }
