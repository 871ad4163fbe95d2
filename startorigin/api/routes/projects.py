"""
startorigin.api.routes.projects — Project feed & submission
============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from startorigin.api.deps import get_current_user, get_engine
from startorigin.database.models import Project
from startorigin.services import engagement_service, feed_service
from startorigin.services.feed_service import FeedQuery
from startorigin.services.messaging_service import UserStub

router = APIRouter(prefix="/projects", tags=["projects"])


def project_to_dict(project: Project) -> dict:
    author = project.__dict__.get("author")
    return {
        "id": project.id,
        "title": project.title,
        "short_description": project.short_description,
        "detailed_description": project.detailed_description,
        "category": project.category,
        "tags": project.tags or [],
        "logo_url": project.logo_url,
        "looking_for_cofounder": project.looking_for_cofounder,
        "status": project.status,
        "upvotes": project.upvotes,
        "author_id": project.author_id,
        "author": UserStub.from_profile(author).to_dict() if author is not None else None,
        "created_at": project.created_at.isoformat(),
    }


class ProjectCreate(BaseModel):
    title: str
    short_description: str
    detailed_description: str | None = None
    category: str | None = None
    tags: list[str] | None = None
    logo_url: str | None = None
    looking_for_cofounder: bool = False


@router.get("")
def list_projects(
    search: str = Query("", max_length=200),
    category: str | None = Query(None),
    sort: str = Query("recent"),
    page: int = Query(1, ge=1),
    engine=Depends(get_engine),
):
    result = feed_service.fetch_page(
        engine, "projects", FeedQuery(search=search, category=category or None, sort=sort), page,
    )
    return {
        "items": [project_to_dict(p) for p in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "has_more": result.has_more,
    }


@router.post("", status_code=201)
def create_project(
    body: ProjectCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    project = engagement_service.create_project(engine, user["sub"], **body.model_dump())
    return project_to_dict(project)


@router.get("/{project_id}")
def get_project(project_id: str, engine=Depends(get_engine)):
    return project_to_dict(engagement_service.get_project(engine, project_id))
