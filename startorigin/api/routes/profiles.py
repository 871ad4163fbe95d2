"""
startorigin.api.routes.profiles — Public profiles & profile settings
=====================================================================

``GET /api/profiles/{name}`` resolves usernames and aliases; the ``/me``
endpoints edit the caller's own profile and show their points ledger.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from startorigin.api.deps import get_config, get_current_user, get_engine
from startorigin.config import StartOriginConfig
from startorigin.database.models import Profile
from startorigin.services import engagement_service, profile_service

router = APIRouter(prefix="/profiles", tags=["profiles"])


def profile_to_dict(profile: Profile) -> dict:
    return {
        "id": profile.id,
        "username": profile.username,
        "display_name": profile.display_name,
        "avatar_url": profile.avatar_url,
        "bio": profile.bio,
        "points": profile.points,
        "disable_chat": profile.disable_chat,
        "created_at": profile.created_at.isoformat() if profile.created_at else None,
    }


class ProfileUpdate(BaseModel):
    username: str | None = None
    display_name: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    disable_chat: bool | None = None


@router.patch("/me")
def update_me(
    body: ProfileUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    """Only the fields present in the body are changed."""
    profile_service.get_or_create_profile(engine, user["sub"])
    fields = body.model_dump(exclude_unset=True)
    profile = profile_service.update_profile(engine, user["sub"], **fields)
    return profile_to_dict(profile)


@router.get("/me/transactions")
def my_transactions(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    rows = engagement_service.list_transactions(engine, user["sub"])
    return {
        "balance": engagement_service.get_balance(engine, user["sub"]),
        "transactions": [
            {
                "id": t.id,
                "points": t.points,
                "type": t.type,
                "description": t.description,
                "created_at": t.created_at.isoformat(),
            }
            for t in rows
        ],
    }


@router.get("/{name}")
def public_profile(
    name: str,
    engine=Depends(get_engine),
    cfg: StartOriginConfig = Depends(get_config),
):
    profile = profile_service.resolve_profile(engine, name, cfg.static_aliases)
    if profile is None:
        raise HTTPException(404, "Profile not found")

    body = profile_to_dict(profile)
    body["usernames"] = profile_service.all_usernames(engine, profile, cfg.static_aliases)
    body["badges"] = profile_service.list_badges(engine, profile.id)
    body["problems"] = [
        {
            "id": p.id,
            "title": p.title,
            "category": p.category,
            "status": p.status,
            "upvotes": p.upvotes,
            "created_at": p.created_at.isoformat(),
        }
        for p in profile_service.list_user_problems(engine, profile.id)
    ]
    return body
